import secrets
import string
from datetime import datetime

from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import Invoice
from app.services.billing.errors import BillingException

_ALPHABET = string.ascii_uppercase + string.digits
_SUFFIX_LENGTH = 6


def _random_suffix(length: int = _SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def format_invoice_number(prefix: str, issued_at: datetime, suffix: str) -> str:
    return f"{prefix}-{issued_at:%Y%m%d}-{suffix}"


def _number_taken(db: Session, number: str) -> bool:
    pending = any(
        isinstance(obj, Invoice) and obj.invoice_number == number for obj in db.new
    )
    if pending:
        return True
    return (
        db.query(Invoice.id).filter(Invoice.invoice_number == number).first()
        is not None
    )


def generate_invoice_number(db: Session, issued_at: datetime) -> str:
    """Return an unused ``PREFIX-yyyyMMdd-XXXXXX`` invoice number.

    The unique constraint on ``invoices.invoice_number`` stays the final
    guard; this only avoids handing out numbers that are already stored.
    """
    prefix = settings.invoice_number_prefix
    for _ in range(settings.invoice_number_max_attempts):
        candidate = format_invoice_number(prefix, issued_at, _random_suffix())
        if not _number_taken(db, candidate):
            return candidate
    raise BillingException(
        "Could not allocate a unique invoice number",
        {"attempts": settings.invoice_number_max_attempts},
    )
