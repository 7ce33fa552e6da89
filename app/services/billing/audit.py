from datetime import datetime

from sqlalchemy.orm import Session

from app.models.billing import BillingAuditEntry
from app.services.billing.actors import Actor

INVOICE_CREATED = "INVOICE_CREATED"
INVOICE_UPDATED = "INVOICE_UPDATED"
INVOICE_SENT = "INVOICE_SENT"
STATUS_CHANGE = "STATUS_CHANGE"
MANUAL_PAYMENT = "MANUAL_PAYMENT"
PAYMENT_PROCESSED = "PAYMENT_PROCESSED"
PAYMENT_FAILED = "PAYMENT_FAILED"
AUTOMATIC_PAYMENT = "AUTOMATIC_PAYMENT"
REFUND_PROCESSED = "REFUND_PROCESSED"
REFUND_FAILED = "REFUND_FAILED"


class BillingAudit:
    """Append-only audit trail of state-changing billing actions."""

    @staticmethod
    def record(
        db: Session,
        invoice_id,
        action: str,
        description: str,
        actor: Actor,
        at: datetime | None = None,
    ) -> BillingAuditEntry:
        entry = BillingAuditEntry(
            invoice_id=invoice_id,
            action=action,
            description=description,
            actor=actor.label,
            actor_type=actor.actor_type,
        )
        if at is not None:
            entry.created_at = at
        db.add(entry)
        return entry

    @staticmethod
    def list_for_invoice(db: Session, invoice_id) -> list[BillingAuditEntry]:
        return (
            db.query(BillingAuditEntry)
            .filter(BillingAuditEntry.invoice_id == invoice_id)
            .order_by(BillingAuditEntry.created_at.asc())
            .all()
        )
