"""Invoice status state machine and date policies."""

from __future__ import annotations

from calendar import monthrange
from datetime import datetime, timedelta

from app.models.billing import InvoiceStatus
from app.services.billing.errors import InvalidStateTransition
from app.services.common import as_utc

VALID_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.draft: frozenset({InvoiceStatus.sent, InvoiceStatus.cancelled}),
    InvoiceStatus.sent: frozenset(
        {
            InvoiceStatus.paid,
            InvoiceStatus.partially_paid,
            InvoiceStatus.overdue,
            InvoiceStatus.cancelled,
        }
    ),
    InvoiceStatus.partially_paid: frozenset(
        {InvoiceStatus.paid, InvoiceStatus.overdue}
    ),
    InvoiceStatus.overdue: frozenset(
        {InvoiceStatus.paid, InvoiceStatus.partially_paid, InvoiceStatus.cancelled}
    ),
    InvoiceStatus.paid: frozenset(
        {InvoiceStatus.refunded, InvoiceStatus.partially_refunded}
    ),
    InvoiceStatus.partially_refunded: frozenset(
        {InvoiceStatus.refunded, InvoiceStatus.paid}
    ),
    InvoiceStatus.cancelled: frozenset(),
    InvoiceStatus.refunded: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)

OVERDUE_CANDIDATE_STATUSES = (InvoiceStatus.sent, InvoiceStatus.partially_paid)

PAYMENT_TERMS_DAYS = {
    "NET_15": timedelta(days=15),
    "NET_30": timedelta(days=30),
    "NET_45": timedelta(days=45),
    "NET_60": timedelta(days=60),
    "COD": timedelta(0),
    "IMMEDIATE": timedelta(hours=24),
}
DEFAULT_PAYMENT_TERMS = "NET_30"


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: InvoiceStatus, target: InvoiceStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransition(current, target)


def calculate_due_date(created_at: datetime, payment_terms: str | None) -> datetime:
    """Due date for an invoice issued at ``created_at``.

    Unknown or missing terms fall back to NET_30.
    """
    key = (payment_terms or "").strip().upper()
    offset = PAYMENT_TERMS_DAYS.get(key, PAYMENT_TERMS_DAYS[DEFAULT_PAYMENT_TERMS])
    return created_at + offset


def is_overdue(status: InvoiceStatus, due_date: datetime | None, now: datetime) -> bool:
    if due_date is None or status not in OVERDUE_CANDIDATE_STATUSES:
        return False
    return as_utc(due_date) < as_utc(now)


def add_months(value: datetime, months: int) -> datetime:
    total = value.month - 1 + months
    year = value.year + total // 12
    month = total % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)
