"""Invoice ledger: storage and lookup of invoices and their lines."""

from datetime import datetime

from sqlalchemy.orm import Session, selectinload

from app.models.billing import Invoice, InvoiceLine, InvoiceStatus
from app.services.billing.errors import BillingInvariantViolation, BillingNotFound
from app.services.common import apply_ordering, apply_pagination, round_money, sum_money


def _validate_invoice_totals(invoice: Invoice) -> None:
    subtotal = round_money(invoice.subtotal)
    discount = round_money(invoice.discount_amount)
    tax = round_money(invoice.tax_amount)
    total = round_money(invoice.total_amount)
    if subtotal < 0 or discount < 0 or tax < 0:
        raise BillingInvariantViolation(
            "Invoice amounts must not be negative",
            {"subtotal": str(subtotal), "discount": str(discount), "tax": str(tax)},
        )
    expected = round_money(subtotal - discount + tax)
    if total != expected:
        raise BillingInvariantViolation(
            "Invoice total must equal subtotal - discount + tax",
            {"total": str(total), "expected": str(expected)},
        )
    if invoice.lines and sum_money(line.amount for line in invoice.lines) != total:
        raise BillingInvariantViolation(
            "Invoice lines must add up to the invoice total",
            {"total": str(total)},
        )


class Invoices:
    @staticmethod
    def add_draft(db: Session, invoice: Invoice, lines: list[InvoiceLine]) -> Invoice:
        """Stage a new DRAFT invoice with its lines; the caller commits."""
        for position, line in enumerate(lines):
            line.position = position
            invoice.lines.append(line)
        invoice.status = InvoiceStatus.draft
        _validate_invoice_totals(invoice)
        db.add(invoice)
        db.flush()
        return invoice

    @staticmethod
    def get_by_number(db: Session, invoice_number: str) -> Invoice:
        invoice = (
            db.query(Invoice)
            .options(selectinload(Invoice.lines))
            .filter(Invoice.invoice_number == invoice_number)
            .first()
        )
        if not invoice:
            raise BillingNotFound(
                f"Invoice not found: {invoice_number}",
                {"invoice_number": invoice_number},
            )
        return invoice

    @staticmethod
    def get(db: Session, invoice_id) -> Invoice:
        invoice = db.get(Invoice, invoice_id)
        if not invoice:
            raise BillingNotFound(
                f"Invoice not found: {invoice_id}", {"invoice_id": str(invoice_id)}
            )
        return invoice

    @staticmethod
    def list_for_customer(
        db: Session,
        customer_id: str,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> list[Invoice]:
        query = db.query(Invoice).filter(Invoice.customer_id == customer_id)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": Invoice.created_at,
                "due_date": Invoice.due_date,
                "total_amount": Invoice.total_amount,
                "invoice_number": Invoice.invoice_number,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def list_by_status(
        db: Session,
        status: InvoiceStatus | None,
        created_from: datetime | None,
        created_to: datetime | None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Invoice]:
        query = db.query(Invoice)
        if status is not None:
            query = query.filter(Invoice.status == status)
        if created_from is not None:
            query = query.filter(Invoice.created_at >= created_from)
        if created_to is not None:
            query = query.filter(Invoice.created_at <= created_to)
        query = query.order_by(Invoice.created_at.desc())
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def overdue_candidates(db: Session, now: datetime) -> list[Invoice]:
        return (
            db.query(Invoice)
            .filter(
                Invoice.status.in_([InvoiceStatus.sent, InvoiceStatus.partially_paid])
            )
            .filter(Invoice.due_date.isnot(None))
            .filter(Invoice.due_date < now)
            .order_by(Invoice.due_date.asc())
            .all()
        )
