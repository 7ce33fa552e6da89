"""Payment ledger: payments and refunds recorded against invoices."""

from decimal import Decimal

from sqlalchemy.orm import Session

from app.models.billing import Payment, PaymentMethodType, PaymentStatus
from app.services.billing.errors import BillingNotFound
from app.services.common import apply_pagination, sum_abs_money, sum_money


class Payments:
    @staticmethod
    def record(db: Session, payment: Payment) -> Payment:
        """Stage a payment row. Payments are never updated once written."""
        db.add(payment)
        db.flush()
        return payment

    @staticmethod
    def get(db: Session, payment_id: str) -> Payment:
        payment = db.query(Payment).filter(Payment.payment_id == payment_id).first()
        if not payment:
            raise BillingNotFound(
                f"Payment not found: {payment_id}", {"payment_id": payment_id}
            )
        return payment

    @staticmethod
    def list_for_invoice(db: Session, invoice_id) -> list[Payment]:
        return (
            db.query(Payment)
            .filter(Payment.invoice_id == invoice_id)
            .order_by(Payment.created_at.asc())
            .all()
        )

    @staticmethod
    def list_for_customer(
        db: Session, customer_id: str, limit: int = 50, offset: int = 0
    ) -> list[Payment]:
        query = (
            db.query(Payment)
            .filter(Payment.customer_id == customer_id)
            .order_by(Payment.created_at.desc())
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def total_paid(db: Session, invoice_id) -> Decimal:
        """Completed, non-refund payments against an invoice."""
        rows = (
            db.query(Payment.amount)
            .filter(Payment.invoice_id == invoice_id)
            .filter(Payment.status == PaymentStatus.completed)
            .filter(Payment.payment_method_type != PaymentMethodType.refund)
            .all()
        )
        return sum_money(row[0] for row in rows)

    @staticmethod
    def total_refunded(db: Session, original_payment_id: str) -> Decimal:
        """Absolute sum of completed refunds issued against one payment."""
        rows = (
            db.query(Payment.amount)
            .filter(Payment.original_payment_id == original_payment_id)
            .filter(Payment.payment_method_type == PaymentMethodType.refund)
            .filter(Payment.status == PaymentStatus.completed)
            .all()
        )
        return sum_abs_money(row[0] for row in rows)
