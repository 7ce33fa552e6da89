"""create billing tables

Revision ID: a1c3e5b7d9f0
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = "a1c3e5b7d9f0"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

invoice_status = sa.Enum(
    "draft",
    "sent",
    "partially_paid",
    "paid",
    "overdue",
    "cancelled",
    "refunded",
    "partially_refunded",
    name="invoicestatus",
)
invoice_type = sa.Enum("shipment", "bulk", "subscription", name="invoicetype")
invoice_line_type = sa.Enum("charge", "fee", "discount", "tax", name="invoicelinetype")
payment_status = sa.Enum("pending", "completed", "failed", name="paymentstatus")
payment_method_type = sa.Enum(
    "manual",
    "automatic",
    "refund",
    "card",
    "bank_transfer",
    "wallet",
    name="paymentmethodtype",
)
audit_actor_type = sa.Enum("system", "user", name="auditactortype")
subscription_status = sa.Enum("active", "paused", "cancelled", name="subscriptionstatus")


def _timestamps(with_updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]
    if with_updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "billing_subscriptions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", sa.String(80), nullable=False),
        sa.Column("customer_name", sa.String(200), nullable=True),
        sa.Column("customer_email", sa.String(255), nullable=True),
        sa.Column("billing_address", sa.JSON, nullable=True),
        sa.Column("service_plan", sa.String(80), nullable=False),
        sa.Column("monthly_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("discount_percentage", sa.Numeric(5, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("status", subscription_status, nullable=False, server_default="active"),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_billed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_billing_subscriptions_next_billing_date",
        "billing_subscriptions",
        ["status", "next_billing_date"],
    )

    op.create_table(
        "invoices",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("invoice_number", sa.String(40), nullable=False),
        sa.Column("customer_id", sa.String(80), nullable=False),
        sa.Column("customer_name", sa.String(200), nullable=True),
        sa.Column("customer_email", sa.String(255), nullable=True),
        sa.Column("billing_address", sa.JSON, nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("invoice_type", invoice_type, nullable=False),
        sa.Column("service_type", sa.String(40), nullable=True),
        sa.Column("shipment_id", sa.String(80), nullable=True),
        sa.Column(
            "subscription_id",
            UUID(as_uuid=True),
            sa.ForeignKey("billing_subscriptions.id"),
            nullable=True,
        ),
        sa.Column("status", invoice_status, nullable=False, server_default="draft"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("tax_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("created_by", sa.String(120), nullable=True),
        sa.Column("updated_by", sa.String(120), nullable=True),
        sa.Column("version_id", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint("invoice_number", name="uq_invoices_invoice_number"),
    )
    op.create_index("ix_invoices_customer_id", "invoices", ["customer_id"])
    op.create_index("ix_invoices_status_created_at", "invoices", ["status", "created_at"])

    op.create_table(
        "invoice_lines",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "invoice_id", UUID(as_uuid=True), sa.ForeignKey("invoices.id"), nullable=False
        ),
        sa.Column("position", sa.Integer, nullable=False, server_default="0"),
        sa.Column("line_type", invoice_line_type, nullable=False),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 3), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("shipment_id", sa.String(80), nullable=True),
        *_timestamps(with_updated=False),
    )
    op.create_index("ix_invoice_lines_invoice_id", "invoice_lines", ["invoice_id"])

    op.create_table(
        "payments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("payment_id", sa.String(120), nullable=False),
        sa.Column(
            "invoice_id", UUID(as_uuid=True), sa.ForeignKey("invoices.id"), nullable=False
        ),
        sa.Column("customer_id", sa.String(80), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("payment_method_id", sa.String(120), nullable=True),
        sa.Column("payment_method_type", payment_method_type, nullable=False),
        sa.Column("status", payment_status, nullable=False),
        sa.Column("gateway_transaction_id", sa.String(120), nullable=True),
        sa.Column("gateway_response", sa.JSON, nullable=True),
        sa.Column("failure_reason", sa.Text, nullable=True),
        sa.Column("original_payment_id", sa.String(120), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(120), nullable=True),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint("payment_id", name="uq_payments_payment_id"),
    )
    op.create_index("ix_payments_invoice_id", "payments", ["invoice_id"])
    op.create_index("ix_payments_customer_id", "payments", ["customer_id"])
    op.create_index("ix_payments_original_payment_id", "payments", ["original_payment_id"])

    op.create_table(
        "billing_audit_entries",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("invoice_id", UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(60), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("actor", sa.String(120), nullable=False),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        *_timestamps(with_updated=False),
    )
    op.create_index(
        "ix_billing_audit_entries_invoice_id", "billing_audit_entries", ["invoice_id"]
    )

    op.create_table(
        "customer_billing_profiles",
        sa.Column("customer_id", sa.String(80), primary_key=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("payment_terms", sa.String(20), nullable=False, server_default="NET_30"),
        sa.Column("pricing_tier", sa.String(40), nullable=False, server_default="STANDARD"),
        sa.Column(
            "auto_payment_enabled", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("default_payment_method_id", sa.String(120), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "customer_credits",
        sa.Column("customer_id", sa.String(80), primary_key=True),
        sa.Column("total_paid", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total_refunded", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("last_payment_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("customer_credits")
    op.drop_table("customer_billing_profiles")
    op.drop_index("ix_billing_audit_entries_invoice_id", table_name="billing_audit_entries")
    op.drop_table("billing_audit_entries")
    op.drop_index("ix_payments_original_payment_id", table_name="payments")
    op.drop_index("ix_payments_customer_id", table_name="payments")
    op.drop_index("ix_payments_invoice_id", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_invoice_lines_invoice_id", table_name="invoice_lines")
    op.drop_table("invoice_lines")
    op.drop_index("ix_invoices_status_created_at", table_name="invoices")
    op.drop_index("ix_invoices_customer_id", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index(
        "ix_billing_subscriptions_next_billing_date", table_name="billing_subscriptions"
    )
    op.drop_table("billing_subscriptions")
    bind = op.get_bind()
    for enum_type in (
        subscription_status,
        audit_actor_type,
        payment_method_type,
        payment_status,
        invoice_line_type,
        invoice_type,
        invoice_status,
    ):
        enum_type.drop(bind, checkfirst=True)
