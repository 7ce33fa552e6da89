import re
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import text

from app.config import settings
from app.models.billing import (
    BillingAuditEntry,
    Invoice,
    InvoiceLineType,
    InvoiceStatus,
    InvoiceType,
    SubscriptionStatus,
)
from app.schemas.billing import (
    BulkInvoiceCreate,
    InvoiceSendRequest,
    InvoiceUpdate,
    ShipmentInvoiceCreate,
    SubscriptionCreate,
)
from app.services import billing as billing_service
from app.services.billing import Actor
from app.services.billing import audit as audit_actions
from app.services.billing import numbering
from app.services.billing.errors import (
    BillingException,
    BillingInvariantViolation,
    BillingNotFound,
    ConcurrentInvoiceUpdate,
    InvalidStateTransition,
)
from app.services.common import as_utc
from tests.conftest import NOW
from tests.mocks import FakeTax


def _shipment_payload(**overrides) -> ShipmentInvoiceCreate:
    data = {
        "customer_id": "cust-1",
        "customer_name": "Acme Ltd",
        "customer_email": "ops@acme.test",
        "shipment_id": "SHP-1",
        "service_type": "standard",
        "weight": Decimal("2"),
    }
    data.update(overrides)
    return ShipmentInvoiceCreate(**data)


def _actions(db_session, invoice) -> list[str]:
    entries = billing_service.billing_audit.list_for_invoice(db_session, invoice.id)
    return [entry.action for entry in entries]


def _subscription(db_session, **overrides):
    data = {
        "customer_id": "cust-1",
        "customer_email": "ops@acme.test",
        "service_plan": "Pro",
        "monthly_amount": Decimal("200.00"),
        "discount_percentage": Decimal("10"),
        "next_billing_date": NOW - timedelta(days=1),
    }
    data.update(overrides)
    return billing_service.subscriptions.create(db_session, SubscriptionCreate(**data))


# Creation


def test_create_shipment_invoice_totals(db_session, billing, tax):
    invoice = billing.create_shipment_invoice(db_session, _shipment_payload())

    assert invoice.status == InvoiceStatus.draft
    assert invoice.invoice_type == InvoiceType.shipment
    assert invoice.service_type == "STANDARD"
    assert invoice.subtotal == Decimal("45.00")
    assert invoice.discount_amount == Decimal("0.00")
    assert invoice.tax_amount == Decimal("3.83")
    assert invoice.total_amount == Decimal("48.83")
    assert [line.line_type for line in invoice.lines] == [
        InvoiceLineType.charge,
        InvoiceLineType.tax,
    ]
    assert sum(line.amount for line in invoice.lines) == invoice.total_amount
    assert as_utc(invoice.due_date) == NOW + timedelta(days=30)
    assert invoice.currency == "USD"
    assert tax.calls[0][1] == Decimal("45.00")
    assert _actions(db_session, invoice) == [audit_actions.INVOICE_CREATED]


def test_create_shipment_invoice_applies_volume_discount_before_tax(
    db_session, billing, shipment_charges, tax
):
    shipment_charges.monthly_count = 50

    invoice = billing.create_shipment_invoice(db_session, _shipment_payload())

    assert invoice.subtotal == Decimal("45.00")
    assert invoice.discount_amount == Decimal("4.50")
    assert tax.calls[0][1] == Decimal("40.50")
    assert invoice.tax_amount == Decimal("3.44")
    assert invoice.total_amount == Decimal("43.94")
    discount_line = [
        line for line in invoice.lines if line.line_type == InvoiceLineType.discount
    ]
    assert discount_line[0].amount == Decimal("-4.50")


def test_create_shipment_invoice_uses_customer_payment_terms(
    db_session, billing, make_profile
):
    make_profile(payment_terms="NET_15")

    invoice = billing.create_shipment_invoice(db_session, _shipment_payload())

    assert as_utc(invoice.due_date) == NOW + timedelta(days=15)


def test_create_shipment_invoice_tax_failure_persists_nothing(db_session, billing):
    billing.tax_calculator = FakeTax(error=RuntimeError("tax service down"))

    with pytest.raises(RuntimeError):
        billing.create_shipment_invoice(db_session, _shipment_payload())

    assert db_session.query(Invoice).count() == 0


def test_invoice_number_format(db_session, billing):
    invoice = billing.create_shipment_invoice(db_session, _shipment_payload())
    assert re.fullmatch(r"INV-20260310-[A-Z0-9]{6}", invoice.invoice_number)


def test_invoice_number_retries_on_collision(db_session, billing, monkeypatch):
    suffixes = iter(["AAAAAA", "AAAAAA", "BBBBBB"])
    monkeypatch.setattr(numbering, "_random_suffix", lambda: next(suffixes))

    first = billing.create_shipment_invoice(db_session, _shipment_payload())
    second = billing.create_shipment_invoice(
        db_session, _shipment_payload(shipment_id="SHP-2")
    )

    assert first.invoice_number == "INV-20260310-AAAAAA"
    assert second.invoice_number == "INV-20260310-BBBBBB"


def test_invoice_number_gives_up_after_max_attempts(db_session, billing, monkeypatch):
    monkeypatch.setattr(numbering, "_random_suffix", lambda: "ZZZZZZ")
    billing.create_shipment_invoice(db_session, _shipment_payload())

    with pytest.raises(BillingException):
        billing.create_shipment_invoice(db_session, _shipment_payload(shipment_id="SHP-2"))


def test_create_bulk_invoice(db_session, billing):
    invoice = billing.create_bulk_invoice(
        db_session,
        BulkInvoiceCreate(customer_id="cust-1", shipment_ids=["S1", "S2", "S3"]),
    )

    assert invoice.invoice_type == InvoiceType.bulk
    assert invoice.service_type == "BULK_SHIPMENT"
    assert invoice.subtotal == Decimal("75.00")
    assert invoice.discount_amount == Decimal("0.00")
    assert invoice.tax_amount == Decimal("6.38")
    assert invoice.total_amount == Decimal("81.38")
    charge_lines = [
        line for line in invoice.lines if line.line_type == InvoiceLineType.charge
    ]
    assert [line.shipment_id for line in charge_lines] == ["S1", "S2", "S3"]
    assert invoice.metadata_ == {"shipmentIds": ["S1", "S2", "S3"]}


def test_create_bulk_invoice_volume_discount_by_shipment_count(db_session, billing):
    shipment_ids = [f"S{i}" for i in range(20)]

    invoice = billing.create_bulk_invoice(
        db_session, BulkInvoiceCreate(customer_id="cust-1", shipment_ids=shipment_ids)
    )

    assert invoice.subtotal == Decimal("500.00")
    assert invoice.discount_amount == Decimal("25.00")
    assert invoice.tax_amount == Decimal("40.38")
    assert invoice.total_amount == Decimal("515.38")


def test_create_bulk_invoice_rejects_empty_and_duplicates(db_session, billing):
    with pytest.raises(BillingInvariantViolation):
        billing.create_bulk_invoice(
            db_session, BulkInvoiceCreate(customer_id="cust-1", shipment_ids=[])
        )
    with pytest.raises(BillingInvariantViolation) as excinfo:
        billing.create_bulk_invoice(
            db_session,
            BulkInvoiceCreate(customer_id="cust-1", shipment_ids=["S1", "S2", "S1"]),
        )
    assert excinfo.value.details == {"duplicates": ["S1"]}
    assert db_session.query(Invoice).count() == 0


def test_create_subscription_invoice_advances_billing_date(
    db_session, billing, notifications
):
    subscription = _subscription(db_session)

    invoice = billing.create_subscription_invoice(db_session, subscription.id)

    assert invoice.status == InvoiceStatus.sent
    assert invoice.invoice_type == InvoiceType.subscription
    assert invoice.subtotal == Decimal("200.00")
    assert invoice.discount_amount == Decimal("20.00")
    assert invoice.tax_amount == Decimal("15.30")
    assert invoice.total_amount == Decimal("195.30")
    assert invoice.subscription_id == subscription.id
    db_session.refresh(subscription)
    assert as_utc(subscription.next_billing_date) == NOW - timedelta(days=1) + timedelta(days=31)
    assert as_utc(subscription.last_billed_at) == NOW
    assert notifications.kinds() == ["invoice"]


def test_create_subscription_invoice_requires_active_subscription(db_session, billing):
    subscription = _subscription(db_session)
    subscription.status = SubscriptionStatus.paused
    db_session.commit()

    with pytest.raises(BillingInvariantViolation):
        billing.create_subscription_invoice(db_session, subscription.id)


def test_create_subscription_invoice_unknown_subscription(db_session, billing):
    with pytest.raises(BillingNotFound):
        billing.create_subscription_invoice(
            db_session, "6f1c2b1e-7a0e-4c59-9d3b-8a9f0d3c1e21"
        )


# Lifecycle


def test_finalize_issues_and_delivers(db_session, billing, make_invoice, notifications, scheduler):
    invoice = make_invoice(status=InvoiceStatus.draft)

    finalized = billing.finalize_invoice(db_session, invoice.invoice_number)

    assert finalized.status == InvoiceStatus.sent
    assert as_utc(finalized.sent_at) == NOW
    assert as_utc(finalized.last_sent_at) == NOW
    assert notifications.sent == [("invoice", invoice.invoice_number, "billing@acme.test")]
    assert scheduler.scheduled == []
    assert audit_actions.STATUS_CHANGE in _actions(db_session, invoice)


def test_finalize_schedules_automatic_payment_when_enabled(
    db_session, billing, make_invoice, make_profile, scheduler
):
    make_profile(auto_payment_enabled=True, default_payment_method_id="pm-1")
    invoice = make_invoice(status=InvoiceStatus.draft)

    billing.finalize_invoice(db_session, invoice.invoice_number)

    assert scheduler.scheduled == [
        (invoice.invoice_number, settings.auto_payment_delay_seconds)
    ]


def test_finalize_survives_scheduler_and_notification_failures(
    db_session, billing, make_invoice, make_profile, scheduler, notifications
):
    make_profile(auto_payment_enabled=True)
    scheduler.error = RuntimeError("broker down")
    notifications.fail = True
    invoice = make_invoice(status=InvoiceStatus.draft)

    finalized = billing.finalize_invoice(db_session, invoice.invoice_number)

    assert finalized.status == InvoiceStatus.sent


def test_finalize_requires_draft(db_session, billing, make_invoice):
    invoice = make_invoice(status=InvoiceStatus.sent)

    with pytest.raises(InvalidStateTransition):
        billing.finalize_invoice(db_session, invoice.invoice_number)


def test_finalize_unknown_invoice(db_session, billing):
    with pytest.raises(BillingNotFound):
        billing.finalize_invoice(db_session, "INV-20260310-NOPE00")


def test_send_invoice_issues_draft_and_notifies_each_recipient(
    db_session, billing, make_invoice, notifications
):
    invoice = make_invoice(status=InvoiceStatus.draft)

    sent = billing.send_invoice(
        db_session,
        invoice.invoice_number,
        InvoiceSendRequest(
            recipients=["a@acme.test", " ", "b@acme.test"], notify_internal_team=True
        ),
        Actor.user("clerk-7"),
    )

    assert sent.status == InvoiceStatus.sent
    assert as_utc(sent.last_sent_at) == NOW
    assert notifications.kinds() == ["invoice", "invoice", "internal"]
    assert [item[2] for item in notifications.sent[:2]] == ["a@acme.test", "b@acme.test"]
    entries = billing_service.billing_audit.list_for_invoice(db_session, invoice.id)
    assert {entry.action for entry in entries} >= {
        audit_actions.STATUS_CHANGE,
        audit_actions.INVOICE_SENT,
    }
    assert all(entry.actor == "clerk-7" for entry in entries if entry.action != "INVOICE_CREATED")


def test_send_invoice_resend_keeps_sent_at(db_session, billing, make_invoice, notifications):
    invoice = make_invoice(status=InvoiceStatus.overdue)

    sent = billing.send_invoice(db_session, invoice.invoice_number, InvoiceSendRequest())

    assert sent.status == InvoiceStatus.overdue
    assert notifications.sent == [("invoice", invoice.invoice_number, "billing@acme.test")]


def test_send_invoice_skips_failed_deliveries(db_session, billing, make_invoice, notifications):
    notifications.fail = True
    invoice = make_invoice(status=InvoiceStatus.sent)

    sent = billing.send_invoice(
        db_session,
        invoice.invoice_number,
        InvoiceSendRequest(recipients=["a@acme.test", "b@acme.test"]),
    )

    assert len(notifications.sent) == 2
    assert sent.status == InvoiceStatus.sent


def test_send_cancelled_invoice_rejected(db_session, billing, make_invoice):
    invoice = make_invoice(status=InvoiceStatus.cancelled)

    with pytest.raises(BillingInvariantViolation):
        billing.send_invoice(db_session, invoice.invoice_number, InvoiceSendRequest())


def test_cancel_invoice(db_session, billing, make_invoice):
    invoice = make_invoice(status=InvoiceStatus.sent)

    cancelled = billing.cancel_invoice(db_session, invoice.invoice_number, "Customer request")

    assert cancelled.status == InvoiceStatus.cancelled
    entries = billing_service.billing_audit.list_for_invoice(db_session, invoice.id)
    assert "Customer request" in entries[-1].description


def test_cancel_paid_invoice_rejected_and_status_kept(db_session, billing, make_invoice):
    invoice = make_invoice(status=InvoiceStatus.paid)

    with pytest.raises(BillingInvariantViolation):
        billing.cancel_invoice(db_session, invoice.invoice_number)

    db_session.refresh(invoice)
    assert invoice.status == InvoiceStatus.paid


@pytest.mark.parametrize(
    "status",
    [InvoiceStatus.cancelled, InvoiceStatus.refunded, InvoiceStatus.partially_paid],
)
def test_cancel_rejected_outside_transition_table(db_session, billing, make_invoice, status):
    invoice = make_invoice(status=status)

    with pytest.raises(InvalidStateTransition):
        billing.cancel_invoice(db_session, invoice.invoice_number)


def test_concurrent_update_is_reported(db_session, billing, make_invoice):
    invoice = make_invoice(status=InvoiceStatus.sent)
    loaded_version = invoice.version_id
    db_session.execute(
        text("UPDATE invoices SET version_id = version_id + 1 WHERE invoice_number = :n"),
        {"n": invoice.invoice_number},
    )

    with pytest.raises(ConcurrentInvoiceUpdate) as excinfo:
        billing.cancel_invoice(db_session, invoice.invoice_number)

    assert excinfo.value.status_code == 409
    stored = db_session.execute(
        text("SELECT status, version_id FROM invoices WHERE invoice_number = :n"),
        {"n": invoice.invoice_number},
    ).one()
    assert tuple(stored) == ("sent", loaded_version)


def test_update_draft_invoice(db_session, billing, make_invoice):
    invoice = make_invoice(status=InvoiceStatus.draft)

    updated = billing.update_invoice(
        db_session,
        invoice.invoice_number,
        InvoiceUpdate(description="Revised", metadata={"po": "PO-9"}),
    )

    assert updated.description == "Revised"
    assert updated.metadata_ == {"po": "PO-9"}
    entries = billing_service.billing_audit.list_for_invoice(db_session, invoice.id)
    assert entries[-1].action == audit_actions.INVOICE_UPDATED
    assert entries[-1].description == "Invoice updated: description, metadata"


def test_update_non_draft_rejected(db_session, billing, make_invoice):
    invoice = make_invoice(status=InvoiceStatus.sent)

    with pytest.raises(BillingInvariantViolation):
        billing.update_invoice(
            db_session, invoice.invoice_number, InvoiceUpdate(description="Late edit")
        )
    with pytest.raises(BillingInvariantViolation) as excinfo:
        billing.update_invoice(db_session, invoice.invoice_number, InvoiceUpdate(currency="eur"))
    assert "currency" in excinfo.value.message


def test_noop_update_writes_nothing(db_session, billing, make_invoice):
    invoice = make_invoice(status=InvoiceStatus.sent)
    before = db_session.query(BillingAuditEntry).count()

    result = billing.update_invoice(
        db_session, invoice.invoice_number, InvoiceUpdate(customer_name="Acme Ltd")
    )

    assert result.customer_name == "Acme Ltd"
    assert db_session.query(BillingAuditEntry).count() == before


def test_get_invoice_is_read_only(db_session, billing, make_invoice):
    invoice = make_invoice(status=InvoiceStatus.sent)
    before = db_session.query(BillingAuditEntry).count()

    first = billing.get_invoice(db_session, invoice.invoice_number)
    second = billing.get_invoice(db_session, invoice.invoice_number)

    assert first.status == second.status == InvoiceStatus.sent
    assert db_session.query(BillingAuditEntry).count() == before


def test_list_invoices_filters(db_session, billing, make_invoice):
    sent = make_invoice(status=InvoiceStatus.sent)
    make_invoice(status=InvoiceStatus.paid)
    make_invoice(status=InvoiceStatus.sent, customer_id="cust-2")

    by_status = billing.list_invoices(db_session, InvoiceStatus.paid, None, None)
    by_customer = billing.list_customer_invoices(db_session, "cust-1")

    assert [item.status for item in by_status] == [InvoiceStatus.paid]
    assert len(by_customer) == 2
    assert sent.invoice_number in {item.invoice_number for item in by_customer}


# Sweeps


def test_is_invoice_overdue(db_session, billing, make_invoice):
    late = make_invoice(status=InvoiceStatus.sent, due_date=NOW - timedelta(days=1))
    on_time = make_invoice(status=InvoiceStatus.sent)

    assert billing.is_invoice_overdue(db_session, late.invoice_number)
    assert not billing.is_invoice_overdue(db_session, on_time.invoice_number)


def test_mark_overdue_invoices(db_session, billing, make_invoice):
    late_sent = make_invoice(status=InvoiceStatus.sent, due_date=NOW - timedelta(days=1))
    late_partial = make_invoice(
        status=InvoiceStatus.partially_paid, due_date=NOW - timedelta(days=3)
    )
    late_paid = make_invoice(status=InvoiceStatus.paid, due_date=NOW - timedelta(days=3))
    on_time = make_invoice(status=InvoiceStatus.sent, due_date=NOW + timedelta(days=3))

    assert billing.mark_overdue_invoices(db_session) == 2

    for invoice, expected in (
        (late_sent, InvoiceStatus.overdue),
        (late_partial, InvoiceStatus.overdue),
        (late_paid, InvoiceStatus.paid),
        (on_time, InvoiceStatus.sent),
    ):
        db_session.refresh(invoice)
        assert invoice.status == expected


class _FlakyTax(FakeTax):
    def calculate(self, billing_address, amount, service_type, context=None):
        if not self.calls:
            self.calls.append(None)
            raise RuntimeError("tax service hiccup")
        return super().calculate(billing_address, amount, service_type, context)


def test_run_subscription_billing(db_session, billing):
    first = _subscription(db_session, next_billing_date=NOW - timedelta(days=2))
    second = _subscription(db_session, customer_id="cust-2")
    paused = _subscription(db_session, customer_id="cust-3")
    paused.status = SubscriptionStatus.paused
    db_session.commit()
    _subscription(db_session, customer_id="cust-4", next_billing_date=NOW + timedelta(days=5))
    billing.tax_calculator = _FlakyTax()

    created = billing.run_subscription_billing(db_session)

    assert len(created) == 1
    invoices = db_session.query(Invoice).all()
    assert [invoice.subscription_id for invoice in invoices] == [second.id]
    db_session.refresh(first)
    assert as_utc(first.next_billing_date) == NOW - timedelta(days=2)
