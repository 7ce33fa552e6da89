from __future__ import annotations

from decimal import Decimal

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.billing import router as billing_router
from app.api.deps import get_billing_service
from app.db import get_db
from app.errors import register_error_handlers
from app.models.billing import InvoiceStatus
from app.observability import ObservabilityMiddleware
from tests.mocks import failed

SHIPMENT = {
    "customer_id": "cust-1",
    "customer_email": "ops@acme.test",
    "shipment_id": "SHP-1",
    "service_type": "STANDARD",
    "weight": "2",
}


def _build_app(db_session, billing) -> FastAPI:
    app = FastAPI()
    app.add_middleware(ObservabilityMiddleware)
    register_error_handlers(app)
    app.include_router(billing_router, prefix="/api/v1")

    def _override_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_billing_service] = lambda: billing
    return app


@pytest.fixture()
def client(db_session, billing):
    return TestClient(_build_app(db_session, billing), raise_server_exceptions=False)


def test_create_and_fetch_shipment_invoice(client):
    resp = client.post("/api/v1/billing/invoices/shipment", json=SHIPMENT)
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "DRAFT"
    assert body["invoice_type"] == "SHIPMENT"
    assert body["total_amount"] == "48.83"
    assert body["metadata"]["pricingTier"] == "BASIC"
    assert [line["line_type"] for line in body["lines"]] == ["CHARGE", "TAX"]

    fetched = client.get(f"/api/v1/billing/invoices/{body['invoice_number']}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == body["id"]


def test_unknown_invoice_returns_not_found(client):
    resp = client.get(
        "/api/v1/billing/invoices/INV-20260310-NOPE00", headers={"X-Request-ID": "req-42"}
    )
    assert resp.status_code == 404
    body = resp.json()
    assert body["code"] == "not_found"
    assert body["details"] == {"invoice_number": "INV-20260310-NOPE00"}
    assert body["request_id"] == "req-42"
    assert resp.headers["X-Request-ID"] == "req-42"


def test_finalize_twice_returns_conflict(client, make_invoice):
    invoice = make_invoice(status=InvoiceStatus.draft)
    url = f"/api/v1/billing/invoices/{invoice.invoice_number}/finalize"

    first = client.post(url, headers={"X-Actor-Id": "clerk-7"})
    second = client.post(url)

    assert first.status_code == 200
    assert first.json()["status"] == "SENT"
    assert first.json()["updated_by"] == "clerk-7"
    assert second.status_code == 409
    assert second.json()["code"] == "invalid_state_transition"
    assert second.json()["details"] == {"from": "SENT", "to": "SENT"}


def test_cancel_paid_invoice_returns_bad_request(client, make_invoice):
    invoice = make_invoice(status=InvoiceStatus.paid)

    resp = client.post(
        f"/api/v1/billing/invoices/{invoice.invoice_number}/cancel",
        json={"reason": "duplicate"},
    )

    assert resp.status_code == 400
    assert resp.json()["code"] == "billing_invariant_violation"


def test_gateway_failure_returns_bad_gateway(client, make_invoice, gateway):
    invoice = make_invoice(total="100.00")
    gateway.queue(failed("Card declined"))

    resp = client.post(
        f"/api/v1/billing/invoices/{invoice.invoice_number}/payments/process",
        json={"amount": "100.00", "payment_method_id": "pm-card"},
    )

    assert resp.status_code == 502
    assert resp.json()["code"] == "billing_collaborator_failure"


def test_manual_payment_and_refund(client, make_invoice):
    invoice = make_invoice(total="50.00")

    paid = client.post(
        f"/api/v1/billing/invoices/{invoice.invoice_number}/payments/manual",
        json={"amount": "50.00", "notes": "cheque 1042"},
        headers={"X-Actor-Id": "clerk-7"},
    )
    assert paid.status_code == 201
    payment = paid.json()
    assert payment["status"] == "COMPLETED"
    assert payment["created_by"] == "clerk-7"

    refund = client.post(
        f"/api/v1/billing/payments/{payment['payment_id']}/refund",
        json={"refund_amount": "20.00", "reason": "late delivery"},
    )
    assert refund.status_code == 201
    assert refund.json()["refund_amount"] == "20.00"
    assert refund.json()["fully_refunded"] is False

    listed = client.get(f"/api/v1/billing/invoices/{invoice.invoice_number}/payments")
    assert sorted(item["amount"] for item in listed.json()) == ["-20.00", "50.00"]

    audit = client.get(f"/api/v1/billing/invoices/{invoice.invoice_number}/audit")
    assert "REFUND_PROCESSED" in [entry["action"] for entry in audit.json()]


def test_list_invoices_by_status(client, make_invoice):
    make_invoice(status=InvoiceStatus.paid)
    make_invoice(status=InvoiceStatus.sent)

    resp = client.get("/api/v1/billing/invoices", params={"status": "paid"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["count"] == 1
    assert body["items"][0]["status"] == "PAID"


def test_list_invoices_rejects_unknown_status(client):
    resp = client.get("/api/v1/billing/invoices", params={"status": "settled"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid status"


def test_customer_invoices_envelope(client, make_invoice):
    make_invoice()
    make_invoice()
    make_invoice(customer_id="cust-2")

    resp = client.get("/api/v1/billing/invoices/customer/cust-1", params={"limit": 1})

    assert resp.json()["count"] == 1
    assert resp.json()["limit"] == 1


def test_overdue_endpoint(client, make_invoice):
    invoice = make_invoice()
    resp = client.get(f"/api/v1/billing/invoices/{invoice.invoice_number}/overdue")
    assert resp.json() == {"invoice_number": invoice.invoice_number, "overdue": False}


def test_pricing_and_tax_endpoints(client):
    pricing = client.post(
        "/api/v1/billing/pricing/calculate",
        json={"customer_id": "cust-1", "service_type": "SAME_DAY", "weight": "1"},
    )
    assert pricing.status_code == 200
    assert pricing.json()["base_amount"] == "65.00"
    assert pricing.json()["service_fees"] == "15.00"
    assert pricing.json()["total_amount"] == "80.00"

    discount = client.post(
        "/api/v1/billing/pricing/volume-discount",
        json={"customer_id": "cust-1", "base_amount": "100.00", "shipment_count": 120},
    )
    assert discount.status_code == 200
    assert Decimal(discount.json()["discount_amount"]) == Decimal("15.00")
    assert Decimal(discount.json()["final_amount"]) == Decimal("85.00")
    assert discount.json()["discount_type"] == "VOLUME_DISCOUNT"

    tier = client.get("/api/v1/billing/pricing/customer/cust-1/tier")
    assert tier.json()["name"] == "BASIC"

    tax = client.post("/api/v1/billing/taxes/calculate", json={"amount": "45.00"})
    assert Decimal(tax.json()["total_tax"]) == Decimal("3.83")


def test_profile_and_subscription_endpoints(client):
    profile = client.put(
        "/api/v1/billing/customers/cust-9/profile",
        json={"payment_terms": "net_15", "pricing_tier": "premium"},
    )
    assert profile.status_code == 200
    assert profile.json()["payment_terms"] == "NET_15"
    assert profile.json()["pricing_tier"] == "PREMIUM"

    created = client.post(
        "/api/v1/billing/subscriptions",
        json={
            "customer_id": "cust-9",
            "service_plan": "Pro",
            "monthly_amount": "99.00",
            "next_billing_date": "2026-03-01T00:00:00Z",
        },
    )
    assert created.status_code == 201
    subscription_id = created.json()["id"]
    assert created.json()["status"] == "ACTIVE"

    invoice = client.post(
        "/api/v1/billing/invoices/subscription", json={"subscription_id": subscription_id}
    )
    assert invoice.status_code == 201
    assert invoice.json()["status"] == "SENT"


def test_validation_error_shape(client):
    resp = client.post("/api/v1/billing/invoices/shipment", json={"customer_id": "cust-1"})
    assert resp.status_code == 422
    body = resp.json()
    assert body["code"] == "validation_error"
    assert isinstance(body["details"], list)
