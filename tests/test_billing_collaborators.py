from datetime import timedelta
from decimal import Decimal

from app.models.billing import InvoiceStatus, PaymentStatus
from app.services.billing.collaborators import (
    FlatRateTaxCalculator,
    GatewayRequest,
    HttpPaymentGateway,
    LedgerShipmentChargeLookup,
    LoggingNotificationSender,
    ProfilePricingTierLookup,
    default_notification_sender,
    default_tax_calculator,
)
from tests.conftest import NOW
from tests.mocks import FakeHTTPXClient, FakeHTTPXResponse


def _request(**overrides) -> GatewayRequest:
    data = {
        "amount": Decimal("-12.5"),
        "currency": "USD",
        "customer_id": "cust-1",
        "reference": "REFUND-TXN-1",
        "kind": "REFUND",
        "payment_method_id": "pm-1",
    }
    data.update(overrides)
    return GatewayRequest(**data)


def test_http_gateway_posts_payment_and_parses_result():
    client = FakeHTTPXClient(
        FakeHTTPXResponse(
            {"status": "completed", "transactionId": "TXN-9", "paymentId": "gw-9"}
        )
    )
    gateway = HttpPaymentGateway(
        base_url="http://gateway.test/", api_key="secret", client=client
    )

    result = gateway.process_payment(_request())

    method, url, kwargs = client.requests[0]
    assert (method, url) == ("POST", "http://gateway.test/api/v1/payments")
    assert kwargs["json"]["amount"] == "-12.50"
    assert kwargs["json"]["paymentType"] == "REFUND"
    assert kwargs["headers"]["Authorization"] == "Bearer secret"
    assert result.status == PaymentStatus.completed
    assert result.transaction_id == "TXN-9"
    assert result.payment_id == "gw-9"


def test_http_gateway_maps_unknown_status_to_failed():
    client = FakeHTTPXClient(FakeHTTPXResponse({"status": "AUTHORIZED"}))
    gateway = HttpPaymentGateway(base_url="http://gateway.test", client=client)

    assert gateway.process_payment(_request()).status == PaymentStatus.failed


def test_flat_rate_tax_calculator():
    result = FlatRateTaxCalculator(rate=Decimal("8.5"), jurisdiction="Testland").calculate(
        None, Decimal("45.00"), "STANDARD"
    )

    assert result.total_tax == Decimal("3.83")
    assert result.breakdown["stateTax"] + result.breakdown["localTax"] == result.total_tax
    assert result.jurisdiction == "Testland"


def test_defaults_without_service_urls():
    assert isinstance(default_tax_calculator(), FlatRateTaxCalculator)
    assert isinstance(default_notification_sender(), LoggingNotificationSender)


def test_profile_pricing_tier_lookup(db_session, make_profile):
    make_profile(pricing_tier="ENTERPRISE")
    lookup = ProfilePricingTierLookup()

    assert lookup.tier_for(db_session, "cust-1").name == "ENTERPRISE"
    assert lookup.tier_for(db_session, "unknown").name == "STANDARD"


def test_ledger_shipment_counts_distinct_recent_shipments(db_session, make_invoice):
    first = make_invoice(status=InvoiceStatus.sent)
    second = make_invoice(status=InvoiceStatus.sent)
    make_invoice(status=InvoiceStatus.sent, customer_id="cust-2")
    first.lines[0].shipment_id = "SHP-1"
    first.lines[0].created_at = NOW - timedelta(days=3)
    second.lines[0].shipment_id = "SHP-2"
    second.lines[0].created_at = NOW - timedelta(days=45)
    db_session.commit()
    lookup = LedgerShipmentChargeLookup(flat_charge=Decimal("19.99"))

    assert lookup.monthly_shipment_count(db_session, "cust-1", NOW) == 1
    assert lookup.charge_for(db_session, "SHP-3", "cust-1") == Decimal("19.99")
