"""External collaborators of the billing orchestrator.

Each collaborator is a ``Protocol``; the defaults below talk HTTP via
``httpx`` or fall back to local behaviour when no endpoint is configured.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Protocol

import httpx
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import (
    CustomerBillingProfile,
    Invoice,
    InvoiceLine,
    Payment,
    PaymentStatus,
)
from app.services.billing import pricing
from app.services.common import percent_of, round_money

logger = logging.getLogger(__name__)

GATEWAY_KIND_INVOICE_PAYMENT = "INVOICE_PAYMENT"
GATEWAY_KIND_AUTOMATIC_PAYMENT = "AUTOMATIC_PAYMENT"
GATEWAY_KIND_REFUND = "REFUND"


@dataclass(frozen=True)
class GatewayRequest:
    amount: Decimal
    currency: str
    customer_id: str
    reference: str
    kind: str
    payment_method_id: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class GatewayResult:
    status: PaymentStatus
    transaction_id: str | None = None
    payment_id: str | None = None
    failure_reason: str | None = None
    response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TaxResult:
    total_tax: Decimal
    rate: Decimal
    jurisdiction: str
    breakdown: dict[str, Decimal] = field(default_factory=dict)
    exempt: bool = False
    basis: str = "DESTINATION_BASED"


class PaymentGateway(Protocol):
    def process_payment(self, request: GatewayRequest) -> GatewayResult: ...


class TaxCalculator(Protocol):
    def calculate(
        self,
        billing_address: dict | None,
        amount: Decimal,
        service_type: str | None,
        context: dict | None = None,
    ) -> TaxResult: ...


class NotificationSender(Protocol):
    def send_invoice(
        self,
        invoice: Invoice,
        recipient: str,
        custom_message: str | None = None,
        attach_pdf: bool = False,
    ) -> None: ...

    def send_payment_confirmation(self, invoice: Invoice, payment: Payment) -> None: ...

    def send_payment_failure(self, invoice: Invoice, payment: Payment) -> None: ...

    def send_refund_confirmation(self, invoice: Invoice, refund: Payment) -> None: ...

    def notify_internal(self, subject: str, message: str) -> None: ...


class PricingTierLookup(Protocol):
    def tier_for(self, db: Session, customer_id: str) -> pricing.PricingTier: ...


class ShipmentChargeLookup(Protocol):
    def charge_for(self, db: Session, shipment_id: str, customer_id: str) -> Decimal: ...

    def monthly_shipment_count(
        self, db: Session, customer_id: str, now: datetime
    ) -> int: ...


class PaymentScheduler(Protocol):
    def schedule_automatic_payment(self, invoice_number: str, delay_seconds: int) -> None: ...


def _money(value) -> str:
    return str(round_money(value))


class HttpPaymentGateway:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        client: httpx.Client | None = None,
    ):
        self.base_url = (base_url or settings.payment_gateway_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.payment_gateway_api_key
        self.timeout = timeout or settings.http_timeout_seconds
        self._client = client

    def _post(self, path: str, payload: dict) -> httpx.Response:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if self._client is not None:
            return self._client.post(
                f"{self.base_url}{path}", json=payload, headers=headers, timeout=self.timeout
            )
        return httpx.post(
            f"{self.base_url}{path}", json=payload, headers=headers, timeout=self.timeout
        )

    def process_payment(self, request: GatewayRequest) -> GatewayResult:
        payload = {
            "amount": _money(request.amount),
            "currency": request.currency,
            "customerId": request.customer_id,
            "reference": request.reference,
            "paymentType": request.kind,
            "paymentMethodId": request.payment_method_id,
            "description": request.description,
        }
        resp = self._post("/api/v1/payments", payload)
        resp.raise_for_status()
        data = resp.json()
        raw_status = str(data.get("status") or "").upper()
        try:
            status = PaymentStatus(raw_status)
        except ValueError:
            logger.warning(
                "Gateway returned unknown status %r for %s", raw_status, request.reference
            )
            status = PaymentStatus.failed
        return GatewayResult(
            status=status,
            transaction_id=data.get("transactionId"),
            payment_id=data.get("paymentId"),
            failure_reason=data.get("failureReason"),
            response=data,
        )


class FlatRateTaxCalculator:
    """Applies one configured rate to every taxable amount."""

    def __init__(self, rate: Decimal | None = None, jurisdiction: str | None = None):
        self.rate = Decimal(str(rate if rate is not None else settings.default_tax_rate))
        self.jurisdiction = jurisdiction or settings.default_tax_jurisdiction

    def calculate(self, billing_address, amount, service_type, context=None) -> TaxResult:
        tax = percent_of(amount, self.rate)
        state_tax = percent_of(amount, self.rate * Decimal("0.6"))
        return TaxResult(
            total_tax=tax,
            rate=self.rate,
            jurisdiction=self.jurisdiction,
            breakdown={"stateTax": state_tax, "localTax": round_money(tax - state_tax)},
        )


class HttpTaxCalculator:
    def __init__(self, base_url: str, timeout: float | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.http_timeout_seconds

    def calculate(self, billing_address, amount, service_type, context=None) -> TaxResult:
        resp = httpx.post(
            f"{self.base_url}/api/v1/taxes/calculate",
            json={
                "billingAddress": billing_address,
                "amount": _money(amount),
                "serviceType": service_type,
                "context": context or {},
            },
            timeout=self.timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        breakdown = {
            key: round_money(value) for key, value in (data.get("breakdown") or {}).items()
        }
        return TaxResult(
            total_tax=round_money(data.get("totalTax", "0")),
            rate=Decimal(str(data.get("rate", "0"))),
            jurisdiction=data.get("jurisdiction") or "",
            breakdown=breakdown,
            exempt=bool(data.get("exempt", False)),
            basis=data.get("basis") or "DESTINATION_BASED",
        )


def _invoice_payload(invoice: Invoice) -> dict:
    return {
        "invoiceNumber": invoice.invoice_number,
        "customerId": invoice.customer_id,
        "customerName": invoice.customer_name,
        "totalAmount": _money(invoice.total_amount),
        "currency": invoice.currency,
        "dueDate": invoice.due_date.isoformat() if invoice.due_date else None,
        "status": invoice.status.value,
    }


def _payment_payload(payment: Payment) -> dict:
    return {
        "paymentId": payment.payment_id,
        "amount": _money(payment.amount),
        "currency": payment.currency,
        "status": payment.status.value,
        "failureReason": payment.failure_reason,
    }


class LoggingNotificationSender:
    """Notification sender used when no notification service is configured."""

    def send_invoice(self, invoice, recipient, custom_message=None, attach_pdf=False):
        logger.info("Invoice %s delivered to %s", invoice.invoice_number, recipient)

    def send_payment_confirmation(self, invoice, payment):
        logger.info(
            "Payment confirmation for %s on invoice %s",
            payment.payment_id,
            invoice.invoice_number,
        )

    def send_payment_failure(self, invoice, payment):
        logger.info(
            "Payment failure notice for invoice %s: %s",
            invoice.invoice_number,
            payment.failure_reason,
        )

    def send_refund_confirmation(self, invoice, refund):
        logger.info(
            "Refund confirmation for %s on invoice %s",
            refund.payment_id,
            invoice.invoice_number,
        )

    def notify_internal(self, subject, message):
        logger.info("Internal notice to %s: %s", settings.billing_team_email, subject)


class HttpNotificationSender:
    def __init__(self, base_url: str, timeout: float | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.http_timeout_seconds

    def _send(self, template: str, recipient: str | None, data: dict) -> None:
        resp = httpx.post(
            f"{self.base_url}/api/v1/notifications",
            json={"template": template, "recipient": recipient, "data": data},
            timeout=self.timeout,
        )
        resp.raise_for_status()

    def send_invoice(self, invoice, recipient, custom_message=None, attach_pdf=False):
        data = _invoice_payload(invoice)
        data["customMessage"] = custom_message
        data["attachPdf"] = attach_pdf
        self._send("invoice", recipient, data)

    def send_payment_confirmation(self, invoice, payment):
        data = _invoice_payload(invoice)
        data["payment"] = _payment_payload(payment)
        self._send("payment_confirmation", invoice.customer_email, data)

    def send_payment_failure(self, invoice, payment):
        data = _invoice_payload(invoice)
        data["payment"] = _payment_payload(payment)
        self._send("payment_failure", invoice.customer_email, data)

    def send_refund_confirmation(self, invoice, refund):
        data = _invoice_payload(invoice)
        data["refund"] = _payment_payload(refund)
        self._send("refund_confirmation", invoice.customer_email, data)

    def notify_internal(self, subject, message):
        self._send(
            "internal_notice",
            settings.billing_team_email,
            {"subject": subject, "message": message},
        )


class ProfilePricingTierLookup:
    """Resolves the tier named on the customer's billing profile."""

    def tier_for(self, db: Session, customer_id: str) -> pricing.PricingTier:
        profile = db.get(CustomerBillingProfile, customer_id)
        return pricing.tier_by_name(profile.pricing_tier if profile else None)


class LedgerShipmentChargeLookup:
    """Flat per-shipment charge; volume counted from invoiced shipment lines."""

    def __init__(self, flat_charge: Decimal | None = None, window_days: int = 30):
        self.flat_charge = round_money(
            flat_charge if flat_charge is not None else settings.default_shipment_charge
        )
        self.window = timedelta(days=window_days)

    def charge_for(self, db: Session, shipment_id: str, customer_id: str) -> Decimal:
        return self.flat_charge

    def monthly_shipment_count(self, db: Session, customer_id: str, now: datetime) -> int:
        count = (
            db.query(func.count(func.distinct(InvoiceLine.shipment_id)))
            .join(Invoice, Invoice.id == InvoiceLine.invoice_id)
            .filter(Invoice.customer_id == customer_id)
            .filter(InvoiceLine.shipment_id.isnot(None))
            .filter(InvoiceLine.created_at >= now - self.window)
            .scalar()
        )
        return int(count or 0)


class CeleryPaymentScheduler:
    def schedule_automatic_payment(self, invoice_number: str, delay_seconds: int) -> None:
        from app.tasks.billing import attempt_automatic_payment

        attempt_automatic_payment.apply_async(
            args=[invoice_number], countdown=delay_seconds
        )


def default_tax_calculator() -> TaxCalculator:
    if settings.tax_service_url:
        return HttpTaxCalculator(settings.tax_service_url)
    return FlatRateTaxCalculator()


def default_notification_sender() -> NotificationSender:
    if settings.notification_service_url:
        return HttpNotificationSender(settings.notification_service_url)
    return LoggingNotificationSender()
