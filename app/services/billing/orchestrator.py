"""Billing use cases.

``BillingService`` loads invoices and payments, applies pricing and the
status state machine, writes audit entries and drives the external
collaborators. Every public operation runs in the caller's session and
commits once its writes are complete. All invoice status changes go
through :meth:`BillingService.update_invoice_status`.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.metrics import INVOICES_CREATED, PAYMENT_ATTEMPTS, REFUNDS, STATUS_TRANSITIONS
from app.models.billing import (
    BillingSubscription,
    Invoice,
    InvoiceLine,
    InvoiceLineType,
    InvoiceStatus,
    InvoiceType,
    Payment,
    PaymentMethodType,
    PaymentStatus,
    SubscriptionStatus,
)
from app.schemas.billing import (
    BulkInvoiceCreate,
    InvoiceSendRequest,
    InvoiceUpdate,
    ManualPaymentCreate,
    PaymentProcessRequest,
    PricingCalculationRequest,
    RefundCreate,
    RefundRead,
    ShipmentInvoiceCreate,
)
from app.services.billing import audit as audit_actions
from app.services.billing import pricing
from app.services.billing.actors import SYSTEM_ACTOR, Actor
from app.services.billing.audit import BillingAudit
from app.services.billing.collaborators import (
    GATEWAY_KIND_AUTOMATIC_PAYMENT,
    GATEWAY_KIND_INVOICE_PAYMENT,
    GATEWAY_KIND_REFUND,
    CeleryPaymentScheduler,
    GatewayRequest,
    GatewayResult,
    HttpPaymentGateway,
    LedgerShipmentChargeLookup,
    NotificationSender,
    PaymentGateway,
    PaymentScheduler,
    PricingTierLookup,
    ProfilePricingTierLookup,
    ShipmentChargeLookup,
    TaxCalculator,
    TaxResult,
    default_notification_sender,
    default_tax_calculator,
)
from app.services.billing.customers import CustomerCredits, CustomerProfiles, Subscriptions
from app.services.billing.errors import (
    BillingException,
    BillingInvariantViolation,
    ConcurrentInvoiceUpdate,
)
from app.services.billing.invoices import Invoices
from app.services.billing.numbering import generate_invoice_number
from app.services.billing.payments import Payments
from app.services.billing.transitions import (
    DEFAULT_PAYMENT_TERMS,
    add_months,
    calculate_due_date,
    can_transition,
    ensure_transition,
    is_overdue,
)
from app.services.common import ZERO, as_utc, percent_of, round_money, sum_money, utcnow

logger = logging.getLogger(__name__)

BULK_SERVICE_TYPE = "BULK_SHIPMENT"
SUBSCRIPTION_SERVICE_TYPE = "SUBSCRIPTION"

_UPDATABLE_FIELDS = (
    "customer_name",
    "customer_email",
    "billing_address",
    "description",
    "due_date",
    "currency",
    "metadata_",
)


def _new_payment_id() -> str:
    return str(uuid.uuid4())


def _address_dict(address) -> dict | None:
    if address is None:
        return None
    if isinstance(address, dict):
        return address
    return address.model_dump()


def _resolve_currency(value: str | None) -> str:
    return (value or settings.default_currency).upper()


def _reject_closed(invoice: Invoice, action: str) -> None:
    if invoice.status in (InvoiceStatus.paid, InvoiceStatus.cancelled):
        raise BillingInvariantViolation(
            f"Cannot {action} invoice {invoice.invoice_number} in status {invoice.status.value}",
            {"invoice_number": invoice.invoice_number, "status": invoice.status.value},
        )


def _payment_amount(value: Decimal) -> Decimal:
    amount = round_money(value)
    if amount <= ZERO:
        raise BillingInvariantViolation(
            "Payment amount must be at least 0.01", {"amount": str(value)}
        )
    return amount


def _ensure_payment_target(invoice: Invoice, target: InvoiceStatus) -> None:
    """Check the status a payment would move the invoice to.

    DRAFT invoices are issued first, so they are checked as SENT.
    """
    current = invoice.status
    if current == InvoiceStatus.draft:
        current = InvoiceStatus.sent
    if current != target:
        ensure_transition(current, target)


class BillingService:
    def __init__(
        self,
        payment_gateway: PaymentGateway | None = None,
        tax_calculator: TaxCalculator | None = None,
        notifications: NotificationSender | None = None,
        pricing_tiers: PricingTierLookup | None = None,
        shipment_charges: ShipmentChargeLookup | None = None,
        scheduler: PaymentScheduler | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.payment_gateway = payment_gateway or HttpPaymentGateway()
        self.tax_calculator = tax_calculator or default_tax_calculator()
        self.notifications = notifications or default_notification_sender()
        self.pricing_tiers = pricing_tiers or ProfilePricingTierLookup()
        self.shipment_charges = shipment_charges or LedgerShipmentChargeLookup()
        self.scheduler = scheduler or CeleryPaymentScheduler()
        self.clock = clock

    # Internal helpers

    @staticmethod
    def _commit(db: Session, invoice: Invoice | None = None) -> None:
        number = invoice.invoice_number if invoice is not None else None
        try:
            db.commit()
        except StaleDataError as exc:
            db.rollback()
            logger.warning("Concurrent update detected on invoice %s", number)
            raise ConcurrentInvoiceUpdate(number) from exc

    def _notify(self, action: str, func: Callable, *args, **kwargs) -> bool:
        try:
            func(*args, **kwargs)
        except Exception:
            logger.exception("Billing notification %s failed", action)
            return False
        return True

    def _issue(self, db: Session, invoice: Invoice, actor: Actor, at: datetime) -> None:
        self.update_invoice_status(
            db, invoice, InvoiceStatus.sent, actor, reason="Invoice issued", at=at
        )

    def _move_to(
        self,
        db: Session,
        invoice: Invoice,
        target: InvoiceStatus,
        actor: Actor,
        at: datetime,
        reason: str | None = None,
    ) -> bool:
        if invoice.status == target:
            return False
        self.update_invoice_status(db, invoice, target, actor, reason=reason, at=at)
        return True

    def _tax_for(
        self,
        billing_address: dict | None,
        amount: Decimal,
        service_type: str | None,
        context: dict | None = None,
    ) -> TaxResult:
        return self.tax_calculator.calculate(billing_address, amount, service_type, context)

    def _new_invoice(
        self,
        db: Session,
        *,
        customer_id: str,
        customer_name: str | None,
        customer_email: str | None,
        billing_address: dict | None,
        description: str | None,
        invoice_type: InvoiceType,
        service_type: str | None,
        currency: str,
        subtotal: Decimal,
        discount: Decimal,
        tax: Decimal,
        payment_terms: str,
        actor: Actor,
        now: datetime,
        shipment_id: str | None = None,
        subscription_id=None,
        metadata: dict | None = None,
    ) -> Invoice:
        total = round_money(subtotal - discount + tax)
        return Invoice(
            invoice_number=generate_invoice_number(db, now),
            customer_id=customer_id,
            customer_name=customer_name,
            customer_email=customer_email,
            billing_address=billing_address,
            description=description,
            invoice_type=invoice_type,
            service_type=service_type,
            shipment_id=shipment_id,
            subscription_id=subscription_id,
            currency=currency,
            subtotal=round_money(subtotal),
            discount_amount=round_money(discount),
            tax_amount=round_money(tax),
            total_amount=total,
            due_date=calculate_due_date(now, payment_terms),
            metadata_=metadata,
            created_by=actor.label,
            updated_by=actor.label,
            created_at=now,
        )

    @staticmethod
    def _adjustment_lines(
        discount: Decimal, tax: TaxResult, now: datetime, discount_label: str
    ) -> list[InvoiceLine]:
        lines = []
        if discount > ZERO:
            lines.append(
                InvoiceLine(
                    line_type=InvoiceLineType.discount,
                    description=discount_label,
                    unit_price=-discount,
                    amount=-discount,
                    created_at=now,
                )
            )
        tax_amount = round_money(tax.total_tax)
        if tax_amount > ZERO:
            lines.append(
                InvoiceLine(
                    line_type=InvoiceLineType.tax,
                    description=f"Tax ({tax.jurisdiction} {tax.rate}%)",
                    unit_price=tax_amount,
                    amount=tax_amount,
                    created_at=now,
                )
            )
        return lines

    def _store_new_invoice(
        self,
        db: Session,
        invoice: Invoice,
        lines: list[InvoiceLine],
        actor: Actor,
        now: datetime,
    ) -> Invoice:
        Invoices.add_draft(db, invoice, lines)
        BillingAudit.record(
            db,
            invoice.id,
            audit_actions.INVOICE_CREATED,
            f"{invoice.invoice_type.value.title()} invoice created for "
            f"{invoice.total_amount} {invoice.currency}",
            actor,
            at=now,
        )
        INVOICES_CREATED.labels(invoice_type=invoice.invoice_type.value).inc()
        return invoice

    def _payment_from_result(
        self,
        invoice: Invoice,
        amount: Decimal,
        method_type: PaymentMethodType,
        payment_method_id: str | None,
        result: GatewayResult,
        actor: Actor,
        now: datetime,
        original_payment_id: str | None = None,
        notes: str | None = None,
        currency: str | None = None,
    ) -> Payment:
        return Payment(
            payment_id=result.payment_id or _new_payment_id(),
            invoice_id=invoice.id,
            customer_id=invoice.customer_id,
            amount=round_money(amount),
            currency=currency or invoice.currency,
            payment_method_id=payment_method_id,
            payment_method_type=method_type,
            status=result.status,
            gateway_transaction_id=result.transaction_id,
            gateway_response=result.response or None,
            failure_reason=result.failure_reason,
            original_payment_id=original_payment_id,
            notes=notes,
            processed_at=now,
            created_by=actor.label,
            created_at=now,
        )

    def _failed_payment(
        self,
        invoice: Invoice,
        amount: Decimal,
        method_type: PaymentMethodType,
        payment_method_id: str | None,
        error: Exception,
        actor: Actor,
        now: datetime,
        original_payment_id: str | None = None,
        notes: str | None = None,
        currency: str | None = None,
    ) -> Payment:
        return Payment(
            payment_id=_new_payment_id(),
            invoice_id=invoice.id,
            customer_id=invoice.customer_id,
            amount=round_money(amount),
            currency=currency or invoice.currency,
            payment_method_id=payment_method_id,
            payment_method_type=method_type,
            status=PaymentStatus.failed,
            failure_reason=str(error) or error.__class__.__name__,
            original_payment_id=original_payment_id,
            notes=notes,
            processed_at=now,
            created_by=actor.label,
            created_at=now,
        )

    # Status entry point

    def update_invoice_status(
        self,
        db: Session,
        invoice: Invoice,
        new_status: InvoiceStatus,
        actor: Actor,
        reason: str | None = None,
        at: datetime | None = None,
    ) -> Invoice:
        """Move ``invoice`` to ``new_status`` and audit the change.

        The transition is validated before anything is mutated; an illegal
        pair raises ``InvalidStateTransition`` and leaves the invoice as is.
        The caller commits.
        """
        current = invoice.status
        ensure_transition(current, new_status)
        at = at or self.clock()
        invoice.status = new_status
        invoice.updated_by = actor.label
        if new_status == InvoiceStatus.sent and invoice.sent_at is None:
            invoice.sent_at = at
        if new_status == InvoiceStatus.paid:
            invoice.paid_at = at
        description = f"Status changed from {current.value} to {new_status.value}"
        if reason:
            description = f"{description}: {reason}"
        BillingAudit.record(
            db, invoice.id, audit_actions.STATUS_CHANGE, description, actor, at=at
        )
        STATUS_TRANSITIONS.labels(
            from_status=current.value, to_status=new_status.value
        ).inc()
        logger.info(
            "Invoice %s status %s -> %s by %s",
            invoice.invoice_number,
            current.value,
            new_status.value,
            actor.label,
        )
        return invoice

    # Pricing and tax

    def get_customer_pricing_tier(self, db: Session, customer_id: str) -> pricing.PricingTier:
        return self.pricing_tiers.tier_for(db, customer_id)

    def calculate_shipping_charges(
        self, db: Session, payload: PricingCalculationRequest
    ) -> pricing.ShippingCharge:
        tier = self.pricing_tiers.tier_for(db, payload.customer_id)
        return pricing.calculate_shipping_charge(
            payload.service_type,
            payload.weight,
            tier,
            declared_value=payload.declared_value,
            dimensions=payload.dimensions,
            origin=payload.origin,
            destination=payload.destination,
        )

    def apply_volume_discount(
        self,
        db: Session,
        customer_id: str,
        base_amount: Decimal,
        shipment_count: int | None = None,
    ) -> pricing.VolumeDiscount:
        """Volume discount on ``base_amount``.

        Without an explicit ``shipment_count`` the customer's trailing
        monthly shipment count is used.
        """
        if shipment_count is None:
            shipment_count = self.shipment_charges.monthly_shipment_count(
                db, customer_id, self.clock()
            )
        return pricing.apply_volume_discount(base_amount, shipment_count)

    def calculate_tax(
        self, billing_address: dict | None, amount: Decimal, service_type: str | None
    ) -> TaxResult:
        return self._tax_for(billing_address, round_money(amount), service_type)

    # Invoice creation

    def create_shipment_invoice(
        self, db: Session, payload: ShipmentInvoiceCreate, actor: Actor = SYSTEM_ACTOR
    ) -> Invoice:
        now = self.clock()
        address = _address_dict(payload.billing_address)
        service_type = payload.service_type.upper()
        charge = self.calculate_shipping_charges(
            db,
            PricingCalculationRequest(
                customer_id=payload.customer_id,
                service_type=service_type,
                weight=payload.weight,
                dimensions=payload.dimensions,
                origin=payload.origin,
                destination=payload.destination,
                declared_value=payload.declared_value,
            ),
        )
        subtotal = charge.total_amount
        monthly = self.shipment_charges.monthly_shipment_count(db, payload.customer_id, now)
        discount = pricing.volume_discount(subtotal, monthly)
        discounted = round_money(subtotal - discount)
        tax = self._tax_for(
            address,
            discounted,
            service_type,
            {"invoiceType": InvoiceType.shipment.value, "shipmentId": payload.shipment_id},
        )

        invoice = self._new_invoice(
            db,
            customer_id=payload.customer_id,
            customer_name=payload.customer_name,
            customer_email=payload.customer_email,
            billing_address=address,
            description=payload.description
            or f"Shipping charges for shipment {payload.shipment_id}",
            invoice_type=InvoiceType.shipment,
            service_type=service_type,
            currency=_resolve_currency(payload.currency),
            subtotal=subtotal,
            discount=discount,
            tax=tax.total_tax,
            payment_terms=CustomerProfiles.payment_terms(db, payload.customer_id),
            actor=actor,
            now=now,
            shipment_id=payload.shipment_id,
            metadata={
                "pricingTier": charge.tier.name if charge.tier else None,
                "monthlyShipments": monthly,
                "breakdown": {k: str(v) for k, v in charge.breakdown().items()},
            },
        )
        lines = [
            InvoiceLine(
                line_type=InvoiceLineType.charge,
                description=f"{service_type} shipping for shipment {payload.shipment_id}",
                quantity=Decimal("1"),
                unit_price=charge.base_amount,
                amount=charge.base_amount,
                shipment_id=payload.shipment_id,
                created_at=now,
            )
        ]
        for fee in charge.fees:
            lines.append(
                InvoiceLine(
                    line_type=InvoiceLineType.fee,
                    description=fee.description,
                    unit_price=fee.amount,
                    amount=fee.amount,
                    created_at=now,
                )
            )
        lines.extend(
            self._adjustment_lines(
                discount, tax, now, f"Volume discount ({monthly} shipments this month)"
            )
        )
        self._store_new_invoice(db, invoice, lines, actor, now)
        self._commit(db, invoice)
        db.refresh(invoice)
        logger.info(
            "Created shipment invoice %s for customer %s total %s %s",
            invoice.invoice_number,
            invoice.customer_id,
            invoice.total_amount,
            invoice.currency,
        )
        return invoice

    def create_bulk_invoice(
        self, db: Session, payload: BulkInvoiceCreate, actor: Actor = SYSTEM_ACTOR
    ) -> Invoice:
        shipment_ids = [str(item).strip() for item in payload.shipment_ids]
        if not shipment_ids or any(not item for item in shipment_ids):
            raise BillingInvariantViolation("Bulk invoice requires at least one shipment id")
        duplicates = sorted({item for item in shipment_ids if shipment_ids.count(item) > 1})
        if duplicates:
            raise BillingInvariantViolation(
                "Duplicate shipment ids in bulk invoice", {"duplicates": duplicates}
            )

        now = self.clock()
        address = _address_dict(payload.billing_address)
        charges = [
            (
                shipment_id,
                round_money(
                    self.shipment_charges.charge_for(db, shipment_id, payload.customer_id)
                ),
            )
            for shipment_id in shipment_ids
        ]
        subtotal = sum_money(amount for _, amount in charges)
        discount = pricing.volume_discount(subtotal, len(shipment_ids))
        discounted = round_money(subtotal - discount)
        tax = self._tax_for(
            address,
            discounted,
            BULK_SERVICE_TYPE,
            {"invoiceType": InvoiceType.bulk.value, "shipmentCount": len(shipment_ids)},
        )

        invoice = self._new_invoice(
            db,
            customer_id=payload.customer_id,
            customer_name=payload.customer_name,
            customer_email=payload.customer_email,
            billing_address=address,
            description=payload.description
            or f"Bulk shipping charges for {len(shipment_ids)} shipments",
            invoice_type=InvoiceType.bulk,
            service_type=BULK_SERVICE_TYPE,
            currency=_resolve_currency(payload.currency),
            subtotal=subtotal,
            discount=discount,
            tax=tax.total_tax,
            payment_terms=CustomerProfiles.payment_terms(db, payload.customer_id),
            actor=actor,
            now=now,
            metadata={"shipmentIds": shipment_ids},
        )
        lines = [
            InvoiceLine(
                line_type=InvoiceLineType.charge,
                description=f"Shipment {shipment_id}",
                unit_price=amount,
                amount=amount,
                shipment_id=shipment_id,
                created_at=now,
            )
            for shipment_id, amount in charges
        ]
        lines.extend(
            self._adjustment_lines(
                discount, tax, now, f"Volume discount ({len(shipment_ids)} shipments)"
            )
        )
        self._store_new_invoice(db, invoice, lines, actor, now)
        self._commit(db, invoice)
        db.refresh(invoice)
        logger.info(
            "Created bulk invoice %s for %d shipments", invoice.invoice_number, len(charges)
        )
        return invoice

    def create_subscription_invoice(
        self, db: Session, subscription_id, actor: Actor = SYSTEM_ACTOR
    ) -> Invoice:
        subscription: BillingSubscription = Subscriptions.get(db, subscription_id)
        if subscription.status != SubscriptionStatus.active:
            raise BillingInvariantViolation(
                f"Subscription {subscription.id} is {subscription.status.value}",
                {"subscription_id": str(subscription.id)},
            )

        now = self.clock()
        monthly = round_money(subscription.monthly_amount)
        discount = percent_of(monthly, subscription.discount_percentage)
        discounted = round_money(monthly - discount)
        tax = self._tax_for(
            subscription.billing_address,
            discounted,
            SUBSCRIPTION_SERVICE_TYPE,
            {"invoiceType": InvoiceType.subscription.value},
        )
        invoice = self._new_invoice(
            db,
            customer_id=subscription.customer_id,
            customer_name=subscription.customer_name,
            customer_email=subscription.customer_email,
            billing_address=subscription.billing_address,
            description=f"Subscription charges for {subscription.service_plan}",
            invoice_type=InvoiceType.subscription,
            service_type=SUBSCRIPTION_SERVICE_TYPE,
            currency=subscription.currency,
            subtotal=monthly,
            discount=discount,
            tax=tax.total_tax,
            payment_terms=DEFAULT_PAYMENT_TERMS,
            actor=actor,
            now=now,
            subscription_id=subscription.id,
        )
        lines = [
            InvoiceLine(
                line_type=InvoiceLineType.charge,
                description=f"{subscription.service_plan} monthly plan",
                unit_price=monthly,
                amount=monthly,
                created_at=now,
            )
        ]
        lines.extend(
            self._adjustment_lines(
                discount, tax, now, f"Subscription discount ({subscription.discount_percentage}%)"
            )
        )
        self._store_new_invoice(db, invoice, lines, actor, now)
        subscription.next_billing_date = add_months(as_utc(subscription.next_billing_date), 1)
        subscription.last_billed_at = now
        self._commit(db, invoice)
        logger.info(
            "Created subscription invoice %s for subscription %s",
            invoice.invoice_number,
            subscription.id,
        )
        return self.finalize_invoice(db, invoice.invoice_number, actor)

    # Lifecycle

    def finalize_invoice(
        self, db: Session, invoice_number: str, actor: Actor = SYSTEM_ACTOR
    ) -> Invoice:
        invoice = Invoices.get_by_number(db, invoice_number)
        ensure_transition(invoice.status, InvoiceStatus.sent)
        now = self.clock()
        self._issue(db, invoice, actor, now)
        invoice.last_sent_at = now
        self._commit(db, invoice)

        if invoice.customer_email:
            self._notify(
                "invoice_delivery",
                self.notifications.send_invoice,
                invoice,
                invoice.customer_email,
            )
        profile = CustomerProfiles.get(db, invoice.customer_id)
        if profile is not None and profile.auto_payment_enabled:
            try:
                self.scheduler.schedule_automatic_payment(
                    invoice.invoice_number, settings.auto_payment_delay_seconds
                )
            except Exception:
                logger.exception(
                    "Could not schedule automatic payment for invoice %s",
                    invoice.invoice_number,
                )
        logger.info("Finalized invoice %s", invoice.invoice_number)
        return invoice

    def send_invoice(
        self,
        db: Session,
        invoice_number: str,
        payload: InvoiceSendRequest,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Invoice:
        invoice = Invoices.get_by_number(db, invoice_number)
        if invoice.status == InvoiceStatus.cancelled:
            raise BillingInvariantViolation(
                f"Cannot send cancelled invoice {invoice_number}",
                {"invoice_number": invoice_number},
            )
        recipients = [item for item in payload.recipients if item and item.strip()]
        if not recipients and invoice.customer_email:
            recipients = [invoice.customer_email]

        now = self.clock()
        if invoice.status == InvoiceStatus.draft:
            self._issue(db, invoice, actor, now)
        invoice.last_sent_at = now
        invoice.updated_by = actor.label
        BillingAudit.record(
            db,
            invoice.id,
            audit_actions.INVOICE_SENT,
            f"Invoice sent to {len(recipients)} recipient(s)",
            actor,
            at=now,
        )
        self._commit(db, invoice)

        delivered = 0
        for recipient in recipients:
            if self._notify(
                "invoice_delivery",
                self.notifications.send_invoice,
                invoice,
                recipient,
                custom_message=payload.custom_message,
                attach_pdf=payload.attach_pdf,
            ):
                delivered += 1
        if payload.notify_internal_team:
            self._notify(
                "internal_notice",
                self.notifications.notify_internal,
                f"Invoice {invoice.invoice_number} sent",
                f"Invoice {invoice.invoice_number} sent to {delivered} of "
                f"{len(recipients)} recipient(s) by {actor.label}",
            )
        logger.info(
            "Sent invoice %s to %d of %d recipients",
            invoice.invoice_number,
            delivered,
            len(recipients),
        )
        return invoice

    def cancel_invoice(
        self,
        db: Session,
        invoice_number: str,
        reason: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Invoice:
        invoice = Invoices.get_by_number(db, invoice_number)
        if invoice.status == InvoiceStatus.paid:
            raise BillingInvariantViolation(
                f"Cannot cancel paid invoice {invoice_number}",
                {"invoice_number": invoice_number},
            )
        self.update_invoice_status(
            db,
            invoice,
            InvoiceStatus.cancelled,
            actor,
            reason=reason or "Invoice cancelled",
            at=self.clock(),
        )
        self._commit(db, invoice)
        logger.info("Cancelled invoice %s", invoice_number)
        return invoice

    def update_invoice(
        self,
        db: Session,
        invoice_number: str,
        payload: InvoiceUpdate,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Invoice:
        invoice = Invoices.get_by_number(db, invoice_number)
        data = payload.model_dump(exclude_unset=True)
        if "billing_address" in data:
            data["billing_address"] = _address_dict(payload.billing_address)
        if data.get("currency"):
            data["currency"] = data["currency"].upper()

        changes = {
            key: value
            for key, value in data.items()
            if key in _UPDATABLE_FIELDS and getattr(invoice, key) != value
        }
        if "due_date" in changes and invoice.due_date is not None and changes["due_date"]:
            if as_utc(invoice.due_date) == as_utc(changes["due_date"]):
                changes.pop("due_date")
        if not changes:
            return invoice

        if invoice.status != InvoiceStatus.draft:
            if "currency" in changes:
                raise BillingInvariantViolation(
                    f"Cannot change currency of invoice {invoice_number} in status "
                    f"{invoice.status.value}",
                    {"invoice_number": invoice_number, "field": "currency"},
                )
            raise BillingInvariantViolation(
                f"Cannot update invoice {invoice_number} in status {invoice.status.value}",
                {"invoice_number": invoice_number, "status": invoice.status.value},
            )

        for key, value in changes.items():
            setattr(invoice, key, value)
        invoice.updated_by = actor.label
        changed = ", ".join(sorted(key.rstrip("_") for key in changes))
        BillingAudit.record(
            db,
            invoice.id,
            audit_actions.INVOICE_UPDATED,
            f"Invoice updated: {changed}",
            actor,
            at=self.clock(),
        )
        self._commit(db, invoice)
        return invoice

    # Payments

    def record_manual_payment(
        self,
        db: Session,
        invoice_number: str,
        payload: ManualPaymentCreate,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Payment:
        invoice = Invoices.get_by_number(db, invoice_number)
        _reject_closed(invoice, "record payment on")
        currency = (payload.currency or invoice.currency).upper()
        if currency != invoice.currency:
            raise BillingInvariantViolation(
                f"Payment currency {currency} does not match invoice currency "
                f"{invoice.currency}",
                {"payment_currency": currency, "invoice_currency": invoice.currency},
            )
        amount = _payment_amount(payload.amount)
        paid_after = round_money(Payments.total_paid(db, invoice.id) + amount)
        target = (
            InvoiceStatus.paid
            if paid_after >= round_money(invoice.total_amount)
            else InvoiceStatus.partially_paid
        )
        _ensure_payment_target(invoice, target)

        now = self.clock()
        if invoice.status == InvoiceStatus.draft:
            self._issue(db, invoice, actor, now)
        payment = Payments.record(
            db,
            Payment(
                payment_id=_new_payment_id(),
                invoice_id=invoice.id,
                customer_id=invoice.customer_id,
                amount=amount,
                currency=currency,
                payment_method_type=PaymentMethodType.manual,
                status=PaymentStatus.completed,
                notes=payload.notes,
                processed_at=now,
                created_by=actor.label,
                created_at=now,
            ),
        )
        self._move_to(db, invoice, target, actor, now, reason="Manual payment received")
        CustomerCredits.record_payment(db, invoice.customer_id, amount, now)
        BillingAudit.record(
            db,
            invoice.id,
            audit_actions.MANUAL_PAYMENT,
            f"Manual payment of {amount} {currency} recorded",
            actor,
            at=now,
        )
        self._commit(db, invoice)
        PAYMENT_ATTEMPTS.labels(
            method=PaymentMethodType.manual.value, status=PaymentStatus.completed.value
        ).inc()

        if invoice.customer_email:
            self._notify(
                "payment_confirmation",
                self.notifications.send_payment_confirmation,
                invoice,
                payment,
            )
        logger.info(
            "Manual payment %s of %s recorded on invoice %s",
            payment.payment_id,
            amount,
            invoice_number,
        )
        return payment

    def initiate_automatic_payment(
        self, db: Session, invoice_number: str, actor: Actor = SYSTEM_ACTOR
    ) -> Payment:
        invoice = Invoices.get_by_number(db, invoice_number)
        _reject_closed(invoice, "collect automatic payment for")
        profile = CustomerProfiles.get(db, invoice.customer_id)
        payment_method_id = profile.default_payment_method_id if profile else None
        if not payment_method_id:
            raise BillingException(
                f"No default payment method for customer {invoice.customer_id}",
                {"customer_id": invoice.customer_id},
            )
        _ensure_payment_target(invoice, InvoiceStatus.paid)

        amount = round_money(invoice.total_amount)
        request = GatewayRequest(
            amount=amount,
            currency=invoice.currency,
            customer_id=invoice.customer_id,
            reference=invoice.invoice_number,
            kind=GATEWAY_KIND_AUTOMATIC_PAYMENT,
            payment_method_id=payment_method_id,
            description=f"Automatic payment for invoice {invoice.invoice_number}",
        )
        try:
            result = self.payment_gateway.process_payment(request)
        except Exception as exc:
            now = self.clock()
            payment = Payments.record(
                db,
                self._failed_payment(
                    invoice,
                    amount,
                    PaymentMethodType.automatic,
                    payment_method_id,
                    exc,
                    actor,
                    now,
                ),
            )
            BillingAudit.record(
                db,
                invoice.id,
                audit_actions.PAYMENT_FAILED,
                f"Automatic payment failed: {payment.failure_reason}",
                actor,
                at=now,
            )
            self._commit(db, invoice)
            PAYMENT_ATTEMPTS.labels(
                method=PaymentMethodType.automatic.value, status=PaymentStatus.failed.value
            ).inc()
            logger.error(
                "Automatic payment for invoice %s raised: %s", invoice_number, exc
            )
            self._notify(
                "payment_failure", self.notifications.send_payment_failure, invoice, payment
            )
            raise BillingException(
                f"Automatic payment failed for invoice {invoice_number}: {exc}",
                {"invoice_number": invoice_number, "payment_id": payment.payment_id},
            ) from exc

        now = self.clock()
        payment = Payments.record(
            db,
            self._payment_from_result(
                invoice,
                amount,
                PaymentMethodType.automatic,
                payment_method_id,
                result,
                actor,
                now,
            ),
        )
        PAYMENT_ATTEMPTS.labels(
            method=PaymentMethodType.automatic.value, status=result.status.value
        ).inc()
        if result.status == PaymentStatus.completed:
            if invoice.status == InvoiceStatus.draft:
                self._issue(db, invoice, actor, now)
            self._move_to(
                db, invoice, InvoiceStatus.paid, actor, now, reason="Automatic payment"
            )
            CustomerCredits.record_payment(db, invoice.customer_id, amount, now)
            BillingAudit.record(
                db,
                invoice.id,
                audit_actions.AUTOMATIC_PAYMENT,
                f"Automatic payment of {amount} {invoice.currency} completed",
                actor,
                at=now,
            )
            self._commit(db, invoice)
            logger.info("Automatic payment completed for invoice %s", invoice_number)
            self._notify(
                "payment_confirmation",
                self.notifications.send_payment_confirmation,
                invoice,
                payment,
            )
            return payment

        if is_overdue(invoice.status, invoice.due_date, now) and can_transition(
            invoice.status, InvoiceStatus.overdue
        ):
            self.update_invoice_status(
                db,
                invoice,
                InvoiceStatus.overdue,
                actor,
                reason="Automatic payment not completed",
                at=now,
            )
        BillingAudit.record(
            db,
            invoice.id,
            audit_actions.AUTOMATIC_PAYMENT,
            f"Automatic payment {result.status.value}: "
            f"{result.failure_reason or 'no reason given'}",
            actor,
            at=now,
        )
        self._commit(db, invoice)
        logger.warning(
            "Automatic payment for invoice %s returned %s: %s",
            invoice_number,
            result.status.value,
            result.failure_reason,
        )
        self._notify(
            "payment_failure", self.notifications.send_payment_failure, invoice, payment
        )
        return payment

    def process_payment(
        self,
        db: Session,
        invoice_number: str,
        payload: PaymentProcessRequest,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Payment:
        invoice = Invoices.get_by_number(db, invoice_number)
        _reject_closed(invoice, "process payment for")
        amount = _payment_amount(payload.amount)
        paid_after = round_money(Payments.total_paid(db, invoice.id) + amount)
        target = (
            InvoiceStatus.paid
            if paid_after >= round_money(invoice.total_amount)
            else InvoiceStatus.partially_paid
        )
        _ensure_payment_target(invoice, target)
        method_type = payload.payment_method_type

        request = GatewayRequest(
            amount=amount,
            currency=invoice.currency,
            customer_id=invoice.customer_id,
            reference=invoice.invoice_number,
            kind=GATEWAY_KIND_INVOICE_PAYMENT,
            payment_method_id=payload.payment_method_id,
            description=f"Payment for invoice {invoice.invoice_number}",
        )
        try:
            result = self.payment_gateway.process_payment(request)
        except Exception as exc:
            now = self.clock()
            payment = Payments.record(
                db,
                self._failed_payment(
                    invoice, amount, method_type, payload.payment_method_id, exc, actor, now
                ),
            )
            BillingAudit.record(
                db,
                invoice.id,
                audit_actions.PAYMENT_FAILED,
                f"Payment failed: {payment.failure_reason}",
                actor,
                at=now,
            )
            self._commit(db, invoice)
            PAYMENT_ATTEMPTS.labels(
                method=method_type.value, status=PaymentStatus.failed.value
            ).inc()
            logger.error("Payment for invoice %s raised: %s", invoice_number, exc)
            self._notify(
                "payment_failure", self.notifications.send_payment_failure, invoice, payment
            )
            raise BillingException(
                f"Payment processing failed for invoice {invoice_number}: {exc}",
                {"invoice_number": invoice_number, "payment_id": payment.payment_id},
            ) from exc

        now = self.clock()
        payment = Payments.record(
            db,
            self._payment_from_result(
                invoice, amount, method_type, payload.payment_method_id, result, actor, now
            ),
        )
        PAYMENT_ATTEMPTS.labels(method=method_type.value, status=result.status.value).inc()

        if result.status == PaymentStatus.completed:
            if invoice.status == InvoiceStatus.draft:
                self._issue(db, invoice, actor, now)
            self._move_to(db, invoice, target, actor, now, reason="Payment received")
            CustomerCredits.record_payment(db, invoice.customer_id, amount, now)
            BillingAudit.record(
                db,
                invoice.id,
                audit_actions.PAYMENT_PROCESSED,
                f"Payment {payment.payment_id} of {amount} {invoice.currency} completed",
                actor,
                at=now,
            )
            self._commit(db, invoice)
            logger.info(
                "Payment %s processed for invoice %s", payment.payment_id, invoice_number
            )
            self._notify(
                "payment_confirmation",
                self.notifications.send_payment_confirmation,
                invoice,
                payment,
            )
            return payment

        if result.status == PaymentStatus.pending:
            self._commit(db, invoice)
            logger.info(
                "Payment %s pending for invoice %s", payment.payment_id, invoice_number
            )
            return payment

        BillingAudit.record(
            db,
            invoice.id,
            audit_actions.PAYMENT_FAILED,
            f"Payment {payment.payment_id} failed: {result.failure_reason or 'no reason given'}",
            actor,
            at=now,
        )
        self._commit(db, invoice)
        logger.warning(
            "Payment %s failed for invoice %s: %s",
            payment.payment_id,
            invoice_number,
            result.failure_reason,
        )
        self._notify(
            "payment_failure", self.notifications.send_payment_failure, invoice, payment
        )
        raise BillingException(
            f"Payment failed for invoice {invoice_number}: "
            f"{result.failure_reason or 'declined by gateway'}",
            {"invoice_number": invoice_number, "payment_id": payment.payment_id},
        )

    def process_refund(
        self,
        db: Session,
        payment_id: str,
        payload: RefundCreate,
        actor: Actor = SYSTEM_ACTOR,
    ) -> RefundRead:
        original = Payments.get(db, payment_id)
        if original.payment_method_type == PaymentMethodType.refund or original.amount < 0:
            raise BillingInvariantViolation(
                f"Payment {payment_id} is a refund and cannot be refunded",
                {"payment_id": payment_id},
            )
        if original.status != PaymentStatus.completed:
            raise BillingInvariantViolation(
                f"Cannot refund payment {payment_id} in status {original.status.value}",
                {"payment_id": payment_id, "status": original.status.value},
            )
        amount = round_money(payload.refund_amount)
        paid = round_money(original.amount)
        if amount <= ZERO:
            raise BillingInvariantViolation("Refund amount must be greater than 0")
        if amount > paid:
            raise BillingInvariantViolation(
                f"Refund amount {amount} exceeds payment amount {paid}",
                {"refund_amount": str(amount), "payment_amount": str(paid)},
            )
        already_refunded = Payments.total_refunded(db, original.payment_id)
        total_refunded = round_money(already_refunded + amount)
        if total_refunded > paid:
            raise BillingInvariantViolation(
                f"Total refunds {total_refunded} would exceed payment amount {paid}",
                {
                    "already_refunded": str(already_refunded),
                    "refund_amount": str(amount),
                    "payment_amount": str(paid),
                },
            )
        invoice = Invoices.get(db, original.invoice_id)
        target = (
            InvoiceStatus.refunded
            if total_refunded >= paid
            else InvoiceStatus.partially_refunded
        )
        if invoice.status != target:
            ensure_transition(invoice.status, target)

        reference = f"REFUND-{original.gateway_transaction_id or original.payment_id}"
        request = GatewayRequest(
            amount=-amount,
            currency=original.currency,
            customer_id=original.customer_id,
            reference=reference,
            kind=GATEWAY_KIND_REFUND,
            payment_method_id=original.payment_method_id,
            description=payload.reason,
        )
        try:
            result = self.payment_gateway.process_payment(request)
        except Exception as exc:
            now = self.clock()
            refund = Payments.record(
                db,
                self._failed_payment(
                    invoice,
                    -amount,
                    PaymentMethodType.refund,
                    original.payment_method_id,
                    exc,
                    actor,
                    now,
                    original_payment_id=original.payment_id,
                    notes=payload.reason,
                    currency=original.currency,
                ),
            )
            BillingAudit.record(
                db,
                invoice.id,
                audit_actions.REFUND_FAILED,
                f"Refund of {amount} on payment {original.payment_id} failed: "
                f"{refund.failure_reason}",
                actor,
                at=now,
            )
            self._commit(db, invoice)
            REFUNDS.labels(status=PaymentStatus.failed.value).inc()
            logger.error("Refund on payment %s raised: %s", payment_id, exc)
            raise BillingException(
                f"Refund processing failed for payment {payment_id}: {exc}",
                {"payment_id": payment_id, "refund_id": refund.payment_id},
            ) from exc

        now = self.clock()
        refund = Payments.record(
            db,
            self._payment_from_result(
                invoice,
                -amount,
                PaymentMethodType.refund,
                original.payment_method_id,
                result,
                actor,
                now,
                original_payment_id=original.payment_id,
                notes=payload.reason,
                currency=original.currency,
            ),
        )
        REFUNDS.labels(status=result.status.value).inc()

        if result.status == PaymentStatus.completed:
            self._move_to(db, invoice, target, actor, now, reason=payload.reason or "Refund")
            CustomerCredits.record_refund(db, invoice.customer_id, amount)
            BillingAudit.record(
                db,
                invoice.id,
                audit_actions.REFUND_PROCESSED,
                f"Refund of {amount} {original.currency} on payment {original.payment_id}"
                + (f": {payload.reason}" if payload.reason else ""),
                actor,
                at=now,
            )
            self._commit(db, invoice)
            logger.info(
                "Refund %s of %s processed for payment %s",
                refund.payment_id,
                amount,
                payment_id,
            )
            if invoice.customer_email:
                self._notify(
                    "refund_confirmation",
                    self.notifications.send_refund_confirmation,
                    invoice,
                    refund,
                )
        elif result.status == PaymentStatus.failed:
            BillingAudit.record(
                db,
                invoice.id,
                audit_actions.REFUND_FAILED,
                f"Refund of {amount} on payment {original.payment_id} failed: "
                f"{result.failure_reason or 'declined by gateway'}",
                actor,
                at=now,
            )
            self._commit(db, invoice)
            logger.warning(
                "Refund on payment %s failed: %s", payment_id, result.failure_reason
            )
            raise BillingException(
                f"Refund failed for payment {payment_id}: "
                f"{result.failure_reason or 'declined by gateway'}",
                {"payment_id": payment_id, "refund_id": refund.payment_id},
            )
        else:
            self._commit(db, invoice)
            logger.info("Refund %s pending for payment %s", refund.payment_id, payment_id)

        return RefundRead(
            refund_id=refund.payment_id,
            original_payment_id=original.payment_id,
            invoice_number=invoice.invoice_number,
            refund_amount=amount,
            currency=refund.currency,
            status=refund.status,
            transaction_id=refund.gateway_transaction_id,
            processed_at=refund.processed_at,
            reason=payload.reason,
            processed_by=actor.label,
            fully_refunded=(
                refund.status == PaymentStatus.completed and total_refunded >= paid
            ),
        )

    # Queries

    @staticmethod
    def get_invoice(db: Session, invoice_number: str) -> Invoice:
        return Invoices.get_by_number(db, invoice_number)

    @staticmethod
    def list_customer_invoices(
        db: Session, customer_id: str, limit: int = 50, offset: int = 0
    ) -> list[Invoice]:
        return Invoices.list_for_customer(db, customer_id, limit=limit, offset=offset)

    @staticmethod
    def list_invoices(
        db: Session,
        status: InvoiceStatus | None,
        created_from: datetime | None,
        created_to: datetime | None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Invoice]:
        return Invoices.list_by_status(db, status, created_from, created_to, limit, offset)

    @staticmethod
    def list_invoice_payments(db: Session, invoice_number: str) -> list[Payment]:
        invoice = Invoices.get_by_number(db, invoice_number)
        return Payments.list_for_invoice(db, invoice.id)

    @staticmethod
    def list_customer_payments(
        db: Session, customer_id: str, limit: int = 50, offset: int = 0
    ) -> list[Payment]:
        return Payments.list_for_customer(db, customer_id, limit, offset)

    @staticmethod
    def get_audit_trail(db: Session, invoice_number: str):
        invoice = Invoices.get_by_number(db, invoice_number)
        return BillingAudit.list_for_invoice(db, invoice.id)

    def is_invoice_overdue(
        self, db: Session, invoice_number: str, now: datetime | None = None
    ) -> bool:
        invoice = Invoices.get_by_number(db, invoice_number)
        return is_overdue(invoice.status, invoice.due_date, now or self.clock())

    # Sweeps

    def mark_overdue_invoices(self, db: Session, now: datetime | None = None) -> int:
        now = now or self.clock()
        marked = 0
        for invoice in Invoices.overdue_candidates(db, now):
            try:
                self.update_invoice_status(
                    db,
                    invoice,
                    InvoiceStatus.overdue,
                    SYSTEM_ACTOR,
                    reason="Payment overdue",
                    at=now,
                )
                self._commit(db, invoice)
            except ConcurrentInvoiceUpdate:
                logger.warning(
                    "Skipped overdue marking for %s after concurrent update",
                    invoice.invoice_number,
                )
                continue
            marked += 1
        logger.info("Marked %d invoices overdue", marked)
        return marked

    def run_subscription_billing(self, db: Session, now: datetime | None = None) -> list[str]:
        now = now or self.clock()
        subscription_ids = [item.id for item in Subscriptions.due_for_billing(db, now)]
        created: list[str] = []
        for subscription_id in subscription_ids:
            try:
                invoice = self.create_subscription_invoice(db, subscription_id, SYSTEM_ACTOR)
            except Exception:
                db.rollback()
                logger.exception("Subscription billing failed for %s", subscription_id)
                continue
            created.append(invoice.invoice_number)
        logger.info("Subscription billing created %d invoices", len(created))
        return created
