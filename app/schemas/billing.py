from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.billing import (
    AuditActorType,
    InvoiceLineType,
    InvoiceStatus,
    InvoiceType,
    PaymentMethodType,
    PaymentStatus,
    SubscriptionStatus,
)


class BillingAddress(BaseModel):
    street: str | None = Field(default=None, max_length=255)
    city: str | None = Field(default=None, max_length=120)
    state: str | None = Field(default=None, max_length=120)
    postal_code: str | None = Field(default=None, max_length=20)
    country: str | None = Field(default=None, max_length=80)


class ShipmentInvoiceCreate(BaseModel):
    customer_id: str = Field(min_length=1, max_length=80)
    customer_name: str | None = Field(default=None, max_length=200)
    customer_email: str | None = Field(default=None, max_length=255)
    shipment_id: str = Field(min_length=1, max_length=80)
    service_type: str = Field(min_length=1, max_length=40)
    weight: Decimal = Field(gt=0)
    dimensions: str | None = Field(default=None, max_length=80)
    origin: str | None = Field(default=None, max_length=255)
    destination: str | None = Field(default=None, max_length=255)
    declared_value: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    billing_address: BillingAddress | None = None
    description: str | None = None


class BulkInvoiceCreate(BaseModel):
    customer_id: str = Field(min_length=1, max_length=80)
    customer_name: str | None = Field(default=None, max_length=200)
    customer_email: str | None = Field(default=None, max_length=255)
    shipment_ids: list[str]
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    billing_address: BillingAddress | None = None
    description: str | None = None


class SubscriptionInvoiceCreate(BaseModel):
    subscription_id: UUID


class InvoiceUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_name: str | None = Field(default=None, max_length=200)
    customer_email: str | None = Field(default=None, max_length=255)
    billing_address: BillingAddress | None = None
    description: str | None = None
    due_date: datetime | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    metadata_: dict | None = Field(default=None, alias="metadata")


class InvoiceSendRequest(BaseModel):
    recipients: list[str] = Field(default_factory=list)
    custom_message: str | None = None
    attach_pdf: bool = True
    notify_internal_team: bool = False


class InvoiceCancelRequest(BaseModel):
    reason: str | None = None


class ManualPaymentCreate(BaseModel):
    amount: Decimal = Field(gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    notes: str | None = None


class PaymentProcessRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    payment_method_id: str = Field(min_length=1, max_length=120)
    payment_method_type: PaymentMethodType = PaymentMethodType.card


class RefundCreate(BaseModel):
    refund_amount: Decimal = Field(gt=0)
    reason: str | None = None


class InvoiceLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    position: int
    line_type: InvoiceLineType
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    shipment_id: str | None = None


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    invoice_number: str
    customer_id: str
    customer_name: str | None = None
    customer_email: str | None = None
    billing_address: dict | None = None
    description: str | None = None
    invoice_type: InvoiceType
    service_type: str | None = None
    shipment_id: str | None = None
    subscription_id: UUID | None = None
    status: InvoiceStatus
    currency: str
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    due_date: datetime | None = None
    sent_at: datetime | None = None
    last_sent_at: datetime | None = None
    paid_at: datetime | None = None
    metadata_: dict | None = Field(default=None, serialization_alias="metadata")
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime
    lines: list[InvoiceLineRead] = Field(default_factory=list)


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payment_id: str
    invoice_id: UUID
    customer_id: str
    amount: Decimal
    currency: str
    payment_method_id: str | None = None
    payment_method_type: PaymentMethodType
    status: PaymentStatus
    gateway_transaction_id: str | None = None
    failure_reason: str | None = None
    original_payment_id: str | None = None
    notes: str | None = None
    processed_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime


class RefundRead(BaseModel):
    refund_id: str
    original_payment_id: str
    invoice_number: str
    refund_amount: Decimal
    currency: str
    status: PaymentStatus
    transaction_id: str | None = None
    processed_at: datetime | None = None
    reason: str | None = None
    processed_by: str
    fully_refunded: bool


class AuditEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_id: UUID
    action: str
    description: str
    actor: str
    actor_type: AuditActorType
    created_at: datetime


class OverdueStatusRead(BaseModel):
    invoice_number: str
    overdue: bool


class PricingCalculationRequest(BaseModel):
    customer_id: str = Field(min_length=1, max_length=80)
    service_type: str = Field(min_length=1, max_length=40)
    weight: Decimal = Field(gt=0)
    dimensions: str | None = None
    origin: str | None = None
    destination: str | None = None
    declared_value: Decimal | None = Field(default=None, ge=0)


class PricingCalculationRead(BaseModel):
    base_amount: Decimal
    service_fees: Decimal
    total_amount: Decimal
    service_type: str
    pricing_tier: str
    breakdown: dict[str, Decimal]


class VolumeDiscountRequest(BaseModel):
    customer_id: str = Field(min_length=1, max_length=80)
    base_amount: Decimal = Field(ge=0)
    shipment_count: int | None = Field(default=None, ge=0)


class VolumeDiscountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    discount_percentage: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    discount_type: str


class PricingTierRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    discount_percentage: Decimal
    description: str
    min_monthly_shipments: int
    custom_pricing: bool


class TaxCalculationRequest(BaseModel):
    billing_address: BillingAddress | None = None
    amount: Decimal = Field(ge=0)
    service_type: str | None = None


class TaxCalculationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_tax: Decimal
    rate: Decimal
    jurisdiction: str
    breakdown: dict[str, Decimal]
    exempt: bool
    basis: str


class CustomerBillingProfileUpsert(BaseModel):
    email: str | None = Field(default=None, max_length=255)
    payment_terms: str = Field(default="NET_30", max_length=20)
    pricing_tier: str = Field(default="STANDARD", max_length=40)
    auto_payment_enabled: bool = False
    default_payment_method_id: str | None = Field(default=None, max_length=120)


class CustomerBillingProfileRead(CustomerBillingProfileUpsert):
    model_config = ConfigDict(from_attributes=True)

    customer_id: str
    created_at: datetime
    updated_at: datetime


class SubscriptionCreate(BaseModel):
    customer_id: str = Field(min_length=1, max_length=80)
    customer_name: str | None = Field(default=None, max_length=200)
    customer_email: str | None = Field(default=None, max_length=255)
    billing_address: BillingAddress | None = None
    service_plan: str = Field(min_length=1, max_length=80)
    monthly_amount: Decimal = Field(gt=0)
    discount_percentage: Decimal | None = Field(default=None, ge=0, le=100)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    next_billing_date: datetime


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: str
    customer_name: str | None = None
    customer_email: str | None = None
    billing_address: dict | None = None
    service_plan: str
    monthly_amount: Decimal
    discount_percentage: Decimal | None = None
    currency: str
    status: SubscriptionStatus
    next_billing_date: datetime
    last_billed_at: datetime | None = None
    created_at: datetime
