from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_actor, get_billing_service, get_db
from app.models.billing import InvoiceStatus
from app.schemas.billing import (
    AuditEntryRead,
    BulkInvoiceCreate,
    CustomerBillingProfileRead,
    CustomerBillingProfileUpsert,
    InvoiceCancelRequest,
    InvoiceRead,
    InvoiceSendRequest,
    InvoiceUpdate,
    ManualPaymentCreate,
    OverdueStatusRead,
    PaymentProcessRequest,
    PaymentRead,
    PricingCalculationRead,
    PricingCalculationRequest,
    PricingTierRead,
    RefundCreate,
    RefundRead,
    ShipmentInvoiceCreate,
    SubscriptionCreate,
    SubscriptionInvoiceCreate,
    SubscriptionRead,
    TaxCalculationRead,
    TaxCalculationRequest,
    VolumeDiscountRead,
    VolumeDiscountRequest,
)
from app.schemas.common import ListResponse
from app.services import billing as billing_service
from app.services.billing import Actor, BillingService
from app.services.common import validate_enum
from app.services.response import list_response

router = APIRouter(prefix="/billing")


# --- Invoices ---


@router.post(
    "/invoices/shipment",
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
    tags=["invoices"],
)
def create_shipment_invoice(
    payload: ShipmentInvoiceCreate,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
    actor: Actor = Depends(get_actor),
):
    return service.create_shipment_invoice(db, payload, actor)


@router.post(
    "/invoices/bulk",
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
    tags=["invoices"],
)
def create_bulk_invoice(
    payload: BulkInvoiceCreate,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
    actor: Actor = Depends(get_actor),
):
    return service.create_bulk_invoice(db, payload, actor)


@router.post(
    "/invoices/subscription",
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
    tags=["invoices"],
)
def create_subscription_invoice(
    payload: SubscriptionInvoiceCreate,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
    actor: Actor = Depends(get_actor),
):
    return service.create_subscription_invoice(db, payload.subscription_id, actor)


@router.get(
    "/invoices/customer/{customer_id}",
    response_model=ListResponse[InvoiceRead],
    tags=["invoices"],
)
def list_customer_invoices(
    customer_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
):
    items = service.list_customer_invoices(db, customer_id, limit, offset)
    return list_response(items, limit, offset)


@router.get("/invoices", response_model=ListResponse[InvoiceRead], tags=["invoices"])
def list_invoices(
    status: str | None = None,
    created_from: datetime | None = Query(default=None, alias="from"),
    created_to: datetime | None = Query(default=None, alias="to"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
):
    status_value = validate_enum(status, InvoiceStatus, "status")
    items = service.list_invoices(db, status_value, created_from, created_to, limit, offset)
    return list_response(items, limit, offset)


@router.get("/invoices/{invoice_number}", response_model=InvoiceRead, tags=["invoices"])
def get_invoice(
    invoice_number: str,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
):
    return service.get_invoice(db, invoice_number)


@router.patch("/invoices/{invoice_number}", response_model=InvoiceRead, tags=["invoices"])
def update_invoice(
    invoice_number: str,
    payload: InvoiceUpdate,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
    actor: Actor = Depends(get_actor),
):
    return service.update_invoice(db, invoice_number, payload, actor)


@router.post(
    "/invoices/{invoice_number}/finalize", response_model=InvoiceRead, tags=["invoices"]
)
def finalize_invoice(
    invoice_number: str,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
    actor: Actor = Depends(get_actor),
):
    return service.finalize_invoice(db, invoice_number, actor)


@router.post(
    "/invoices/{invoice_number}/send", response_model=InvoiceRead, tags=["invoices"]
)
def send_invoice(
    invoice_number: str,
    payload: InvoiceSendRequest,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
    actor: Actor = Depends(get_actor),
):
    return service.send_invoice(db, invoice_number, payload, actor)


@router.post(
    "/invoices/{invoice_number}/cancel", response_model=InvoiceRead, tags=["invoices"]
)
def cancel_invoice(
    invoice_number: str,
    payload: InvoiceCancelRequest,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
    actor: Actor = Depends(get_actor),
):
    return service.cancel_invoice(db, invoice_number, payload.reason, actor)


@router.get(
    "/invoices/{invoice_number}/overdue",
    response_model=OverdueStatusRead,
    tags=["invoices"],
)
def get_invoice_overdue(
    invoice_number: str,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
):
    return OverdueStatusRead(
        invoice_number=invoice_number,
        overdue=service.is_invoice_overdue(db, invoice_number),
    )


@router.get(
    "/invoices/{invoice_number}/audit",
    response_model=list[AuditEntryRead],
    tags=["invoices"],
)
def get_invoice_audit(
    invoice_number: str,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
):
    return service.get_audit_trail(db, invoice_number)


# --- Payments ---


@router.post(
    "/invoices/{invoice_number}/payments/process",
    response_model=PaymentRead,
    status_code=status.HTTP_201_CREATED,
    tags=["payments"],
)
def process_payment(
    invoice_number: str,
    payload: PaymentProcessRequest,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
    actor: Actor = Depends(get_actor),
):
    return service.process_payment(db, invoice_number, payload, actor)


@router.post(
    "/invoices/{invoice_number}/payments/manual",
    response_model=PaymentRead,
    status_code=status.HTTP_201_CREATED,
    tags=["payments"],
)
def record_manual_payment(
    invoice_number: str,
    payload: ManualPaymentCreate,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
    actor: Actor = Depends(get_actor),
):
    return service.record_manual_payment(db, invoice_number, payload, actor)


@router.post(
    "/invoices/{invoice_number}/payments/automatic",
    response_model=PaymentRead,
    status_code=status.HTTP_201_CREATED,
    tags=["payments"],
)
def initiate_automatic_payment(
    invoice_number: str,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
    actor: Actor = Depends(get_actor),
):
    return service.initiate_automatic_payment(db, invoice_number, actor)


@router.get(
    "/invoices/{invoice_number}/payments",
    response_model=list[PaymentRead],
    tags=["payments"],
)
def list_invoice_payments(
    invoice_number: str,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
):
    return service.list_invoice_payments(db, invoice_number)


@router.get(
    "/payments/customer/{customer_id}",
    response_model=ListResponse[PaymentRead],
    tags=["payments"],
)
def list_customer_payments(
    customer_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
):
    items = service.list_customer_payments(db, customer_id, limit, offset)
    return list_response(items, limit, offset)


@router.post(
    "/payments/{payment_id}/refund",
    response_model=RefundRead,
    status_code=status.HTTP_201_CREATED,
    tags=["payments"],
)
def process_refund(
    payment_id: str,
    payload: RefundCreate,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
    actor: Actor = Depends(get_actor),
):
    return service.process_refund(db, payment_id, payload, actor)


# --- Pricing and tax ---


@router.post(
    "/pricing/calculate", response_model=PricingCalculationRead, tags=["pricing"]
)
def calculate_pricing(
    payload: PricingCalculationRequest,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
):
    charge = service.calculate_shipping_charges(db, payload)
    return PricingCalculationRead(
        base_amount=charge.base_amount,
        service_fees=charge.service_fees,
        total_amount=charge.total_amount,
        service_type=charge.service_type,
        pricing_tier=charge.tier.name if charge.tier else "",
        breakdown=charge.breakdown(),
    )


@router.post(
    "/pricing/volume-discount", response_model=VolumeDiscountRead, tags=["pricing"]
)
def apply_volume_discount(
    payload: VolumeDiscountRequest,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
):
    return service.apply_volume_discount(
        db, payload.customer_id, payload.base_amount, payload.shipment_count
    )


@router.get(
    "/pricing/customer/{customer_id}/tier",
    response_model=PricingTierRead,
    tags=["pricing"],
)
def get_customer_pricing_tier(
    customer_id: str,
    db: Session = Depends(get_db),
    service: BillingService = Depends(get_billing_service),
):
    return service.get_customer_pricing_tier(db, customer_id)


@router.post("/taxes/calculate", response_model=TaxCalculationRead, tags=["pricing"])
def calculate_tax(
    payload: TaxCalculationRequest,
    service: BillingService = Depends(get_billing_service),
):
    address = payload.billing_address.model_dump() if payload.billing_address else None
    return service.calculate_tax(address, payload.amount, payload.service_type)


# --- Customers and subscriptions ---


@router.put(
    "/customers/{customer_id}/profile",
    response_model=CustomerBillingProfileRead,
    tags=["customers"],
)
def upsert_customer_profile(
    customer_id: str,
    payload: CustomerBillingProfileUpsert,
    db: Session = Depends(get_db),
):
    return billing_service.customer_profiles.upsert(db, customer_id, payload)


@router.post(
    "/subscriptions",
    response_model=SubscriptionRead,
    status_code=status.HTTP_201_CREATED,
    tags=["customers"],
)
def create_subscription(payload: SubscriptionCreate, db: Session = Depends(get_db)):
    return billing_service.subscriptions.create(db, payload)
