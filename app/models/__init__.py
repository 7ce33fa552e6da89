from app.models.billing import (  # noqa: F401
    AuditActorType,
    BillingAuditEntry,
    BillingSubscription,
    CustomerBillingProfile,
    CustomerCredit,
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
