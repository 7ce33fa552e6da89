"""Billing services package.

Ledgers own storage of invoices, payments and audit entries; the
orchestrator implements the billing use cases on top of them:
    from app.services.billing import BillingService
    service = BillingService()
    service.finalize_invoice(db, "INV-20240101-AB12CD", actor)
"""

from app.services.billing.actors import SYSTEM_ACTOR, Actor
from app.services.billing.audit import BillingAudit
from app.services.billing.customers import CustomerCredits, CustomerProfiles, Subscriptions
from app.services.billing.errors import (
    BillingError,
    BillingException,
    BillingInvariantViolation,
    BillingNotFound,
    ConcurrentInvoiceUpdate,
    InvalidStateTransition,
)
from app.services.billing.invoices import Invoices
from app.services.billing.orchestrator import BillingService
from app.services.billing.payments import Payments

# Singleton instances for service access
invoices = Invoices()
payments = Payments()
billing_audit = BillingAudit()
customer_profiles = CustomerProfiles()
customer_credits = CustomerCredits()
subscriptions = Subscriptions()

__all__ = [
    "Actor",
    "SYSTEM_ACTOR",
    "BillingAudit",
    "BillingService",
    "CustomerCredits",
    "CustomerProfiles",
    "Invoices",
    "Payments",
    "Subscriptions",
    "BillingError",
    "BillingException",
    "BillingInvariantViolation",
    "BillingNotFound",
    "ConcurrentInvoiceUpdate",
    "InvalidStateTransition",
    "invoices",
    "payments",
    "billing_audit",
    "customer_profiles",
    "customer_credits",
    "subscriptions",
]
