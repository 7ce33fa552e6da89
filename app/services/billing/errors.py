"""Billing error taxonomy.

Every billing error is an ``HTTPException`` carrying a structured detail
payload ``{"code", "message", "details"}`` which ``app.errors`` renders as
JSON. Background jobs catch them like any other exception.
"""

from __future__ import annotations

from fastapi import HTTPException


class BillingError(HTTPException):
    status_code = 400
    code = "billing_error"

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details
        super().__init__(
            status_code=self.status_code,
            detail={"code": self.code, "message": message, "details": details},
        )

    def __str__(self) -> str:
        return self.message


class BillingNotFound(BillingError):
    status_code = 404
    code = "not_found"


class InvalidStateTransition(BillingError):
    status_code = 409
    code = "invalid_state_transition"

    def __init__(self, from_status, to_status):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid status transition from {from_status.value} to {to_status.value}",
            {"from": from_status.value, "to": to_status.value},
        )


class BillingInvariantViolation(BillingError):
    status_code = 400
    code = "billing_invariant_violation"


class BillingException(BillingError):
    """An external collaborator failed; the caller may retry."""

    status_code = 502
    code = "billing_collaborator_failure"


class ConcurrentInvoiceUpdate(BillingError):
    status_code = 409
    code = "concurrent_update"

    def __init__(self, invoice_number: str | None = None):
        label = invoice_number or "invoice"
        super().__init__(
            f"Invoice {label} was modified concurrently; reload and retry",
            {"invoice_number": invoice_number} if invoice_number else None,
        )
