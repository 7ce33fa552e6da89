from app.tasks.billing import (
    attempt_automatic_payment,
    mark_overdue_invoices,
    run_subscription_billing,
)

__all__ = [
    "attempt_automatic_payment",
    "mark_overdue_invoices",
    "run_subscription_billing",
]
