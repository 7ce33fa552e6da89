import logging
import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.services.billing import SYSTEM_ACTOR, BillingService

logger = logging.getLogger(__name__)


@celery_app.task(
    name="app.tasks.billing.attempt_automatic_payment",
    acks_late=False,
    max_retries=0,
    ignore_result=True,
)
def attempt_automatic_payment(invoice_number: str):
    """Deferred automatic collection for a finalized invoice.

    Runs at most once; a failure is logged and never retried.
    """
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        payment = BillingService().initiate_automatic_payment(
            session, invoice_number, SYSTEM_ACTOR
        )
        logger.info(
            "Automatic payment %s for invoice %s finished with %s",
            payment.payment_id,
            invoice_number,
            payment.status.value,
        )
        return {"payment_id": payment.payment_id, "status": payment.status.value}
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Automatic payment for invoice %s failed", invoice_number)
        return None
    finally:
        session.close()
        observe_job("attempt_automatic_payment", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.billing.mark_overdue_invoices")
def mark_overdue_invoices():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        marked = BillingService().mark_overdue_invoices(session)
        return {"marked": marked}
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("mark_overdue_invoices", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.billing.run_subscription_billing")
def run_subscription_billing():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        created = BillingService().run_subscription_billing(session)
        return {"invoices": created}
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("run_subscription_billing", status, time.monotonic() - start)
