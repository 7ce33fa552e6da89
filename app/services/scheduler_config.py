import logging
from datetime import timedelta

from app.config import settings

logger = logging.getLogger(__name__)

MIN_SWEEP_INTERVAL_SECONDS = 60


def get_celery_config() -> dict:
    config: dict[str, object] = {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend,
        "timezone": "UTC",
        "task_serializer": "json",
        "accept_content": ["json"],
        "result_serializer": "json",
    }
    return config


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    overdue_seconds = max(settings.overdue_sweep_interval_seconds, MIN_SWEEP_INTERVAL_SECONDS)
    schedule["billing_mark_overdue_invoices"] = {
        "task": "app.tasks.billing.mark_overdue_invoices",
        "schedule": timedelta(seconds=overdue_seconds),
    }
    subscription_seconds = max(
        settings.subscription_billing_interval_seconds, MIN_SWEEP_INTERVAL_SECONDS
    )
    schedule["billing_run_subscription_billing"] = {
        "task": "app.tasks.billing.run_subscription_billing",
        "schedule": timedelta(seconds=subscription_seconds),
    }
    logger.info(
        "Billing beat schedule: overdue every %ss, subscriptions every %ss",
        overdue_seconds,
        subscription_seconds,
    )
    return schedule
