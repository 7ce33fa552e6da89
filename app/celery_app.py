from celery import Celery
from celery.signals import setup_logging

from app.logging import configure_logging
from app.services.scheduler_config import build_beat_schedule, get_celery_config

celery_app = Celery("courier_billing")
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.autodiscover_tasks(["app.tasks"])


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging()
