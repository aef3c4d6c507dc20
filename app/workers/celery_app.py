"""
Celery application configuration.
"""

from celery import Celery
from celery.signals import setup_logging
from celery.schedules import crontab

from app.config import settings
from app.logging_config import configure_logging

# Create Celery app
celery_app = Celery(
    "homezy",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.workers.reconciliation",
    ],
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Sweep stuck charges and report booking/payment drift
    "payment-reconciliation": {
        "task": "app.workers.reconciliation.reconcile_payments",
        "schedule": crontab(minute="*/15"),
    },
}


@setup_logging.connect
def configure_worker_logging(**kwargs):
    """Worker and beat log in the same format as the API."""
    configure_logging()
