"""Celery application configuration."""

from celery import Celery
from celery.schedules import crontab

from ..config import settings

# Create Celery application
celery_app = Celery(
    "ledger_integration",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["app.tasks.maintenance_tasks"],
)

# Configure Celery
celery_app.conf.update(
    timezone=settings.celery_timezone,
    enable_utc=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_track_started=True,
    task_time_limit=300,
    task_soft_time_limit=240,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "sweep-expired-auth-states": {
        "task": "app.tasks.maintenance_tasks.sweep_expired_auth_states",
        "schedule": crontab(minute="*/10"),  # Every 10 minutes
    },
    "refresh-expiring-tokens": {
        "task": "app.tasks.maintenance_tasks.refresh_expiring_tokens",
        "schedule": crontab(minute="*/15"),  # Every 15 minutes
    },
    "update-integration-gauges": {
        "task": "app.tasks.maintenance_tasks.update_integration_gauges",
        "schedule": crontab(minute="*/5"),  # Every 5 minutes
    },
}
