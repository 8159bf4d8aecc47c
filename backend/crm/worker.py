"""ATA CRM — Celery worker configuration."""
from celery import Celery
from celery.schedules import crontab

from crm.config import get_settings

settings = get_settings()

celery_app = Celery(
    "ata_crm",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_retry_delay=60,
    task_max_retries=3,
    task_routes={
        "crm.tasks.*": {"queue": "default"},
    },
    include=[
        "crm.tasks.notification_tasks",
        "crm.tasks.reminder_tasks",
    ],
)

# Celery Beat schedule
celery_app.conf.beat_schedule = {
    "lifecycle-reminders-daily": {
        "task": "crm.tasks.reminder_tasks.send_lifecycle_reminders",
        "schedule": crontab(hour=5, minute=0),  # 09:00 Asia/Dubai
    },
}
