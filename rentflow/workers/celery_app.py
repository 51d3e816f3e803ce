"""
Celery application configuration.
"""

from celery import Celery
from celery.schedules import crontab

from rentflow.config import settings

# Create Celery app
celery_app = Celery(
    "rentflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "rentflow.workers.rent_collection",
    ],
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.rent_timezone,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=60 * 60,  # Large batches pace items and back off
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Monthly rent collection (default: 1st of the month, 9:00 Africa/Nairobi)
    "monthly-rent-collection": {
        "task": "rentflow.workers.rent_collection.run_monthly_rent_collection",
        "schedule": crontab(
            minute=0,
            hour=settings.rent_collection_hour,
            day_of_month=settings.rent_collection_day,
        ),
    },
    # Poll providers for payments still awaiting confirmation
    "refresh-open-batches": {
        "task": "rentflow.workers.rent_collection.refresh_open_batches",
        "schedule": crontab(minute="*/15"),
    },
}
