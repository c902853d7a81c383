"""Celery application configuration."""

from celery import Celery
from celery.schedules import crontab

from expert_booking.config import get_settings

settings = get_settings()

# Create Celery app
app = Celery(
    "expert_booking",
    broker=settings.redis.url,
    backend=settings.redis.url,
    include=["expert_booking.worker.tasks"],
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    task_soft_time_limit=240,  # 4 minutes
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=3600,  # 1 hour
)

# Celery Beat schedule (periodic tasks)
app.conf.beat_schedule = {
    # Release pending reservations whose payment hold lapsed
    "expire-reservations": {
        "task": "expert_booking.worker.tasks.expire_reservations",
        "schedule": crontab(minute="*"),  # Every minute
    },
    # Mark confirmed appointments that ended as completed
    "complete-elapsed-appointments": {
        "task": "expert_booking.worker.tasks.complete_elapsed_appointments",
        "schedule": crontab(minute="*/5"),  # Every 5 minutes
    },
    # Deliver due confirmations, cancellations and reminders
    "dispatch-notifications": {
        "task": "expert_booking.worker.tasks.dispatch_notifications",
        "schedule": crontab(minute="*"),  # Every minute
    },
    # Refresh cached Google Calendar busy times
    "refresh-calendar-overlays": {
        "task": "expert_booking.worker.tasks.refresh_all_calendar_overlays",
        "schedule": crontab(minute="*/15"),  # Every 15 minutes
    },
}

if __name__ == "__main__":
    app.start()
