"""Celery worker for reservation expiry, completion, notifications and calendar sync."""

from expert_booking.worker.celery_app import app

__all__ = ["app"]
