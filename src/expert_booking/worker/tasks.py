"""Periodic booking maintenance tasks."""

import logging

from celery import shared_task

from expert_booking.database.session import get_session_context
from expert_booking.repositories.calendar_integration_repository import (
    CalendarIntegrationRepository,
)
from expert_booking.services.booking_ledger import BookingLedger
from expert_booking.services.calendar_overlay import CalendarOverlay
from expert_booking.services.notification_scheduler import NotificationScheduler
from expert_booking.utils.async_helpers import run_async, worker_session_factory

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    name="expert_booking.worker.tasks.expire_reservations",
    max_retries=3,
    default_retry_delay=30,
)
def expire_reservations(self) -> dict:
    """Release pending reservations whose hold has lapsed (Celery Beat, every minute)."""

    async def _run():
        async with worker_session_factory() as factory:
            released = await BookingLedger(factory).release_expired()
            return [appointment.id for appointment in released]

    try:
        released = run_async(_run())
    except Exception as exc:
        logger.error(f"Failed to release expired reservations: {exc}", exc_info=True)
        raise self.retry(exc=exc, countdown=30 * (2 ** self.request.retries))

    if released:
        logger.info(f"Released {len(released)} expired reservations")
    return {"released": len(released), "appointment_ids": released}


@shared_task(
    bind=True,
    name="expert_booking.worker.tasks.complete_elapsed_appointments",
    max_retries=3,
    default_retry_delay=60,
)
def complete_elapsed_appointments(self) -> dict:
    """Mark confirmed appointments whose end passed as completed (every 5 minutes)."""

    async def _run():
        async with worker_session_factory() as factory:
            return await BookingLedger(factory).complete_elapsed()

    try:
        completed = run_async(_run())
    except Exception as exc:
        logger.error(f"Failed to complete elapsed appointments: {exc}", exc_info=True)
        raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))

    return {"completed": len(completed), "appointment_ids": completed}


@shared_task(
    bind=True,
    name="expert_booking.worker.tasks.dispatch_notifications",
    max_retries=3,
    default_retry_delay=30,
)
def dispatch_notifications(self) -> dict:
    """Deliver queued notifications that are due (every minute)."""

    async def _run():
        async with worker_session_factory() as factory:
            return await NotificationScheduler(factory).dispatch_due()

    try:
        result = run_async(_run())
    except Exception as exc:
        logger.error(f"Failed to dispatch notifications: {exc}", exc_info=True)
        raise self.retry(exc=exc, countdown=30 * (2 ** self.request.retries))

    return {"sent": result.sent, "retried": result.retried, "failed": result.failed}


@shared_task(
    bind=True,
    name="expert_booking.worker.tasks.refresh_calendar_overlay",
    max_retries=3,
    default_retry_delay=60,
)
def refresh_calendar_overlay(self, expert_id: str) -> dict:
    """
    Refresh one expert's cached busy intervals.

    Provider failures are stored on the integration and reported in the
    result; only unexpected errors are retried.
    """

    async def _run():
        async with worker_session_factory() as factory:
            async with get_session_context(factory) as session:
                return await CalendarOverlay(session).refresh(expert_id)

    try:
        result = run_async(_run())
    except Exception as exc:
        logger.error(
            f"Unexpected error refreshing calendar overlay for expert {expert_id}: {exc}",
            exc_info=True,
        )
        raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))

    return result.model_dump(mode="json")


@shared_task(name="expert_booking.worker.tasks.refresh_all_calendar_overlays")
def refresh_all_calendar_overlays() -> dict:
    """Fan out one refresh task per active integration (every 15 minutes)."""

    async def _run():
        async with worker_session_factory() as factory:
            async with get_session_context(factory) as session:
                integrations = await CalendarIntegrationRepository(session).list_active()
                return [integration.expert_id for integration in integrations]

    expert_ids = run_async(_run())

    queued = 0
    errors = 0
    for expert_id in expert_ids:
        try:
            refresh_calendar_overlay.delay(expert_id)
            queued += 1
        except Exception as e:
            logger.error(f"Failed to queue overlay refresh for {expert_id}: {e}", exc_info=True)
            errors += 1

    logger.info(f"Queued {queued} calendar overlay refreshes ({errors} errors)")
    return {"queued": queued, "errors": errors}
