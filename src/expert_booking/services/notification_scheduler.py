"""Notification scheduler: turns booking events into outbox rows and delivers them."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from expert_booking.config import NotificationSettings, get_settings
from expert_booking.database.models import (
    Appointment,
    NotificationPreference,
    NotificationStatus,
    ScheduledNotification,
)
from expert_booking.database.session import get_session_context
from expert_booking.exceptions import ValidationError
from expert_booking.models.events import BookingEvent, BookingEventType
from expert_booking.repositories.appointments_repository import AppointmentsRepository
from expert_booking.repositories.notifications_repository import (
    NotificationPreferenceRepository,
    ScheduledNotificationRepository,
)
from expert_booking.services.notification_channels import (
    DeliveryError,
    NotificationChannel,
    get_channels,
)
from expert_booking.services.timezone_service import TimezoneService
from expert_booking.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

KIND_CONFIRMATION = "booking_confirmed"
KIND_CANCELLATION = "booking_cancelled"
KIND_REMINDER = "reminder"


@dataclass(frozen=True)
class EffectivePreferences:
    """Stored preferences, or the defaults for users who never saved any."""

    email: bool = True
    sms: bool = False
    reminders: bool = True
    reminder_minutes: int = 60
    confirmations: bool = True
    cancellations: bool = True
    phone_number: Optional[str] = None
    timezone: Optional[str] = None

    @classmethod
    def from_model(cls, pref: NotificationPreference) -> "EffectivePreferences":
        return cls(
            email=pref.email_notifications,
            sms=pref.sms_notifications,
            reminders=pref.appointment_reminders,
            reminder_minutes=pref.reminder_time_minutes,
            confirmations=pref.booking_confirmations,
            cancellations=pref.cancellation_notifications,
            phone_number=pref.phone_number,
            timezone=pref.timezone,
        )


@dataclass
class DispatchResult:
    sent: int = 0
    retried: int = 0
    failed: int = 0


def _idempotency_key(appointment_id: str, kind: str, channel: str) -> str:
    return f"{appointment_id}:{kind}:{channel}"


class NotificationScheduler:
    """Schedules confirmation, cancellation and reminder messages off booking events.

    Delivery never reads or writes appointment status.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[NotificationSettings] = None,
        clock: Optional[Clock] = None,
        channels: Optional[Dict[str, NotificationChannel]] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings().notifications
        self.clock = clock or SystemClock()
        self._channels = channels

    @property
    def channels(self) -> Dict[str, NotificationChannel]:
        if self._channels is None:
            self._channels = get_channels()
        return self._channels

    async def _preferences(self, session: AsyncSession, appointment: Appointment) -> EffectivePreferences:
        if appointment.client_id:
            stored = await NotificationPreferenceRepository(session).get_by_user_id(
                appointment.client_id
            )
            if stored is not None:
                return EffectivePreferences.from_model(stored)
        return EffectivePreferences(reminder_minutes=self.settings.default_reminder_minutes)

    def _recipients(self, appointment: Appointment, prefs: EffectivePreferences) -> Dict[str, str]:
        recipients = {}
        if prefs.email and appointment.client_email:
            recipients["email"] = appointment.client_email
        phone = prefs.phone_number or appointment.client_phone
        if prefs.sms and phone:
            recipients["sms"] = phone
        return recipients

    def _when(self, appointment: Appointment, prefs: EffectivePreferences) -> str:
        tz = TimezoneService.validate_timezone(prefs.timezone or appointment.scheduled_at_timezone)
        return TimezoneService.format_for_user(appointment.scheduled_at, tz)

    async def _queue(
        self,
        repo: ScheduledNotificationRepository,
        appointment: Appointment,
        kind: str,
        channel: str,
        recipient: str,
        subject: str,
        message: str,
        send_at: datetime,
    ) -> ScheduledNotification:
        key = _idempotency_key(appointment.id, kind, channel)
        existing = await repo.get_by_idempotency_key(key)
        if existing is not None:
            return existing
        return await repo.create(
            appointment_id=appointment.id,
            kind=kind,
            channel=channel,
            recipient=recipient,
            subject=subject,
            message=message,
            send_at=send_at,
            status=NotificationStatus.QUEUED.value,
            attempts=0,
            idempotency_key=key,
        )

    async def handle_event(self, event: BookingEvent) -> List[ScheduledNotification]:
        """
        Queue the notifications a booking event calls for.

        Args:
            event: booking_confirmed, booking_cancelled or reminder_due

        Returns:
            Outbox rows created or already present for this event
        """
        now = self.clock.now()
        async with get_session_context(self.session_factory) as session:
            appointment = await AppointmentsRepository(session).get_or_raise(event.appointment_id)
            prefs = await self._preferences(session, appointment)
            repo = ScheduledNotificationRepository(session)

            if event.event_type == BookingEventType.BOOKING_CONFIRMED:
                queued = await self._on_confirmed(repo, appointment, prefs, now)
            elif event.event_type == BookingEventType.BOOKING_CANCELLED:
                queued = await self._on_cancelled(repo, appointment, prefs, now)
            elif event.event_type == BookingEventType.REMINDER_DUE:
                queued = await self._queue_reminders(repo, appointment, prefs, send_at=now)
            else:
                raise ValidationError(f"Unsupported booking event: {event.event_type}")

        logger.info(
            f"Handled {event.event_type.value} for appointment {event.appointment_id}: "
            f"{len(queued)} notifications"
        )
        return queued

    async def _on_confirmed(
        self,
        repo: ScheduledNotificationRepository,
        appointment: Appointment,
        prefs: EffectivePreferences,
        now: datetime,
    ) -> List[ScheduledNotification]:
        queued = []
        when = self._when(appointment, prefs)
        if prefs.confirmations:
            for channel, recipient in self._recipients(appointment, prefs).items():
                queued.append(
                    await self._queue(
                        repo,
                        appointment,
                        KIND_CONFIRMATION,
                        channel,
                        recipient,
                        "Your consultation is confirmed",
                        f"Hi {appointment.client_name}, your {appointment.duration_minutes}-minute "
                        f"consultation is confirmed for {when}.",
                        now,
                    )
                )

        if prefs.reminders:
            send_at = appointment.scheduled_at - timedelta(minutes=prefs.reminder_minutes)
            if send_at > now:
                queued.extend(await self._queue_reminders(repo, appointment, prefs, send_at))
            else:
                logger.debug(f"Reminder time already passed for appointment {appointment.id}")
        return queued

    async def _queue_reminders(
        self,
        repo: ScheduledNotificationRepository,
        appointment: Appointment,
        prefs: EffectivePreferences,
        send_at: datetime,
    ) -> List[ScheduledNotification]:
        when = self._when(appointment, prefs)
        return [
            await self._queue(
                repo,
                appointment,
                KIND_REMINDER,
                channel,
                recipient,
                "Reminder: upcoming consultation",
                f"Reminder: your consultation starts at {when}.",
                send_at,
            )
            for channel, recipient in self._recipients(appointment, prefs).items()
        ]

    async def _on_cancelled(
        self,
        repo: ScheduledNotificationRepository,
        appointment: Appointment,
        prefs: EffectivePreferences,
        now: datetime,
    ) -> List[ScheduledNotification]:
        dropped = await repo.cancel_queued(appointment.id, KIND_REMINDER)
        if dropped:
            logger.info(f"Cancelled {dropped} queued reminders for appointment {appointment.id}")

        if not prefs.cancellations:
            return []

        when = self._when(appointment, prefs)
        return [
            await self._queue(
                repo,
                appointment,
                KIND_CANCELLATION,
                channel,
                recipient,
                "Your consultation was cancelled",
                f"Your consultation scheduled for {when} has been cancelled.",
                now,
            )
            for channel, recipient in self._recipients(appointment, prefs).items()
        ]

    def _retry_delay(self, attempts: int) -> timedelta:
        return timedelta(seconds=self.settings.retry_backoff_seconds * 2 ** (attempts - 1))

    async def dispatch_due(self, now: Optional[datetime] = None) -> DispatchResult:
        """
        Deliver queued notifications whose send time has arrived.

        Failed deliveries are retried with exponential backoff and marked failed
        after ``max_attempts``. Each row is settled in its own transaction.
        """
        now = now or self.clock.now()
        result = DispatchResult()

        async with get_session_context(self.session_factory) as session:
            due_ids = [
                row.id
                for row in await ScheduledNotificationRepository(session).list_due(
                    now, limit=self.settings.dispatch_batch_size
                )
            ]

        for notification_id in due_ids:
            async with get_session_context(self.session_factory) as session:
                repo = ScheduledNotificationRepository(session)
                row = await repo.get_by_id(notification_id, for_update=True)
                if row is None or row.status != NotificationStatus.QUEUED.value:
                    continue
                await self._deliver(repo, row, now, result)

        if due_ids:
            logger.info(
                f"Dispatched notifications: sent={result.sent} "
                f"retried={result.retried} failed={result.failed}"
            )
        return result

    async def _deliver(
        self,
        repo: ScheduledNotificationRepository,
        row: ScheduledNotification,
        now: datetime,
        result: DispatchResult,
    ) -> None:
        attempts = row.attempts + 1
        channel = self.channels.get(row.channel)
        if channel is None:
            await repo.apply(
                row,
                status=NotificationStatus.FAILED.value,
                attempts=attempts,
                last_error=f"No channel configured for '{row.channel}'",
            )
            result.failed += 1
            return

        try:
            await channel.send(row.recipient, row.subject, row.message)
        except DeliveryError as e:
            if attempts >= self.settings.max_attempts:
                logger.error(
                    f"Giving up on notification {row.id} after {attempts} attempts: {e.message}"
                )
                await repo.apply(
                    row,
                    status=NotificationStatus.FAILED.value,
                    attempts=attempts,
                    last_error=e.message,
                )
                result.failed += 1
            else:
                logger.warning(f"Delivery of notification {row.id} failed, will retry: {e.message}")
                await repo.apply(
                    row,
                    attempts=attempts,
                    last_error=e.message,
                    send_at=now + self._retry_delay(attempts),
                )
                result.retried += 1
            return

        await repo.apply(
            row,
            status=NotificationStatus.SENT.value,
            attempts=attempts,
            sent_at=now,
            last_error=None,
        )
        result.sent += 1
