"""Repositories package."""

from expert_booking.repositories.appointments_repository import AppointmentsRepository
from expert_booking.repositories.availability_repository import (
    AvailabilityRepository,
    BlockedTimeRepository,
)
from expert_booking.repositories.base import BaseRepository
from expert_booking.repositories.calendar_integration_repository import (
    CalendarIntegrationRepository,
)
from expert_booking.repositories.notifications_repository import (
    NotificationPreferenceRepository,
    ScheduledNotificationRepository,
)
from expert_booking.repositories.payout_account_repository import PayoutAccountRepository

__all__ = [
    "BaseRepository",
    "AvailabilityRepository",
    "BlockedTimeRepository",
    "AppointmentsRepository",
    "CalendarIntegrationRepository",
    "NotificationPreferenceRepository",
    "ScheduledNotificationRepository",
    "PayoutAccountRepository",
]
