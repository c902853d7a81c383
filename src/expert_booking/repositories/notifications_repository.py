"""Notification preferences and outbox repositories."""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from expert_booking.database.models import (
    NotificationPreference,
    NotificationStatus,
    ScheduledNotification,
)
from expert_booking.exceptions import DatabaseError
from expert_booking.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class NotificationPreferenceRepository(BaseRepository[NotificationPreference]):
    """Repository for per-user notification preferences."""

    resource_name = "Notification preference"

    def __init__(self, session: AsyncSession):
        super().__init__(NotificationPreference, session)

    async def get_by_user_id(self, user_id: str) -> Optional[NotificationPreference]:
        """Preferences for a user, or None when the user never saved any."""
        try:
            result = await self.session.execute(
                select(NotificationPreference).where(NotificationPreference.user_id == user_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error getting notification preferences for user {user_id}: {e}")
            raise DatabaseError("Failed to retrieve notification preferences") from e


class ScheduledNotificationRepository(BaseRepository[ScheduledNotification]):
    """Repository for the notification outbox."""

    resource_name = "Scheduled notification"

    def __init__(self, session: AsyncSession):
        super().__init__(ScheduledNotification, session)

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[ScheduledNotification]:
        """Return a notification by idempotency key (if exists)."""
        try:
            result = await self.session.execute(
                select(ScheduledNotification).where(
                    ScheduledNotification.idempotency_key == idempotency_key
                )
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error getting notification by idempotency_key: {e}")
            raise DatabaseError("Failed to retrieve notification") from e

    async def list_due(self, now: datetime, limit: int = 100) -> List[ScheduledNotification]:
        """Queued notifications whose send time has arrived, oldest first."""
        try:
            result = await self.session.execute(
                select(ScheduledNotification)
                .where(ScheduledNotification.status == NotificationStatus.QUEUED.value)
                .where(ScheduledNotification.send_at <= now)
                .order_by(ScheduledNotification.send_at)
                .limit(limit)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error listing due notifications: {e}")
            raise DatabaseError("Failed to retrieve due notifications") from e

    async def list_for_appointment(self, appointment_id: str) -> List[ScheduledNotification]:
        """Every outbox row attached to an appointment."""
        try:
            result = await self.session.execute(
                select(ScheduledNotification)
                .where(ScheduledNotification.appointment_id == appointment_id)
                .order_by(ScheduledNotification.send_at)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error listing notifications for appointment {appointment_id}: {e}")
            raise DatabaseError("Failed to retrieve notifications") from e

    async def cancel_queued(self, appointment_id: str, kind: str) -> int:
        """Cancel queued notifications of one kind for an appointment; returns the row count."""
        try:
            result = await self.session.execute(
                update(ScheduledNotification)
                .where(ScheduledNotification.appointment_id == appointment_id)
                .where(ScheduledNotification.kind == kind)
                .where(ScheduledNotification.status == NotificationStatus.QUEUED.value)
                .values(status=NotificationStatus.CANCELLED.value)
                .execution_options(synchronize_session="fetch")
            )
            await self.session.flush()
            return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Error cancelling notifications for appointment {appointment_id}: {e}")
            await self.session.rollback()
            raise DatabaseError("Failed to cancel notifications") from e
