"""Appointments repository for data access operations."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from expert_booking.database.models import Appointment, AppointmentStatus
from expert_booking.exceptions import DatabaseError
from expert_booking.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


def _holds_capacity(now: datetime):
    """Confirmed rows, and pending rows whose hold has not lapsed at ``now``."""
    return or_(
        Appointment.status == AppointmentStatus.CONFIRMED.value,
        and_(
            Appointment.status == AppointmentStatus.PENDING.value,
            or_(
                Appointment.reservation_expires_at.is_(None),
                Appointment.reservation_expires_at > now,
            ),
        ),
    )


class AppointmentsRepository(BaseRepository[Appointment]):
    """Repository for appointment data access operations."""

    resource_name = "Appointment"

    def __init__(self, session: AsyncSession):
        super().__init__(Appointment, session)

    async def find_overlapping(
        self,
        expert_id: str,
        start: datetime,
        end: datetime,
        now: datetime,
        exclude_id: Optional[str] = None,
    ) -> List[Appointment]:
        """Appointments of ``expert_id`` holding capacity that overlap ``[start, end)``."""
        try:
            query = (
                select(Appointment)
                .where(Appointment.expert_id == expert_id)
                .where(Appointment.scheduled_at < end)
                .where(Appointment.ends_at > start)
                .where(_holds_capacity(now))
            )
            if exclude_id:
                query = query.where(Appointment.id != exclude_id)
            result = await self.session.execute(query.order_by(Appointment.scheduled_at))
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error checking overlapping appointments for expert {expert_id}: {e}")
            raise DatabaseError("Failed to check appointment overlap") from e

    async def find_expired_pending(
        self,
        now: datetime,
        expert_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Appointment]:
        """Pending reservations whose hold lapsed, optionally narrowed to an expert and window."""
        try:
            query = (
                select(Appointment)
                .where(Appointment.status == AppointmentStatus.PENDING.value)
                .where(Appointment.reservation_expires_at.is_not(None))
                .where(Appointment.reservation_expires_at <= now)
            )
            if expert_id:
                query = query.where(Appointment.expert_id == expert_id)
            if start is not None and end is not None:
                query = query.where(Appointment.scheduled_at < end).where(
                    Appointment.ends_at > start
                )
            result = await self.session.execute(query.order_by(Appointment.reservation_expires_at))
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error finding expired reservations: {e}")
            raise DatabaseError("Failed to retrieve expired reservations") from e

    async def find_elapsed_confirmed(self, now: datetime, limit: int = 500) -> List[Appointment]:
        """Confirmed appointments whose end time has passed."""
        try:
            result = await self.session.execute(
                select(Appointment)
                .where(Appointment.status == AppointmentStatus.CONFIRMED.value)
                .where(Appointment.ends_at <= now)
                .order_by(Appointment.ends_at)
                .limit(limit)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error finding elapsed appointments: {e}")
            raise DatabaseError("Failed to retrieve elapsed appointments") from e

    async def list_for_expert(
        self,
        expert_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> List[Appointment]:
        """Appointments for an expert, optionally limited to a window and statuses."""
        try:
            query = select(Appointment).where(Appointment.expert_id == expert_id)
            if start is not None:
                query = query.where(Appointment.ends_at > start)
            if end is not None:
                query = query.where(Appointment.scheduled_at < end)
            if statuses:
                query = query.where(Appointment.status.in_(list(statuses)))
            result = await self.session.execute(query.order_by(Appointment.scheduled_at))
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error listing appointments for expert {expert_id}: {e}")
            raise DatabaseError("Failed to retrieve appointments") from e

    async def list_occupying(
        self, expert_id: str, start: datetime, end: datetime, now: datetime
    ) -> List[Appointment]:
        """Appointments that hold capacity anywhere in ``[start, end)``."""
        return await self.find_overlapping(expert_id, start, end, now)

    async def list_for_client(self, client_id: str) -> List[Appointment]:
        """Appointments booked by a client, newest first."""
        try:
            result = await self.session.execute(
                select(Appointment)
                .where(Appointment.client_id == client_id)
                .order_by(Appointment.scheduled_at.desc())
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error listing appointments for client {client_id}: {e}")
            raise DatabaseError("Failed to retrieve appointments") from e

    async def get_by_payment_reference(self, payment_reference: str) -> Optional[Appointment]:
        """Return the appointment a payment intent was created for (if any)."""
        try:
            result = await self.session.execute(
                select(Appointment).where(Appointment.payment_reference == payment_reference)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error getting appointment by payment reference: {e}")
            raise DatabaseError("Failed to retrieve appointment") from e
