"""Availability windows and blocked time repositories."""

import logging
from datetime import datetime
from typing import List

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from expert_booking.database.models import BlockedTimeSlot, ExpertAvailability
from expert_booking.exceptions import DatabaseError
from expert_booking.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class AvailabilityRepository(BaseRepository[ExpertAvailability]):
    """Repository for recurring weekly availability windows."""

    resource_name = "Availability window"

    def __init__(self, session: AsyncSession):
        super().__init__(ExpertAvailability, session)

    async def list_for_expert(
        self, expert_id: str, active_only: bool = True
    ) -> List[ExpertAvailability]:
        """Windows for an expert ordered by weekday and start time."""
        try:
            query = select(ExpertAvailability).where(ExpertAvailability.expert_id == expert_id)
            if active_only:
                query = query.where(ExpertAvailability.is_active.is_(True))
            query = query.order_by(ExpertAvailability.day_of_week, ExpertAvailability.start_time)
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error listing availability for expert {expert_id}: {e}")
            raise DatabaseError("Failed to retrieve availability windows") from e


class BlockedTimeRepository(BaseRepository[BlockedTimeSlot]):
    """Repository for blocked time ranges."""

    resource_name = "Blocked time slot"

    def __init__(self, session: AsyncSession):
        super().__init__(BlockedTimeSlot, session)

    async def list_relevant(
        self, expert_id: str, range_start: datetime, range_end: datetime
    ) -> List[BlockedTimeSlot]:
        """
        Blocks that can affect ``[range_start, range_end)``.

        One-off blocks must overlap the range. Recurring blocks are returned
        whenever their first occurrence starts before the range ends; the
        caller expands them.
        """
        try:
            result = await self.session.execute(
                select(BlockedTimeSlot)
                .where(BlockedTimeSlot.expert_id == expert_id)
                .where(
                    or_(
                        (BlockedTimeSlot.is_recurring.is_(False))
                        & (BlockedTimeSlot.start_at < range_end)
                        & (BlockedTimeSlot.end_at > range_start),
                        (BlockedTimeSlot.is_recurring.is_(True))
                        & (BlockedTimeSlot.start_at < range_end),
                    )
                )
                .order_by(BlockedTimeSlot.start_at)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error listing blocked time for expert {expert_id}: {e}")
            raise DatabaseError("Failed to retrieve blocked time") from e

    async def list_for_expert(self, expert_id: str) -> List[BlockedTimeSlot]:
        """All blocks owned by an expert."""
        try:
            result = await self.session.execute(
                select(BlockedTimeSlot)
                .where(BlockedTimeSlot.expert_id == expert_id)
                .order_by(BlockedTimeSlot.start_at)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error listing blocks for expert {expert_id}: {e}")
            raise DatabaseError("Failed to retrieve blocked time") from e
