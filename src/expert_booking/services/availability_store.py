"""Expert availability windows and blocked time."""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from expert_booking.config import SchedulingSettings, get_settings
from expert_booking.database.models import BlockedTimeSlot, ExpertAvailability
from expert_booking.exceptions import AuthorizationError, ValidationError
from expert_booking.models.scheduling import BlockCreateRequest, WindowCreateRequest
from expert_booking.repositories.availability_repository import (
    AvailabilityRepository,
    BlockedTimeRepository,
)
from expert_booking.services.recurrence import expand_block, parse_rule
from expert_booking.services.timezone_service import TimezoneService
from expert_booking.utils.intervals import Interval, clip_intervals

logger = logging.getLogger(__name__)


class AvailabilityStore:
    """Reads and writes an expert's weekly windows and blocked ranges."""

    def __init__(self, session: AsyncSession, settings: Optional[SchedulingSettings] = None):
        self.session = session
        self.settings = settings or get_settings().scheduling
        self.windows = AvailabilityRepository(session)
        self.blocks = BlockedTimeRepository(session)

    async def list_windows(self, expert_id: str) -> List[ExpertAvailability]:
        """Active windows used for slot generation."""
        return await self.windows.list_for_expert(expert_id, active_only=True)

    async def list_expert_windows(self, expert_id: str) -> List[ExpertAvailability]:
        """Every window the expert owns, including deactivated ones."""
        return await self.windows.list_for_expert(expert_id, active_only=False)

    async def list_expert_blocks(self, expert_id: str) -> List[BlockedTimeSlot]:
        return await self.blocks.list_for_expert(expert_id)

    async def list_blocks(
        self, expert_id: str, range_start: datetime, range_end: datetime
    ) -> List[Interval]:
        """
        Blocked UTC intervals within ``[range_start, range_end)``.

        Recurring and all-day blocks are expanded into concrete occurrences.
        """
        bounds = Interval(range_start, range_end)
        # All-day blocks widen to local midnights, which can sit up to a day
        # outside their stored UTC bounds
        rows = await self.blocks.list_relevant(
            expert_id, range_start - timedelta(days=1), range_end + timedelta(days=1)
        )

        intervals: List[Interval] = []
        for row in rows:
            intervals.extend(
                expand_block(
                    row.start_at,
                    row.end_at,
                    row.timezone,
                    bounds,
                    is_all_day=row.is_all_day,
                    recurrence_rule=row.recurrence_rule if row.is_recurring else None,
                )
            )
        return clip_intervals(sorted(intervals), bounds)

    async def add_window(self, expert_id: str, request: WindowCreateRequest) -> ExpertAvailability:
        """
        Add a weekly availability window.

        Raises:
            ValidationError: Bad timezone, inverted or too short window
        """
        TimezoneService.validate_timezone(request.timezone)

        if request.end_time <= request.start_time:
            raise ValidationError(
                "Window must end after it starts on the same day",
                errors={"end_time": "must be later than start_time"},
            )

        start_minutes = request.start_time.hour * 60 + request.start_time.minute
        end_minutes = request.end_time.hour * 60 + request.end_time.minute
        if end_minutes - start_minutes < self.settings.min_window_minutes:
            raise ValidationError(
                f"Window must be at least {self.settings.min_window_minutes} minutes long",
                errors={"end_time": "window too short"},
            )

        window = await self.windows.create(
            expert_id=expert_id,
            day_of_week=request.day_of_week,
            start_time=request.start_time,
            end_time=request.end_time,
            timezone=request.timezone,
            is_active=True,
        )
        logger.info(
            f"Added availability window {window.id} for expert {expert_id}: "
            f"day={request.day_of_week} {request.start_time}-{request.end_time} {request.timezone}"
        )
        return window

    async def remove_window(self, expert_id: str, window_id: str) -> None:
        """Delete a window the expert owns."""
        window = await self.windows.get_or_raise(window_id)
        if window.expert_id != expert_id:
            raise AuthorizationError("Cannot modify another expert's availability")
        await self.windows.delete(window_id)
        logger.info(f"Removed availability window {window_id} for expert {expert_id}")

    async def add_block(self, expert_id: str, request: BlockCreateRequest) -> BlockedTimeSlot:
        """
        Block time off for an expert.

        Raises:
            ValidationError: Naive or inverted range, bad timezone or recurrence rule
        """
        TimezoneService.validate_timezone(request.timezone)

        if request.start_at.tzinfo is None or request.end_at.tzinfo is None:
            raise ValidationError(
                "Block bounds must include a timezone offset",
                errors={"start_at": "timezone offset required"},
            )
        if request.end_at <= request.start_at:
            raise ValidationError(
                "Block must end after it starts", errors={"end_at": "must be later than start_at"}
            )

        if request.is_recurring:
            if not request.recurrence_rule:
                raise ValidationError(
                    "Recurring blocks need a recurrence rule",
                    errors={"recurrence_rule": "required when is_recurring is true"},
                )
            parse_rule(request.recurrence_rule)
        elif request.recurrence_rule:
            raise ValidationError(
                "Recurrence rule given for a one-off block",
                errors={"is_recurring": "must be true when recurrence_rule is set"},
            )

        block = await self.blocks.create(
            expert_id=expert_id,
            start_at=request.start_at.astimezone(timezone.utc),
            end_at=request.end_at.astimezone(timezone.utc),
            reason=request.reason,
            is_all_day=request.is_all_day,
            is_recurring=request.is_recurring,
            recurrence_rule=request.recurrence_rule,
            timezone=request.timezone,
        )
        logger.info(f"Added blocked time {block.id} for expert {expert_id}")
        return block

    async def remove_block(self, expert_id: str, block_id: str) -> None:
        """Delete a block the expert owns."""
        block = await self.blocks.get_or_raise(block_id)
        if block.expert_id != expert_id:
            raise AuthorizationError("Cannot modify another expert's blocked time")
        await self.blocks.delete(block_id)
        logger.info(f"Removed blocked time {block_id} for expert {expert_id}")
