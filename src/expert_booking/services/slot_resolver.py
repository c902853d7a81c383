"""Slot resolution: weekly windows minus everything that makes time unavailable."""

import logging
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from expert_booking.config import SchedulingSettings, get_settings
from expert_booking.database.models import ExpertAvailability
from expert_booking.exceptions import ValidationError
from expert_booking.models.scheduling import OverlayStatus, Slot, SlotQueryResult
from expert_booking.repositories.appointments_repository import AppointmentsRepository
from expert_booking.services.availability_store import AvailabilityStore
from expert_booking.services.calendar_overlay import CalendarOverlay, OverlayResult
from expert_booking.services.timezone_service import TimezoneService
from expert_booking.utils.clock import Clock, SystemClock
from expert_booking.utils.intervals import Interval, merge_intervals, subtract_intervals

logger = logging.getLogger(__name__)

MIN_SLOT_MINUTES = 5
MAX_SLOT_MINUTES = 480


def _sunday_based_weekday(day: date) -> int:
    """0=Sunday ... 6=Saturday, matching ExpertAvailability.day_of_week."""
    return (day.weekday() + 1) % 7


def expand_windows(
    windows: List[ExpertAvailability], start_date: date, end_date: date
) -> List[Interval]:
    """
    Concrete UTC intervals for every window occurrence between two local dates.

    Each window is converted from its own timezone on each matching date, so
    a 09:00 window is 14:00 UTC in winter and 13:00 UTC in summer for New York.
    """
    spans: List[Interval] = []
    day = start_date
    while day <= end_date:
        weekday = _sunday_based_weekday(day)
        for window in windows:
            if window.day_of_week != weekday:
                continue
            tz = TimezoneService.validate_timezone(window.timezone)
            start = TimezoneService.local_to_utc(day, window.start_time, tz)
            end = TimezoneService.local_to_utc(day, window.end_time, tz)
            if end > start:
                spans.append(Interval(start, end))
        day += timedelta(days=1)
    return spans


def enumerate_starts(
    span: Interval,
    free: List[Interval],
    duration: timedelta,
    granularity: timedelta,
    earliest: datetime,
) -> List[datetime]:
    """
    Slot starts on a grid anchored at ``span.start``.

    A start qualifies when ``[start, start + duration)`` fits inside one of the
    ``free`` pieces of ``span`` and the start is not before ``earliest``.
    """
    starts = []
    for piece in free:
        # First grid point at or after the free piece
        steps = -((span.start - piece.start) // granularity)
        candidate = span.start + steps * granularity
        while candidate + duration <= piece.end:
            if candidate >= earliest:
                starts.append(candidate)
            candidate += granularity
    return starts


class SlotResolver:
    """Turns an expert's availability into bookable slots for a viewer."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[SchedulingSettings] = None,
        clock: Optional[Clock] = None,
        overlay: Optional[CalendarOverlay] = None,
    ):
        self.session = session
        self.settings = settings or get_settings().scheduling
        self.clock = clock or SystemClock()
        self.store = AvailabilityStore(session, self.settings)
        self.appointments = AppointmentsRepository(session)
        self.overlay = overlay or CalendarOverlay(session, clock=self.clock)

    def _validate(
        self,
        start_date: date,
        end_date: date,
        duration_minutes: int,
        granularity_minutes: int,
    ) -> None:
        errors = {}
        if not MIN_SLOT_MINUTES <= duration_minutes <= MAX_SLOT_MINUTES:
            errors["duration_minutes"] = f"must be between {MIN_SLOT_MINUTES} and {MAX_SLOT_MINUTES}"
        if not MIN_SLOT_MINUTES <= granularity_minutes <= MAX_SLOT_MINUTES:
            errors["granularity_minutes"] = (
                f"must be between {MIN_SLOT_MINUTES} and {MAX_SLOT_MINUTES}"
            )
        if end_date < start_date:
            errors["end_date"] = "must not be before start_date"
        elif (end_date - start_date).days + 1 > self.settings.max_query_days:
            errors["end_date"] = f"range may span at most {self.settings.max_query_days} days"
        if errors:
            raise ValidationError("Invalid slot query", errors=errors)

    async def _unavailable(
        self, expert_id: str, bounds: Interval, now: datetime
    ) -> Tuple[List[Interval], OverlayResult]:
        """Blocks, calendar busy times and held appointments inside ``bounds``, merged."""
        overlay = await self.overlay.get_busy_intervals(expert_id, bounds.start, bounds.end)
        blocked = await self.store.list_blocks(expert_id, bounds.start, bounds.end)
        booked = [
            Interval(appt.scheduled_at, appt.ends_at)
            for appt in await self.appointments.list_occupying(
                expert_id, bounds.start, bounds.end, now
            )
        ]
        return merge_intervals(blocked + overlay.intervals + booked), overlay

    async def resolve_slots(
        self,
        expert_id: str,
        start_date: date,
        end_date: date,
        duration_minutes: int,
        viewer_timezone: str,
        granularity_minutes: Optional[int] = None,
    ) -> SlotQueryResult:
        """
        Bookable slots for an expert between two dates, inclusive.

        Args:
            expert_id: Expert whose calendar is queried
            start_date: First date, in each window's own timezone
            end_date: Last date, inclusive
            duration_minutes: Length of the consultation
            viewer_timezone: IANA zone used to render the slots
            granularity_minutes: Step between candidate starts

        Returns:
            SlotQueryResult with slots in ascending UTC order

        Raises:
            ValidationError: Bad zone, duration, granularity or date range
        """
        granularity_minutes = granularity_minutes or self.settings.default_granularity_minutes
        viewer_tz = TimezoneService.validate_timezone(viewer_timezone, field="timezone")
        self._validate(start_date, end_date, duration_minutes, granularity_minutes)

        result = SlotQueryResult(
            expert_id=expert_id,
            timezone=viewer_timezone,
            duration_minutes=duration_minutes,
            granularity_minutes=granularity_minutes,
        )

        windows = await self.store.list_windows(expert_id)
        available = merge_intervals(expand_windows(windows, start_date, end_date))
        if not available:
            return result

        bounds = Interval(available[0].start, available[-1].end)
        now = self.clock.now()

        unavailable, overlay = await self._unavailable(expert_id, bounds, now)
        result.calendar_overlay_status = overlay.status
        if overlay.warning:
            result.warnings.append(overlay.warning)
        if overlay.status == OverlayStatus.DEGRADED:
            logger.warning(f"Calendar overlay degraded for expert {expert_id}: {overlay.warning}")

        duration = timedelta(minutes=duration_minutes)
        granularity = timedelta(minutes=granularity_minutes)
        earliest = now + timedelta(minutes=self.settings.min_lead_minutes)

        for span in available:
            free = subtract_intervals([span], unavailable)
            for start in enumerate_starts(span, free, duration, granularity, earliest):
                local = TimezoneService.to_viewer(start, viewer_tz)
                result.slots.append(
                    Slot(
                        utc_start=start,
                        utc_end=start + duration,
                        local_start=local,
                        local_display=local.isoformat(),
                        display_time=TimezoneService.format_display_time(local),
                        timezone=viewer_timezone,
                    )
                )

        logger.debug(
            f"Resolved {len(result.slots)} slots for expert {expert_id} "
            f"({start_date}..{end_date}, {duration_minutes}m)"
        )
        return result

    async def slots_near(
        self, expert_id: str, start_utc: datetime, duration_minutes: int, viewer_timezone: str
    ) -> SlotQueryResult:
        """Slots from the day before to the day after ``start_utc``, offered as alternatives."""
        viewer_tz = TimezoneService.validate_timezone(viewer_timezone)
        day = TimezoneService.to_viewer(start_utc, viewer_tz).date()
        return await self.resolve_slots(
            expert_id,
            day - timedelta(days=1),
            day + timedelta(days=1),
            duration_minutes,
            viewer_timezone,
        )

    async def is_bookable(
        self, expert_id: str, start_utc: datetime, duration_minutes: int
    ) -> bool:
        """
        Whether ``[start_utc, start_utc + duration)`` lies in the expert's free time.

        Every start listed by ``resolve_slots`` passes whatever granularity was
        used to list it; the grid only decides which starts get listed.
        """
        if not MIN_SLOT_MINUTES <= duration_minutes <= MAX_SLOT_MINUTES:
            return False

        now = self.clock.now()
        requested = Interval(start_utc, start_utc + timedelta(minutes=duration_minutes)).to_utc()
        if requested.start < now + timedelta(minutes=self.settings.min_lead_minutes):
            return False

        # Windows are dated in their own zones, up to a day either side of UTC
        windows = await self.store.list_windows(expert_id)
        available = merge_intervals(
            expand_windows(
                windows,
                requested.start.date() - timedelta(days=1),
                requested.end.date() + timedelta(days=1),
            )
        )
        span = next((s for s in available if s.contains(requested)), None)
        if span is None:
            return False

        unavailable, _ = await self._unavailable(expert_id, span, now)
        return any(piece.contains(requested) for piece in subtract_intervals([span], unavailable))
