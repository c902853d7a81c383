"""Tests for slot resolution."""

from datetime import date, datetime, time, timedelta, timezone

import pytest

from expert_booking.config import GoogleCalendarSettings
from expert_booking.database.models import AppointmentStatus, CalendarIntegration, ExpertAvailability
from expert_booking.database.session import get_session_context
from expert_booking.exceptions import ValidationError
from expert_booking.models.scheduling import BlockCreateRequest, OverlayStatus
from expert_booking.repositories.appointments_repository import AppointmentsRepository
from expert_booking.services.availability_store import AvailabilityStore
from expert_booking.services.calendar_overlay import CalendarOverlay, encode_busy
from expert_booking.services.slot_resolver import SlotResolver, enumerate_starts, expand_windows
from expert_booking.utils.clock import FixedClock
from expert_booking.utils.intervals import Interval
from tests.conftest import EXPERT_ID, MONDAY, MONDAY_AFTER_DST, NINE_AM_NY, NOW, add_window


def utc(day, hour=0, minute=0) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=timezone.utc)


async def add_appointment(
    session_factory,
    start: datetime,
    minutes: int = 60,
    status: str = AppointmentStatus.CONFIRMED.value,
    expires_at=None,
):
    async with get_session_context(session_factory) as session:
        return await AppointmentsRepository(session).create(
            expert_id=EXPERT_ID,
            client_name="Existing Client",
            client_email="existing@example.com",
            scheduled_at=start,
            ends_at=start + timedelta(minutes=minutes),
            scheduled_at_timezone="UTC",
            duration_minutes=minutes,
            status=status,
            total_amount=10000,
            platform_fee=1000,
            expert_earnings=9000,
            currency="usd",
            reservation_expires_at=expires_at,
        )


async def resolve(session_factory, scheduling_settings, clock, day=MONDAY, **kwargs):
    params = {"duration_minutes": 60, "viewer_timezone": "America/New_York"}
    params.update(kwargs)
    async with get_session_context(session_factory) as session:
        resolver = SlotResolver(session, settings=scheduling_settings, clock=clock)
        return await resolver.resolve_slots(EXPERT_ID, day, day, **params)


def display_times(result):
    return [slot.display_time for slot in result.slots]


class TestNewYorkMorningWindow:
    async def test_open_morning(self, session_factory, scheduling_settings, clock, monday_window):
        result = await resolve(session_factory, scheduling_settings, clock)

        assert display_times(result) == ["9:00 AM", "9:30 AM", "10:00 AM", "10:30 AM", "11:00 AM"]
        assert result.slots[0].utc_start == NINE_AM_NY
        assert result.slots[-1].utc_end == utc(2, 17)
        assert result.slots[0].local_display == "2026-03-02T09:00:00-05:00"
        assert result.calendar_overlay_status == OverlayStatus.NOT_CONNECTED
        assert result.warnings == []

    async def test_confirmed_booking_removes_overlapping_starts(
        self, session_factory, scheduling_settings, clock, monday_window
    ):
        await add_appointment(session_factory, utc(2, 15))  # 10:00-11:00 New York

        result = await resolve(session_factory, scheduling_settings, clock)
        assert display_times(result) == ["9:00 AM", "11:00 AM"]

    async def test_unexpired_pending_hold_occupies(
        self, session_factory, scheduling_settings, clock, monday_window
    ):
        await add_appointment(
            session_factory,
            utc(2, 15),
            status=AppointmentStatus.PENDING.value,
            expires_at=NOW + timedelta(minutes=10),
        )
        result = await resolve(session_factory, scheduling_settings, clock)
        assert display_times(result) == ["9:00 AM", "11:00 AM"]

    async def test_expired_pending_hold_does_not_occupy(
        self, session_factory, scheduling_settings, clock, monday_window
    ):
        await add_appointment(
            session_factory,
            utc(2, 15),
            status=AppointmentStatus.PENDING.value,
            expires_at=NOW - timedelta(minutes=1),
        )
        result = await resolve(session_factory, scheduling_settings, clock)
        assert len(result.slots) == 5

    @pytest.mark.parametrize(
        "status", [AppointmentStatus.CANCELLED.value, AppointmentStatus.NO_SHOW.value]
    )
    async def test_inactive_appointments_do_not_occupy(
        self, session_factory, scheduling_settings, clock, monday_window, status
    ):
        await add_appointment(session_factory, utc(2, 15), status=status)
        result = await resolve(session_factory, scheduling_settings, clock)
        assert len(result.slots) == 5

    async def test_other_experts_bookings_are_ignored(
        self, session_factory, scheduling_settings, clock, monday_window
    ):
        async with get_session_context(session_factory) as session:
            await AppointmentsRepository(session).create(
                expert_id="expert-2",
                client_name="Other",
                client_email="other@example.com",
                scheduled_at=utc(2, 15),
                ends_at=utc(2, 16),
                duration_minutes=60,
                status=AppointmentStatus.CONFIRMED.value,
                total_amount=100,
                platform_fee=10,
                expert_earnings=90,
            )
        result = await resolve(session_factory, scheduling_settings, clock)
        assert len(result.slots) == 5

    async def test_coarser_granularity(self, session_factory, scheduling_settings, clock, monday_window):
        result = await resolve(session_factory, scheduling_settings, clock, granularity_minutes=60)
        assert display_times(result) == ["9:00 AM", "10:00 AM", "11:00 AM"]
        assert result.granularity_minutes == 60

    async def test_duration_filling_window(self, session_factory, scheduling_settings, clock, monday_window):
        result = await resolve(session_factory, scheduling_settings, clock, duration_minutes=180)
        assert display_times(result) == ["9:00 AM"]

    async def test_duration_longer_than_window(self, session_factory, scheduling_settings, clock, monday_window):
        result = await resolve(session_factory, scheduling_settings, clock, duration_minutes=240)
        assert result.slots == []


class TestTimezones:
    async def test_window_follows_dst(self, session_factory, scheduling_settings, clock, monday_window):
        result = await resolve(session_factory, scheduling_settings, clock, day=MONDAY_AFTER_DST)
        assert result.slots[0].utc_start == utc(9, 13)
        assert display_times(result)[0] == "9:00 AM"

    async def test_rendered_in_viewer_timezone(
        self, session_factory, scheduling_settings, clock, monday_window
    ):
        result = await resolve(
            session_factory, scheduling_settings, clock, viewer_timezone="Europe/London"
        )
        assert result.timezone == "Europe/London"
        assert result.slots[0].utc_start == NINE_AM_NY
        assert result.slots[0].display_time == "2:00 PM"
        assert result.slots[0].local_display == "2026-03-02T14:00:00+00:00"
        assert all(slot.timezone == "Europe/London" for slot in result.slots)

    async def test_local_display_round_trips_to_utc(
        self, session_factory, scheduling_settings, clock, monday_window
    ):
        result = await resolve(session_factory, scheduling_settings, clock, viewer_timezone="Asia/Tokyo")
        for slot in result.slots:
            assert datetime.fromisoformat(slot.local_display).astimezone(timezone.utc) == slot.utc_start


class TestExclusions:
    async def test_blocked_time_splits_window(
        self, session_factory, scheduling_settings, clock, monday_window
    ):
        async with get_session_context(session_factory) as session:
            await AvailabilityStore(session).add_block(
                EXPERT_ID,
                BlockCreateRequest(start_at=utc(2, 14, 30), end_at=utc(2, 15, 15)),
            )
        result = await resolve(session_factory, scheduling_settings, clock)
        assert display_times(result) == ["10:30 AM", "11:00 AM"]

    async def test_recurring_all_day_block(self, session_factory, scheduling_settings, clock, monday_window):
        async with get_session_context(session_factory) as session:
            await AvailabilityStore(session).add_block(
                EXPERT_ID,
                BlockCreateRequest(
                    start_at=datetime.fromisoformat("2026-02-23T00:00:00-05:00"),
                    end_at=datetime.fromisoformat("2026-02-24T00:00:00-05:00"),
                    is_all_day=True,
                    is_recurring=True,
                    recurrence_rule="FREQ=WEEKLY;BYDAY=MO",
                    timezone="America/New_York",
                ),
            )
        result = await resolve(session_factory, scheduling_settings, clock)
        assert result.slots == []

    async def test_lead_time_hides_imminent_starts(
        self, session_factory, scheduling_settings, monday_window
    ):
        clock = FixedClock(utc(2, 14, 10))  # 09:10 New York
        result = await resolve(session_factory, scheduling_settings, clock)
        assert display_times(result) == ["10:30 AM", "11:00 AM"]

    async def test_no_windows_means_no_slots(self, session_factory, scheduling_settings, clock):
        result = await resolve(session_factory, scheduling_settings, clock)
        assert result.slots == []

    async def test_inactive_window_is_ignored(self, session_factory, scheduling_settings, clock, monday_window):
        async with get_session_context(session_factory) as session:
            store = AvailabilityStore(session)
            await store.windows.update(monday_window.id, is_active=False)
        result = await resolve(session_factory, scheduling_settings, clock)
        assert result.slots == []


class TestCalendarOverlay:
    async def _integration(self, session_factory, **fields):
        data = {
            "expert_id": EXPERT_ID,
            "provider": "google",
            "access_token": "token",
            "busy_intervals_json": encode_busy([Interval(utc(2, 14), utc(2, 15))]),
        }
        data.update(fields)
        async with get_session_context(session_factory) as session:
            session.add(CalendarIntegration(**data))

    async def test_fresh_overlay_removes_busy_time(
        self, session_factory, scheduling_settings, clock, monday_window
    ):
        await self._integration(session_factory, last_synced_at=NOW - timedelta(minutes=5))
        result = await resolve(session_factory, scheduling_settings, clock)
        assert result.calendar_overlay_status == OverlayStatus.OK
        assert display_times(result) == ["10:00 AM", "10:30 AM", "11:00 AM"]

    async def test_failed_sync_is_degraded_but_cache_still_applies(
        self, session_factory, scheduling_settings, clock, monday_window
    ):
        await self._integration(
            session_factory, last_synced_at=NOW - timedelta(minutes=5), sync_error="HTTP 503"
        )
        result = await resolve(session_factory, scheduling_settings, clock)
        assert result.calendar_overlay_status == OverlayStatus.DEGRADED
        assert result.warnings and "HTTP 503" in result.warnings[0]
        assert display_times(result) == ["10:00 AM", "10:30 AM", "11:00 AM"]

    async def test_stale_cache_is_degraded(self, session_factory, scheduling_settings, clock, monday_window):
        await self._integration(session_factory, last_synced_at=NOW - timedelta(hours=3))
        async with get_session_context(session_factory) as session:
            overlay = CalendarOverlay(
                session, settings=GoogleCalendarSettings(stale_after_minutes=60), clock=clock
            )
            resolver = SlotResolver(session, settings=scheduling_settings, clock=clock, overlay=overlay)
            result = await resolver.resolve_slots(EXPERT_ID, MONDAY, MONDAY, 60, "UTC")
        assert result.calendar_overlay_status == OverlayStatus.DEGRADED
        assert result.warnings == ["External calendar data is stale"]


class TestIsBookable:
    async def is_bookable(self, session_factory, scheduling_settings, clock, start, minutes=60):
        async with get_session_context(session_factory) as session:
            resolver = SlotResolver(session, settings=scheduling_settings, clock=clock)
            return await resolver.is_bookable(EXPERT_ID, start, minutes)

    @pytest.mark.parametrize("granularity", [10, 15, 20, 45])
    async def test_every_listed_slot_is_bookable(
        self, session_factory, scheduling_settings, clock, monday_window, granularity
    ):
        await add_appointment(session_factory, utc(2, 15, 10), minutes=25)
        result = await resolve(
            session_factory, scheduling_settings, clock, granularity_minutes=granularity
        )

        assert result.slots
        for slot in result.slots:
            assert await self.is_bookable(
                session_factory, scheduling_settings, clock, slot.utc_start
            ), slot.display_time

    async def test_rejects_overrunning_window(
        self, session_factory, scheduling_settings, clock, monday_window
    ):
        assert not await self.is_bookable(
            session_factory, scheduling_settings, clock, utc(2, 16, 30)
        )

    async def test_rejects_overlap_with_booking(
        self, session_factory, scheduling_settings, clock, monday_window
    ):
        await add_appointment(session_factory, utc(2, 15))

        assert not await self.is_bookable(
            session_factory, scheduling_settings, clock, utc(2, 14, 15)
        )
        assert await self.is_bookable(session_factory, scheduling_settings, clock, utc(2, 16))

    async def test_rejects_start_inside_lead_time(
        self, session_factory, scheduling_settings, monday_window
    ):
        late_clock = FixedClock(NINE_AM_NY - timedelta(minutes=30))

        assert not await self.is_bookable(
            session_factory, scheduling_settings, late_clock, NINE_AM_NY
        )
        assert await self.is_bookable(
            session_factory, scheduling_settings, late_clock, NINE_AM_NY + timedelta(minutes=30)
        )


class TestValidation:
    @pytest.mark.parametrize(
        "kwargs,field",
        [
            ({"duration_minutes": 3}, "duration_minutes"),
            ({"duration_minutes": 600}, "duration_minutes"),
            ({"granularity_minutes": 2}, "granularity_minutes"),
        ],
    )
    async def test_rejects_out_of_range_parameters(
        self, session_factory, scheduling_settings, clock, kwargs, field
    ):
        with pytest.raises(ValidationError) as exc_info:
            await resolve(session_factory, scheduling_settings, clock, **kwargs)
        assert field in exc_info.value.details["validation_errors"]

    async def test_rejects_unknown_viewer_timezone(self, session_factory, scheduling_settings, clock):
        with pytest.raises(ValidationError):
            await resolve(session_factory, scheduling_settings, clock, viewer_timezone="Mars/Base")

    async def test_rejects_inverted_range(self, session, scheduling_settings, clock):
        resolver = SlotResolver(session, settings=scheduling_settings, clock=clock)
        with pytest.raises(ValidationError):
            await resolver.resolve_slots(EXPERT_ID, MONDAY, MONDAY - timedelta(days=1), 60, "UTC")

    async def test_rejects_overlong_range(self, session, scheduling_settings, clock):
        resolver = SlotResolver(session, settings=scheduling_settings, clock=clock)
        with pytest.raises(ValidationError):
            await resolver.resolve_slots(EXPERT_ID, MONDAY, MONDAY + timedelta(days=100), 60, "UTC")


async def test_multi_day_query_covers_each_window(session_factory, scheduling_settings, clock):
    await add_window(session_factory, day_of_week=1)  # Monday
    await add_window(session_factory, day_of_week=3, start=time(14), end=time(15))  # Wednesday
    async with get_session_context(session_factory) as session:
        resolver = SlotResolver(session, settings=scheduling_settings, clock=clock)
        result = await resolver.resolve_slots(
            EXPERT_ID, MONDAY, MONDAY + timedelta(days=6), 60, "America/New_York"
        )
    days = sorted({slot.local_start.date() for slot in result.slots})
    assert days == [MONDAY, MONDAY + timedelta(days=2)]
    assert result.slots == sorted(result.slots, key=lambda slot: slot.utc_start)


def test_expand_windows_uses_sunday_based_weekdays():
    sunday = ExpertAvailability(
        expert_id=EXPERT_ID, day_of_week=0, start_time=time(10), end_time=time(11), timezone="UTC"
    )
    spans = expand_windows([sunday], date(2026, 3, 1), date(2026, 3, 7))
    assert spans == [Interval(utc(1, 10), utc(1, 11))]


def test_enumerate_starts_anchors_grid_at_window_start():
    window = Interval(utc(2, 9), utc(2, 12))
    free = [Interval(utc(2, 9, 10), utc(2, 12))]
    starts = enumerate_starts(
        window, free, timedelta(minutes=60), timedelta(minutes=30), earliest=utc(1)
    )
    assert starts == [utc(2, 9, 30), utc(2, 10), utc(2, 10, 30), utc(2, 11)]
