"""Tests for the booking ledger."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from expert_booking.database.models import AppointmentStatus, RefundStatus
from expert_booking.exceptions import (
    AuthorizationError,
    InvalidStateTransitionError,
    InvariantViolationError,
    NotFoundError,
    ReservationExpiredError,
    SlotConflictError,
    ValidationError,
)
from expert_booking.repositories.appointments_repository import AppointmentsRepository
from expert_booking.services.booking_ledger import (
    RELEASE_PAYMENT_FAILED,
    RELEASE_RESERVATION_EXPIRED,
    BookingLedger,
    KeyedLocks,
)
from expert_booking.utils.clock import FixedClock
from tests.conftest import EXPERT_ID, NINE_AM_NY, NOW


async def reserve(ledger, client_info, start=NINE_AM_NY, minutes=60, expert_id=EXPERT_ID, amount=10000):
    return await ledger.reserve(
        expert_id, start, minutes, client_info, amount, display_timezone="America/New_York"
    )


async def confirmed(ledger, client_info, start=NINE_AM_NY):
    appointment = await reserve(ledger, client_info, start=start)
    await ledger.attach_payment(appointment.id, "pi_1", "pi_1_secret")
    return await ledger.confirm(appointment.id, "pi_1")


class TestReserve:
    async def test_creates_pending_hold(self, ledger, client_info):
        appointment = await reserve(ledger, client_info)

        assert appointment.status == AppointmentStatus.PENDING.value
        assert appointment.scheduled_at == NINE_AM_NY
        assert appointment.ends_at == NINE_AM_NY + timedelta(hours=1)
        assert appointment.reservation_expires_at == NOW + timedelta(minutes=15)
        assert appointment.scheduled_at_timezone == "America/New_York"
        assert appointment.client_email == "ada@example.com"

    async def test_stores_fee_split(self, ledger, client_info):
        appointment = await reserve(ledger, client_info, amount=10005)
        assert appointment.total_amount == 10005
        assert appointment.platform_fee == 1001
        assert appointment.expert_earnings == 9004
        assert appointment.platform_fee + appointment.expert_earnings == appointment.total_amount

    async def test_overlapping_hold_conflicts(self, ledger, client_info):
        await reserve(ledger, client_info)

        with pytest.raises(SlotConflictError) as exc_info:
            await reserve(ledger, client_info, start=NINE_AM_NY + timedelta(minutes=30))
        assert exc_info.value.status_code == 409
        assert exc_info.value.details["next_step"] == "refresh_slots"

    async def test_back_to_back_bookings_do_not_conflict(self, ledger, client_info):
        await reserve(ledger, client_info)
        second = await reserve(ledger, client_info, start=NINE_AM_NY + timedelta(hours=1))
        assert second.status == AppointmentStatus.PENDING.value

    async def test_other_expert_is_independent(self, ledger, client_info):
        await reserve(ledger, client_info)
        other = await reserve(ledger, client_info, expert_id="expert-2")
        assert other.expert_id == "expert-2"

    async def test_concurrent_requests_for_one_slot(self, ledger, client_info):
        results = await asyncio.gather(
            reserve(ledger, client_info),
            reserve(ledger, client_info),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, SlotConflictError)]
        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(conflicts) == 1

        held = await ledger.list_for_expert(EXPERT_ID, statuses=[AppointmentStatus.PENDING.value])
        assert [a.id for a in held] == [winners[0].id]

    async def test_expired_hold_frees_the_slot(self, ledger, client_info, clock):
        first = await reserve(ledger, client_info)
        clock.advance(minutes=16)

        second = await reserve(ledger, client_info)

        assert second.id != first.id
        released = await ledger.get(first.id)
        assert released.status == AppointmentStatus.CANCELLED.value
        assert released.cancel_reason == RELEASE_RESERVATION_EXPIRED

    async def test_expired_sweep_skips_hold_confirmed_after_its_read(
        self, ledger, client_info, clock, session_factory, scheduling_settings, locks
    ):
        held = await reserve(ledger, client_info)
        await ledger.attach_payment(held.id, "pi_1", "pi_1_secret")
        clock.advance(minutes=16)

        # Payment confirmation that saw the hold before it lapsed
        payer = BookingLedger(
            session_factory,
            scheduling_settings,
            clock=FixedClock(NOW + timedelta(minutes=14)),
            locks=locks,
        )
        find_expired_pending = AppointmentsRepository.find_expired_pending

        async def confirm_after_read(repo, *args, **kwargs):
            stale = await find_expired_pending(repo, *args, **kwargs)
            await payer.confirm(held.id, "pi_1")
            return stale

        with patch.object(AppointmentsRepository, "find_expired_pending", confirm_after_read):
            with pytest.raises(SlotConflictError):
                await reserve(ledger, client_info)

        kept = await ledger.get(held.id)
        assert kept.status == AppointmentStatus.CONFIRMED.value
        assert kept.cancel_reason is None

    async def test_rejects_past_start(self, ledger, client_info):
        with pytest.raises(ValidationError):
            await reserve(ledger, client_info, start=NOW - timedelta(hours=1))

    async def test_rejects_naive_start(self, ledger, client_info):
        with pytest.raises(ValidationError):
            await reserve(ledger, client_info, start=NINE_AM_NY.replace(tzinfo=None))

    async def test_rejects_non_positive_amount(self, ledger, client_info):
        with pytest.raises(ValidationError):
            await reserve(ledger, client_info, amount=0)

    async def test_overlap_after_insert_writes_nothing(self, ledger, client_info):
        phantom = AsyncMock(side_effect=[[], [MagicMock(id="ghost")]])
        with patch.object(AppointmentsRepository, "find_overlapping", phantom):
            with pytest.raises(InvariantViolationError):
                await reserve(ledger, client_info)

        assert await ledger.list_for_expert(EXPERT_ID) == []


class TestConfirm:
    async def test_confirms_pending(self, ledger, client_info):
        appointment = await confirmed(ledger, client_info)
        assert appointment.status == AppointmentStatus.CONFIRMED.value
        assert appointment.confirmed_at == NOW
        assert appointment.payment_reference == "pi_1"

    async def test_second_confirmation_is_noop(self, ledger, client_info):
        first = await confirmed(ledger, client_info)
        again = await ledger.confirm(first.id, "pi_1")
        assert again.status == AppointmentStatus.CONFIRMED.value
        assert again.confirmed_at == first.confirmed_at

    async def test_mismatched_reference_rejected(self, ledger, client_info):
        appointment = await reserve(ledger, client_info)
        await ledger.attach_payment(appointment.id, "pi_1")
        with pytest.raises(ValidationError):
            await ledger.confirm(appointment.id, "pi_other")

    async def test_expired_hold_cannot_be_confirmed(self, ledger, client_info, clock):
        appointment = await reserve(ledger, client_info)
        clock.advance(minutes=15)

        with pytest.raises(ReservationExpiredError) as exc_info:
            await ledger.confirm(appointment.id, "pi_1")
        assert exc_info.value.status_code == 410

        current = await ledger.get(appointment.id)
        assert current.status == AppointmentStatus.CANCELLED.value
        assert current.cancel_reason == RELEASE_RESERVATION_EXPIRED

        with pytest.raises(ReservationExpiredError):
            await ledger.confirm(appointment.id, "pi_1")

    async def test_expiry_judged_once_row_is_locked(self, ledger, client_info, clock, locks):
        held = await reserve(ledger, client_info)
        await ledger.attach_payment(held.id, "pi_1", "pi_1_secret")
        clock.advance(minutes=14)

        async with locks.hold(f"appointment:{held.id}"):
            waiting = asyncio.create_task(ledger.confirm(held.id, "pi_1"))
            await asyncio.sleep(0)
            clock.advance(minutes=2)

        with pytest.raises(ReservationExpiredError):
            await waiting
        assert (await ledger.get(held.id)).cancel_reason == RELEASE_RESERVATION_EXPIRED

    async def test_released_hold_cannot_be_confirmed(self, ledger, client_info):
        appointment = await reserve(ledger, client_info)
        await ledger.release(appointment.id, RELEASE_PAYMENT_FAILED)
        with pytest.raises(InvalidStateTransitionError):
            await ledger.confirm(appointment.id, "pi_1")

    async def test_unknown_appointment(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.confirm("missing", "pi_1")


class TestRelease:
    async def test_release_is_idempotent(self, ledger, client_info):
        appointment = await reserve(ledger, client_info)
        first = await ledger.release(appointment.id, RELEASE_PAYMENT_FAILED)
        second = await ledger.release(appointment.id, RELEASE_PAYMENT_FAILED)

        assert first.status == AppointmentStatus.CANCELLED.value
        assert second.cancel_reason == RELEASE_PAYMENT_FAILED
        assert second.cancelled_by == "system"

    async def test_confirmed_cannot_be_released(self, ledger, client_info):
        appointment = await confirmed(ledger, client_info)
        with pytest.raises(InvalidStateTransitionError):
            await ledger.release(appointment.id, RELEASE_PAYMENT_FAILED)

    async def test_release_expired_sweeps_lapsed_holds(self, ledger, client_info, clock):
        lapsed = await reserve(ledger, client_info)
        clock.advance(minutes=10)
        fresh = await reserve(ledger, client_info, start=NINE_AM_NY + timedelta(hours=2))
        clock.advance(minutes=6)

        released = await ledger.release_expired()

        assert [a.id for a in released] == [lapsed.id]
        assert (await ledger.get(fresh.id)).status == AppointmentStatus.PENDING.value
        assert await ledger.release_expired() == []


class TestCancel:
    async def test_cancel_confirmed_requests_refund(self, ledger, client_info):
        appointment = await confirmed(ledger, client_info)

        cancelled = await ledger.cancel(appointment.id, "client", "Conflict came up")

        assert cancelled.status == AppointmentStatus.CANCELLED.value
        assert cancelled.cancelled_by == "client"
        assert cancelled.cancel_reason == "Conflict came up"
        assert cancelled.refund_status == RefundStatus.REQUESTED.value

    async def test_cancel_pending_needs_no_refund(self, ledger, client_info):
        appointment = await reserve(ledger, client_info)
        cancelled = await ledger.cancel(appointment.id, "expert")
        assert cancelled.refund_status is None

    async def test_cancelled_slot_is_bookable_again(self, ledger, client_info):
        appointment = await confirmed(ledger, client_info)
        await ledger.cancel(appointment.id, "client")
        again = await reserve(ledger, client_info)
        assert again.status == AppointmentStatus.PENDING.value

    async def test_cannot_cancel_twice(self, ledger, client_info):
        appointment = await confirmed(ledger, client_info)
        await ledger.cancel(appointment.id, "client")
        with pytest.raises(InvalidStateTransitionError):
            await ledger.cancel(appointment.id, "client")

    async def test_cannot_cancel_after_start(self, ledger, client_info, clock):
        appointment = await confirmed(ledger, client_info)
        clock.advance(days=2)
        with pytest.raises(InvalidStateTransitionError):
            await ledger.cancel(appointment.id, "client")

    async def test_system_actor_rejected(self, ledger, client_info):
        appointment = await confirmed(ledger, client_info)
        with pytest.raises(ValidationError):
            await ledger.cancel(appointment.id, "system")

    async def test_record_refund_outcome(self, ledger, client_info):
        appointment = await confirmed(ledger, client_info)
        await ledger.cancel(appointment.id, "expert")

        updated = await ledger.record_refund(appointment.id, RefundStatus.FAILED.value)
        assert updated.refund_status == RefundStatus.FAILED.value
        assert updated.status == AppointmentStatus.CANCELLED.value

    async def test_record_refund_requires_cancellation(self, ledger, client_info):
        appointment = await confirmed(ledger, client_info)
        with pytest.raises(InvalidStateTransitionError):
            await ledger.record_refund(appointment.id, RefundStatus.SUCCEEDED.value)


class TestCompletionAndNoShow:
    async def test_complete_elapsed(self, ledger, client_info, clock):
        appointment = await confirmed(ledger, client_info)
        pending = await reserve(ledger, client_info, start=NINE_AM_NY + timedelta(hours=1))

        assert await ledger.complete_elapsed() == []
        clock.advance(days=1, hours=3)

        assert await ledger.complete_elapsed() == [appointment.id]
        assert (await ledger.get(appointment.id)).status == AppointmentStatus.COMPLETED.value
        assert (await ledger.get(pending.id)).status == AppointmentStatus.PENDING.value

    async def test_no_show_after_start(self, ledger, client_info, clock):
        appointment = await confirmed(ledger, client_info)
        clock.advance(days=1, hours=2, minutes=10)

        marked = await ledger.mark_no_show(appointment.id, EXPERT_ID)
        assert marked.status == AppointmentStatus.NO_SHOW.value

    async def test_no_show_after_completion(self, ledger, client_info, clock):
        appointment = await confirmed(ledger, client_info)
        clock.advance(days=2)
        await ledger.complete_elapsed()

        marked = await ledger.mark_no_show(appointment.id, EXPERT_ID)
        assert marked.status == AppointmentStatus.NO_SHOW.value

    async def test_no_show_before_start_rejected(self, ledger, client_info):
        appointment = await confirmed(ledger, client_info)
        with pytest.raises(InvalidStateTransitionError):
            await ledger.mark_no_show(appointment.id, EXPERT_ID)

    async def test_no_show_by_other_expert_rejected(self, ledger, client_info, clock):
        appointment = await confirmed(ledger, client_info)
        clock.advance(days=2)
        with pytest.raises(AuthorizationError):
            await ledger.mark_no_show(appointment.id, "expert-2")

    async def test_pending_cannot_be_no_show(self, ledger, client_info, clock):
        appointment = await reserve(ledger, client_info)
        clock.advance(minutes=5)
        with pytest.raises(InvalidStateTransitionError):
            await ledger.mark_no_show(appointment.id, EXPERT_ID)


async def test_list_for_client(ledger, client_info):
    first = await reserve(ledger, client_info)
    second = await reserve(ledger, client_info, start=NINE_AM_NY + timedelta(days=1))

    listed = await ledger.list_for_client("client-1")
    assert [a.id for a in listed] == [second.id, first.id]


async def test_keyed_locks_do_not_block_other_keys():
    locks = KeyedLocks()
    entered = asyncio.Event()

    async def hold_a():
        async with locks.hold("expert:a"):
            entered.set()
            await asyncio.sleep(0.2)

    holder = asyncio.create_task(hold_a())
    await entered.wait()

    assert locks.get("expert:a").locked()
    async with locks.hold("expert:b"):
        assert locks.get("expert:b").locked()
        assert locks.get("expert:a").locked()

    await holder


async def test_keyed_locks_serialise_one_key():
    locks = KeyedLocks()
    order = []

    async def worker(name):
        async with locks.hold("expert:a"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("one"), worker("two"))
    assert order == ["one-in", "one-out", "two-in", "two-out"]
