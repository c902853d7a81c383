"""Booking ledger: the single writer of appointment status.

Reservations for one expert are serialised by a per-expert ``asyncio.Lock``
inside this process and, on PostgreSQL, by a transaction-scoped advisory lock
across processes. Within that critical section the overlap check and the
insert share one transaction, so two overlapping reservations for the same
expert can never both be committed. Different experts never wait on each other.
"""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from expert_booking.config import SchedulingSettings, get_settings
from expert_booking.database.models import (
    Appointment,
    AppointmentStatus,
    CancelledBy,
    RefundStatus,
)
from expert_booking.database.session import get_session_context
from expert_booking.exceptions import (
    AuthorizationError,
    InvalidStateTransitionError,
    InvariantViolationError,
    ReservationExpiredError,
    SlotConflictError,
    ValidationError,
)
from expert_booking.models.bookings import ClientInfo
from expert_booking.repositories.appointments_repository import AppointmentsRepository
from expert_booking.services.fees import split_amount, verify_split
from expert_booking.services.timezone_service import TimezoneService
from expert_booking.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

# Reasons recorded on reservations the system releases
RELEASE_PAYMENT_FAILED = "payment_failed"
RELEASE_PAYMENT_TIMEOUT = "payment_timeout"
RELEASE_RESERVATION_EXPIRED = "reservation_expired"
RELEASE_GATEWAY_UNAVAILABLE = "gateway_unavailable"


class KeyedLocks:
    """One ``asyncio.Lock`` per key, dropped once nobody references it."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self.get(key)
        async with lock:
            yield


# Shared by every ledger in the process
_process_locks = KeyedLocks()


def get_process_locks() -> KeyedLocks:
    return _process_locks


class BookingLedger:
    """Commits and transitions appointments."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[SchedulingSettings] = None,
        clock: Optional[Clock] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings().scheduling
        self.clock = clock or SystemClock()
        self.locks = locks or get_process_locks()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AppointmentsRepository]:
        async with get_session_context(self.session_factory) as session:
            yield AppointmentsRepository(session)

    async def _advisory_lock(self, session: AsyncSession, expert_id: str) -> None:
        """Cross-process lock held until the transaction ends (PostgreSQL only)."""
        if session.bind is not None and session.bind.dialect.name == "postgresql":
            await session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": f"expert_booking:{expert_id}"},
            )

    async def reserve(
        self,
        expert_id: str,
        start_utc: datetime,
        duration_minutes: int,
        client: ClientInfo,
        total_amount: int,
        display_timezone: str = "UTC",
        notes: Optional[str] = None,
    ) -> Appointment:
        """
        Place a pending hold on ``[start_utc, start_utc + duration)``.

        Args:
            expert_id: Expert being booked
            start_utc: Aware start instant
            duration_minutes: Length of the consultation
            client: Client contact details
            total_amount: Price in cents
            display_timezone: Zone the client booked in, kept for display
            notes: Optional notes for the expert

        Returns:
            The pending appointment with its reservation expiry set

        Raises:
            ValidationError: Bad input or a start in the past
            SlotConflictError: The interval overlaps a pending or confirmed appointment
            InvariantViolationError: An overlap appeared despite the lock; nothing is written
        """
        if start_utc.tzinfo is None:
            raise ValidationError("Start time must include a timezone offset")
        if duration_minutes <= 0:
            raise ValidationError("Duration must be positive", errors={"duration_minutes": "> 0"})
        TimezoneService.validate_timezone(display_timezone, field="display_timezone")
        split = split_amount(total_amount, self.settings.platform_fee_percent)

        start = start_utc.astimezone(timezone.utc)
        end = start + timedelta(minutes=duration_minutes)
        now = self.clock.now()
        if start <= now:
            raise ValidationError("Cannot book a slot in the past", errors={"start_utc": "in the past"})

        async with self.locks.hold(f"expert:{expert_id}"):
            async with self._transaction() as repo:
                await self._advisory_lock(repo.session, expert_id)

                for stale in await repo.find_expired_pending(now, expert_id, start, end):
                    # Appointment lock before row lock, as in confirm
                    async with self.locks.hold(f"appointment:{stale.id}"):
                        await repo.session.refresh(stale, with_for_update=True)
                        if self._hold_lapsed(stale, now):
                            await self._mark_released(
                                repo, stale, RELEASE_RESERVATION_EXPIRED, now
                            )

                if await repo.find_overlapping(expert_id, start, end, now):
                    logger.info(
                        f"Slot conflict for expert {expert_id} at {start.isoformat()} "
                        f"({duration_minutes}m)"
                    )
                    raise SlotConflictError(
                        details={"expert_id": expert_id, "requested_start": start.isoformat()}
                    )

                appointment = await repo.create(
                    expert_id=expert_id,
                    client_id=client.client_id,
                    client_name=client.name,
                    client_email=client.email,
                    client_phone=client.phone,
                    notes=notes,
                    scheduled_at=start,
                    ends_at=end,
                    scheduled_at_timezone=display_timezone,
                    duration_minutes=duration_minutes,
                    status=AppointmentStatus.PENDING.value,
                    total_amount=split.total_amount,
                    platform_fee=split.platform_fee,
                    expert_earnings=split.expert_earnings,
                    currency=self.settings.currency,
                    reservation_expires_at=now
                    + timedelta(minutes=self.settings.reservation_timeout_minutes),
                )

                clashes = await repo.find_overlapping(
                    expert_id, start, end, now, exclude_id=appointment.id
                )
                if clashes:
                    logger.critical(
                        f"Overlap detected after insert for expert {expert_id}: "
                        f"{appointment.id} vs {[c.id for c in clashes]}; refusing write"
                    )
                    raise InvariantViolationError(
                        "Appointment would overlap an existing booking",
                        details={"expert_id": expert_id, "start": start.isoformat()},
                    )

        logger.info(
            f"Reserved appointment {appointment.id} for expert {expert_id} "
            f"at {start.isoformat()} until {appointment.reservation_expires_at.isoformat()}"
        )
        return appointment

    async def attach_payment(
        self, appointment_id: str, payment_reference: str, client_secret: Optional[str] = None
    ) -> Appointment:
        """Record the gateway intent created for a pending reservation."""
        async with self.locks.hold(f"appointment:{appointment_id}"):
            async with self._transaction() as repo:
                appointment = await repo.get_or_raise(appointment_id, for_update=True)
                if appointment.status != AppointmentStatus.PENDING.value:
                    raise InvalidStateTransitionError(appointment.status, "awaiting_payment")
                if appointment.payment_reference and appointment.payment_reference != payment_reference:
                    raise ValidationError(
                        "Reservation already has a different payment",
                        errors={"payment_reference": "mismatch"},
                    )
                return await repo.apply(
                    appointment,
                    payment_reference=payment_reference,
                    payment_client_secret=client_secret,
                )

    async def confirm(self, appointment_id: str, payment_reference: str) -> Appointment:
        """
        Confirm a pending reservation after the payment succeeded.

        Confirming an already confirmed appointment with the same reference
        returns it unchanged.

        Raises:
            ReservationExpiredError: The hold lapsed; the reservation has been released
            InvalidStateTransitionError: The appointment is not pending
            ValidationError: The payment reference belongs to another payment
        """
        expired = False

        async with self.locks.hold(f"appointment:{appointment_id}"):
            async with self._transaction() as repo:
                appointment = await repo.get_or_raise(appointment_id, for_update=True)
                # Read once the row is locked so a concurrent sweep is ordered before us
                now = self.clock.now()

                if appointment.payment_reference and appointment.payment_reference != payment_reference:
                    raise ValidationError(
                        "Payment reference does not match this reservation",
                        errors={"payment_reference": "mismatch"},
                    )

                if appointment.status == AppointmentStatus.CONFIRMED.value:
                    return appointment

                if appointment.status != AppointmentStatus.PENDING.value:
                    if appointment.cancel_reason == RELEASE_RESERVATION_EXPIRED:
                        raise ReservationExpiredError(appointment_id)
                    raise InvalidStateTransitionError(
                        appointment.status, AppointmentStatus.CONFIRMED.value
                    )

                if appointment.reservation_expires_at and appointment.reservation_expires_at <= now:
                    await self._mark_released(repo, appointment, RELEASE_RESERVATION_EXPIRED, now)
                    expired = True
                else:
                    verify_split(
                        appointment.total_amount,
                        appointment.platform_fee,
                        appointment.expert_earnings,
                    )
                    appointment = await repo.apply(
                        appointment,
                        status=AppointmentStatus.CONFIRMED.value,
                        payment_reference=payment_reference,
                        confirmed_at=now,
                    )

        if expired:
            logger.warning(f"Reservation {appointment_id} expired before payment confirmation")
            raise ReservationExpiredError(appointment_id)

        logger.info(f"Confirmed appointment {appointment_id}")
        return appointment

    async def release(self, appointment_id: str, reason: str) -> Appointment:
        """Release a pending reservation; releasing an already released one is a no-op."""
        now = self.clock.now()
        async with self.locks.hold(f"appointment:{appointment_id}"):
            async with self._transaction() as repo:
                appointment = await repo.get_or_raise(appointment_id, for_update=True)
                if appointment.status == AppointmentStatus.CANCELLED.value:
                    return appointment
                if appointment.status != AppointmentStatus.PENDING.value:
                    raise InvalidStateTransitionError(
                        appointment.status, AppointmentStatus.CANCELLED.value
                    )
                return await self._mark_released(repo, appointment, reason, now)

    @staticmethod
    def _hold_lapsed(appointment: Appointment, now: datetime) -> bool:
        return (
            appointment.status == AppointmentStatus.PENDING.value
            and appointment.reservation_expires_at is not None
            and appointment.reservation_expires_at <= now
        )

    async def _mark_released(
        self, repo: AppointmentsRepository, appointment: Appointment, reason: str, now: datetime
    ) -> Appointment:
        logger.info(f"Releasing reservation {appointment.id}: {reason}")
        return await repo.apply(
            appointment,
            status=AppointmentStatus.CANCELLED.value,
            cancelled_at=now,
            cancelled_by=CancelledBy.SYSTEM.value,
            cancel_reason=reason,
        )

    async def cancel(self, appointment_id: str, actor: str, reason: Optional[str] = None) -> Appointment:
        """
        Cancel a pending or confirmed appointment before it starts.

        A confirmed (paid) appointment gets ``refund_status = requested``; the
        caller settles the refund and records its outcome with ``record_refund``.
        """
        if actor not in (CancelledBy.CLIENT.value, CancelledBy.EXPERT.value):
            raise ValidationError("Cancellation actor must be client or expert", errors={"actor": actor})

        now = self.clock.now()
        async with self.locks.hold(f"appointment:{appointment_id}"):
            async with self._transaction() as repo:
                appointment = await repo.get_or_raise(appointment_id, for_update=True)
                if appointment.status not in (
                    AppointmentStatus.PENDING.value,
                    AppointmentStatus.CONFIRMED.value,
                ):
                    raise InvalidStateTransitionError(
                        appointment.status, AppointmentStatus.CANCELLED.value
                    )
                if appointment.scheduled_at <= now:
                    raise InvalidStateTransitionError(
                        appointment.status,
                        AppointmentStatus.CANCELLED.value,
                        details={"reason": "appointment has already started"},
                    )

                was_paid = appointment.status == AppointmentStatus.CONFIRMED.value
                appointment = await repo.apply(
                    appointment,
                    status=AppointmentStatus.CANCELLED.value,
                    cancelled_at=now,
                    cancelled_by=actor,
                    cancel_reason=reason,
                    refund_status=RefundStatus.REQUESTED.value if was_paid else None,
                )

        logger.info(f"Appointment {appointment_id} cancelled by {actor}")
        return appointment

    async def record_refund(
        self, appointment_id: str, refund_status: str, refund_reference: Optional[str] = None
    ) -> Appointment:
        """Store a refund outcome on a cancelled appointment; status never changes here."""
        if refund_status not in {s.value for s in RefundStatus}:
            raise ValidationError("Unknown refund status", errors={"refund_status": refund_status})

        async with self.locks.hold(f"appointment:{appointment_id}"):
            async with self._transaction() as repo:
                appointment = await repo.get_or_raise(appointment_id, for_update=True)
                if appointment.status != AppointmentStatus.CANCELLED.value:
                    raise InvalidStateTransitionError(appointment.status, "refunded")
                return await repo.apply(
                    appointment,
                    refund_status=refund_status,
                    refund_reference=refund_reference or appointment.refund_reference,
                )

    async def mark_no_show(self, appointment_id: str, expert_id: str) -> Appointment:
        """Expert marks a confirmed appointment whose start has passed as a no-show."""
        now = self.clock.now()
        async with self.locks.hold(f"appointment:{appointment_id}"):
            async with self._transaction() as repo:
                appointment = await repo.get_or_raise(appointment_id, for_update=True)
                if appointment.expert_id != expert_id:
                    raise AuthorizationError("Only the booked expert can mark a no-show")
                if appointment.status not in (
                    AppointmentStatus.CONFIRMED.value,
                    AppointmentStatus.COMPLETED.value,
                ):
                    raise InvalidStateTransitionError(
                        appointment.status, AppointmentStatus.NO_SHOW.value
                    )
                if appointment.scheduled_at > now:
                    raise InvalidStateTransitionError(
                        appointment.status,
                        AppointmentStatus.NO_SHOW.value,
                        details={"reason": "appointment has not started yet"},
                    )
                appointment = await repo.apply(appointment, status=AppointmentStatus.NO_SHOW.value)

        logger.info(f"Appointment {appointment_id} marked as no-show by expert {expert_id}")
        return appointment

    async def complete_elapsed(self, now: Optional[datetime] = None) -> List[str]:
        """Move confirmed appointments whose end has passed to completed."""
        now = now or self.clock.now()
        completed = []
        async with self._transaction() as repo:
            for appointment in await repo.find_elapsed_confirmed(now):
                await repo.apply(
                    appointment, status=AppointmentStatus.COMPLETED.value, completed_at=now
                )
                completed.append(appointment.id)
        if completed:
            logger.info(f"Completed {len(completed)} elapsed appointments")
        return completed

    async def release_expired(self, now: Optional[datetime] = None) -> List[Appointment]:
        """Release every pending reservation whose hold has lapsed."""
        now = now or self.clock.now()
        async with self._transaction() as repo:
            expired = await repo.find_expired_pending(now)

        released = []
        for appointment in expired:
            async with self.locks.hold(f"appointment:{appointment.id}"):
                async with self._transaction() as repo:
                    current = await repo.get_by_id(appointment.id, for_update=True)
                    if current is None or not self._hold_lapsed(current, now):
                        continue
                    released.append(
                        await self._mark_released(repo, current, RELEASE_RESERVATION_EXPIRED, now)
                    )
        if released:
            logger.info(f"Released {len(released)} expired reservations")
        return released

    async def get(self, appointment_id: str) -> Appointment:
        async with self._transaction() as repo:
            return await repo.get_or_raise(appointment_id)

    async def list_for_expert(
        self,
        expert_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> List[Appointment]:
        async with self._transaction() as repo:
            return await repo.list_for_expert(expert_id, start, end, statuses)

    async def list_for_client(self, client_id: str) -> List[Appointment]:
        async with self._transaction() as repo:
            return await repo.list_for_client(client_id)
