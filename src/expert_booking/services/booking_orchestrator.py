"""Booking orchestrator: reservation, payment and cancellation saga.

    Requesting -> Reserved (pending) -> AwaitingPayment -> Confirmed
                                                        -> PaymentFailed -> Released
    Confirmed -> Completed | Cancelled | NoShow

The orchestrator is the only caller that drives ledger transitions. Gateway
failures are translated here into booking errors that tell the client what to
do next, and a reservation is never left pending because of a failed charge.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from expert_booking.config import Settings, get_settings
from expert_booking.database.models import Appointment, AppointmentStatus, RefundStatus
from expert_booking.database.session import get_session_context
from expert_booking.exceptions import (
    AuthorizationError,
    GatewayUnavailableError,
    InvalidStateTransitionError,
    PaymentFailedError,
    PaymentTimeoutError,
    PayoutAccountRequiredError,
    ReservationExpiredError,
    SlotConflictError,
    ValidationError,
)
from expert_booking.models.bookings import (
    CancellationRequest,
    CancellationResponse,
    PaymentCallback,
    ReservationRequest,
    ReservationResponse,
)
from expert_booking.models.events import BookingEvent, BookingEventType
from expert_booking.models.scheduling import SlotQueryResult
from expert_booking.repositories.payout_account_repository import PayoutAccountRepository
from expert_booking.services.booking_ledger import (
    RELEASE_GATEWAY_UNAVAILABLE,
    RELEASE_PAYMENT_FAILED,
    RELEASE_PAYMENT_TIMEOUT,
    RELEASE_RESERVATION_EXPIRED,
    BookingLedger,
    KeyedLocks,
)
from expert_booking.services.notification_scheduler import NotificationScheduler
from expert_booking.services.payment_gateway import PaymentGateway, PaymentIntent
from expert_booking.services.slot_resolver import SlotResolver
from expert_booking.utils.clock import Clock, SystemClock
from expert_booking.utils.logging import log_error

logger = logging.getLogger(__name__)


class BookingOrchestrator:
    """Coordinates the ledger, the payment gateway and notifications."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        scheduler: Optional[NotificationScheduler] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.ledger = BookingLedger(
            session_factory, settings=self.settings.scheduling, clock=self.clock, locks=locks
        )
        self.scheduler = scheduler or NotificationScheduler(
            session_factory, settings=self.settings.notifications, clock=self.clock
        )

    async def _current_slots(
        self, expert_id: str, start_utc: datetime, duration_minutes: int, timezone_name: str
    ) -> SlotQueryResult:
        async with get_session_context(self.session_factory) as session:
            resolver = SlotResolver(session, settings=self.settings.scheduling, clock=self.clock)
            return await resolver.slots_near(expert_id, start_utc, duration_minutes, timezone_name)

    async def _is_bookable(self, request: ReservationRequest) -> bool:
        async with get_session_context(self.session_factory) as session:
            resolver = SlotResolver(session, settings=self.settings.scheduling, clock=self.clock)
            return await resolver.is_bookable(
                request.expert_id, request.start_utc, request.duration_minutes
            )

    async def _payout_destination(self, expert_id: str) -> str:
        """Connect account that receives the expert share of a charge."""
        async with get_session_context(self.session_factory) as session:
            account = await PayoutAccountRepository(session).get_active_for_expert(expert_id)
        if account is None:
            raise PayoutAccountRequiredError(expert_id)
        return account.stripe_account_id

    @staticmethod
    def _slots_payload(result: SlotQueryResult) -> List[dict]:
        return [slot.model_dump(mode="json") for slot in result.slots]

    async def request_booking(self, request: ReservationRequest) -> ReservationResponse:
        """
        Reserve a slot and open a payment for it.

        Args:
            request: Expert, start, duration, client details and price

        Returns:
            ReservationResponse with the pending appointment and payment secret

        Raises:
            PayoutAccountRequiredError: The expert cannot receive payments yet; nothing is reserved
            SlotConflictError: Slot not offered or taken; ``details.available_slots`` lists current slots
            PaymentTimeoutError: Gateway timed out; the reservation was released
            GatewayUnavailableError: Gateway unreachable after retries; the reservation was released
            PaymentFailedError: Gateway refused the charge; the reservation was released
        """
        destination = await self._payout_destination(request.expert_id)

        if not await self._is_bookable(request):
            slots = await self._current_slots(
                request.expert_id,
                request.start_utc,
                request.duration_minutes,
                request.display_timezone,
            )
            raise SlotConflictError(
                "The selected time is not available",
                details={"available_slots": self._slots_payload(slots)},
            )

        try:
            appointment = await self.ledger.reserve(
                expert_id=request.expert_id,
                start_utc=request.start_utc,
                duration_minutes=request.duration_minutes,
                client=request.client,
                total_amount=request.total_amount,
                display_timezone=request.display_timezone,
                notes=request.notes,
            )
        except SlotConflictError as e:
            refreshed = await self._current_slots(
                request.expert_id,
                request.start_utc,
                request.duration_minutes,
                request.display_timezone,
            )
            e.details["available_slots"] = self._slots_payload(refreshed)
            raise

        try:
            intent = await self._create_intent(appointment, destination)
        except PaymentTimeoutError:
            await self.ledger.release(appointment.id, RELEASE_PAYMENT_TIMEOUT)
            raise
        except GatewayUnavailableError:
            await self.ledger.release(appointment.id, RELEASE_GATEWAY_UNAVAILABLE)
            raise
        except PaymentFailedError:
            await self.ledger.release(appointment.id, RELEASE_PAYMENT_FAILED)
            raise

        appointment = await self.ledger.attach_payment(
            appointment.id, intent.reference, intent.client_secret
        )
        return self._reservation_response(appointment, intent)

    async def _create_intent(self, appointment: Appointment, destination: str) -> PaymentIntent:
        """Create the payment intent, retrying while the gateway reports itself unavailable."""
        stripe_settings = self.settings.stripe
        async for attempt in AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(stripe_settings.max_attempts),
            wait=wait_exponential(multiplier=stripe_settings.retry_backoff_seconds, max=10),
            retry=retry_if_exception_type(GatewayUnavailableError),
        ):
            with attempt:
                return await self.gateway.create_intent(
                    amount=appointment.total_amount,
                    currency=appointment.currency,
                    # The appointment id makes every retry the same charge
                    idempotency_key=appointment.id,
                    application_fee_amount=appointment.platform_fee,
                    destination_account=destination,
                    metadata={
                        "appointment_id": appointment.id,
                        "expert_id": appointment.expert_id,
                        "client_email": appointment.client_email,
                    },
                )
        raise GatewayUnavailableError("Payment gateway retries exhausted")

    @staticmethod
    def _reservation_response(appointment: Appointment, intent: PaymentIntent) -> ReservationResponse:
        return ReservationResponse(
            appointment_id=appointment.id,
            status=appointment.status,
            scheduled_at=appointment.scheduled_at,
            ends_at=appointment.ends_at,
            reservation_expires_at=appointment.reservation_expires_at,
            payment_reference=intent.reference,
            client_secret=intent.client_secret,
            total_amount=appointment.total_amount,
            platform_fee=appointment.platform_fee,
            expert_earnings=appointment.expert_earnings,
            currency=appointment.currency,
        )

    async def retry_payment(self, appointment_id: str) -> ReservationResponse:
        """
        Re-issue the payment intent of a pending reservation.

        The same idempotency key is used, so the gateway hands back the
        original intent instead of creating a second charge. A failure here
        leaves the reservation to its normal expiry.
        """
        appointment = await self.ledger.get(appointment_id)
        if appointment.status != AppointmentStatus.PENDING.value:
            if appointment.cancel_reason == RELEASE_RESERVATION_EXPIRED:
                raise ReservationExpiredError(appointment_id)
            raise InvalidStateTransitionError(appointment.status, "awaiting_payment")
        if (
            appointment.reservation_expires_at is not None
            and appointment.reservation_expires_at <= self.clock.now()
        ):
            await self.ledger.release(appointment_id, RELEASE_RESERVATION_EXPIRED)
            raise ReservationExpiredError(appointment_id)

        destination = await self._payout_destination(appointment.expert_id)
        intent = await self._create_intent(appointment, destination)
        appointment = await self.ledger.attach_payment(
            appointment_id, intent.reference, intent.client_secret
        )
        return self._reservation_response(appointment, intent)

    async def handle_payment_callback(
        self, appointment_id: str, callback: PaymentCallback
    ) -> Appointment:
        """
        Apply the gateway's outcome to a reservation.

        Repeated callbacks with the same outcome are no-ops. A success that
        arrives for a reservation that is no longer pending is refunded, so a
        charge never exists without a confirmed booking.

        Raises:
            ValidationError: The payment reference belongs to another reservation
            ReservationExpiredError: Payment arrived after the hold lapsed (refund issued)
        """
        appointment = await self.ledger.get(appointment_id)
        if appointment.payment_reference and appointment.payment_reference != callback.payment_reference:
            raise ValidationError(
                "Payment reference does not match this reservation",
                errors={"payment_reference": "mismatch"},
            )

        if callback.outcome == "failed":
            if appointment.status == AppointmentStatus.CANCELLED.value:
                return appointment
            logger.info(
                f"Payment failed for appointment {appointment_id}: {callback.failure_reason}"
            )
            return await self.ledger.release(appointment_id, RELEASE_PAYMENT_FAILED)

        was_confirmed = appointment.status == AppointmentStatus.CONFIRMED.value
        try:
            confirmed = await self.ledger.confirm(appointment_id, callback.payment_reference)
        except ReservationExpiredError:
            await self._refund(appointment_id, callback.payment_reference)
            raise
        except InvalidStateTransitionError:
            current = await self.ledger.get(appointment_id)
            if current.status == AppointmentStatus.CANCELLED.value:
                logger.warning(
                    f"Payment succeeded for cancelled appointment {appointment_id}; refunding"
                )
                await self._refund(appointment_id, callback.payment_reference)
            raise

        if not was_confirmed:
            await self._emit(BookingEventType.BOOKING_CONFIRMED, appointment_id, actor="system")
        return confirmed

    async def _refund(self, appointment_id: str, payment_reference: str) -> Appointment:
        """Refund a charge and record the outcome; a failed refund is logged, never raised."""
        try:
            refund = await self.gateway.refund(
                payment_reference, idempotency_key=f"refund:{appointment_id}"
            )
        except (PaymentTimeoutError, GatewayUnavailableError, PaymentFailedError) as e:
            log_error(e, {"appointment_id": appointment_id, "operation": "refund"})
            return await self.ledger.record_refund(appointment_id, RefundStatus.FAILED.value)

        status = RefundStatus.SUCCEEDED.value if refund.succeeded else RefundStatus.FAILED.value
        return await self.ledger.record_refund(appointment_id, status, refund.reference)

    async def cancel(self, appointment_id: str, request: CancellationRequest) -> CancellationResponse:
        """
        Cancel an appointment before it starts.

        The cancellation is applied first; the refund outcome is recorded on
        the appointment afterwards and never reopens it.
        """
        appointment = await self.ledger.get(appointment_id)
        if request.actor_id:
            owner = appointment.expert_id if request.actor == "expert" else appointment.client_id
            if owner is not None and owner != request.actor_id:
                raise AuthorizationError(f"Only the booked {request.actor} can cancel this appointment")

        cancelled = await self.ledger.cancel(appointment_id, request.actor, request.reason)
        if cancelled.refund_status == RefundStatus.REQUESTED.value and cancelled.payment_reference:
            cancelled = await self._refund(appointment_id, cancelled.payment_reference)

        await self._emit(BookingEventType.BOOKING_CANCELLED, appointment_id, actor=request.actor)
        return CancellationResponse(
            appointment_id=cancelled.id,
            status=cancelled.status,
            cancelled_at=cancelled.cancelled_at,
            cancelled_by=cancelled.cancelled_by,
            refund_status=cancelled.refund_status,
        )

    async def mark_no_show(self, appointment_id: str, expert_id: str) -> Appointment:
        return await self.ledger.mark_no_show(appointment_id, expert_id)

    async def complete_elapsed(self) -> List[str]:
        return await self.ledger.complete_elapsed()

    async def expire_reservations(self) -> List[str]:
        """Release lapsed holds so their slots become bookable again."""
        released = await self.ledger.release_expired()
        return [appointment.id for appointment in released]

    async def _emit(self, event_type: BookingEventType, appointment_id: str, actor: str) -> None:
        """Hand an event to the scheduler; a notification problem never undoes a booking."""
        event = BookingEvent(
            event_type=event_type,
            appointment_id=appointment_id,
            occurred_at=self.clock.now(),
            actor=actor,
        )
        try:
            await self.scheduler.handle_event(event)
        except Exception as e:
            log_error(e, {"appointment_id": appointment_id, "event": event_type.value})
