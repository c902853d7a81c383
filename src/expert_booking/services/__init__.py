"""Services package."""

from expert_booking.services.availability_store import AvailabilityStore
from expert_booking.services.booking_ledger import BookingLedger, KeyedLocks, get_process_locks
from expert_booking.services.booking_orchestrator import BookingOrchestrator
from expert_booking.services.calendar_overlay import CalendarOverlay
from expert_booking.services.notification_scheduler import NotificationScheduler
from expert_booking.services.payment_gateway import (
    PaymentGateway,
    StripePaymentGateway,
    get_payment_gateway,
)
from expert_booking.services.slot_resolver import SlotResolver
from expert_booking.services.timezone_service import TimezoneService

__all__ = [
    "AvailabilityStore",
    "BookingLedger",
    "BookingOrchestrator",
    "CalendarOverlay",
    "KeyedLocks",
    "NotificationScheduler",
    "PaymentGateway",
    "SlotResolver",
    "StripePaymentGateway",
    "TimezoneService",
    "get_payment_gateway",
    "get_process_locks",
]
