"""Pydantic request, response and event models."""

from expert_booking.models.bookings import (
    AppointmentResponse,
    CancellationRequest,
    CancellationResponse,
    ClientInfo,
    NoShowRequest,
    PaymentCallback,
    ReservationRequest,
    ReservationResponse,
)
from expert_booking.models.events import BookingEvent, BookingEventType
from expert_booking.models.scheduling import (
    BlockCreateRequest,
    BlockResponse,
    OverlayStatus,
    Slot,
    SlotQueryResult,
    TimezoneOption,
    WindowCreateRequest,
    WindowResponse,
)

__all__ = [
    "AppointmentResponse",
    "BlockCreateRequest",
    "BlockResponse",
    "BookingEvent",
    "BookingEventType",
    "CancellationRequest",
    "CancellationResponse",
    "ClientInfo",
    "NoShowRequest",
    "OverlayStatus",
    "PaymentCallback",
    "ReservationRequest",
    "ReservationResponse",
    "Slot",
    "SlotQueryResult",
    "TimezoneOption",
    "WindowCreateRequest",
    "WindowResponse",
]
