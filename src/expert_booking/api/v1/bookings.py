"""Booking endpoints: reservations, payment outcomes, cancellations and no-shows."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from expert_booking.dependencies import get_orchestrator
from expert_booking.models.bookings import (
    AppointmentResponse,
    CancellationRequest,
    CancellationResponse,
    NoShowRequest,
    PaymentCallback,
    ReservationRequest,
    ReservationResponse,
)
from expert_booking.services.booking_orchestrator import BookingOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings"])


@router.post(
    "/bookings",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Reserve a slot",
    description=(
        "Hold the slot for the client and open a payment for it. The hold lapses "
        "if payment does not succeed in time. A 409 response lists the slots that "
        "are currently available in `details.available_slots`."
    ),
)
async def create_booking(
    request: ReservationRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> ReservationResponse:
    return await orchestrator.request_booking(request)


@router.get(
    "/bookings/{appointment_id}",
    response_model=AppointmentResponse,
    summary="Get a booking",
)
async def get_booking(
    appointment_id: str,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> AppointmentResponse:
    appointment = await orchestrator.ledger.get(appointment_id)
    return AppointmentResponse.model_validate(appointment)


@router.post(
    "/bookings/{appointment_id}/payment-callback",
    response_model=AppointmentResponse,
    summary="Apply a payment outcome",
    description=(
        "Record the gateway's outcome for a reservation. Success confirms the booking; "
        "failure releases the slot. Repeated callbacks are no-ops."
    ),
)
async def payment_callback(
    appointment_id: str,
    callback: PaymentCallback,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> AppointmentResponse:
    appointment = await orchestrator.handle_payment_callback(appointment_id, callback)
    return AppointmentResponse.model_validate(appointment)


@router.post(
    "/bookings/{appointment_id}/payment/retry",
    response_model=ReservationResponse,
    summary="Retry opening the payment",
)
async def retry_payment(
    appointment_id: str,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> ReservationResponse:
    """Re-issue the payment for a pending reservation; the gateway reuses the original intent."""
    return await orchestrator.retry_payment(appointment_id)


@router.post(
    "/bookings/{appointment_id}/cancel",
    response_model=CancellationResponse,
    summary="Cancel a booking",
)
async def cancel_booking(
    appointment_id: str,
    request: CancellationRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> CancellationResponse:
    return await orchestrator.cancel(appointment_id, request)


@router.post(
    "/bookings/{appointment_id}/no-show",
    response_model=AppointmentResponse,
    summary="Mark the client as a no-show",
)
async def mark_no_show(
    appointment_id: str,
    request: NoShowRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> AppointmentResponse:
    appointment = await orchestrator.mark_no_show(appointment_id, request.expert_id)
    return AppointmentResponse.model_validate(appointment)


@router.get(
    "/experts/{expert_id}/bookings",
    response_model=List[AppointmentResponse],
    summary="List an expert's bookings",
)
async def list_expert_bookings(
    expert_id: str,
    start: Optional[datetime] = Query(None, description="Only bookings ending after this instant"),
    end: Optional[datetime] = Query(None, description="Only bookings starting before this instant"),
    status_filter: Optional[List[str]] = Query(None, alias="status", description="Statuses to include"),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> List[AppointmentResponse]:
    appointments = await orchestrator.ledger.list_for_expert(expert_id, start, end, status_filter)
    return [AppointmentResponse.model_validate(a) for a in appointments]


@router.get(
    "/clients/{client_id}/bookings",
    response_model=List[AppointmentResponse],
    summary="List a client's bookings",
)
async def list_client_bookings(
    client_id: str,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> List[AppointmentResponse]:
    appointments = await orchestrator.ledger.list_for_client(client_id)
    return [AppointmentResponse.model_validate(a) for a in appointments]
