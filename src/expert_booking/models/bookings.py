"""Pydantic models for reservations, payment callbacks and cancellations."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ClientInfo(BaseModel):
    """Contact information of the client booking a consultation."""

    name: str = Field(..., min_length=1, max_length=255, description="Client full name")
    email: str = Field(..., min_length=3, max_length=255, description="Client e-mail")
    phone: Optional[str] = Field(None, max_length=50, description="Client phone number")
    client_id: Optional[str] = Field(None, description="Platform user ID, if signed in")


class ReservationRequest(BaseModel):
    """Request model for reserving a slot."""

    expert_id: str = Field(..., description="Expert being booked")
    start_utc: datetime = Field(..., description="Slot start (timezone-aware ISO8601)")
    duration_minutes: int = Field(..., ge=5, le=480, description="Duration in minutes")
    client: ClientInfo = Field(..., description="Client contact info")
    total_amount: int = Field(..., gt=0, description="Price in minor units (cents)")
    display_timezone: str = Field("UTC", description="Timezone the client booked in (IANA)")
    notes: Optional[str] = Field(None, max_length=2000, description="Notes for the expert")

    @field_validator("start_utc")
    @classmethod
    def require_aware(cls, v: datetime) -> datetime:
        """Reject naive timestamps; the caller must say which instant it means."""
        if v.tzinfo is None:
            raise ValueError("start_utc must include a timezone offset")
        return v


class ReservationResponse(BaseModel):
    """A pending reservation awaiting payment."""

    appointment_id: str = Field(..., description="Appointment ID")
    status: str = Field(..., description="Appointment status (pending)")
    scheduled_at: datetime = Field(..., description="Start (UTC)")
    ends_at: datetime = Field(..., description="End (UTC)")
    reservation_expires_at: datetime = Field(..., description="Hold expiry (UTC)")
    payment_reference: str = Field(..., description="Gateway payment intent ID")
    client_secret: Optional[str] = Field(None, description="Secret for client-side payment")
    total_amount: int = Field(..., description="Total in cents")
    platform_fee: int = Field(..., description="Platform share in cents")
    expert_earnings: int = Field(..., description="Expert share in cents")
    currency: str = Field(..., description="ISO currency code")


class PaymentCallback(BaseModel):
    """Outcome reported by the payment gateway for an appointment."""

    payment_reference: str = Field(..., description="Gateway payment intent ID")
    outcome: Literal["succeeded", "failed"] = Field(..., description="Payment outcome")
    failure_reason: Optional[str] = Field(None, description="Gateway message on failure")


class CancellationRequest(BaseModel):
    """Request model for cancelling a booking."""

    actor: Literal["client", "expert"] = Field(..., description="Who is cancelling")
    actor_id: Optional[str] = Field(None, description="ID of the cancelling user")
    reason: Optional[str] = Field(None, max_length=1000, description="Cancellation reason")


class CancellationResponse(BaseModel):
    """Result of a cancellation."""

    appointment_id: str = Field(..., description="Appointment ID")
    status: str = Field(..., description="Appointment status (cancelled)")
    cancelled_at: datetime = Field(..., description="When the cancellation was applied")
    cancelled_by: str = Field(..., description="client, expert or system")
    refund_status: Optional[str] = Field(None, description="requested, succeeded or failed")


class NoShowRequest(BaseModel):
    """Request model for marking a client as a no-show."""

    expert_id: str = Field(..., description="Expert marking the no-show")


class AppointmentResponse(BaseModel):
    """Response model for an appointment."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Appointment ID")
    expert_id: str = Field(..., description="Expert ID")
    client_id: Optional[str] = Field(None, description="Client user ID")
    client_name: str = Field(..., description="Client name")
    client_email: str = Field(..., description="Client e-mail")
    scheduled_at: datetime = Field(..., description="Start (UTC)")
    ends_at: datetime = Field(..., description="End (UTC)")
    scheduled_at_timezone: str = Field(..., description="Display timezone")
    duration_minutes: int = Field(..., description="Duration in minutes")
    status: str = Field(..., description="pending, confirmed, completed, cancelled or no_show")
    total_amount: int = Field(..., description="Total in cents")
    platform_fee: int = Field(..., description="Platform share in cents")
    expert_earnings: int = Field(..., description="Expert share in cents")
    currency: str = Field(..., description="ISO currency code")
    payment_reference: Optional[str] = Field(None, description="Gateway payment intent ID")
    reservation_expires_at: Optional[datetime] = Field(None, description="Hold expiry (UTC)")
    confirmed_at: Optional[datetime] = Field(None, description="Confirmation time")
    cancelled_at: Optional[datetime] = Field(None, description="Cancellation time")
    cancelled_by: Optional[str] = Field(None, description="Who cancelled")
    cancel_reason: Optional[str] = Field(None, description="Why it was cancelled")
    refund_status: Optional[str] = Field(None, description="Refund outcome")
    created_at: datetime = Field(..., description="Created at timestamp")


class PayoutAccountRequest(BaseModel):
    """Stripe Connect account that should receive the expert's earnings."""

    stripe_account_id: str = Field(
        ...,
        pattern=r"^acct_[A-Za-z0-9]+$",
        max_length=255,
        description="Connected account ID (acct_...)",
    )


class PayoutAccountResponse(BaseModel):
    """An expert's registered payout account."""

    model_config = ConfigDict(from_attributes=True)

    expert_id: str
    stripe_account_id: str
    is_active: bool
    created_at: datetime
    updated_at: datetime
