"""Booking lifecycle events consumed by the notification scheduler."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class BookingEventType(str, Enum):
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    REMINDER_DUE = "reminder_due"


class BookingEvent(BaseModel):
    """A state transition worth telling the participants about."""

    event_type: BookingEventType = Field(..., description="What happened")
    appointment_id: str = Field(..., description="Appointment the event is about")
    occurred_at: datetime = Field(..., description="When the transition happened (UTC)")
    actor: Optional[str] = Field(None, description="client, expert or system")
