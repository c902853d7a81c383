"""SQLAlchemy database models."""

import uuid
from datetime import datetime, time, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from expert_booking.database.types import UTCDateTime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class AppointmentStatus(str, Enum):
    """Lifecycle states of an appointment."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


# Statuses that hold capacity on the expert's calendar
OCCUPYING_STATUSES = (AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value)


class CancelledBy(str, Enum):
    """Who moved an appointment to cancelled."""

    CLIENT = "client"
    EXPERT = "expert"
    SYSTEM = "system"


class RefundStatus(str, Enum):
    """Outcome of the refund attached to a cancellation."""

    REQUESTED = "requested"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class NotificationStatus(str, Enum):
    """Delivery state of an outbox notification."""

    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class ExpertAvailability(Base):
    """Recurring weekly availability window in the expert's own timezone."""

    __tablename__ = "expert_availability"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    expert_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # 0=Sunday, 1=Monday, ... 6=Saturday
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        """String representation of ExpertAvailability."""
        return (
            f"<ExpertAvailability(id={self.id}, expert_id={self.expert_id}, "
            f"day={self.day_of_week}, {self.start_time}-{self.end_time} {self.timezone})>"
        )


class BlockedTimeSlot(Base):
    """Explicit exclusion (vacation, break) that overrides availability windows."""

    __tablename__ = "blocked_time_slots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    expert_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    start_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_all_day: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurrence_rule: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Zone used to expand all-day and recurring blocks on local calendar days
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        """String representation of BlockedTimeSlot."""
        return f"<BlockedTimeSlot(id={self.id}, expert_id={self.expert_id}, start={self.start_at})>"


class Appointment(Base):
    """Consultation booking between an expert and a client."""

    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_expert_window", "expert_id", "scheduled_at", "ends_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id, index=True)
    expert_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    client_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_email: Mapped[str] = mapped_column(String(255), nullable=False)
    client_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Stored in UTC; scheduled_at_timezone is only used for display
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    scheduled_at_timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, index=True, default=AppointmentStatus.PENDING.value
    )

    # Amounts in minor units (cents)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    expert_earnings: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    payment_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    payment_client_secret: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reservation_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    refund_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    notifications: Mapped[list["ScheduledNotification"]] = relationship(
        "ScheduledNotification", back_populates="appointment", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        """String representation of Appointment."""
        return (
            f"<Appointment(id={self.id}, expert_id={self.expert_id}, "
            f"scheduled_at={self.scheduled_at}, status={self.status})>"
        )


class CalendarIntegration(Base):
    """External calendar credentials and the cached busy-time overlay."""

    __tablename__ = "calendar_integrations"
    __table_args__ = (UniqueConstraint("expert_id", "provider", name="uq_calendar_expert_provider"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    expert_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="google")

    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    calendar_id: Mapped[str] = mapped_column(String(255), nullable=False, default="primary")
    calendar_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    last_synced_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    sync_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # JSON list of {"start": iso, "end": iso} pairs in UTC
    busy_intervals_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        """String representation of CalendarIntegration."""
        return f"<CalendarIntegration(id={self.id}, expert_id={self.expert_id}, provider={self.provider})>"


class ExpertPayoutAccount(Base):
    """Stripe Connect account that receives an expert's share of each booking."""

    __tablename__ = "expert_payout_accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    expert_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    stripe_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<ExpertPayoutAccount(expert_id={self.expert_id}, stripe_account_id={self.stripe_account_id})>"


class NotificationPreference(Base):
    """Per-user channel toggles and reminder lead time."""

    __tablename__ = "notification_preferences"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)

    email_notifications: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sms_notifications: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    appointment_reminders: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    reminder_time_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    booking_confirmations: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    cancellation_notifications: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    phone_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/New_York")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        """String representation of NotificationPreference."""
        return f"<NotificationPreference(user_id={self.user_id})>"


class ScheduledNotification(Base):
    """Outbox row for a confirmation, cancellation notice or reminder."""

    __tablename__ = "scheduled_notifications"
    __table_args__ = (Index("ix_scheduled_notifications_due", "status", "send_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    appointment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # booking_confirmed, booking_cancelled, reminder
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    # email or sms
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    send_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=NotificationStatus.QUEUED.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    appointment: Mapped["Appointment"] = relationship("Appointment", back_populates="notifications")

    def __repr__(self) -> str:
        """String representation of ScheduledNotification."""
        return (
            f"<ScheduledNotification(id={self.id}, kind={self.kind}, "
            f"channel={self.channel}, status={self.status})>"
        )
