"""Database connection and session management."""

from expert_booking.database.connection import (
    check_connection,
    close_engine,
    create_engine,
    get_engine,
)
from expert_booking.database.models import (
    Appointment,
    AppointmentStatus,
    Base,
    BlockedTimeSlot,
    CalendarIntegration,
    ExpertAvailability,
    NotificationPreference,
    ScheduledNotification,
)
from expert_booking.database.session import (
    build_session_factory,
    close_db,
    get_session,
    get_session_context,
    get_session_factory,
    init_db,
)

__all__ = [
    # Models
    "Base",
    "ExpertAvailability",
    "BlockedTimeSlot",
    "Appointment",
    "AppointmentStatus",
    "CalendarIntegration",
    "NotificationPreference",
    "ScheduledNotification",
    # Connection
    "get_engine",
    "create_engine",
    "close_engine",
    "check_connection",
    # Session
    "build_session_factory",
    "get_session",
    "get_session_context",
    "get_session_factory",
    "init_db",
    "close_db",
]
