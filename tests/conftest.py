"""Pytest configuration and fixtures."""

from datetime import date, datetime, time, timezone
from typing import List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from expert_booking.config import (
    GoogleCalendarSettings,
    NotificationSettings,
    SchedulingSettings,
    Settings,
    StripeSettings,
)
from expert_booking.database.models import Base
from expert_booking.database.session import build_session_factory, get_session_context
from expert_booking.models.bookings import ClientInfo
from expert_booking.models.scheduling import WindowCreateRequest
from expert_booking.repositories.notifications_repository import ScheduledNotificationRepository
from expert_booking.services.availability_store import AvailabilityStore
from expert_booking.services.booking_ledger import BookingLedger, KeyedLocks
from expert_booking.services.booking_orchestrator import BookingOrchestrator
from expert_booking.services.notification_channels import DeliveryError, NotificationChannel
from expert_booking.services.notification_scheduler import NotificationScheduler
from expert_booking.services.payment_gateway import PaymentGateway, PaymentIntent, RefundResult
from expert_booking.services.payout_accounts import PayoutAccountService
from expert_booking.utils.clock import FixedClock

# Test database URL (in-memory SQLite for unit tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

EXPERT_ID = "expert-1"
# Sunday 2026-03-01 12:00 UTC, the day before the first test Monday
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
# Monday before the US DST switch (EST, UTC-5)
MONDAY = date(2026, 3, 2)
# Monday after the US DST switch on 2026-03-08 (EDT, UTC-4)
MONDAY_AFTER_DST = date(2026, 3, 9)
NINE_AM_NY = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)

PAYOUT_ACCOUNT_ID = "acct_1ExpertPayouts"


class RecordingChannel(NotificationChannel):
    """Channel double that records messages and can be told to fail."""

    def __init__(self, name: str, fail: bool = False):
        self.name = name
        self.fail = fail
        self.sent: List[Tuple[str, Optional[str], str]] = []

    async def send(self, recipient: str, subject: Optional[str], message: str) -> Optional[str]:
        if self.fail:
            raise DeliveryError(self.name, "provider rejected the message")
        self.sent.append((recipient, subject, message))
        return f"msg-{len(self.sent)}"


@pytest.fixture
async def engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def scheduling_settings():
    return SchedulingSettings(
        default_granularity_minutes=30,
        min_lead_minutes=60,
        min_window_minutes=15,
        reservation_timeout_minutes=15,
        max_query_days=62,
        platform_fee_percent=10,
        currency="usd",
    )


@pytest.fixture
def settings(scheduling_settings):
    """Settings built explicitly so the environment cannot leak into tests."""
    return Settings(
        scheduling=scheduling_settings,
        stripe=StripeSettings(
            secret_key="sk_test_123", timeout_seconds=1.0, max_attempts=3, retry_backoff_seconds=0
        ),
        google=GoogleCalendarSettings(client_id="gid", client_secret="gsecret"),
        notifications=NotificationSettings(
            default_reminder_minutes=60, max_attempts=3, retry_backoff_seconds=60
        ),
    )


@pytest.fixture
def ledger(session_factory, scheduling_settings, clock, locks):
    return BookingLedger(session_factory, settings=scheduling_settings, clock=clock, locks=locks)


@pytest.fixture
def gateway():
    """Payment gateway double that hands out one intent per idempotency key."""
    mock = MagicMock(spec=PaymentGateway)

    async def create_intent(
        amount, currency, idempotency_key, application_fee_amount, destination_account, metadata
    ):
        return PaymentIntent(
            reference=f"pi_{idempotency_key[:8]}",
            client_secret=f"pi_{idempotency_key[:8]}_secret",
            amount=amount,
            currency=currency,
            status="requires_payment_method",
        )

    mock.create_intent = AsyncMock(side_effect=create_intent)
    mock.refund = AsyncMock(return_value=RefundResult(reference="re_123", status="succeeded"))
    return mock


@pytest.fixture
def channels():
    return {"email": RecordingChannel("email"), "sms": RecordingChannel("sms")}


@pytest.fixture
def client_info():
    return ClientInfo(
        name="Ada Lovelace",
        email="ada@example.com",
        phone="+15550100",
        client_id="client-1",
    )


async def add_window(
    session_factory,
    expert_id: str = EXPERT_ID,
    day_of_week: int = 1,
    start: time = time(9, 0),
    end: time = time(12, 0),
    tz: str = "America/New_York",
):
    async with get_session_context(session_factory) as session:
        return await AvailabilityStore(session, SchedulingSettings()).add_window(
            expert_id,
            WindowCreateRequest(day_of_week=day_of_week, start_time=start, end_time=end, timezone=tz),
        )


@pytest.fixture
async def monday_window(session_factory):
    """Monday 09:00-12:00 America/New_York for EXPERT_ID."""
    return await add_window(session_factory)


@pytest.fixture
def scheduler(session_factory, settings, clock, channels):
    return NotificationScheduler(
        session_factory, settings=settings.notifications, clock=clock, channels=channels
    )


@pytest.fixture
def orchestrator(session_factory, gateway, scheduler, settings, clock, locks):
    return BookingOrchestrator(
        session_factory, gateway, scheduler=scheduler, settings=settings, clock=clock, locks=locks
    )


async def list_notifications(session_factory, appointment_id: str):
    async with get_session_context(session_factory) as session:
        return await ScheduledNotificationRepository(session).list_for_appointment(appointment_id)


@pytest.fixture
async def payout_account(session_factory):
    """Active Stripe Connect account for EXPERT_ID."""
    async with get_session_context(session_factory) as session:
        return await PayoutAccountService(session).set_account(EXPERT_ID, PAYOUT_ACCOUNT_ID)
