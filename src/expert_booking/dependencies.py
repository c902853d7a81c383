"""FastAPI dependencies."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from expert_booking.database.session import get_session, get_session_factory
from expert_booking.services.booking_ledger import get_process_locks
from expert_booking.services.booking_orchestrator import BookingOrchestrator
from expert_booking.services.payment_gateway import PaymentGateway, get_payment_gateway
from expert_booking.utils.clock import Clock, SystemClock


def get_clock() -> Clock:
    """Time source for request handlers; tests override it with a fixed clock."""
    return SystemClock()


def get_orchestrator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    clock: Clock = Depends(get_clock),
) -> BookingOrchestrator:
    """Booking orchestrator sharing the process-wide per-expert locks."""
    return BookingOrchestrator(session_factory, gateway, clock=clock, locks=get_process_locks())


__all__ = ["get_session", "get_clock", "get_orchestrator"]
