"""SQLAlchemy async session management."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from expert_booking.database.connection import get_engine

logger = logging.getLogger(__name__)

# Global session factory
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to ``engine`` with the project's session defaults."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Don't expire objects after commit
        autoflush=False,  # Don't autoflush (we'll do it explicitly)
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
        logger.info("Session factory created")
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for getting a database session.

    Usage:
        @router.get("/experts/{expert_id}/availability")
        async def list_windows(session: AsyncSession = Depends(get_session)):
            ...
    """
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        except Exception as e:
            await session.rollback()
            logger.error(f"Unexpected error in database session: {e}")
            raise


@asynccontextmanager
async def get_session_context(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for a session that commits on success and rolls back on error.

    Args:
        session_factory: Factory to open the session from; defaults to the global one

    Usage:
        async with get_session_context() as session:
            appointment = await session.get(Appointment, appointment_id)
    """
    factory = session_factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Initialize database connection and verify connectivity."""
    from expert_booking.database.connection import check_connection

    is_connected = await check_connection()
    if is_connected:
        logger.info("Database connection initialized successfully")
    else:
        logger.warning("Database connection check failed")


async def close_db() -> None:
    """Close database connections."""
    try:
        from expert_booking.database.connection import close_engine

        await close_engine()
        logger.info("Database connections closed")
    except Exception as e:
        logger.error(f"Error closing database connections: {e}")

