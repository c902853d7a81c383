"""Async helpers for Celery tasks.

Celery tasks run synchronously, so each task drives its coroutine on a fresh
event loop. Database engines are bound to the loop that created them, which is
why tasks open their own engine through ``worker_session_factory``.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Coroutine

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from expert_booking.database.connection import create_engine
from expert_booking.database.session import build_session_factory

logger = logging.getLogger(__name__)


def run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """
    Run an async coroutine to completion from synchronous code.

    Args:
        coro: The coroutine to run

    Returns:
        The result of the coroutine
    """
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        return loop.run_until_complete(coro)
    finally:
        try:
            loop.run_until_complete(loop.shutdown_asyncgens())
        finally:
            asyncio.set_event_loop(None)
            loop.close()


@asynccontextmanager
async def worker_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Session factory on a task-private engine, disposed when the task ends."""
    engine = create_engine()
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()
        logger.debug("Task database engine disposed")
