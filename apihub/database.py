"""
Async database engine and session factory.

The engine is created once during application startup (see ``main.lifespan``)
and handed to the registry store; nothing in the package reaches for a global
engine. ``connect_with_retry`` is shared with the Redis client setup.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, TypeVar

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def connect_with_retry(
    name: str,
    connect: Callable[[], Awaitable[T]],
    attempts: int,
    backoff_seconds: float,
) -> T:
    """Run ``connect`` until it succeeds, doubling the delay between attempts."""
    delay = backoff_seconds
    for attempt in range(1, attempts + 1):
        try:
            return await connect()
        except Exception as e:
            if attempt == attempts:
                logger.error(f"Could not connect to {name} after {attempts} attempts: {e}")
                raise
            logger.warning(f"Connecting to {name} failed (attempt {attempt}/{attempts}): {e}; retrying in {delay:.1f}s")
            await asyncio.sleep(delay)
            delay *= 2
    raise ValueError("attempts must be at least 1")


def create_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.LOG_LEVEL.upper() == "DEBUG",
        pool_pre_ping=True,
    )


async def init_database(settings: Settings) -> Tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    engine = create_engine(settings)

    async def ping():
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    try:
        await connect_with_retry(
            "database", ping, settings.STARTUP_CONNECT_ATTEMPTS, settings.STARTUP_BACKOFF_SECONDS
        )
    except Exception:
        await engine.dispose()
        raise

    session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    logger.info("Database connection pool ready.")
    return engine, session_factory
