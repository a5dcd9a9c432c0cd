"""Database engine and session management with SQLAlchemy async.

The engine and session factory are explicit handles: the worker runtime and
the CLI create them once, pass the session factory to the components that
need persistence, and dispose the engine on shutdown.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.asyncio import create_async_engine as _create_async_engine

from ticketing_reliability.core.settings import get_db_settings
from ticketing_reliability.utils.retry import retry

if TYPE_CHECKING:
    from ticketing_reliability.core.settings import DatabaseSettings

logger = logging.getLogger(__name__)


def create_engine(settings: DatabaseSettings | None = None, **engine_kwargs: Any) -> AsyncEngine:
    """Create the async engine for the configured database URL.

    Args:
        settings: Database settings; loaded via get_db_settings() when omitted.
        **engine_kwargs: Extra keyword arguments for create_async_engine().

    Returns:
        Async SQLAlchemy engine.
    """
    settings = settings or get_db_settings()
    kwargs: dict[str, Any] = {
        "echo": settings.echo,
        "pool_pre_ping": settings.pool_pre_ping,
    }
    kwargs.update(engine_kwargs)
    return _create_async_engine(settings.url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory handed to repositories' callers."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def ensure_tables(engine: AsyncEngine) -> None:
    """Create the reliability tables if migrations haven't run yet.

    Safety net for local SQLite runs and ephemeral environments where
    Alembic is not executed. Idempotent thanks to ``checkfirst``.
    """
    from ticketing_reliability.core.database.base import Base

    # Register every mapped table on the metadata before create_all
    import ticketing_reliability.infra.events.inbox.models
    import ticketing_reliability.infra.events.outbox.models
    import ticketing_reliability.infra.tasks.jobs.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)


async def init_database(
    engine: AsyncEngine,
    settings: DatabaseSettings | None = None,
    *,
    create_tables: bool = False,
) -> None:
    """Verify the database is reachable, retrying with exponential backoff.

    Useful during worker startup when the database might not be immediately
    available (e.g., in containerized environments).

    Args:
        engine: Engine to check.
        settings: Database settings providing the retry policy.
        create_tables: Also create missing tables (development/tests).

    Raises:
        RetryError: If unable to connect after all retry attempts.
    """
    settings = settings or get_db_settings()

    @retry(
        max_attempts=settings.startup_retry_attempts,
        initial_delay=settings.startup_retry_delay,
        max_delay=30.0,
        exponential_base=2.0,
        jitter=True,
        stop_after_delay=settings.startup_retry_timeout,
    )
    async def _ping() -> None:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    logger.info(
        "Initializing database connection with retry",
        extra={
            "max_attempts": settings.startup_retry_attempts,
            "initial_delay": settings.startup_retry_delay,
        },
    )

    try:
        await _ping()
        if create_tables:
            await ensure_tables(engine)
    except Exception as e:
        logger.error(
            "Failed to connect to database",
            extra={"url": settings.get_safe_url(), "error": str(e)},
        )
        raise

    logger.info("Database connection established", extra={"url": settings.get_safe_url()})


async def close_database(engine: AsyncEngine) -> None:
    """Dispose the engine and its connection pool.

    This should be called during worker shutdown.
    """
    logger.info("Closing database connection")

    try:
        await engine.dispose()
        logger.info("Database connection closed successfully")
    except Exception as e:
        logger.exception("Error closing database connection", extra={"error": str(e)})


__all__ = [
    "close_database",
    "create_engine",
    "create_session_factory",
    "ensure_tables",
    "init_database",
]
