"""Pytest configuration and shared fixtures.

Organization:
    - Environment: settings caches and test-safe environment variables
    - Database Fixtures: in-memory SQLite engine, session factory and session
    - Broker Fixtures: publisher doubles and a fake aio-pika connection
    - Settings Fixtures: fast outbox/scheduler settings

When adding new features:
    1. Add fixtures to the appropriate section below
    2. Use @pytest.fixture with clear docstrings
    3. Make fixtures composable (fixtures can depend on other fixtures)
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Iterator
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock

import aiormq
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ticketing_reliability.core.settings import (
    OutboxSettings,
    RabbitSettings,
    SchedulerSettings,
    clear_settings_cache,
)
from ticketing_reliability.infra.database import create_session_factory, ensure_tables

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

# Ensure tests run without external infrastructure
os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RABBIT_HOST", "localhost")
os.environ.setdefault("LOG_JSON_LOGS", "false")


# ============================================================================
# Environment
# ============================================================================


@pytest.fixture(autouse=True)
def _reset_settings() -> Iterator[None]:
    """Drop cached settings so environment changes made by a test apply."""
    clear_settings_cache()
    yield
    clear_settings_cache()


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine]:
    """Create async SQLAlchemy engine with in-memory SQLite and all tables.

    The in-memory database lives on a single shared connection, so sessions
    opened from the same factory see each other's committed writes. Use
    sessions one after another, not concurrently.

    Yields:
        Async SQLAlchemy engine connected to in-memory SQLite.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    await ensure_tables(engine)

    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory configured like the production one."""
    return create_session_factory(db_engine)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Async database session, rolled back after the test.

    Example:
        async def test_create(db_session):
            await OutboxRepository().create_message(db_session, ...)
            await db_session.commit()
    """
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()


# ============================================================================
# Broker Fixtures
# ============================================================================


@pytest.fixture
def confirming_broker() -> AsyncMock:
    """Publisher double whose publishes are always confirmed."""
    broker = AsyncMock()
    broker.publish = AsyncMock(return_value=True)
    return broker


@pytest.fixture
def rabbit_settings() -> RabbitSettings:
    """Broker settings with short timeouts."""
    return RabbitSettings(
        host="rabbit.test",
        publish_timeout=0.5,
        connection_timeout=1.0,
        reconnect_initial_delay=0.01,
        reconnect_max_delay=0.05,
        consumer_max_retries=3,
    )


class FakeAmqp:
    """Fake aio-pika connection with a publish and a consume channel.

    Attributes:
        connection: MagicMock connection returned by ``connect``
        publish_channel: Channel opened with publisher confirms
        consume_channel: Channel used for queues and consumers
        exchange: Exchange returned for every exchange lookup
        connect: AsyncMock to pass as ``connect_factory``
    """

    def __init__(self) -> None:
        self.exchange = MagicMock(name="exchange")
        self.exchange.publish = AsyncMock(return_value=aiormq.spec.Basic.Ack())

        self.queue = MagicMock(name="queue")
        self.queue.bind = AsyncMock()
        self.queue.consume = AsyncMock(return_value="ctag-1")
        self.queue.cancel = AsyncMock()

        self.publish_channel = MagicMock(name="publish_channel")
        self.publish_channel.is_closed = False
        self.publish_channel.declare_exchange = AsyncMock(return_value=self.exchange)
        self.publish_channel.get_exchange = AsyncMock(return_value=self.exchange)
        self.publish_channel.default_exchange = self.exchange

        self.consume_channel = MagicMock(name="consume_channel")
        self.consume_channel.is_closed = False
        self.consume_channel.set_qos = AsyncMock()
        self.consume_channel.declare_queue = AsyncMock(return_value=self.queue)
        self.consume_channel.get_queue = AsyncMock(return_value=self.queue)

        self.connection = self.new_connection()
        self.connect = AsyncMock(side_effect=lambda *args, **kwargs: self.connection)

    def new_connection(self) -> MagicMock:
        connection = MagicMock(name="connection")
        connection.is_closed = False
        connection.close = AsyncMock()
        connection.close_callbacks = MagicMock()
        connection.channel = AsyncMock(side_effect=self._channels())
        return connection

    def _channels(self) -> Iterator[MagicMock]:
        while True:
            yield self.publish_channel
            yield self.consume_channel


@pytest.fixture
def fake_amqp() -> FakeAmqp:
    return FakeAmqp()


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture
def outbox_settings() -> OutboxSettings:
    """Outbox settings with no staleness window."""
    return OutboxSettings(
        max_attempts=3,
        retry_delay_seconds=60,
        retry_max_delay_seconds=3600,
        stale_after_seconds=0,
        sweep_batch_size=100,
    )


@pytest.fixture
def scheduler_settings() -> SchedulerSettings:
    return SchedulerSettings(
        lease_timeout_seconds=600,
        poll_interval_seconds=1,
        worker_id="worker-a",
    )
