"""Process wiring for the worker and the CLI.

Every component is constructed explicitly and handed to the ones that need
it; nothing is module-global. Startup order:

1. Database engine and session factory
2. Broker connection and topology (skipped by DB-only CLI commands)
3. Consumers, wrapped with inbox de-duplication
4. Job registration and the lease-locked scheduler

Shutdown is the reverse of startup.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
import signal
from typing import TYPE_CHECKING

from ticketing_reliability.core.settings import (
    get_outbox_settings,
    get_rabbit_settings,
    get_scheduler_settings,
)
from ticketing_reliability.infra.database import (
    close_database,
    create_engine,
    create_session_factory,
    ensure_tables,
    init_database,
)
from ticketing_reliability.infra.events.inbox import deduplicating
from ticketing_reliability.infra.events.outbox import OutboxPublisher, OutboxSweeper
from ticketing_reliability.infra.messaging import BrokerClient, build_default_topology
from ticketing_reliability.infra.tasks import JobScheduler
from ticketing_reliability.infra.tasks.jobs import JobDescriptor, JobRegistry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Mapping

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from ticketing_reliability.core.settings import OutboxSettings
    from ticketing_reliability.infra.messaging.envelope import MessageEnvelope

    MessageHandler = Callable[[MessageEnvelope], Awaitable[None]]

logger = logging.getLogger(__name__)

OUTBOX_RETRY_SWEEPER_JOB = "outbox-retry-sweeper"
OUTBOX_CLEANUP_JOB = "outbox-cleanup"


def build_job_registry(sweeper: OutboxSweeper, settings: OutboxSettings | None = None) -> JobRegistry:
    """The static job table of this service."""
    settings = settings or get_outbox_settings()
    return JobRegistry(
        [
            JobDescriptor(
                OUTBOX_RETRY_SWEEPER_JOB,
                settings.sweep_schedule,
                sweeper.sweep,
                "Re-publish failed and stale outbox messages",
            ),
            JobDescriptor(
                OUTBOX_CLEANUP_JOB,
                settings.cleanup_schedule,
                sweeper.cleanup,
                "Delete sent outbox messages past the retention period",
            ),
        ]
    )


@dataclass
class Runtime:
    """Components of one process, wired together."""

    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    broker: BrokerClient
    publisher: OutboxPublisher
    sweeper: OutboxSweeper
    registry: JobRegistry
    scheduler: JobScheduler


def build_runtime(*, engine: AsyncEngine | None = None, broker: BrokerClient | None = None) -> Runtime:
    """Construct every component without doing any I/O."""
    engine = engine or create_engine()
    session_factory = create_session_factory(engine)
    broker = broker or BrokerClient(get_rabbit_settings())
    outbox_settings = get_outbox_settings()

    publisher = OutboxPublisher(session_factory, broker, outbox_settings)
    sweeper = OutboxSweeper(session_factory, broker, outbox_settings)
    registry = build_job_registry(sweeper, outbox_settings)
    scheduler = JobScheduler(session_factory, registry, get_scheduler_settings())
    return Runtime(
        engine=engine,
        session_factory=session_factory,
        broker=broker,
        publisher=publisher,
        sweeper=sweeper,
        registry=registry,
        scheduler=scheduler,
    )


@asynccontextmanager
async def runtime_context(
    *,
    connect_broker: bool = True,
    create_tables: bool = False,
) -> AsyncIterator[Runtime]:
    """Start the database (with retry) and optionally the broker."""
    runtime = build_runtime()
    try:
        await init_database(runtime.engine, create_tables=create_tables)
        if connect_broker:
            await runtime.broker.connect()
            await runtime.broker.declare_topology(build_default_topology(runtime.broker.settings))
        yield runtime
    finally:
        if connect_broker:
            await runtime.broker.close()
        await close_database(runtime.engine)


@asynccontextmanager
async def database_context(*, create_tables: bool = False) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Session factory for one-shot commands; connection errors surface on first use."""
    engine = create_engine()
    try:
        if create_tables:
            await ensure_tables(engine)
        yield create_session_factory(engine)
    finally:
        await engine.dispose()


async def run_worker(
    *,
    handlers: Mapping[str, MessageHandler] | None = None,
    create_tables: bool = False,
) -> None:
    """Run consumers and the job scheduler until SIGINT or SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            logger.debug("Signal handlers unavailable", extra={"signal": sig.name})

    async with runtime_context(create_tables=create_tables) as runtime:
        for queue, handler in (handlers or {}).items():
            await runtime.broker.consume(queue, deduplicating(runtime.session_factory, handler))

        scheduler_enabled = get_scheduler_settings().enabled
        if scheduler_enabled:
            await runtime.scheduler.register_jobs()
            runtime.scheduler.start()
        else:
            logger.info("Scheduler disabled, running consumers only")

        logger.info("Worker started", extra={"consumers": sorted(handlers or {})})
        await stop_event.wait()
        logger.info("Shutdown signal received, stopping worker")

        if scheduler_enabled:
            await runtime.scheduler.stop()


__all__ = [
    "OUTBOX_CLEANUP_JOB",
    "OUTBOX_RETRY_SWEEPER_JOB",
    "Runtime",
    "build_job_registry",
    "build_runtime",
    "database_context",
    "run_worker",
    "runtime_context",
]
