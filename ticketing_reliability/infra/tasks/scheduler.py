"""Lease-locked job scheduler built on APScheduler.

APScheduler only drives the poll loop: every ``poll_interval_seconds`` the
scheduler asks the database which registered jobs are due and runs each one
it manages to claim. The ``scheduled_jobs`` table is the source of truth for
schedules and leases, so any number of worker processes can run this loop
and every due job still runs on exactly one of them.

Flow per job:
1. ``try_claim`` (conditional UPDATE) and commit; give up if another worker
   holds a live lease.
2. Run the handler. Failures are logged and recorded, never raised.
3. ``release`` with the fencing token, storing the outcome and the next run
   time computed by the job's APScheduler trigger.

Example:
    scheduler = JobScheduler(session_factory, registry)
    await scheduler.register_jobs()
    scheduler.start()
    ...
    await scheduler.stop()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
import logging
import time
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from ticketing_reliability.core.database.base import utcnow
from ticketing_reliability.core.exceptions import LeaseLostError
from ticketing_reliability.core.settings import get_scheduler_settings
from ticketing_reliability.infra.logging import log_context
from ticketing_reliability.infra.metrics.tracking import track_job_run, track_lease_conflict
from ticketing_reliability.infra.tasks.jobs.repository import JobRepository
from ticketing_reliability.infra.tasks.jobs.schedule import next_run_after

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ticketing_reliability.core.settings import SchedulerSettings
    from ticketing_reliability.infra.tasks.jobs.registry import JobDescriptor, JobRegistry

logger = logging.getLogger(__name__)

POLL_JOB_ID = "run-due-jobs"


@dataclass(frozen=True)
class JobRunResult:
    """Outcome of one claimed run."""

    name: str
    token: int
    succeeded: bool
    duration: float
    error: str | None = None
    next_run_at: datetime | None = None
    lease_lost: bool = False


class JobScheduler:
    """Runs registered jobs under database leases."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: JobRegistry,
        settings: SchedulerSettings | None = None,
        *,
        repository: JobRepository | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._settings = settings or get_scheduler_settings()
        self._repository = repository or JobRepository()
        self._clock = clock
        self._scheduler: AsyncIOScheduler | None = None
        self._tick_task: asyncio.Task[Any] | None = None

    @property
    def worker_id(self) -> str:
        return self._settings.worker_id

    @property
    def lease_timeout(self) -> timedelta:
        return timedelta(seconds=self._settings.lease_timeout_seconds)

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def register_jobs(self, descriptors: Iterable[JobDescriptor] = ()) -> None:
        """Add ``descriptors`` to the registry, then upsert a row per registered job.

        Lease state of existing rows is preserved.
        """
        for descriptor in descriptors:
            self._registry.register(descriptor)

        now = self._clock()
        async with self._session_factory() as session:
            for descriptor in self._registry:
                await self._repository.upsert(session, descriptor.name, descriptor.schedule_spec, now=now)
            await session.commit()
        logger.info("Scheduled jobs registered", extra={"jobs": self._registry.names()})

    async def run_due_jobs(self) -> list[JobRunResult]:
        """Claim and run every due job this worker can get a lease on."""
        now = self._clock()
        async with self._session_factory() as session:
            due = await self._repository.list_due(
                session,
                self._registry.names(),
                now=now,
                lease_timeout=self.lease_timeout,
            )

        results = []
        for name in due:
            result = await self._run(self._registry.get(name), ignore_schedule=False)
            if result is not None:
                results.append(result)
        return results

    async def run_job_now(self, name: str) -> JobRunResult | None:
        """Run a job immediately, regardless of its schedule.

        A live lease held by another worker is still respected.

        Returns:
            The run outcome, or None when the lease could not be claimed.

        Raises:
            JobNotRegisteredError: If no job with that name is registered.
        """
        descriptor = self._registry.get(name)
        return await self._run(descriptor, ignore_schedule=True)

    async def _run(self, descriptor: JobDescriptor, *, ignore_schedule: bool) -> JobRunResult | None:
        name = descriptor.name
        claimed_at = self._clock()
        async with self._session_factory() as session:
            token = await self._repository.try_claim(
                session,
                name,
                owner=self.worker_id,
                now=claimed_at,
                lease_timeout=self.lease_timeout,
                ignore_schedule=ignore_schedule,
            )
            await session.commit()

        if token is None:
            track_lease_conflict(name, "claim")
            logger.debug("Job lease not acquired", extra={"job": name, "worker_id": self.worker_id})
            return None

        with log_context(job=name, lease_token=token):
            logger.info("Job started", extra={"job": name})
            start = time.perf_counter()
            error: str | None = None
            try:
                await descriptor.handler()
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.exception("Job failed", extra={"job": name})
            duration = time.perf_counter() - start

            finished_at = self._clock()
            next_run_at = next_run_after(descriptor.schedule_spec, finished_at)
            lease_lost = False
            try:
                await self._release(
                    name,
                    token,
                    succeeded=error is None,
                    error=error,
                    next_run_at=next_run_at,
                    finished_at=finished_at,
                )
            except LeaseLostError as e:
                lease_lost = True
                track_lease_conflict(name, "release")
                logger.warning(e.detail, extra={"job": name})

            outcome = "success" if error is None else "failure"
            track_job_run(name, outcome, duration)
            logger.info(
                "Job finished",
                extra={
                    "job": name,
                    "outcome": outcome,
                    "duration_seconds": round(duration, 3),
                    "next_run_at": next_run_at.isoformat() if next_run_at else None,
                },
            )

        return JobRunResult(
            name=name,
            token=token,
            succeeded=error is None,
            duration=duration,
            error=error,
            next_run_at=next_run_at,
            lease_lost=lease_lost,
        )

    async def _release(
        self,
        name: str,
        token: int,
        *,
        succeeded: bool,
        error: str | None,
        next_run_at: datetime | None,
        finished_at: datetime,
    ) -> None:
        async with self._session_factory() as session:
            released = await self._repository.release(
                session,
                name,
                owner=self.worker_id,
                token=token,
                succeeded=succeeded,
                error=error,
                next_run_at=next_run_at,
                finished_at=finished_at,
            )
            await session.commit()
        if not released:
            raise LeaseLostError(name, self.worker_id, token)

    async def _tick(self) -> None:
        self._tick_task = asyncio.current_task()
        try:
            await self.run_due_jobs()
        except Exception:
            # Keep polling; the next tick retries
            logger.exception("Scheduler tick failed")
        finally:
            self._tick_task = None

    def start(self) -> None:
        """Start polling for due jobs on the running event loop."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
        )
        self._scheduler.add_job(
            self._tick,
            IntervalTrigger(seconds=self._settings.poll_interval_seconds, timezone="UTC"),
            id=POLL_JOB_ID,
            name="Run due scheduled jobs",
            next_run_time=self._clock(),
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "Scheduler started",
            extra={
                "worker_id": self.worker_id,
                "poll_interval_seconds": self._settings.poll_interval_seconds,
                "jobs": self._registry.names(),
            },
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop polling and wait for an in-flight tick to finish."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None

        task = self._tick_task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except TimeoutError:
                logger.warning("In-flight jobs did not finish in time, cancelling")
                task.cancel()
        logger.info("Scheduler stopped")

    async def get_job_status(self) -> list[dict[str, Any]]:
        """Schedule and lease state of every registered job."""
        async with self._session_factory() as session:
            jobs = await self._repository.list_jobs(session)

        return [
            {
                "name": job.name,
                "schedule": job.schedule_spec,
                "next_run_at": job.next_run_at.isoformat() if job.next_run_at else None,
                "locked_at": job.locked_at.isoformat() if job.locked_at else None,
                "lock_owner": job.lock_owner,
                "last_finished_at": job.last_finished_at.isoformat() if job.last_finished_at else None,
                "fail_count": job.fail_count,
                "last_error": job.last_error,
                "disabled": job.disabled,
                "registered": job.name in self._registry,
            }
            for job in jobs
        ]


__all__ = ["POLL_JOB_ID", "JobRunResult", "JobScheduler"]
