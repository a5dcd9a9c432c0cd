"""Repository for ScheduledJob rows and their leases.

Claiming and releasing are single conditional UPDATEs (compare-and-set):
- claim succeeds only if the job is unlocked, or its lease is older than the
  lease timeout, and (unless forced) the job is due;
- release succeeds only if the caller still owns the lease with the same
  fencing token.

So at most one worker holds a non-stale lease at any time, and a worker
whose lease was reclaimed cannot clobber the new holder. Methods never
commit; the caller owns the transaction.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any, cast

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ticketing_reliability.core.database.base import utcnow
from ticketing_reliability.core.database.repository import BaseRepository
from ticketing_reliability.infra.tasks.jobs.models import ScheduledJob
from ticketing_reliability.infra.tasks.jobs.schedule import next_run_after

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

MAX_JOB_ERROR_LENGTH = 1000


class JobRepository(BaseRepository[ScheduledJob]):
    def __init__(self) -> None:
        super().__init__(ScheduledJob)

    async def upsert(
        self,
        session: AsyncSession,
        name: str,
        schedule_spec: str | None,
        *,
        now: datetime | None = None,
    ) -> ScheduledJob:
        """Make sure a row exists for a registered job.

        New jobs are due immediately. The row is created with
        INSERT ... ON CONFLICT DO NOTHING, so workers registering the same
        job at the same time do not fail on the primary key. For existing
        jobs the lease columns and run history are left alone; a changed
        schedule is stored and the next run recomputed from it.
        """
        now = now or utcnow()
        if await self._insert_if_missing(session, name, schedule_spec, now):
            self._logger.info("Scheduled job registered", extra={"job": name, "schedule": schedule_spec})
            return await self._load(session, name)

        job = await self._load(session, name)
        if job.schedule_spec != schedule_spec:
            self._logger.info(
                "Schedule changed",
                extra={"job": name, "old_schedule": job.schedule_spec, "new_schedule": schedule_spec},
            )
            job.schedule_spec = schedule_spec
            if schedule_spec is not None:
                job.next_run_at = next_run_after(schedule_spec, now)
            await session.flush()
        elif job.next_run_at is None and schedule_spec is not None:
            job.next_run_at = next_run_after(schedule_spec, now)
            await session.flush()
        return job

    async def _insert_if_missing(
        self,
        session: AsyncSession,
        name: str,
        schedule_spec: str | None,
        now: datetime,
    ) -> bool:
        dialect = session.get_bind().dialect.name
        insert = sqlite_insert if dialect == "sqlite" else pg_insert
        stmt = (
            insert(ScheduledJob)
            .values(
                name=name,
                schedule_spec=schedule_spec,
                next_run_at=now,
                lease_token=0,
                fail_count=0,
                disabled=False,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=[ScheduledJob.name])
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def _load(self, session: AsyncSession, name: str) -> ScheduledJob:
        # Another worker may have written the row since this session last saw it
        job = await session.get(ScheduledJob, name, populate_existing=True)
        return cast("ScheduledJob", job)

    async def list_due(
        self,
        session: AsyncSession,
        names: Iterable[str],
        *,
        now: datetime,
        lease_timeout: timedelta,
    ) -> list[str]:
        """Names of enabled jobs that are due and not held by a live lease."""
        names = list(names)
        if not names:
            return []
        stmt = (
            select(ScheduledJob.name)
            .where(
                ScheduledJob.name.in_(names),
                ScheduledJob.disabled.is_(False),
                ScheduledJob.next_run_at.is_not(None),
                ScheduledJob.next_run_at <= now,
                or_(
                    ScheduledJob.locked_at.is_(None),
                    ScheduledJob.locked_at < now - lease_timeout,
                ),
            )
            .order_by(ScheduledJob.next_run_at.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def try_claim(
        self,
        session: AsyncSession,
        name: str,
        *,
        owner: str,
        now: datetime,
        lease_timeout: timedelta,
        ignore_schedule: bool = False,
    ) -> int | None:
        """Atomically take the lease on a job.

        Args:
            ignore_schedule: Claim even if the job is not due (manual runs).
                A live lease is still respected.

        Returns:
            The new fencing token, or None when another worker holds a live
            lease, the job is not due, disabled or unknown.
        """
        conditions: list[Any] = [
            ScheduledJob.name == name,
            ScheduledJob.disabled.is_(False),
            or_(
                ScheduledJob.locked_at.is_(None),
                ScheduledJob.locked_at < now - lease_timeout,
            ),
        ]
        if not ignore_schedule:
            conditions += [ScheduledJob.next_run_at.is_not(None), ScheduledJob.next_run_at <= now]

        stmt = (
            update(ScheduledJob)
            .where(*conditions)
            .values(
                locked_at=now,
                lock_owner=owner,
                lease_token=ScheduledJob.lease_token + 1,
                last_run_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            return None

        # The row stays locked by our UPDATE until commit
        return await session.scalar(
            select(ScheduledJob.lease_token).where(
                ScheduledJob.name == name,
                ScheduledJob.lock_owner == owner,
            )
        )

    async def release(
        self,
        session: AsyncSession,
        name: str,
        *,
        owner: str,
        token: int,
        succeeded: bool,
        next_run_at: datetime | None,
        error: str | None = None,
        finished_at: datetime | None = None,
    ) -> bool:
        """Release a lease and record the run outcome.

        Returns:
            False when the lease was lost (unlocked or reclaimed since the
            claim); nothing is written in that case.
        """
        finished_at = finished_at or utcnow()
        values: dict[str, Any] = {
            "locked_at": None,
            "lock_owner": None,
            "last_finished_at": finished_at,
            "next_run_at": next_run_at,
            "updated_at": finished_at,
        }
        if succeeded:
            values.update(fail_count=0, last_error=None)
        else:
            values.update(
                fail_count=ScheduledJob.fail_count + 1,
                last_error=(error or "unknown error")[:MAX_JOB_ERROR_LENGTH],
            )

        stmt = (
            update(ScheduledJob)
            .where(
                ScheduledJob.name == name,
                ScheduledJob.lock_owner == owner,
                ScheduledJob.lease_token == token,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def list_jobs(self, session: AsyncSession) -> Sequence[ScheduledJob]:
        stmt = select(ScheduledJob).order_by(ScheduledJob.name.asc())
        result = await session.execute(stmt)
        return result.scalars().all()

    async def list_locked(self, session: AsyncSession, name: str | None = None) -> Sequence[ScheduledJob]:
        """Jobs currently holding a lease, optionally restricted to one name."""
        stmt = select(ScheduledJob).where(ScheduledJob.locked_at.is_not(None))
        if name is not None:
            stmt = stmt.where(ScheduledJob.name == name)
        result = await session.execute(stmt.order_by(ScheduledJob.name.asc()))
        return result.scalars().all()

    async def unlock(
        self,
        session: AsyncSession,
        name: str | None = None,
        *,
        held: Sequence[ScheduledJob] | None = None,
    ) -> int:
        """Force-clear leases (all, or one job's) in a single UPDATE.

        The fencing token is bumped so the evicted holder's eventual release
        is refused. ``last_finished_at`` is not touched: no run finished.

        When ``held`` is given (typically the result of ``list_locked``),
        only those leases are cleared, matched on name and fencing token. A
        lease released or taken over since it was listed is left alone.

        Returns:
            Number of jobs unlocked
        """
        stmt = (
            update(ScheduledJob)
            .where(ScheduledJob.locked_at.is_not(None))
            .values(
                locked_at=None,
                lock_owner=None,
                lease_token=ScheduledJob.lease_token + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if name is not None:
            stmt = stmt.where(ScheduledJob.name == name)
        if held is not None:
            if not held:
                return 0
            stmt = stmt.where(
                or_(
                    *(
                        and_(ScheduledJob.name == job.name, ScheduledJob.lease_token == job.lease_token)
                        for job in held
                    )
                )
            )
        result = await session.execute(stmt)
        return result.rowcount or 0

    async def set_disabled(self, session: AsyncSession, name: str, disabled: bool) -> bool:
        stmt = (
            update(ScheduledJob)
            .where(ScheduledJob.name == name)
            .values(disabled=disabled, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1


__all__ = ["MAX_JOB_ERROR_LENGTH", "JobRepository"]
