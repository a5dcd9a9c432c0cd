"""ScheduledJob model: schedule and lease state of a registered job.

The lease columns implement a distributed lock:
- ``locked_at`` set means a worker holds (or held, if stale) the lease;
- ``lock_owner`` names that worker;
- ``lease_token`` is a fencing token incremented on every claim and every
  forced unlock, so a worker whose lease was taken over cannot release or
  overwrite the new holder's state.

A lease older than the lease timeout is stale and may be claimed by any
worker.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ticketing_reliability.core.database.base import Base, TimestampMixin, UTCDateTime


class ScheduledJob(Base, TimestampMixin):
    """One row per registered job.

    Attributes:
        name: Unique job name (primary key)
        schedule_spec: Crontab or interval phrase; None for one-off jobs
        next_run_at: When the job is next due; None when nothing is scheduled
        locked_at: Lease acquisition time; None when unlocked
        lock_owner: Worker id holding the lease
        lease_token: Fencing token, bumped on every claim and forced unlock
        last_run_at: When the last run started
        last_finished_at: When the last run finished
        fail_count: Consecutive failures, reset on success
        last_error: Error of the last failed run
        disabled: Registered but paused
    """

    __tablename__ = "scheduled_jobs"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    schedule_spec: Mapped[str | None] = mapped_column(String(100), nullable=True)
    next_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Lease
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    lock_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_token: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Run history
    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    fail_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    disabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        # Due-job scan
        Index("ix_scheduled_jobs_due", "next_run_at", "locked_at"),
    )

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None

    def __repr__(self) -> str:
        lock = f"locked by {self.lock_owner}" if self.is_locked else "unlocked"
        return f"ScheduledJob(name={self.name!r}, next_run_at={self.next_run_at}, {lock})"


__all__ = ["ScheduledJob"]
