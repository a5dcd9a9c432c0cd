"""Scheduled job commands.

This module provides CLI commands for the lease-locked job table:
- Clear leases left behind by crashed workers (``unlock-jobs``)
- List jobs with their schedule and lease state
- Trigger a job manually
- Pause/resume jobs
"""

from __future__ import annotations

import json
import sys

import click
from sqlalchemy.exc import SQLAlchemyError

from ticketing_reliability.app.runtime import database_context, runtime_context
from ticketing_reliability.cli.utils import coro, error, format_time, header, info, success, warning
from ticketing_reliability.core.exceptions import JobNotRegisteredError, ReliabilityError
from ticketing_reliability.infra.tasks.jobs import JobRepository, ScheduledJob
from ticketing_reliability.utils.retry import RetryError


def _echo_lease(job: ScheduledJob) -> None:
    click.echo(f"  {click.style(job.name, bold=True)}")
    click.echo(f"    locked_at:        {format_time(job.locked_at)}")
    click.echo(f"    lock_owner:       {job.lock_owner or '-'}")
    click.echo(f"    last_finished_at: {format_time(job.last_finished_at)}")
    click.echo(f"    next_run_at:      {format_time(job.next_run_at)}")


@click.command(name="unlock-jobs")
@click.argument("job_name", required=False)
@coro
async def unlock_jobs(job_name: str | None) -> None:
    """Clear job leases left behind by crashed workers.

    Unlocks JOB_NAME, or every locked job when no name is given. Run it only
    when the lease owners are known to be gone: a worker still executing
    the job loses its lease and its result is not recorded.
    """
    header("Unlock scheduled jobs")
    repository = JobRepository()

    try:
        async with database_context() as session_factory, session_factory() as session:
            locked = await repository.list_locked(session, job_name)
            if not locked:
                target = f"job {job_name!r}" if job_name else "jobs"
                info(f"No locked {target}, nothing to unlock")
                return

            click.echo(f"Found {len(locked)} locked job(s):")
            for job in locked:
                _echo_lease(job)

            unlocked = await repository.unlock(session, job_name, held=locked)
            await session.commit()
    except (SQLAlchemyError, ReliabilityError, OSError) as e:
        error(f"Failed to unlock jobs: {e}")
        sys.exit(1)

    if unlocked < len(locked):
        warning(f"{len(locked) - unlocked} job(s) changed lease holder since listed, left locked")
    success(f"Unlocked {unlocked} job(s)")


@click.group(name="jobs")
def jobs() -> None:
    """Scheduled job management commands."""


@jobs.command(name="list")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@coro
async def list_jobs(output_format: str) -> None:
    """List jobs with their schedule and lease state."""
    try:
        async with database_context() as session_factory, session_factory() as session:
            rows = await JobRepository().list_jobs(session)
    except (SQLAlchemyError, OSError) as e:
        error(f"Failed to list jobs: {e}")
        sys.exit(1)

    if output_format == "json":
        click.echo(
            json.dumps(
                [
                    {
                        "name": job.name,
                        "schedule": job.schedule_spec,
                        "next_run_at": format_time(job.next_run_at),
                        "locked_at": format_time(job.locked_at),
                        "lock_owner": job.lock_owner,
                        "fail_count": job.fail_count,
                        "disabled": job.disabled,
                    }
                    for job in rows
                ],
                indent=2,
            )
        )
        return

    header("Scheduled Jobs")
    if not rows:
        info("No scheduled jobs found")
        return

    name_width = max(len(job.name) for job in rows) + 2
    click.echo(f"{'Name':<{name_width}} {'Schedule':<16} {'Next Run':<27} {'Lease':<30} {'Fails':>5}")
    click.echo("-" * (name_width + 82))
    for job in rows:
        if job.disabled:
            next_display = click.style("paused", fg="yellow")
        else:
            next_display = format_time(job.next_run_at)
        lease = f"{job.lock_owner} @ {format_time(job.locked_at)}" if job.locked_at else "-"
        click.echo(
            f"{job.name:<{name_width}} {job.schedule_spec or 'once':<16} "
            f"{next_display:<27} {lease:<30} {job.fail_count:>5}"
        )
    click.echo()
    success(f"Total: {len(rows)} scheduled jobs")


@jobs.command(name="run")
@click.argument("name")
@coro
async def run_job(name: str) -> None:
    """Run a registered job now, regardless of its schedule."""
    header(f"Running job: {name}")

    try:
        async with runtime_context() as runtime:
            await runtime.scheduler.register_jobs()
            result = await runtime.scheduler.run_job_now(name)
    except JobNotRegisteredError as e:
        error(e.detail)
        sys.exit(1)
    except (SQLAlchemyError, ReliabilityError, RetryError, OSError) as e:
        error(f"Failed to run job: {e}")
        sys.exit(1)

    if result is None:
        warning("Job is locked by another worker, not run")
        sys.exit(1)
    if not result.succeeded:
        error(f"Job failed after {result.duration:.2f}s: {result.error}")
        sys.exit(1)

    success(f"Job completed in {result.duration:.2f}s")
    if result.next_run_at is not None:
        info(f"Next run: {format_time(result.next_run_at)}")


async def _set_disabled(name: str, disabled: bool) -> bool:
    async with database_context() as session_factory, session_factory() as session:
        updated = await JobRepository().set_disabled(session, name, disabled)
        await session.commit()
    return updated


@jobs.command(name="pause")
@click.argument("name")
@coro
async def pause_job(name: str) -> None:
    """Stop scheduling a job until it is resumed."""
    try:
        updated = await _set_disabled(name, True)
    except (SQLAlchemyError, OSError) as e:
        error(f"Failed to pause job: {e}")
        sys.exit(1)
    if not updated:
        error(f"Job {name!r} not found")
        sys.exit(1)
    success(f"Paused job {name}")


@jobs.command(name="resume")
@click.argument("name")
@coro
async def resume_job(name: str) -> None:
    """Resume a paused job."""
    try:
        updated = await _set_disabled(name, False)
    except (SQLAlchemyError, OSError) as e:
        error(f"Failed to resume job: {e}")
        sys.exit(1)
    if not updated:
        error(f"Job {name!r} not found")
        sys.exit(1)
    success(f"Resumed job {name}")
