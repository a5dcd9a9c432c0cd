"""Outbox inspection and maintenance commands."""

from __future__ import annotations

import json
import sys

import click
from sqlalchemy.exc import SQLAlchemyError

from ticketing_reliability.app.runtime import database_context, runtime_context
from ticketing_reliability.cli.utils import coro, error, header, info, success, warning
from ticketing_reliability.core.exceptions import ReliabilityError
from ticketing_reliability.infra.events.outbox import OutboxRepository, OutboxStatus
from ticketing_reliability.utils.retry import RetryError


@click.group(name="outbox")
def outbox() -> None:
    """Transactional outbox commands."""


@outbox.command(name="stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@coro
async def stats(as_json: bool) -> None:
    """Show the number of outbox messages per status."""
    try:
        async with database_context() as session_factory, session_factory() as session:
            counts = await OutboxRepository().count_by_status(session)
    except (SQLAlchemyError, OSError) as e:
        error(f"Failed to read outbox: {e}")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(counts, indent=2))
        return

    header("Outbox Messages")
    for status in OutboxStatus:
        click.echo(f"  {status.value:<8} {counts[status.value]:>8}")

    if counts[OutboxStatus.DEAD.value]:
        warning(f"{counts[OutboxStatus.DEAD.value]} dead message(s) need manual attention")


@outbox.command(name="sweep")
@coro
async def sweep() -> None:
    """Run one retry sweep now, outside the scheduler."""
    header("Outbox retry sweep")
    try:
        async with runtime_context() as runtime:
            result = await runtime.sweeper.sweep()
    except (SQLAlchemyError, ReliabilityError, RetryError, OSError) as e:
        error(f"Sweep failed: {e}")
        sys.exit(1)

    if not result.retried and not result.dead:
        info("Nothing to retry")
        return
    for key, value in result.as_dict().items():
        click.echo(f"  {key:<8} {value:>6}")
    success("Sweep finished")


@outbox.command(name="cleanup")
@coro
async def cleanup() -> None:
    """Delete sent messages older than the retention period."""
    try:
        async with runtime_context(connect_broker=False) as runtime:
            deleted = await runtime.sweeper.cleanup()
    except (SQLAlchemyError, RetryError, OSError) as e:
        error(f"Cleanup failed: {e}")
        sys.exit(1)
    success(f"Deleted {deleted} sent message(s)")
