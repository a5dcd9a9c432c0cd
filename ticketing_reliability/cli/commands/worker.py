"""Worker process command."""

from __future__ import annotations

import click

from ticketing_reliability.app.runtime import run_worker
from ticketing_reliability.cli.utils import coro


@click.command(name="worker")
@click.option(
    "--create-tables",
    is_flag=True,
    default=False,
    help="Create missing tables before starting (development only; use migrations otherwise)",
)
@coro
async def worker(create_tables: bool) -> None:
    """Run the job scheduler and consumers until interrupted."""
    await run_worker(create_tables=create_tables)
