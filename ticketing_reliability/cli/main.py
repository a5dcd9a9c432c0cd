"""Main CLI entry point for ticketing-reliability management commands."""

import click

from ticketing_reliability.cli.commands import jobs, outbox, worker
from ticketing_reliability.infra.logging.config import setup_logging


@click.group()
@click.version_option(version="0.1.0", prog_name="ticketing-reliability")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Ticketing reliability CLI - outbox and scheduled job operations.

    \b
    Command Groups:
      jobs       Scheduled job management
      outbox     Outbox statistics and maintenance

    \b
    Quick Start:
      ticketing-reliability worker              # Run scheduler and consumers
      ticketing-reliability jobs list           # Show schedule and leases
      ticketing-reliability unlock-jobs         # Clear leases of crashed workers
      ticketing-reliability outbox stats        # Messages per status
    """
    ctx.ensure_object(dict)


cli.add_command(jobs.jobs)
cli.add_command(jobs.unlock_jobs)
cli.add_command(outbox.outbox)
cli.add_command(worker.worker)


def main() -> None:
    """Entry point for CLI."""
    setup_logging()
    cli(obj={})


if __name__ == "__main__":
    main()
