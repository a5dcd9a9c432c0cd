"""Tests for the unlock-jobs, jobs and outbox commands.

Commands run their own event loop, so these tests are synchronous and use a
file-backed SQLite database seeded through a separate engine.
"""

import asyncio
from datetime import UTC, datetime, timedelta
import json

from click.testing import CliRunner
import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine

from ticketing_reliability.cli.main import cli
from ticketing_reliability.core.settings import clear_settings_cache
from ticketing_reliability.infra.database import create_session_factory, ensure_tables
from ticketing_reliability.infra.events.outbox import OutboxMessage, OutboxRepository
from ticketing_reliability.infra.tasks.jobs import JobRepository

FINISHED = datetime(2025, 6, 1, 11, 0, tzinfo=UTC)
CLAIMED = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
LEASE = timedelta(minutes=10)


async def _with_session(url, work):
    engine = create_async_engine(url)
    try:
        await ensure_tables(engine)
        async with create_session_factory(engine)() as session:
            result = await work(session)
            await session.commit()
        return result
    finally:
        await engine.dispose()


def _seed_job(url, name, *, locked):
    """A job that finished once at FINISHED and, if ``locked``, was claimed again at CLAIMED."""
    repo = JobRepository()

    async def work(session):
        await repo.upsert(session, name, "1 hour", now=FINISHED)
        token = await repo.try_claim(session, name, owner="worker-a", now=FINISHED, lease_timeout=LEASE)
        await repo.release(
            session,
            name,
            owner="worker-a",
            token=token,
            succeeded=True,
            next_run_at=CLAIMED,
            finished_at=FINISHED,
        )
        if locked:
            await repo.try_claim(session, name, owner="worker-a", now=CLAIMED, lease_timeout=LEASE)

    asyncio.run(_with_session(url, work))


def _load_job(url, name):
    return asyncio.run(_with_session(url, lambda session: JobRepository().get(session, name)))


@pytest.fixture
def db_url(tmp_path, monkeypatch) -> str:
    url = f"sqlite+aiosqlite:///{tmp_path / 'reliability.db'}"
    monkeypatch.setenv("DB_URL", url)
    clear_settings_cache()
    asyncio.run(_with_session(url, lambda session: asyncio.sleep(0)))
    return url


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.mark.unit
class TestUnlockJobs:
    """Test suite for the unlock-jobs command."""

    def test_nothing_to_unlock(self, runner, db_url):
        """Test that an empty lease table exits successfully."""
        _seed_job(db_url, "outbox-retry-sweeper", locked=False)

        result = runner.invoke(cli, ["unlock-jobs"])

        assert result.exit_code == 0, result.output
        assert "No locked jobs, nothing to unlock" in result.output

    def test_unlock_all(self, runner, db_url):
        """Test that every locked job is unlocked and last_finished_at is kept."""
        _seed_job(db_url, "outbox-retry-sweeper", locked=True)
        _seed_job(db_url, "outbox-cleanup", locked=True)
        _seed_job(db_url, "idle", locked=False)

        result = runner.invoke(cli, ["unlock-jobs"])

        assert result.exit_code == 0, result.output
        assert "Found 2 locked job(s)" in result.output
        assert "worker-a" in result.output
        assert CLAIMED.isoformat(timespec="seconds") in result.output
        assert "Unlocked 2 job(s)" in result.output
        for name in ("outbox-retry-sweeper", "outbox-cleanup"):
            job = _load_job(db_url, name)
            assert job.locked_at is None
            assert job.lock_owner is None
            assert job.last_finished_at == FINISHED

    def test_unlock_by_name(self, runner, db_url):
        """Test that naming a job leaves the other leases alone."""
        _seed_job(db_url, "outbox-retry-sweeper", locked=True)
        _seed_job(db_url, "outbox-cleanup", locked=True)

        result = runner.invoke(cli, ["unlock-jobs", "outbox-cleanup"])

        assert result.exit_code == 0, result.output
        assert "Unlocked 1 job(s)" in result.output
        assert _load_job(db_url, "outbox-cleanup").locked_at is None
        assert _load_job(db_url, "outbox-retry-sweeper").lock_owner == "worker-a"

    def test_named_job_not_locked(self, runner, db_url):
        """Test that a name without a lease is reported, not treated as an error."""
        _seed_job(db_url, "outbox-retry-sweeper", locked=False)

        result = runner.invoke(cli, ["unlock-jobs", "outbox-retry-sweeper"])

        assert result.exit_code == 0, result.output
        assert "No locked job 'outbox-retry-sweeper', nothing to unlock" in result.output

    def test_database_unavailable(self, runner, tmp_path, monkeypatch):
        """Test that a database that cannot be opened exits with status 1."""
        monkeypatch.setenv("DB_URL", f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'reliability.db'}")
        clear_settings_cache()

        result = runner.invoke(cli, ["unlock-jobs"])

        assert result.exit_code == 1
        assert "Failed to unlock jobs" in result.output


@pytest.mark.unit
class TestJobsGroup:
    """Test suite for jobs list/pause/resume."""

    def test_list_json(self, runner, db_url):
        """Test that jobs are listed with their lease state."""
        _seed_job(db_url, "outbox-retry-sweeper", locked=True)

        result = runner.invoke(cli, ["jobs", "list", "--format", "json"])

        assert result.exit_code == 0, result.output
        rows = json.loads(result.output)
        assert rows == [
            {
                "name": "outbox-retry-sweeper",
                "schedule": "1 hour",
                "next_run_at": CLAIMED.isoformat(timespec="seconds"),
                "locked_at": CLAIMED.isoformat(timespec="seconds"),
                "lock_owner": "worker-a",
                "fail_count": 0,
                "disabled": False,
            }
        ]

    def test_list_table(self, runner, db_url):
        """Test the human-readable listing."""
        _seed_job(db_url, "outbox-retry-sweeper", locked=False)

        result = runner.invoke(cli, ["jobs", "list"])

        assert result.exit_code == 0, result.output
        assert "outbox-retry-sweeper" in result.output
        assert "Total: 1 scheduled jobs" in result.output

    def test_pause_and_resume(self, runner, db_url):
        """Test that pausing and resuming toggle the disabled flag."""
        _seed_job(db_url, "outbox-cleanup", locked=False)

        paused = runner.invoke(cli, ["jobs", "pause", "outbox-cleanup"])
        assert paused.exit_code == 0, paused.output
        assert _load_job(db_url, "outbox-cleanup").disabled is True

        resumed = runner.invoke(cli, ["jobs", "resume", "outbox-cleanup"])
        assert resumed.exit_code == 0, resumed.output
        assert _load_job(db_url, "outbox-cleanup").disabled is False

    def test_pause_unknown_job(self, runner, db_url):
        """Test that pausing a job without a row fails."""
        result = runner.invoke(cli, ["jobs", "pause", "missing"])

        assert result.exit_code == 1
        assert "Job 'missing' not found" in result.output


@pytest.mark.unit
class TestOutboxStats:
    """Test suite for outbox stats."""

    def test_stats_json(self, runner, db_url):
        """Test that counts per status are printed as JSON."""

        async def work(session):
            await OutboxRepository().create_message(
                session,
                exchange="event-merchant-exchange",
                routing_key="external.ticket.sales.request",
                message_type="TicketSalesDataRequest",
                payload={},
                correlation_id="corr-1",
                message_id="msg-1",
            )

        asyncio.run(_with_session(db_url, work))

        result = runner.invoke(cli, ["outbox", "stats", "--json"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {"pending": 1, "sent": 0, "failed": 0, "dead": 0}


@pytest.mark.unit
class TestOutboxCleanup:
    """Test suite for outbox cleanup."""

    def test_deletes_old_sent_messages(self, runner, db_url):
        """Test that sent messages past retention are deleted and pending ones kept."""
        repo = OutboxRepository()

        async def work(session):
            for message_id in ("old-sent", "still-pending"):
                await repo.create_message(
                    session,
                    exchange="event-merchant-exchange",
                    routing_key="external.ticket.sales.request",
                    message_type="TicketSalesDataRequest",
                    payload={},
                    correlation_id=f"corr-{message_id}",
                    message_id=message_id,
                )
            await session.execute(
                update(OutboxMessage)
                .where(OutboxMessage.message_id == "old-sent")
                .values(status="sent", sent_at=datetime.now(UTC) - timedelta(days=30))
            )

        asyncio.run(_with_session(db_url, work))

        result = runner.invoke(cli, ["outbox", "cleanup"])

        assert result.exit_code == 0, result.output
        assert "Deleted 1 sent message(s)" in result.output
        counts = asyncio.run(_with_session(db_url, repo.count_by_status))
        assert counts == {"pending": 1, "sent": 0, "failed": 0, "dead": 0}


@pytest.mark.unit
class TestCliEntryPoint:
    """Test suite for the command group."""

    def test_help_lists_commands(self, runner):
        """Test that every command is registered on the group."""
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("unlock-jobs", "jobs", "outbox", "worker"):
            assert command in result.output
