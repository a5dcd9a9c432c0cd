"""Unit tests for OutboxRepository status transitions and queries."""
from __future__ import annotations

from datetime import timedelta
import uuid

import pytest

from ticketing_reliability.core.database.base import utcnow
from ticketing_reliability.infra.events.outbox import OutboxRepository, OutboxStatus
from ticketing_reliability.infra.events.outbox.repository import MAX_ERROR_LENGTH, compute_backoff
from ticketing_reliability.infra.metrics.prometheus import REGISTRY


async def _create(session, **overrides):
    fields = {
        "exchange": "event-merchant-exchange",
        "routing_key": "ticket.sales",
        "message_type": "TicketSalesDataRequest",
        "payload": {"eventId": "e1", "merchantId": "m1"},
        "correlation_id": str(uuid.uuid4()),
        "message_id": str(uuid.uuid4()),
    }
    fields.update(overrides)
    message = await OutboxRepository().create_message(session, **fields)
    await session.commit()
    return message


async def _reload(session_factory, message_id):
    async with session_factory() as session:
        return await OutboxRepository().get_by_message_id(session, message_id)


@pytest.mark.unit
class TestComputeBackoff:
    """Test suite for exponential backoff between publish attempts."""

    def test_backoff_doubles_per_attempt(self):
        """Test that each earlier failure doubles the delay."""
        delays = [
            compute_backoff(n, base_delay_seconds=60, max_delay_seconds=3600).total_seconds()
            for n in range(4)
        ]
        assert delays == [60, 120, 240, 480]

    def test_backoff_is_capped(self):
        """Test that the delay never exceeds the maximum."""
        delay = compute_backoff(10, base_delay_seconds=60, max_delay_seconds=3600)
        assert delay == timedelta(hours=1)


@pytest.mark.unit
class TestOutboxTransitions:
    """Test suite for conditional status transitions."""

    @pytest.mark.asyncio
    async def test_create_message_is_pending(self, session_factory):
        """Test that a new message starts pending with no attempts."""
        async with session_factory() as session:
            message = await _create(session)

        stored = await _reload(session_factory, message.message_id)
        assert stored.status == OutboxStatus.PENDING.value
        assert stored.attempts == 0
        assert stored.sent_at is None
        assert stored.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_mark_sent_happens_once(self, session_factory):
        """Test that pending moves to sent exactly once, with sent_at set."""
        async with session_factory() as session:
            message = await _create(session)

        before = REGISTRY.get_sample_value("outbox_messages_total", {"status": "sent"}) or 0.0
        repo = OutboxRepository()
        async with session_factory() as session:
            assert await repo.mark_sent(session, message.message_id) is True
            await session.commit()
        async with session_factory() as session:
            assert await repo.mark_sent(session, message.message_id) is False
            await session.commit()

        stored = await _reload(session_factory, message.message_id)
        assert stored.status == OutboxStatus.SENT.value
        assert stored.sent_at is not None
        assert REGISTRY.get_sample_value("outbox_messages_total", {"status": "sent"}) == before + 1

    @pytest.mark.asyncio
    async def test_mark_failed_increments_attempts(self, session_factory):
        """Test that a failure records the error and schedules a retry."""
        async with session_factory() as session:
            message = await _create(session)

        start = utcnow()
        async with session_factory() as session:
            assert await OutboxRepository().mark_failed(session, message.message_id, "Publish failed")
            await session.commit()

        stored = await _reload(session_factory, message.message_id)
        assert stored.status == OutboxStatus.FAILED.value
        assert stored.attempts == 1
        assert stored.error == "Publish failed"
        assert stored.last_attempt_at >= start
        assert stored.next_retry_at - stored.last_attempt_at == timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_second_failure_doubles_delay(self, session_factory):
        """Test that the retry delay grows with the attempt count."""
        async with session_factory() as session:
            message = await _create(session)

        repo = OutboxRepository()
        for _ in range(2):
            async with session_factory() as session:
                await repo.mark_failed(session, message.message_id, "boom", retry_delay_seconds=10)
                await session.commit()

        stored = await _reload(session_factory, message.message_id)
        assert stored.attempts == 2
        assert stored.next_retry_at - stored.last_attempt_at == timedelta(seconds=20)

    @pytest.mark.asyncio
    async def test_error_is_truncated(self, session_factory):
        """Test that long error messages are cut to the column budget."""
        async with session_factory() as session:
            message = await _create(session)

        async with session_factory() as session:
            await OutboxRepository().mark_failed(session, message.message_id, "x" * 5000)
            await session.commit()

        stored = await _reload(session_factory, message.message_id)
        assert len(stored.error) == MAX_ERROR_LENGTH

    @pytest.mark.asyncio
    async def test_terminal_states_never_move(self, session_factory):
        """Test that sent and dead messages reject further transitions."""
        repo = OutboxRepository()
        async with session_factory() as session:
            sent = await _create(session)
            dead = await _create(session)
        async with session_factory() as session:
            await repo.mark_sent(session, sent.message_id)
            await repo.mark_dead(session, dead.message_id, "gave up")
            await session.commit()

        async with session_factory() as session:
            assert await repo.mark_failed(session, sent.message_id, "late") is False
            assert await repo.mark_dead(session, sent.message_id) is False
            assert await repo.mark_sent(session, dead.message_id) is False
            await session.commit()

        assert (await _reload(session_factory, sent.message_id)).status == "sent"
        stored_dead = await _reload(session_factory, dead.message_id)
        assert stored_dead.status == "dead"
        assert stored_dead.error == "gave up"
        assert stored_dead.is_terminal

    @pytest.mark.asyncio
    async def test_unknown_message_transitions_return_false(self, session_factory):
        """Test that transitions on missing rows are no-ops."""
        repo = OutboxRepository()
        async with session_factory() as session:
            assert await repo.mark_sent(session, "missing") is False
            assert await repo.mark_failed(session, "missing", "err") is False
            assert await repo.mark_dead(session, "missing") is False


@pytest.mark.unit
class TestOutboxQueries:
    """Test suite for sweeper queries, stats and cleanup."""

    @pytest.mark.asyncio
    async def test_retry_candidates(self, session_factory):
        """Test that stale pending and due failed messages are selected, oldest first."""
        repo = OutboxRepository()
        async with session_factory() as session:
            stale_pending = await _create(session)
            failed_due = await _create(session)
            failed_later = await _create(session)
            exhausted = await _create(session)
            sent = await _create(session)

        async with session_factory() as session:
            await repo.mark_failed(session, failed_due.message_id, "err", retry_delay_seconds=1)
            await repo.mark_failed(session, failed_later.message_id, "err", retry_delay_seconds=3600)
            for _ in range(3):
                await repo.mark_failed(session, exhausted.message_id, "err", retry_delay_seconds=1)
            await repo.mark_sent(session, sent.message_id)
            await session.commit()

        future = utcnow() + timedelta(minutes=5)
        async with session_factory() as session:
            candidates = await repo.get_retry_candidates(
                session,
                older_than=future,
                max_attempts=3,
                now=future,
            )

        assert [m.message_id for m in candidates] == [stale_pending.message_id, failed_due.message_id]

    @pytest.mark.asyncio
    async def test_fresh_pending_is_not_a_candidate(self, session_factory):
        """Test that pending messages younger than the stale window are left alone."""
        async with session_factory() as session:
            await _create(session)

        async with session_factory() as session:
            candidates = await OutboxRepository().get_retry_candidates(
                session,
                older_than=utcnow() - timedelta(minutes=1),
                max_attempts=3,
            )
        assert candidates == []

    @pytest.mark.asyncio
    async def test_get_exhausted(self, session_factory):
        """Test that open messages at the attempt budget are reported."""
        repo = OutboxRepository()
        async with session_factory() as session:
            exhausted = await _create(session)
            await _create(session)
        async with session_factory() as session:
            for _ in range(3):
                await repo.mark_failed(session, exhausted.message_id, "err")
            await session.commit()

        async with session_factory() as session:
            rows = await repo.get_exhausted(session, max_attempts=3)
        assert [m.message_id for m in rows] == [exhausted.message_id]

    @pytest.mark.asyncio
    async def test_count_by_status_reports_every_status(self, session_factory):
        """Test that stats include zero counts."""
        repo = OutboxRepository()
        async with session_factory() as session:
            message = await _create(session)
            await _create(session)
        async with session_factory() as session:
            await repo.mark_sent(session, message.message_id)
            await session.commit()

        async with session_factory() as session:
            counts = await repo.count_by_status(session)
        assert counts == {"pending": 1, "sent": 1, "failed": 0, "dead": 0}

    @pytest.mark.asyncio
    async def test_cleanup_sent_deletes_only_old_sent(self, session_factory):
        """Test that cleanup removes sent rows past retention and keeps the rest."""
        repo = OutboxRepository()
        async with session_factory() as session:
            old = await _create(session)
            recent = await _create(session)
            dead = await _create(session)
        async with session_factory() as session:
            await repo.mark_sent(session, old.message_id)
            await repo.mark_sent(session, recent.message_id)
            await repo.mark_dead(session, dead.message_id)
            await session.commit()

        async with session_factory() as session:
            stored = await repo.get_by_message_id(session, old.message_id)
            stored.sent_at = utcnow() - timedelta(days=10)
            await session.commit()

        async with session_factory() as session:
            deleted = await repo.cleanup_sent(session, older_than_days=7)
            await session.commit()

        assert deleted == 1
        assert await _reload(session_factory, old.message_id) is None
        assert await _reload(session_factory, recent.message_id) is not None
        assert await _reload(session_factory, dead.message_id) is not None

    @pytest.mark.asyncio
    async def test_idempotency_key_lookup(self, session_factory):
        """Test lookup by caller-supplied idempotency key."""
        async with session_factory() as session:
            message = await _create(session, idempotency_key="order-42")

        async with session_factory() as session:
            found = await OutboxRepository().get_by_idempotency_key(session, "order-42")
        assert found.message_id == message.message_id
