"""Repository for OutboxMessage persistence and status transitions.

Provides methods for:
- Recording a message before it is published
- Conditional status transitions (pending → sent | failed | dead)
- Fetching retry candidates and exhausted messages for the sweeper
- Stats and cleanup of delivered messages

Every transition is a single ``UPDATE ... WHERE status IN (...)`` so a
terminal row is never moved again, whoever races for it. Methods flush but
never commit; the caller owns the transaction.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, or_, select, update

from ticketing_reliability.core.database.base import utcnow
from ticketing_reliability.core.database.repository import BaseRepository
from ticketing_reliability.infra.events.outbox.models import OutboxMessage, OutboxStatus
from ticketing_reliability.infra.metrics.tracking import track_outbox_transition

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

MAX_ERROR_LENGTH = 1000


def compute_backoff(
    attempts: int,
    *,
    base_delay_seconds: float,
    max_delay_seconds: float,
) -> timedelta:
    """Delay before the next retry after ``attempts`` earlier failures.

    1st failure: base, 2nd: 2·base, 3rd: 4·base, ... capped at max.
    """
    return timedelta(seconds=min(base_delay_seconds * (2**attempts), max_delay_seconds))


class OutboxRepository(BaseRepository[OutboxMessage]):
    """Outbox persistence used by the publisher, the sweeper and the CLI."""

    def __init__(self) -> None:
        super().__init__(OutboxMessage)

    async def create_message(
        self,
        session: AsyncSession,
        *,
        exchange: str,
        routing_key: str,
        message_type: str,
        payload: dict[str, Any],
        correlation_id: str,
        message_id: str,
        idempotency_key: str | None = None,
    ) -> OutboxMessage:
        """Stage a pending message in the caller's transaction.

        The row is flushed (so constraint violations surface here) but not
        committed; callers can add their domain changes to the same session.
        """
        message = OutboxMessage(
            message_id=message_id,
            correlation_id=correlation_id,
            idempotency_key=idempotency_key,
            exchange=exchange,
            routing_key=routing_key,
            message_type=message_type,
            payload=payload,
            status=OutboxStatus.PENDING.value,
            attempts=0,
        )
        await self.create(session, message)
        track_outbox_transition(OutboxStatus.PENDING.value)
        return message

    async def get_by_message_id(self, session: AsyncSession, message_id: str) -> OutboxMessage | None:
        return await self.get_by(session, OutboxMessage.message_id, message_id)

    async def get_by_idempotency_key(
        self,
        session: AsyncSession,
        idempotency_key: str,
    ) -> OutboxMessage | None:
        return await self.get_by(session, OutboxMessage.idempotency_key, idempotency_key)

    async def mark_sent(self, session: AsyncSession, message_id: str) -> bool:
        """Mark a message as confirmed by the broker.

        Returns:
            False when the message is unknown or already terminal.
        """
        now = utcnow()
        stmt = (
            update(OutboxMessage)
            .where(
                OutboxMessage.message_id == message_id,
                OutboxMessage.status.in_(OutboxStatus.open_states()),
            )
            .values(
                status=OutboxStatus.SENT.value,
                sent_at=now,
                next_retry_at=None,
                updated_at=now,
            )
        )
        return await self._transition(session, stmt, message_id, OutboxStatus.SENT)

    async def mark_failed(
        self,
        session: AsyncSession,
        message_id: str,
        error: str,
        *,
        retry_delay_seconds: float = 60.0,
        max_delay_seconds: float = 3600.0,
    ) -> bool:
        """Record a failed publish attempt and schedule the next retry.

        ``attempts`` is incremented in SQL; the backoff uses the count read
        in the same transaction:
        - 1st failure: retry_delay_seconds
        - 2nd failure: 2 × retry_delay_seconds
        - ... capped at max_delay_seconds

        Returns:
            False when the message is unknown or already terminal.
        """
        previous = await session.scalar(
            select(OutboxMessage.attempts).where(OutboxMessage.message_id == message_id)
        )
        if previous is None:
            return False

        now = utcnow()
        delay = compute_backoff(
            previous,
            base_delay_seconds=retry_delay_seconds,
            max_delay_seconds=max_delay_seconds,
        )
        stmt = (
            update(OutboxMessage)
            .where(
                OutboxMessage.message_id == message_id,
                OutboxMessage.status.in_(OutboxStatus.open_states()),
            )
            .values(
                status=OutboxStatus.FAILED.value,
                attempts=OutboxMessage.attempts + 1,
                error=error[:MAX_ERROR_LENGTH],
                last_attempt_at=now,
                next_retry_at=now + delay,
                updated_at=now,
            )
        )
        return await self._transition(session, stmt, message_id, OutboxStatus.FAILED)

    async def mark_dead(
        self,
        session: AsyncSession,
        message_id: str,
        error: str | None = None,
    ) -> bool:
        """Give up on a message; it will never be published again."""
        values: dict[str, Any] = {
            "status": OutboxStatus.DEAD.value,
            "next_retry_at": None,
            "updated_at": utcnow(),
        }
        if error is not None:
            values["error"] = error[:MAX_ERROR_LENGTH]
        stmt = (
            update(OutboxMessage)
            .where(
                OutboxMessage.message_id == message_id,
                OutboxMessage.status.in_(OutboxStatus.open_states()),
            )
            .values(**values)
        )
        return await self._transition(session, stmt, message_id, OutboxStatus.DEAD)

    async def get_retry_candidates(
        self,
        session: AsyncSession,
        *,
        older_than: datetime,
        max_attempts: int,
        batch_size: int = 100,
        now: datetime | None = None,
    ) -> Sequence[OutboxMessage]:
        """Fetch messages the sweeper should try to publish again.

        Returns messages that:
        - are pending and were created before ``older_than`` (the original
          publish never completed), or
        - failed, last attempted before ``older_than``, and whose
          ``next_retry_at`` has passed
        and that are still below ``max_attempts``.

        Oldest first. Uses FOR UPDATE SKIP LOCKED so concurrent sweepers
        split the work instead of double-publishing.
        """
        now = now or utcnow()
        stmt = (
            select(OutboxMessage)
            .where(
                OutboxMessage.attempts < max_attempts,
                or_(
                    (OutboxMessage.status == OutboxStatus.PENDING.value)
                    & (OutboxMessage.created_at < older_than),
                    (OutboxMessage.status == OutboxStatus.FAILED.value)
                    & or_(
                        OutboxMessage.last_attempt_at.is_(None),
                        OutboxMessage.last_attempt_at < older_than,
                    )
                    & or_(
                        OutboxMessage.next_retry_at.is_(None),
                        OutboxMessage.next_retry_at <= now,
                    ),
                ),
            )
            .order_by(OutboxMessage.created_at.asc(), OutboxMessage.id.asc())
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        result = await session.execute(stmt)
        return result.scalars().all()

    async def get_exhausted(
        self,
        session: AsyncSession,
        *,
        max_attempts: int,
        batch_size: int = 100,
    ) -> Sequence[OutboxMessage]:
        """Fetch open messages that have used up their attempts."""
        stmt = (
            select(OutboxMessage)
            .where(
                OutboxMessage.status.in_(OutboxStatus.open_states()),
                OutboxMessage.attempts >= max_attempts,
            )
            .order_by(OutboxMessage.created_at.asc())
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        result = await session.execute(stmt)
        return result.scalars().all()

    async def count_by_status(self, session: AsyncSession) -> dict[str, int]:
        """Number of messages per status; every status is present.

        Example:
            {"pending": 2, "sent": 140, "failed": 1, "dead": 0}
        """
        stmt = select(OutboxMessage.status, func.count()).group_by(OutboxMessage.status)
        result = await session.execute(stmt)
        counts = {status.value: 0 for status in OutboxStatus}
        for status, count in result.all():
            counts[status] = count
        return counts

    async def cleanup_sent(self, session: AsyncSession, *, older_than_days: int = 7) -> int:
        """Delete sent messages confirmed more than ``older_than_days`` ago.

        Dead messages are kept for manual inspection.

        Returns:
            Number of rows deleted
        """
        cutoff = utcnow() - timedelta(days=older_than_days)
        stmt = delete(OutboxMessage).where(
            OutboxMessage.status == OutboxStatus.SENT.value,
            OutboxMessage.sent_at < cutoff,
        )
        result = await session.execute(stmt)
        return result.rowcount or 0

    async def _transition(
        self,
        session: AsyncSession,
        stmt: Any,
        message_id: str,
        status: OutboxStatus,
    ) -> bool:
        result = await session.execute(stmt)
        if result.rowcount != 1:
            self._logger.debug(
                "Outbox transition skipped",
                extra={"message_id": message_id, "target_status": status.value},
            )
            return False
        track_outbox_transition(status.value)
        return True


__all__ = ["MAX_ERROR_LENGTH", "OutboxRepository", "compute_backoff"]
