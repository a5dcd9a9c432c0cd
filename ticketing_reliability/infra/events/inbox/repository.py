"""Inbox persistence and the de-duplicating handler wrapper."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from ticketing_reliability.core.database.base import utcnow
from ticketing_reliability.core.database.repository import BaseRepository
from ticketing_reliability.infra.events.inbox.models import InboxMessage
from ticketing_reliability.infra.events.outbox.repository import MAX_ERROR_LENGTH

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ticketing_reliability.infra.messaging.envelope import MessageEnvelope

    MessageHandler = Callable[[MessageEnvelope], Awaitable[None]]

logger = logging.getLogger(__name__)

CLAIM_TIMEOUT = timedelta(minutes=5)


class InboxRepository(BaseRepository[InboxMessage]):
    def __init__(self) -> None:
        super().__init__(InboxMessage)

    async def record_if_new(
        self,
        session: AsyncSession,
        envelope: MessageEnvelope,
        *,
        now: datetime | None = None,
        claim_timeout: timedelta = CLAIM_TIMEOUT,
    ) -> bool:
        """Record the message on first sight and claim it for handling.

        An unprocessed row is claimed with a conditional UPDATE, so of two
        concurrent redeliveries only one gets to run the handler. A claim
        older than ``claim_timeout`` is treated as abandoned.

        Returns:
            True when this delivery holds the claim and the handler should
            run. False once the message was processed, while another
            delivery holds the claim, or when a concurrent delivery inserted
            it first (the session is rolled back in that case).
        """
        now = now or utcnow()
        existing = await self.get_by(session, InboxMessage.message_id, envelope.message_id)
        if existing is not None:
            if existing.is_processed:
                return False
            stmt = (
                update(InboxMessage)
                .where(
                    InboxMessage.message_id == envelope.message_id,
                    InboxMessage.processed_at.is_(None),
                    or_(
                        InboxMessage.claimed_at.is_(None),
                        InboxMessage.claimed_at < now - claim_timeout,
                    ),
                )
                .values(claimed_at=now)
            )
            result = await session.execute(stmt)
            return result.rowcount == 1

        session.add(
            InboxMessage(
                message_id=envelope.message_id,
                correlation_id=envelope.correlation_id,
                message_type=envelope.type,
                claimed_at=now,
            )
        )
        try:
            await session.flush()
        except IntegrityError:
            await session.rollback()
            return False
        return True

    async def mark_processed(self, session: AsyncSession, message_id: str) -> None:
        stmt = (
            update(InboxMessage)
            .where(InboxMessage.message_id == message_id)
            .values(processed_at=utcnow(), claimed_at=None, error=None)
        )
        await session.execute(stmt)

    async def mark_failed(self, session: AsyncSession, message_id: str, error: str) -> None:
        stmt = (
            update(InboxMessage)
            .where(InboxMessage.message_id == message_id, InboxMessage.processed_at.is_(None))
            .values(
                attempts=InboxMessage.attempts + 1,
                claimed_at=None,
                error=error[:MAX_ERROR_LENGTH],
            )
        )
        await session.execute(stmt)


def deduplicating(
    session_factory: async_sessionmaker[AsyncSession],
    handler: MessageHandler,
    *,
    repository: InboxRepository | None = None,
) -> MessageHandler:
    """Wrap a consumer handler so it completes at most once per messageId.

    Duplicates of processed messages, and redeliveries arriving while
    another delivery is still handling the message, are acknowledged
    without calling the handler. A handler failure is recorded and re-raised,
    so the broker's bounded retry still applies.

    Example:
        await broker.consume("merchant-events-queue", deduplicating(session_factory, handle_merchant))
    """
    repo = repository or InboxRepository()

    async def handle(envelope: MessageEnvelope) -> None:
        async with session_factory() as session:
            is_new = await repo.record_if_new(session, envelope)
            await session.commit()

        if not is_new:
            logger.info(
                "Duplicate message skipped",
                extra={"message_id": envelope.message_id, "type": envelope.type},
            )
            return

        try:
            await handler(envelope)
        except Exception as e:
            async with session_factory() as session:
                await repo.mark_failed(session, envelope.message_id, str(e) or type(e).__name__)
                await session.commit()
            raise

        async with session_factory() as session:
            await repo.mark_processed(session, envelope.message_id)
            await session.commit()

    handle.__name__ = getattr(handler, "__name__", "handle")
    return handle


__all__ = ["CLAIM_TIMEOUT", "InboxRepository", "deduplicating"]
