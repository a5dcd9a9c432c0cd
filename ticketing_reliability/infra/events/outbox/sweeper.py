"""Retry sweeper for outbox messages that were never confirmed.

Runs as the scheduled job ``outbox-retry-sweeper``. Each sweep:
1. marks messages that used up ``max_attempts`` as dead, without publishing;
2. re-publishes stale pending and due failed messages, oldest first;
3. marks each one sent on confirm, or failed (attempts + 1) otherwise,
   committing every outcome on its own.

A failure that brings a message to ``max_attempts`` leaves it failed; the
next sweep marks it dead. Each candidate is claimed with FOR UPDATE SKIP
LOCKED so several workers can sweep concurrently.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import logging
from typing import TYPE_CHECKING

from ticketing_reliability.core.database.base import utcnow
from ticketing_reliability.core.exceptions import MessageSerializationError
from ticketing_reliability.core.settings import get_outbox_settings
from ticketing_reliability.infra.events.outbox.publisher import publish_outbox_message
from ticketing_reliability.infra.events.outbox.repository import OutboxRepository
from ticketing_reliability.infra.logging.context import log_context
from ticketing_reliability.infra.metrics.tracking import track_sweep

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ticketing_reliability.core.settings import OutboxSettings
    from ticketing_reliability.infra.events.outbox.models import OutboxMessage
    from ticketing_reliability.infra.events.outbox.publisher import MessagePublisher

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepResult:
    """Counts for one sweep.

    Attributes:
        retried: Messages a publish was attempted for.
        sent: Retried messages the broker confirmed.
        failed: Retried messages that failed again.
        dead: Messages marked dead (exhausted or unencodable).
    """

    retried: int = 0
    sent: int = 0
    failed: int = 0
    dead: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"retried": self.retried, "sent": self.sent, "failed": self.failed, "dead": self.dead}


class OutboxSweeper:
    """Re-drives failed and stale outbox messages.

    Example:
        sweeper = OutboxSweeper(session_factory, broker)
        result = await sweeper.sweep()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broker: MessagePublisher,
        settings: OutboxSettings | None = None,
        *,
        repository: OutboxRepository | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._broker = broker
        self.settings = settings or get_outbox_settings()
        self._repo = repository or OutboxRepository()

    async def sweep(self) -> SweepResult:
        """Run one sweep and return what it did."""
        result = SweepResult()
        track_sweep()

        async with self._session_factory() as session:
            await self._bury_exhausted(session, result)
            await session.commit()

        attempted: set[str] = set()
        for _ in range(self.settings.sweep_batch_size):
            if not await self._retry_next(result, attempted):
                break

        if result.retried or result.dead:
            logger.info("Outbox sweep finished", extra=result.as_dict())
        else:
            logger.debug("Outbox sweep found nothing to do")
        return result

    async def cleanup(self) -> int:
        """Delete sent messages older than ``retention_days``."""
        async with self._session_factory() as session:
            deleted = await self._repo.cleanup_sent(
                session,
                older_than_days=self.settings.retention_days,
            )
            await session.commit()

        logger.info(
            "Outbox cleanup finished",
            extra={"deleted": deleted, "retention_days": self.settings.retention_days},
        )
        return deleted

    async def _retry_next(self, result: SweepResult, attempted: set[str]) -> bool:
        """Claim the oldest candidate, publish it and commit its outcome.

        One message per transaction: a sweep interrupted mid-way keeps the
        outcomes already recorded, and a row lock is held for one publish only.

        Returns:
            False when no candidate is left.
        """
        async with self._session_factory() as session:
            now = utcnow()
            candidates = await self._repo.get_retry_candidates(
                session,
                older_than=now - timedelta(seconds=self.settings.stale_after_seconds),
                max_attempts=self.settings.max_attempts,
                batch_size=1,
                now=now,
            )
            if not candidates or candidates[0].message_id in attempted:
                return False

            message = candidates[0]
            attempted.add(message.message_id)
            await self._retry(session, message, result)
            await session.commit()
        return True

    async def _bury_exhausted(self, session: AsyncSession, result: SweepResult) -> None:
        exhausted = await self._repo.get_exhausted(
            session,
            max_attempts=self.settings.max_attempts,
            batch_size=self.settings.sweep_batch_size,
        )
        for message in exhausted:
            if await self._repo.mark_dead(session, message.message_id):
                result.dead += 1
                # ERROR so alerting picks up messages that need manual attention
                logger.error(
                    "Outbox message exhausted its attempts, marked dead",
                    extra={
                        "message_id": message.message_id,
                        "correlation_id": message.correlation_id,
                        "type": message.message_type,
                        "attempts": message.attempts,
                        "last_error": message.error,
                    },
                )

    async def _retry(self, session: AsyncSession, message: OutboxMessage, result: SweepResult) -> None:
        result.retried += 1
        with log_context(message_id=message.message_id, correlation_id=message.correlation_id):
            try:
                await publish_outbox_message(self._broker, message)
            except MessageSerializationError as e:
                await self._repo.mark_failed(
                    session,
                    message.message_id,
                    str(e),
                    retry_delay_seconds=self.settings.retry_delay_seconds,
                    max_delay_seconds=self.settings.retry_max_delay_seconds,
                )
                await self._repo.mark_dead(session, message.message_id)
                result.dead += 1
                logger.error("Outbox message cannot be encoded, marked dead", extra={"error": str(e)})
                return
            except Exception as e:
                error_text = str(e) or type(e).__name__
                await self._repo.mark_failed(
                    session,
                    message.message_id,
                    error_text,
                    retry_delay_seconds=self.settings.retry_delay_seconds,
                    max_delay_seconds=self.settings.retry_max_delay_seconds,
                )
                result.failed += 1
                logger.warning(
                    "Outbox retry failed",
                    extra={"attempts": message.attempts, "error": error_text},
                )
                return

            await self._repo.mark_sent(session, message.message_id)
            result.sent += 1
            logger.info("Outbox message sent on retry", extra={"type": message.message_type})


__all__ = ["OutboxSweeper", "SweepResult"]
