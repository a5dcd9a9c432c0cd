"""Outbox-backed publishing: record intent, publish, record the outcome.

``OutboxPublisher.publish`` is the entry point for every outgoing message:

1. generate a fresh message_id and correlation_id;
2. write the outbox row and commit it, so the intent survives a crash;
3. publish through the BrokerClient and wait for the confirm;
4. mark the row ``sent`` on confirm, or ``failed`` (``dead`` for payloads
   that can never be encoded) and raise OutboxPublishError.

Rows that are never confirmed are re-driven by the OutboxSweeper. A crash
between the confirm and ``mark_sent`` leads to a second delivery, so
consumers de-duplicate on messageId.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, NamedTuple, Protocol
import uuid

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ticketing_reliability.core.exceptions import (
    MessageSerializationError,
    OutboxPublishError,
    PersistenceError,
    PublishNackError,
)
from ticketing_reliability.core.settings import get_outbox_settings
from ticketing_reliability.infra.events.outbox.models import OutboxStatus
from ticketing_reliability.infra.events.outbox.repository import OutboxRepository
from ticketing_reliability.infra.logging.context import log_context

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ticketing_reliability.core.settings import OutboxSettings
    from ticketing_reliability.infra.events.outbox.models import OutboxMessage

logger = logging.getLogger(__name__)


class MessagePublisher(Protocol):
    """What the outbox needs from a broker client."""

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: Any,
        *,
        correlation_id: str,
        message_id: str,
        message_type: str,
    ) -> bool: ...


class PublishResult(NamedTuple):
    """Identifiers of an outbox message and its status after the call."""

    message_id: str
    correlation_id: str
    status: str


def new_message_ids() -> tuple[str, str]:
    """A fresh (message_id, correlation_id) pair."""
    return str(uuid.uuid4()), str(uuid.uuid4())


async def publish_outbox_message(broker: MessagePublisher, message: OutboxMessage) -> None:
    """Publish a stored outbox row with its own identifiers.

    Raises:
        PublishNackError: If the broker reports the message as not confirmed.
    """
    confirmed = await broker.publish(
        message.exchange,
        message.routing_key,
        message.payload,
        correlation_id=message.correlation_id,
        message_id=message.message_id,
        message_type=message.message_type,
    )
    if not confirmed:
        raise PublishNackError(extra={"message_id": message.message_id})


class OutboxPublisher:
    """Publishes messages through the transactional outbox.

    Example:
        publisher = OutboxPublisher(session_factory, broker)
        result = await publisher.publish(
            "event-merchant-exchange",
            "external.ticket.sales.request",
            "TicketSalesDataRequest",
            {"eventId": "e1", "merchantId": "m1"},
        )
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

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        message_type: str,
        payload: Any,
        *,
        idempotency_key: str | None = None,
    ) -> PublishResult:
        """Record and publish one message.

        With an ``idempotency_key`` that was seen before, the existing
        message's identifiers are returned and nothing is published.

        Raises:
            PersistenceError: The outbox row could not be written; nothing
                was published.
            OutboxPublishError: The row was written but the broker did not
                confirm it. The row is ``failed`` (retried by the sweeper) or
                ``dead`` when ``terminal`` is set.
        """
        message_id, correlation_id = new_message_ids()

        with log_context(message_id=message_id, correlation_id=correlation_id):
            existing = await self._record(
                exchange=exchange,
                routing_key=routing_key,
                message_type=message_type,
                payload=payload,
                message_id=message_id,
                correlation_id=correlation_id,
                idempotency_key=idempotency_key,
            )
            if existing is not None:
                logger.info(
                    "Idempotency key already used, returning existing message",
                    extra={
                        "idempotency_key": idempotency_key,
                        "existing_message_id": existing.message_id,
                        "status": existing.status,
                    },
                )
                return existing

            try:
                confirmed = await self._broker.publish(
                    exchange,
                    routing_key,
                    payload,
                    correlation_id=correlation_id,
                    message_id=message_id,
                    message_type=message_type,
                )
                if not confirmed:
                    raise PublishNackError(extra={"message_id": message_id})
            except MessageSerializationError as e:
                await self._record_failure(message_id, e, terminal=True)
                raise OutboxPublishError(message_id, correlation_id, e, terminal=True) from e
            except Exception as e:
                await self._record_failure(message_id, e)
                raise OutboxPublishError(message_id, correlation_id, e) from e

            await self._record_sent(message_id)
            logger.info(
                "Outbox message sent",
                extra={"exchange": exchange, "routing_key": routing_key, "type": message_type},
            )
            return PublishResult(message_id, correlation_id, OutboxStatus.SENT.value)

    async def enqueue(
        self,
        session: AsyncSession,
        exchange: str,
        routing_key: str,
        message_type: str,
        payload: Any,
        *,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> PublishResult:
        """Stage a message inside the caller's transaction without publishing.

        The caller commits the row together with its own domain changes; the
        sweeper publishes it once it is ``stale_after_seconds`` old.
        """
        message_id, generated_correlation_id = new_message_ids()
        correlation_id = correlation_id or generated_correlation_id
        await self._repo.create_message(
            session,
            exchange=exchange,
            routing_key=routing_key,
            message_type=message_type,
            payload=payload,
            correlation_id=correlation_id,
            message_id=message_id,
            idempotency_key=idempotency_key,
        )
        logger.debug(
            "Outbox message enqueued",
            extra={"message_id": message_id, "correlation_id": correlation_id, "type": message_type},
        )
        return PublishResult(message_id, correlation_id, OutboxStatus.PENDING.value)

    async def _record(self, *, idempotency_key: str | None, **fields: Any) -> PublishResult | None:
        """Commit the pending row; return the existing message for a reused key."""
        async with self._session_factory() as session:
            try:
                if idempotency_key is not None:
                    existing = await self._repo.get_by_idempotency_key(session, idempotency_key)
                    if existing is not None:
                        return PublishResult(
                            existing.message_id, existing.correlation_id, existing.status
                        )

                await self._repo.create_message(
                    session,
                    idempotency_key=idempotency_key,
                    **fields,
                )
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                if idempotency_key is None:
                    raise PersistenceError(
                        "Outbox message could not be stored",
                        extra={"message_id": fields["message_id"], "error": str(e.orig)},
                    ) from e
                # Lost a race with a concurrent call using the same key
                existing = await self._repo.get_by_idempotency_key(session, idempotency_key)
                if existing is None:
                    raise PersistenceError(
                        "Outbox message could not be stored",
                        extra={"idempotency_key": idempotency_key},
                    ) from e
                return PublishResult(existing.message_id, existing.correlation_id, existing.status)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("Failed to store outbox message", extra={"error": str(e)})
                raise PersistenceError(
                    "Outbox message could not be stored",
                    extra={"message_id": fields["message_id"]},
                ) from e
        return None

    async def _record_sent(self, message_id: str) -> None:
        try:
            async with self._session_factory() as session:
                await self._repo.mark_sent(session, message_id)
                await session.commit()
        except SQLAlchemyError:
            # Published but not marked; the sweeper will publish it again
            logger.exception("Failed to mark outbox message as sent")

    async def _record_failure(self, message_id: str, error: Exception, *, terminal: bool = False) -> None:
        error_text = str(error) or type(error).__name__
        try:
            async with self._session_factory() as session:
                await self._repo.mark_failed(
                    session,
                    message_id,
                    error_text,
                    retry_delay_seconds=self.settings.retry_delay_seconds,
                    max_delay_seconds=self.settings.retry_max_delay_seconds,
                )
                if terminal:
                    await self._repo.mark_dead(session, message_id)
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to record outbox publish failure")
            return

        log = logger.error if terminal else logger.warning
        log(
            "Outbox message dead, payload cannot be encoded"
            if terminal
            else "Outbox publish failed, left for retry",
            extra={"error": error_text, "error_type": type(error).__name__},
        )


__all__ = [
    "MessagePublisher",
    "OutboxPublisher",
    "PublishResult",
    "new_message_ids",
    "publish_outbox_message",
]
