"""RabbitMQ broker client built on aio-pika.

A BrokerClient owns exactly one connection with two channels:
- a publish channel with publisher confirms, so ``publish`` only reports
  success once the broker has taken responsibility for the message;
- a consume channel with QoS prefetch for queue consumers.

The client is constructed explicitly and handed to whoever needs it; there
is no module-level broker. When the connection or either channel closes
unexpectedly, a background task reconnects with exponential backoff and jitter, then
re-declares the remembered topology and re-attaches consumers. Publishes in
flight at that moment fail with PublishError and are left to the caller's
retry path.

Usage:
    async with BrokerClient(get_rabbit_settings()) as broker:
        await broker.declare_topology(build_default_topology(settings))
        await broker.publish("event-merchant-exchange", "external.ticket.sales.request",
                             {"eventId": "e1"}, correlation_id=cid, message_id=mid,
                             message_type="TicketSalesDataRequest")
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from enum import Enum
from functools import partial
import logging
import time
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.exceptions import AMQPException, ChannelInvalidStateError, DeliveryError
import aiormq

from ticketing_reliability.core.exceptions import (
    BrokerConnectionError,
    MessageSerializationError,
    PublishError,
    PublishNackError,
    PublishTimeoutError,
)
from ticketing_reliability.core.settings import get_rabbit_settings
from ticketing_reliability.infra.logging.context import log_context
from ticketing_reliability.infra.messaging.envelope import (
    CONTENT_TYPE,
    MessageEnvelope,
    build_envelope,
)
from ticketing_reliability.infra.messaging.retry_headers import (
    RetryState,
    is_non_retryable_exception,
)
from ticketing_reliability.infra.messaging.topology import Topology
from ticketing_reliability.infra.metrics.tracking import (
    track_consumed,
    track_publish,
    track_reconnect,
)
from ticketing_reliability.utils.retry import RetryStrategy

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from aio_pika.abc import (
        AbstractChannel,
        AbstractConnection,
        AbstractExchange,
        AbstractIncomingMessage,
        AbstractQueue,
    )

    from ticketing_reliability.core.settings import RabbitSettings

    MessageHandler = Callable[[MessageEnvelope], Awaitable[None]]

logger = logging.getLogger(__name__)

# Errors meaning the connection or channel went away under a publish
_CONNECTION_ERRORS = (AMQPException, ChannelInvalidStateError, ConnectionError)


class ConnectionState(str, Enum):
    """Connection states of a BrokerClient.

    Attributes:
        DISCONNECTED: Never connected, or the first connect failed.
        CONNECTING: connect() in progress.
        CONNECTED: Connection and both channels are open.
        RECONNECTING: Connection lost; the reconnect loop is running.
        CLOSED: close() was called; the client will not reconnect.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(slots=True)
class _Consumer:
    queue: str
    handler: MessageHandler
    max_retries: int
    consumer_tag: str | None = None
    queue_obj: AbstractQueue | None = None


class BrokerClient:
    """Publisher-confirm client with reconnect and bounded consumer retries."""

    def __init__(
        self,
        settings: RabbitSettings | None = None,
        *,
        connect_factory: Callable[..., Awaitable[AbstractConnection]] = aio_pika.connect,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Create a disconnected client.

        Args:
            settings: Broker settings; loaded via get_rabbit_settings() when omitted.
            connect_factory: Coroutine opening an AMQP connection (aio_pika.connect).
            sleep: Awaitable used between reconnect attempts.
        """
        self.settings = settings or get_rabbit_settings()
        self._connect_factory = connect_factory
        self._sleep = sleep

        self._connection: AbstractConnection | None = None
        self._publish_channel: AbstractChannel | None = None
        self._consume_channel: AbstractChannel | None = None
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}

        self._topology = Topology()
        self._consumers: dict[str, _Consumer] = {}
        self._inflight: set[asyncio.Future[Any]] = set()
        self._aborted: set[asyncio.Future[Any]] = set()

        self._state = ConnectionState.DISCONNECTED
        self._closing = False
        self._lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._reconnect_strategy = RetryStrategy(
            max_attempts=None,
            initial_delay=self.settings.reconnect_initial_delay,
            max_delay=self.settings.reconnect_max_delay,
            jitter=True,
        )

    # ──────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return (
            self._state is ConnectionState.CONNECTED
            and self._connection is not None
            and not self._connection.is_closed
            and self._publish_channel is not None
            and not self._publish_channel.is_closed
            and self._consume_channel is not None
            and not self._consume_channel.is_closed
        )

    async def __aenter__(self) -> BrokerClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open the connection and channels.

        Raises:
            BrokerConnectionError: If the broker cannot be reached within
                ``connection_timeout``.
        """
        async with self._lock:
            if self.is_connected:
                return
            self._closing = False
            self._state = ConnectionState.CONNECTING
            logger.info(
                "Connecting to RabbitMQ",
                extra={"url": self.settings.get_safe_url()},
            )
            try:
                await self._open()
            except Exception as e:
                self._state = ConnectionState.DISCONNECTED
                logger.error(
                    "Failed to connect to RabbitMQ",
                    extra={"url": self.settings.get_safe_url(), "error": str(e)},
                )
                raise BrokerConnectionError(
                    f"Could not connect to RabbitMQ: {e}",
                    extra={"url": self.settings.get_safe_url()},
                ) from e
            logger.info("RabbitMQ connection established")

    async def close(self) -> None:
        """Stop reconnecting, cancel consumers and fail in-flight publishes.

        Safe to call more than once.
        """
        self._closing = True

        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reconnect_task
            self._reconnect_task = None

        for future in list(self._inflight):
            self._aborted.add(future)
            future.cancel()

        async with self._lock:
            for consumer in self._consumers.values():
                if consumer.queue_obj is not None and consumer.consumer_tag is not None:
                    try:
                        await consumer.queue_obj.cancel(consumer.consumer_tag)
                    except _CONNECTION_ERRORS as e:
                        logger.debug(
                            "Consumer cancel failed during close",
                            extra={"queue": consumer.queue, "error": str(e)},
                        )

            connection = self._connection
            self._teardown()
            if connection is not None and not connection.is_closed:
                try:
                    await connection.close()
                except _CONNECTION_ERRORS as e:
                    logger.warning("Error closing RabbitMQ connection", extra={"error": str(e)})

            self._state = ConnectionState.CLOSED
        logger.info("RabbitMQ client closed")

    async def _open(self) -> None:
        connection = await asyncio.wait_for(
            self._connect_factory(
                self.settings.get_url(),
                client_properties={"connection_name": self.settings.connection_name},
                heartbeat=self.settings.heartbeat,
            ),
            timeout=self.settings.connection_timeout,
        )
        try:
            publish_channel = await connection.channel(
                publisher_confirms=True,
                on_return_raises=True,
            )
            consume_channel = await connection.channel()
            await consume_channel.set_qos(prefetch_count=self.settings.prefetch_count)
        except BaseException:
            await connection.close()
            raise

        self._teardown()
        self._connection = connection
        self._publish_channel = publish_channel
        self._consume_channel = consume_channel
        connection.close_callbacks.add(self._on_connection_closed)
        publish_channel.close_callbacks.add(self._on_channel_closed)
        consume_channel.close_callbacks.add(self._on_channel_closed)
        self._state = ConnectionState.CONNECTED

        await self._apply_topology(self._topology)
        for consumer in self._consumers.values():
            await self._attach(consumer)

    def _teardown(self) -> None:
        self._connection = None
        self._publish_channel = None
        self._consume_channel = None
        self._exchanges.clear()
        self._queues.clear()
        for consumer in self._consumers.values():
            consumer.consumer_tag = None
            consumer.queue_obj = None

    # ──────────────────────────────────────────────────────────────────────
    # Reconnect
    # ──────────────────────────────────────────────────────────────────────

    def _on_connection_closed(self, sender: Any, exc: BaseException | None = None) -> None:
        if self._closing or sender is not self._connection:
            return
        self._connection_lost("connection", exc)

    def _on_channel_closed(self, sender: Any, exc: BaseException | None = None) -> None:
        if self._closing or (sender is not self._publish_channel and sender is not self._consume_channel):
            return
        self._connection_lost("channel", exc)

    def _check_channels(self, error: BaseException | None = None) -> None:
        """Treat a channel found closed during an operation as lost.

        Covers closes whose callback has not run yet, such as the 404 a
        passive declare of a missing exchange answers with.
        """
        if self._closing or self._state is not ConnectionState.CONNECTED:
            return
        for channel in (self._publish_channel, self._consume_channel):
            if channel is not None and channel.is_closed:
                self._on_channel_closed(channel, error)
                return
        if isinstance(error, ChannelInvalidStateError) and self._publish_channel is not None:
            self._on_channel_closed(self._publish_channel, error)

    def _connection_lost(self, what: str, exc: BaseException | None) -> None:
        logger.warning(
            "RabbitMQ connection lost, reconnecting",
            extra={"lost": what, "error": str(exc) if exc else None},
        )
        stale = self._connection
        self._teardown()
        self._state = ConnectionState.RECONNECTING
        for future in list(self._inflight):
            self._aborted.add(future)
            future.cancel()

        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.ensure_future(self._reconnect_loop(stale))

    async def _reconnect_loop(self, stale: AbstractConnection | None = None) -> None:
        if stale is not None and not stale.is_closed:
            # A lost channel leaves its connection open
            try:
                await stale.close()
            except _CONNECTION_ERRORS as e:
                logger.debug("Error closing stale RabbitMQ connection", extra={"error": str(e)})

        attempt = 0
        for delay in self._reconnect_strategy.delays():
            if self._closing:
                return
            await self._sleep(delay)
            if self._closing:
                return

            attempt += 1
            try:
                async with self._lock:
                    await self._open()
            except Exception as e:
                track_reconnect("failure")
                logger.warning(
                    "RabbitMQ reconnect attempt failed",
                    extra={"attempt": attempt, "delay": delay, "error": str(e)},
                )
                continue

            track_reconnect("success")
            logger.info("RabbitMQ reconnected", extra={"attempt": attempt})
            return

    # ──────────────────────────────────────────────────────────────────────
    # Topology
    # ──────────────────────────────────────────────────────────────────────

    async def declare_topology(self, topology: Topology) -> None:
        """Declare exchanges, queues and bindings, and remember them for reconnects.

        Re-declaring identical definitions is a no-op on the broker.

        Raises:
            BrokerConnectionError: If the client is not connected.
        """
        self._topology = self._topology.merge(topology)
        if not self.is_connected:
            raise BrokerConnectionError("Cannot declare topology while disconnected")
        async with self._lock:
            await self._apply_topology(topology)

    async def _apply_topology(self, topology: Topology) -> None:
        if self._publish_channel is None or self._consume_channel is None:
            return

        for exchange_spec in topology.exchanges:
            self._exchanges[exchange_spec.name] = await self._publish_channel.declare_exchange(
                exchange_spec.name,
                ExchangeType(exchange_spec.type),
                durable=exchange_spec.durable,
            )

        for queue_spec in topology.queues:
            queue = await self._consume_channel.declare_queue(
                queue_spec.name,
                durable=queue_spec.durable,
                arguments=queue_spec.arguments or None,
            )
            self._queues[queue_spec.name] = queue
            for exchange_name, routing_key in queue_spec.bindings:
                await queue.bind(exchange_name, routing_key=routing_key)

        logger.debug(
            "Topology declared",
            extra={
                "exchanges": [e.name for e in topology.exchanges],
                "queues": [q.name for q in topology.queues],
            },
        )

    async def _get_exchange(self, name: str) -> AbstractExchange:
        if self._publish_channel is None:
            raise BrokerConnectionError()
        if not name:
            return self._publish_channel.default_exchange
        exchange = self._exchanges.get(name)
        if exchange is None:
            exchange = await self._publish_channel.get_exchange(name, ensure=True)
            self._exchanges[name] = exchange
        return exchange

    # ──────────────────────────────────────────────────────────────────────
    # Publishing
    # ──────────────────────────────────────────────────────────────────────

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: Any,
        *,
        correlation_id: str,
        message_id: str,
        message_type: str,
    ) -> bool:
        """Publish a persistent, mandatory message and wait for the broker's confirm.

        Returns:
            True once the broker positively confirmed the message.

        Raises:
            MessageSerializationError: The payload cannot be encoded (terminal).
            PublishTimeoutError: No confirm within ``publish_timeout``.
            PublishNackError: The broker nacked or returned the message.
            PublishError: The connection or channel is unavailable.
        """
        envelope = build_envelope(
            message_id=message_id,
            correlation_id=correlation_id,
            message_type=message_type,
            payload=payload,
        )
        try:
            body = envelope.to_bytes()
        except MessageSerializationError:
            track_publish(exchange, "serialization_error")
            raise

        context = {
            "exchange": exchange,
            "routing_key": routing_key,
            "message_id": message_id,
            "correlation_id": correlation_id,
        }
        if not self.is_connected:
            self._check_channels()
            track_publish(exchange, "error")
            raise PublishError(extra={**context, "reason": f"broker {self._state.value}"})

        message = Message(
            body,
            content_type=CONTENT_TYPE,
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=message_id,
            correlation_id=correlation_id,
            type=message_type,
            timestamp=envelope.published_at,
        )

        started = time.monotonic()
        try:
            confirmation = await self._publish_confirmed(exchange, routing_key, message)
        except TimeoutError as e:
            track_publish(exchange, "timeout")
            logger.warning("Publish confirm timed out", extra=context)
            raise PublishTimeoutError(self.settings.publish_timeout, extra=context) from e
        except DeliveryError as e:
            track_publish(exchange, "nack")
            logger.warning("Message returned by broker", extra={**context, "error": str(e)})
            raise PublishNackError("Message was returned as unroutable", extra=context) from e
        except (BrokerConnectionError, *_CONNECTION_ERRORS) as e:
            track_publish(exchange, "error")
            logger.warning("Publish failed", extra={**context, "error": str(e)})
            self._check_channels(e)
            raise PublishError(extra={**context, "reason": str(e)}) from e

        duration = time.monotonic() - started
        if not isinstance(confirmation, aiormq.spec.Basic.Ack):
            track_publish(exchange, "nack", duration)
            logger.warning("Message nacked by broker", extra=context)
            raise PublishNackError(extra=context)

        track_publish(exchange, "confirmed", duration)
        logger.debug("Publish confirmed", extra={**context, "duration": duration})
        return True

    async def _publish_confirmed(self, exchange: str, routing_key: str, message: Message) -> Any:
        target = await self._get_exchange(exchange)
        future = asyncio.ensure_future(
            target.publish(message, routing_key=routing_key, mandatory=True)
        )
        self._inflight.add(future)
        try:
            return await asyncio.wait_for(future, timeout=self.settings.publish_timeout)
        except asyncio.CancelledError:
            # Aborted by close() or a connection loss, not by our caller
            if future in self._aborted:
                raise PublishError(extra={"reason": "publish aborted by connection shutdown"}) from None
            raise
        finally:
            self._inflight.discard(future)
            self._aborted.discard(future)

    # ──────────────────────────────────────────────────────────────────────
    # Consuming
    # ──────────────────────────────────────────────────────────────────────

    async def consume(
        self,
        queue: str,
        handler: MessageHandler,
        *,
        max_retries: int | None = None,
    ) -> None:
        """Deliver messages from ``queue`` to ``handler``.

        Success acks the message. A failing handler gets the message back
        (republished with ``x-retry-count`` incremented) up to
        ``max_retries`` times; after that, or for undecodable bodies and
        non-retryable errors, the message is rejected without requeue so the
        broker dead-letters it. Consumers survive reconnects.
        """
        if queue in self._consumers:
            logger.warning("Consumer already registered, skipping", extra={"queue": queue})
            return

        consumer = _Consumer(
            queue=queue,
            handler=handler,
            max_retries=(
                self.settings.consumer_max_retries if max_retries is None else max_retries
            ),
        )
        self._consumers[queue] = consumer
        if self.is_connected:
            async with self._lock:
                await self._attach(consumer)

    async def _attach(self, consumer: _Consumer) -> None:
        if self._consume_channel is None:
            return
        queue = self._queues.get(consumer.queue)
        if queue is None:
            queue = await self._consume_channel.get_queue(consumer.queue, ensure=True)
            self._queues[consumer.queue] = queue
        consumer.queue_obj = queue
        consumer.consumer_tag = await queue.consume(partial(self._on_message, consumer))
        logger.info(
            "Consumer attached",
            extra={"queue": consumer.queue, "consumer_tag": consumer.consumer_tag},
        )

    async def _on_message(self, consumer: _Consumer, message: AbstractIncomingMessage) -> None:
        try:
            envelope = MessageEnvelope.from_bytes(message.body)
        except MessageSerializationError as e:
            logger.error(
                "Undecodable message, dead-lettering",
                extra={"queue": consumer.queue, "message_id": message.message_id, "error": str(e)},
            )
            await message.reject(requeue=False)
            track_consumed(consumer.queue, "dead_letter")
            return

        state = RetryState.from_headers(message.headers)
        with log_context(
            queue=consumer.queue,
            message_id=envelope.message_id,
            correlation_id=envelope.correlation_id,
        ):
            try:
                await consumer.handler(envelope)
            except Exception as e:
                await self._handle_failure(consumer, message, state, e)
                return

            await message.ack()
            track_consumed(consumer.queue, "ack")

    async def _handle_failure(
        self,
        consumer: _Consumer,
        message: AbstractIncomingMessage,
        state: RetryState,
        error: Exception,
    ) -> None:
        if is_non_retryable_exception(error) or state.exhausted(consumer.max_retries):
            logger.error(
                "Message handler failed permanently, dead-lettering",
                exc_info=error,
                extra={"retry_count": state.count, "max_retries": consumer.max_retries},
            )
            await message.reject(requeue=False)
            track_consumed(consumer.queue, "dead_letter")
            return

        next_state = state.increment(error)
        try:
            await self._republish(consumer.queue, message, next_state)
        except (PublishError, TimeoutError, *_CONNECTION_ERRORS) as e:
            logger.warning(
                "Retry republish failed, returning message to queue",
                extra={"retry_count": next_state.count, "error": str(e)},
            )
            self._check_channels(e)
            await message.nack(requeue=True)
            track_consumed(consumer.queue, "requeue")
            return

        logger.warning(
            "Message handler failed, scheduled redelivery",
            extra={
                "retry_count": next_state.count,
                "max_retries": consumer.max_retries,
                "error": str(error),
            },
        )
        await message.ack()
        track_consumed(consumer.queue, "requeue")

    async def _republish(
        self,
        queue: str,
        message: AbstractIncomingMessage,
        state: RetryState,
    ) -> None:
        exchange = await self._get_exchange("")
        retry_message = Message(
            message.body,
            headers={**(message.headers or {}), **state.to_headers()},
            content_type=message.content_type or CONTENT_TYPE,
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=message.message_id,
            correlation_id=message.correlation_id,
            type=message.type,
        )
        await asyncio.wait_for(
            exchange.publish(retry_message, routing_key=queue),
            timeout=self.settings.publish_timeout,
        )

    # ──────────────────────────────────────────────────────────────────────
    # Health
    # ──────────────────────────────────────────────────────────────────────

    async def health(self) -> dict[str, Any]:
        """Report connection health.

        Returns:
            Dictionary containing:
                - status: "healthy", "unhealthy" or "unavailable"
                - state: ConnectionState value
                - is_connected: Boolean connection status
                - consumers: Queues with an attached consumer
                - reason: Present when not healthy
        """
        self._check_channels()
        if not self.settings.is_configured:
            return {
                "status": "unavailable",
                "state": self._state.value,
                "is_connected": False,
                "consumers": [],
                "reason": "rabbitmq_not_enabled",
            }

        consumers = sorted(c.queue for c in self._consumers.values() if c.consumer_tag)
        if self.is_connected:
            return {
                "status": "healthy",
                "state": self._state.value,
                "is_connected": True,
                "consumers": consumers,
            }
        return {
            "status": "unhealthy",
            "state": self._state.value,
            "is_connected": False,
            "consumers": consumers,
            "reason": f"broker_{self._state.value}",
        }


__all__ = ["BrokerClient", "ConnectionState"]
