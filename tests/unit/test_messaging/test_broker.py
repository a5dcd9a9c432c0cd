"""Unit tests for BrokerClient against a fake aio-pika connection."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

from aio_pika import DeliveryMode
from aio_pika.exceptions import ChannelInvalidStateError, ChannelNotFoundEntity, DeliveryError
import aiormq
import pytest

from ticketing_reliability.core.exceptions import (
    BrokerConnectionError,
    MessageSerializationError,
    PublishError,
    PublishNackError,
    PublishTimeoutError,
)
from ticketing_reliability.core.settings import RabbitSettings
from ticketing_reliability.infra.messaging import BrokerClient, ConnectionState, build_default_topology
from ticketing_reliability.infra.messaging.envelope import MessageEnvelope
from ticketing_reliability.infra.messaging.retry_headers import RETRY_COUNT_HEADER
from ticketing_reliability.infra.metrics.prometheus import REGISTRY

EXCHANGE = "event-merchant-exchange"
QUEUE = "merchant-events-queue"
IDS = {"correlation_id": "corr-1", "message_id": "msg-1", "message_type": "TicketSold"}


@pytest.fixture
def broker(rabbit_settings, fake_amqp) -> BrokerClient:
    return BrokerClient(rabbit_settings, connect_factory=fake_amqp.connect, sleep=AsyncMock())


def _incoming(body: bytes, headers: dict | None = None) -> MagicMock:
    message = MagicMock(name="incoming")
    message.body = body
    message.headers = headers or {}
    message.message_id = "msg-1"
    message.correlation_id = "corr-1"
    message.content_type = "application/json"
    message.type = "TicketSold"
    message.ack = AsyncMock()
    message.reject = AsyncMock()
    message.nack = AsyncMock()
    return message


def _envelope_body(**overrides) -> bytes:
    envelope = MessageEnvelope(message_id="msg-1", correlation_id="corr-1", type="TicketSold", payload={})
    return envelope.model_copy(update=overrides).to_bytes()


async def _wait_for(predicate, attempts: int = 50) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.mark.unit
class TestConnect:
    """Test suite for connection setup and teardown."""

    @pytest.mark.asyncio
    async def test_connect_opens_confirming_channel(self, broker, fake_amqp, rabbit_settings):
        """Test that connect opens a confirm channel and a QoS-limited consume channel."""
        await broker.connect()

        assert broker.state is ConnectionState.CONNECTED
        assert broker.is_connected
        kwargs = fake_amqp.connect.await_args.kwargs
        assert kwargs["heartbeat"] == rabbit_settings.heartbeat
        assert kwargs["client_properties"] == {"connection_name": rabbit_settings.connection_name}
        fake_amqp.connection.channel.assert_any_await(publisher_confirms=True, on_return_raises=True)
        fake_amqp.consume_channel.set_qos.assert_awaited_once_with(prefetch_count=rabbit_settings.prefetch_count)
        fake_amqp.connection.close_callbacks.add.assert_called_once_with(broker._on_connection_closed)

    @pytest.mark.asyncio
    async def test_connect_failure(self, rabbit_settings):
        """Test that an unreachable broker raises BrokerConnectionError."""
        connect = AsyncMock(side_effect=ConnectionError("refused"))
        broker = BrokerClient(rabbit_settings, connect_factory=connect)

        with pytest.raises(BrokerConnectionError, match="refused"):
            await broker.connect()
        assert broker.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, broker, fake_amqp):
        """Test that connecting twice opens one connection."""
        await broker.connect()
        await broker.connect()
        fake_amqp.connect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close(self, broker, fake_amqp):
        """Test that close cancels consumers and closes the connection."""
        async with broker:
            await broker.consume(QUEUE, AsyncMock())

        fake_amqp.queue.cancel.assert_awaited_once_with("ctag-1")
        fake_amqp.connection.close.assert_awaited_once()
        assert broker.state is ConnectionState.CLOSED

        # A close callback after an explicit close must not reconnect
        broker._on_connection_closed(fake_amqp.connection, None)
        assert broker._reconnect_task is None


@pytest.mark.unit
class TestTopology:
    """Test suite for declare_topology."""

    @pytest.mark.asyncio
    async def test_declares_exchanges_queues_and_dlqs(self, broker, fake_amqp, rabbit_settings):
        """Test that the default topology is declared durable with dead-letter routing."""
        await broker.connect()
        await broker.declare_topology(build_default_topology(rabbit_settings))

        declared_exchanges = [c.args[0] for c in fake_amqp.publish_channel.declare_exchange.await_args_list]
        assert declared_exchanges == [rabbit_settings.exchange_name, rabbit_settings.dead_letter_exchange_name]

        queues = {c.args[0]: c.kwargs for c in fake_amqp.consume_channel.declare_queue.await_args_list}
        assert len(queues) == 6
        assert queues[QUEUE] == {
            "durable": True,
            "arguments": {
                "x-dead-letter-exchange": rabbit_settings.dead_letter_exchange_name,
                "x-dead-letter-routing-key": f"dlq.{QUEUE}",
            },
        }
        assert queues[f"dlq.{QUEUE}"] == {"durable": True, "arguments": None}
        fake_amqp.queue.bind.assert_any_await(
            rabbit_settings.dead_letter_exchange_name, routing_key=f"dlq.{QUEUE}"
        )

    @pytest.mark.asyncio
    async def test_topology_is_remembered_while_disconnected(self, broker, fake_amqp, rabbit_settings):
        """Test that a topology declared before connecting is applied on connect."""
        with pytest.raises(BrokerConnectionError):
            await broker.declare_topology(build_default_topology(rabbit_settings))

        await broker.connect()

        assert fake_amqp.publish_channel.declare_exchange.await_count == 2
        assert fake_amqp.consume_channel.declare_queue.await_count == 6


@pytest.mark.unit
class TestPublish:
    """Test suite for confirmed publishing."""

    @pytest.mark.asyncio
    async def test_ack_returns_true(self, broker, fake_amqp):
        """Test that a broker ack is reported as a confirmed publish."""
        await broker.connect()
        before = REGISTRY.get_sample_value(
            "broker_publish_total", {"exchange": EXCHANGE, "result": "confirmed"}
        ) or 0.0

        assert await broker.publish(EXCHANGE, "ticket.sales", {"ticketId": "t1"}, **IDS) is True

        fake_amqp.publish_channel.get_exchange.assert_awaited_once_with(EXCHANGE, ensure=True)
        message = fake_amqp.exchange.publish.await_args.args[0]
        assert fake_amqp.exchange.publish.await_args.kwargs == {"routing_key": "ticket.sales", "mandatory": True}
        assert message.delivery_mode == DeliveryMode.PERSISTENT
        assert message.message_id == "msg-1"
        assert message.correlation_id == "corr-1"
        assert message.type == "TicketSold"
        body = json.loads(message.body)
        assert body["messageId"] == "msg-1"
        assert body["correlationId"] == "corr-1"
        assert body["type"] == "TicketSold"
        assert body["payload"] == {"ticketId": "t1"}
        assert "publishedAt" in body
        assert REGISTRY.get_sample_value(
            "broker_publish_total", {"exchange": EXCHANGE, "result": "confirmed"}
        ) == before + 1

    @pytest.mark.asyncio
    async def test_publish_to_named_exchange(self, broker, fake_amqp):
        """Test that a message for the ticket.sales exchange is confirmed there."""
        await broker.connect()

        payload = {"eventId": "E1", "merchantId": "M1"}
        assert await broker.publish("ticket.sales", "ticket.sales", payload, **IDS) is True

        fake_amqp.publish_channel.get_exchange.assert_awaited_once_with("ticket.sales", ensure=True)
        body = json.loads(fake_amqp.exchange.publish.await_args.args[0].body)
        assert body["payload"] == payload

    @pytest.mark.asyncio
    async def test_nack_raises(self, broker, fake_amqp):
        """Test that a negative confirm raises PublishNackError."""
        await broker.connect()
        fake_amqp.exchange.publish.return_value = aiormq.spec.Basic.Nack()

        with pytest.raises(PublishNackError):
            await broker.publish(EXCHANGE, "ticket.sales", {}, **IDS)

    @pytest.mark.asyncio
    async def test_returned_message_raises_nack(self, broker, fake_amqp):
        """Test that an unroutable mandatory message is not treated as delivered."""
        await broker.connect()
        fake_amqp.exchange.publish.side_effect = DeliveryError(None, aiormq.spec.Basic.Nack())

        with pytest.raises(PublishNackError, match="unroutable"):
            await broker.publish(EXCHANGE, "ticket.sales", {}, **IDS)

    @pytest.mark.asyncio
    async def test_missing_confirm_times_out(self, broker, fake_amqp, rabbit_settings):
        """Test that no confirm within publish_timeout raises PublishTimeoutError."""
        await broker.connect()

        async def never_confirmed(*args, **kwargs):
            await asyncio.sleep(60)

        fake_amqp.exchange.publish.side_effect = never_confirmed

        with pytest.raises(PublishTimeoutError) as exc_info:
            await broker.publish(EXCHANGE, "ticket.sales", {}, **IDS)
        assert exc_info.value.timeout == rabbit_settings.publish_timeout

    @pytest.mark.asyncio
    async def test_not_connected(self, broker, fake_amqp):
        """Test that publishing while disconnected fails without touching the channel."""
        with pytest.raises(PublishError) as exc_info:
            await broker.publish(EXCHANGE, "ticket.sales", {}, **IDS)

        assert exc_info.value.extra["reason"] == "broker disconnected"
        fake_amqp.exchange.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unserializable_payload(self, broker):
        """Test that a payload that is not JSON raises MessageSerializationError."""
        await broker.connect()

        with pytest.raises(MessageSerializationError):
            await broker.publish(EXCHANGE, "ticket.sales", {"ticket": object()}, **IDS)

    @pytest.mark.asyncio
    async def test_channel_error_raises_publish_error(self, broker, fake_amqp):
        """Test that a channel failure during publish surfaces as PublishError."""
        await broker.connect()
        fake_amqp.exchange.publish.side_effect = ConnectionResetError("socket closed")

        with pytest.raises(PublishError, match="Publish failed"):
            await broker.publish(EXCHANGE, "ticket.sales", {}, **IDS)


@pytest.mark.unit
class TestReconnect:
    """Test suite for connection loss handling."""

    @pytest.mark.asyncio
    async def test_connection_loss_fails_inflight_and_reconnects(
        self, broker, fake_amqp, rabbit_settings
    ):
        """Test that in-flight publishes fail and the client restores topology and consumers."""
        await broker.connect()
        await broker.declare_topology(build_default_topology(rabbit_settings))
        await broker.consume(QUEUE, AsyncMock())

        blocker = asyncio.Event()

        async def blocked(*args, **kwargs):
            await blocker.wait()

        fake_amqp.exchange.publish.side_effect = blocked
        publish = asyncio.ensure_future(broker.publish(EXCHANGE, "ticket.sales", {}, **IDS))
        await _wait_for(lambda: bool(broker._inflight))

        lost = fake_amqp.connection
        fake_amqp.connection = fake_amqp.new_connection()
        broker._on_connection_closed(lost, ConnectionError("connection reset"))

        with pytest.raises(PublishError):
            await publish
        assert broker.state in (ConnectionState.RECONNECTING, ConnectionState.CONNECTED)

        await broker._reconnect_task
        assert broker.state is ConnectionState.CONNECTED
        assert fake_amqp.connect.await_count == 2
        assert fake_amqp.consume_channel.declare_queue.await_count == 12
        assert fake_amqp.queue.consume.await_count == 2

        fake_amqp.exchange.publish.side_effect = None
        assert await broker.publish(EXCHANGE, "ticket.sales", {}, **IDS) is True

    @pytest.mark.asyncio
    async def test_reconnect_backs_off_until_broker_returns(self, broker, fake_amqp, rabbit_settings):
        """Test that failed reconnect attempts are retried with growing delays."""
        await broker.connect()
        lost = fake_amqp.connection
        fake_amqp.connection = fake_amqp.new_connection()
        fake_amqp.connect.side_effect = [
            ConnectionError("refused"),
            ConnectionError("refused"),
            fake_amqp.connection,
        ]

        broker._on_connection_closed(lost, None)
        await broker._reconnect_task

        assert broker.is_connected
        delays = [c.args[0] for c in broker._sleep.await_args_list]
        assert len(delays) == 3
        assert all(0 <= d <= rabbit_settings.reconnect_max_delay for d in delays)

    @pytest.mark.asyncio
    async def test_stale_close_callback_is_ignored(self, broker, fake_amqp):
        """Test that a callback from a connection already replaced does nothing."""
        await broker.connect()
        broker._on_connection_closed(MagicMock(name="old-connection"), None)

        assert broker.state is ConnectionState.CONNECTED
        assert broker._reconnect_task is None

    @pytest.mark.asyncio
    async def test_channel_close_reconnects(self, broker, fake_amqp, rabbit_settings):
        """Test that a channel closed by the broker is replaced along with topology and consumers."""
        await broker.connect()
        await broker.declare_topology(build_default_topology(rabbit_settings))
        await broker.consume(QUEUE, AsyncMock())
        fake_amqp.publish_channel.close_callbacks.add.assert_called_once_with(broker._on_channel_closed)
        fake_amqp.consume_channel.close_callbacks.add.assert_called_once_with(broker._on_channel_closed)
        on_close = fake_amqp.publish_channel.close_callbacks.add.call_args.args[0]
        lost = fake_amqp.connection
        fake_amqp.connection = fake_amqp.new_connection()

        on_close(fake_amqp.publish_channel, ConnectionError("CHANNEL_ERROR"))

        assert broker.state is ConnectionState.RECONNECTING
        assert (await broker.health())["status"] == "unhealthy"
        with pytest.raises(PublishError):
            await broker.publish(EXCHANGE, "ticket.sales", {}, **IDS)

        await broker._reconnect_task
        lost.close.assert_awaited_once()
        assert broker.is_connected
        assert fake_amqp.connect.await_count == 2
        assert fake_amqp.publish_channel.declare_exchange.await_count == 4
        assert fake_amqp.queue.consume.await_count == 2
        assert await broker.publish(EXCHANGE, "ticket.sales", {}, **IDS) is True

    @pytest.mark.asyncio
    async def test_publish_on_closed_channel_reconnects(self, broker, fake_amqp):
        """Test that a publish hitting a dead channel fails once and the client recovers."""
        await broker.connect()
        fake_amqp.connection = fake_amqp.new_connection()
        fake_amqp.exchange.publish.side_effect = ChannelInvalidStateError("channel closed")

        with pytest.raises(PublishError):
            await broker.publish(EXCHANGE, "ticket.sales", {}, **IDS)
        assert broker.state is ConnectionState.RECONNECTING

        fake_amqp.exchange.publish.side_effect = None
        await broker._reconnect_task
        assert broker.is_connected
        assert await broker.publish(EXCHANGE, "ticket.sales", {}, **IDS) is True

    @pytest.mark.asyncio
    async def test_missing_exchange_closes_channel_and_reconnects(self, broker, fake_amqp):
        """Test that a 404 on a passive declare does not leave a dead publish channel behind."""
        await broker.connect()
        fake_amqp.connection = fake_amqp.new_connection()

        async def not_found(name, ensure):
            fake_amqp.publish_channel.is_closed = True
            raise ChannelNotFoundEntity(404, f"NOT_FOUND - no exchange '{name}'")

        fake_amqp.publish_channel.get_exchange.side_effect = not_found

        with pytest.raises(PublishError):
            await broker.publish("ticket.sales", "ticket.sales", {}, **IDS)
        assert broker.state is ConnectionState.RECONNECTING
        assert (await broker.health())["status"] == "unhealthy"

        fake_amqp.publish_channel.is_closed = False
        fake_amqp.publish_channel.get_exchange.side_effect = None
        await broker._reconnect_task
        assert (await broker.health())["status"] == "healthy"
        assert await broker.publish("ticket.sales", "ticket.sales", {}, **IDS) is True


@pytest.mark.unit
class TestConsume:
    """Test suite for consumer acks, retries and dead-lettering."""

    async def _on_message(self, broker, fake_amqp, handler, **kwargs):
        await broker.connect()
        await broker.consume(QUEUE, handler, **kwargs)
        return fake_amqp.queue.consume.await_args.args[0]

    @pytest.mark.asyncio
    async def test_success_acks(self, broker, fake_amqp):
        """Test that a handled message is acked."""
        handler = AsyncMock()
        on_message = await self._on_message(broker, fake_amqp, handler)
        message = _incoming(_envelope_body(payload={"merchantId": "m1"}))

        await on_message(message)

        envelope = handler.await_args.args[0]
        assert envelope.message_id == "msg-1"
        assert envelope.payload == {"merchantId": "m1"}
        message.ack.assert_awaited_once()
        message.reject.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_is_republished_with_retry_count(self, broker, fake_amqp):
        """Test that a failing handler gets the message back with x-retry-count incremented."""
        on_message = await self._on_message(broker, fake_amqp, AsyncMock(side_effect=RuntimeError("db busy")))
        message = _incoming(_envelope_body(), headers={RETRY_COUNT_HEADER: 1, "x-custom": "kept"})

        await on_message(message)

        retry = fake_amqp.exchange.publish.await_args.args[0]
        assert fake_amqp.exchange.publish.await_args.kwargs == {"routing_key": QUEUE}
        assert retry.headers[RETRY_COUNT_HEADER] == 2
        assert retry.headers["x-retry-last-error"] == "db busy"
        assert retry.headers["x-custom"] == "kept"
        assert retry.message_id == "msg-1"
        message.ack.assert_awaited_once()
        message.reject.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exhausted_retries_dead_letter(self, broker, fake_amqp):
        """Test that a message at its retry budget is rejected without requeue."""
        on_message = await self._on_message(
            broker, fake_amqp, AsyncMock(side_effect=RuntimeError("db busy")), max_retries=2
        )
        message = _incoming(_envelope_body(), headers={RETRY_COUNT_HEADER: 2})

        await on_message(message)

        message.reject.assert_awaited_once_with(requeue=False)
        fake_amqp.exchange.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_retryable_error_dead_letters_immediately(self, broker, fake_amqp):
        """Test that data errors are not retried."""
        on_message = await self._on_message(broker, fake_amqp, AsyncMock(side_effect=ValueError("bad id")))
        message = _incoming(_envelope_body())

        await on_message(message)

        message.reject.assert_awaited_once_with(requeue=False)
        fake_amqp.exchange.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_undecodable_body_dead_letters(self, broker, fake_amqp):
        """Test that a body that is not an envelope never reaches the handler."""
        handler = AsyncMock()
        on_message = await self._on_message(broker, fake_amqp, handler)
        message = _incoming(b"not json")

        await on_message(message)

        handler.assert_not_awaited()
        message.reject.assert_awaited_once_with(requeue=False)

    @pytest.mark.asyncio
    async def test_failed_republish_requeues(self, broker, fake_amqp):
        """Test that the original message is returned when the retry copy cannot be published."""
        on_message = await self._on_message(broker, fake_amqp, AsyncMock(side_effect=RuntimeError("db busy")))
        fake_amqp.exchange.publish.side_effect = ConnectionResetError("socket closed")
        message = _incoming(_envelope_body())

        await on_message(message)

        message.nack.assert_awaited_once_with(requeue=True)
        message.ack.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_consumer_is_ignored(self, broker, fake_amqp):
        """Test that a queue gets one consumer."""
        await self._on_message(broker, fake_amqp, AsyncMock())
        await broker.consume(QUEUE, AsyncMock())
        fake_amqp.queue.consume.assert_awaited_once()


@pytest.mark.unit
class TestHealth:
    """Test suite for health reporting."""

    @pytest.mark.asyncio
    async def test_healthy_when_connected(self, broker):
        """Test that a connected client with consumers is healthy."""
        await broker.connect()
        await broker.consume(QUEUE, AsyncMock())

        health = await broker.health()
        assert health == {
            "status": "healthy",
            "state": "connected",
            "is_connected": True,
            "consumers": [QUEUE],
        }

    @pytest.mark.asyncio
    async def test_unhealthy_when_disconnected(self, broker):
        """Test that a client that never connected is unhealthy."""
        health = await broker.health()
        assert health["status"] == "unhealthy"
        assert health["reason"] == "broker_disconnected"

    @pytest.mark.asyncio
    async def test_unavailable_when_disabled(self, fake_amqp):
        """Test that a disabled broker reports unavailable."""
        broker = BrokerClient(RabbitSettings(enabled=False), connect_factory=fake_amqp.connect)
        health = await broker.health()
        assert health["status"] == "unavailable"
        assert health["reason"] == "rabbitmq_not_enabled"
