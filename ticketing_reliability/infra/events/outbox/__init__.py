"""Transactional outbox: store, publisher and retry sweeper.

Messages are recorded in the ``outbox_messages`` table before they are
published, so a crash or broker outage never loses them:

    publisher = OutboxPublisher(session_factory, broker)
    result = await publisher.publish(exchange, routing_key, message_type, payload)

    sweeper = OutboxSweeper(session_factory, broker)
    await sweeper.sweep()  # re-drives failed and stale messages
"""

from ticketing_reliability.infra.events.outbox.models import OutboxMessage, OutboxStatus
from ticketing_reliability.infra.events.outbox.publisher import OutboxPublisher, PublishResult
from ticketing_reliability.infra.events.outbox.repository import OutboxRepository
from ticketing_reliability.infra.events.outbox.sweeper import OutboxSweeper, SweepResult

__all__ = [
    "OutboxMessage",
    "OutboxPublisher",
    "OutboxRepository",
    "OutboxStatus",
    "OutboxSweeper",
    "PublishResult",
    "SweepResult",
]
