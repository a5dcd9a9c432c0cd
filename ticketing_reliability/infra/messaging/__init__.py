"""RabbitMQ messaging: broker client, topology and wire envelope."""

from ticketing_reliability.infra.messaging.broker import BrokerClient, ConnectionState
from ticketing_reliability.infra.messaging.envelope import MessageEnvelope
from ticketing_reliability.infra.messaging.topology import (
    ExchangeSpec,
    QueueSpec,
    Topology,
    build_default_topology,
)

__all__ = [
    "BrokerClient",
    "ConnectionState",
    "ExchangeSpec",
    "MessageEnvelope",
    "QueueSpec",
    "Topology",
    "build_default_topology",
]
