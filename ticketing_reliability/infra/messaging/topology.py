"""Exchange and queue definitions with dead-letter configuration.

A Topology is plain data; BrokerClient.declare_topology() turns it into
broker objects and re-applies it after every reconnect. Declarations are
idempotent as long as the arguments stay identical, so every service can
declare what it relies on.

All exchanges and queues are:
- Durable (survive broker restarts)
- Not auto-deleted
- Dead-lettered to the DLX under ``dlq.<queue>`` (work queues)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ticketing_reliability.infra.messaging.conventions import (
    CONSUMED_QUEUES,
    get_dlq_queue_name,
    get_dlq_routing_key,
)

if TYPE_CHECKING:
    from ticketing_reliability.core.settings import RabbitSettings


@dataclass(frozen=True, slots=True)
class ExchangeSpec:
    name: str
    type: str = "topic"
    durable: bool = True


@dataclass(frozen=True, slots=True)
class QueueSpec:
    """A queue, its bindings and its dead-letter routing.

    Attributes:
        name: Queue name.
        bindings: (exchange, routing_key) pairs.
        dead_letter_exchange: Where rejected messages go, if anywhere.
        dead_letter_routing_key: Routing key used when dead-lettering.
    """

    name: str
    bindings: tuple[tuple[str, str], ...] = ()
    dead_letter_exchange: str | None = None
    dead_letter_routing_key: str | None = None
    durable: bool = True

    @property
    def arguments(self) -> dict[str, Any]:
        args: dict[str, Any] = {}
        if self.dead_letter_exchange:
            args["x-dead-letter-exchange"] = self.dead_letter_exchange
            if self.dead_letter_routing_key:
                args["x-dead-letter-routing-key"] = self.dead_letter_routing_key
        return args


@dataclass(frozen=True, slots=True)
class Topology:
    exchanges: tuple[ExchangeSpec, ...] = ()
    queues: tuple[QueueSpec, ...] = ()

    def queue(self, name: str) -> QueueSpec | None:
        return next((q for q in self.queues if q.name == name), None)

    def merge(self, other: Topology) -> Topology:
        """Combine two topologies; later definitions of a name win."""
        exchanges = {e.name: e for e in (*self.exchanges, *other.exchanges)}
        queues = {q.name: q for q in (*self.queues, *other.queues)}
        return Topology(exchanges=tuple(exchanges.values()), queues=tuple(queues.values()))


def create_queue_with_dlq(
    queue_name: str,
    dead_letter_exchange: str,
    bindings: tuple[tuple[str, str], ...] = (),
) -> tuple[QueueSpec, QueueSpec]:
    """Build a work queue and the DLQ that collects its rejected messages.

    Example:
        >>> work, dlq = create_queue_with_dlq("merchant-events-queue", "event-merchant-dlx")
        >>> work.arguments["x-dead-letter-routing-key"]
        'dlq.merchant-events-queue'
        >>> dlq.bindings
        (('event-merchant-dlx', 'dlq.merchant-events-queue'),)
    """
    dlq_key = get_dlq_routing_key(queue_name)
    work = QueueSpec(
        name=queue_name,
        bindings=bindings,
        dead_letter_exchange=dead_letter_exchange,
        dead_letter_routing_key=dlq_key,
    )
    dlq = QueueSpec(
        name=get_dlq_queue_name(queue_name),
        bindings=((dead_letter_exchange, dlq_key),),
    )
    return work, dlq


def build_default_topology(
    settings: RabbitSettings,
    consumed_queues: tuple[str, ...] = CONSUMED_QUEUES,
) -> Topology:
    """Domain exchange, dead letter exchange, and a DLQ pair per consumed queue.

    Work queue bindings to the domain exchange belong to the producing
    services, so none are declared here.
    """
    exchanges = (
        ExchangeSpec(name=settings.exchange_name, type=settings.exchange_type),
        ExchangeSpec(name=settings.dead_letter_exchange_name, type="topic"),
    )
    queues: list[QueueSpec] = []
    for queue_name in consumed_queues:
        queues.extend(create_queue_with_dlq(queue_name, settings.dead_letter_exchange_name))
    return Topology(exchanges=exchanges, queues=tuple(queues))


__all__ = [
    "ExchangeSpec",
    "QueueSpec",
    "Topology",
    "build_default_topology",
    "create_queue_with_dlq",
]
