"""Exchange, queue and routing key naming conventions.

Names are part of the contract with the other services on the broker, so
they live in one place. Exchange names come from RabbitSettings; queue and
routing key names are fixed.
"""

from __future__ import annotations

# ──────────────────────────────────────────────────────────────────────────────
# Queues consumed by this service
# ──────────────────────────────────────────────────────────────────────────────

EXTERNAL_TICKET_SALES_QUEUE = "external-ticket-sales-queue"
MERCHANT_EVENTS_QUEUE = "merchant-events-queue"
EVENT_EVENTS_QUEUE = "event-events-queue"

CONSUMED_QUEUES: tuple[str, ...] = (
    EXTERNAL_TICKET_SALES_QUEUE,
    MERCHANT_EVENTS_QUEUE,
    EVENT_EVENTS_QUEUE,
)

# ──────────────────────────────────────────────────────────────────────────────
# Routing keys and message types published by this service
# ──────────────────────────────────────────────────────────────────────────────

EXTERNAL_TICKET_SALES_REQUEST_KEY = "external.ticket.sales.request"
TICKET_SALES_DATA_REQUEST_TYPE = "TicketSalesDataRequest"

DLQ_ROUTING_PREFIX = "dlq"


def get_dlq_routing_key(queue_name: str) -> str:
    """Routing key a queue's rejected messages are dead-lettered with.

    Example:
        >>> get_dlq_routing_key("merchant-events-queue")
        'dlq.merchant-events-queue'
    """
    return f"{DLQ_ROUTING_PREFIX}.{queue_name}"


def get_dlq_queue_name(queue_name: str) -> str:
    """Name of the queue holding a queue's dead letters.

    The DLQ is bound to the dead letter exchange with the same key it is
    named after.
    """
    return get_dlq_routing_key(queue_name)


__all__ = [
    "CONSUMED_QUEUES",
    "DLQ_ROUTING_PREFIX",
    "EVENT_EVENTS_QUEUE",
    "EXTERNAL_TICKET_SALES_QUEUE",
    "EXTERNAL_TICKET_SALES_REQUEST_KEY",
    "MERCHANT_EVENTS_QUEUE",
    "TICKET_SALES_DATA_REQUEST_TYPE",
    "get_dlq_queue_name",
    "get_dlq_routing_key",
]
