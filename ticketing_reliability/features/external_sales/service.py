"""Publishing ticket sales data requests through the outbox."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ticketing_reliability.core.settings import get_rabbit_settings
from ticketing_reliability.features.external_sales.schemas import TicketSalesDataRequest
from ticketing_reliability.infra.messaging.conventions import EXTERNAL_TICKET_SALES_REQUEST_KEY

if TYPE_CHECKING:
    from ticketing_reliability.infra.events.outbox.publisher import OutboxPublisher, PublishResult

logger = logging.getLogger(__name__)


async def request_external_ticket_sales(
    publisher: OutboxPublisher,
    event_id: str,
    merchant_id: str,
    *,
    idempotency_key: str | None = None,
) -> PublishResult:
    """Ask the external sales service for an event's sales data.

    The request goes to ``event-merchant-exchange`` with routing key
    ``external.ticket.sales.request``; the answer arrives later on the
    external ticket sales queue with the same correlation id.

    Raises:
        PersistenceError: The request could not be recorded.
        OutboxPublishError: Recorded but not confirmed; the sweeper retries it.
    """
    request = TicketSalesDataRequest(event_id=event_id, merchant_id=merchant_id)
    logger.info(
        "Requesting external ticket sales data",
        extra={"event_id": event_id, "merchant_id": merchant_id},
    )
    return await publisher.publish(
        get_rabbit_settings().exchange_name,
        EXTERNAL_TICKET_SALES_REQUEST_KEY,
        TicketSalesDataRequest.message_type,
        request.to_payload(),
        idempotency_key=idempotency_key,
    )


__all__ = ["request_external_ticket_sales"]
