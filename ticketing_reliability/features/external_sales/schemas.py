"""Payload schemas for external ticket sales messages."""

from __future__ import annotations

from datetime import datetime
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ticketing_reliability.core.database.base import utcnow
from ticketing_reliability.infra.messaging.conventions import TICKET_SALES_DATA_REQUEST_TYPE


class TicketSalesDataRequest(BaseModel):
    """Asks the external sales service to send its sales data for an event.

    Example:
        >>> TicketSalesDataRequest(event_id="e1", merchant_id="m1").to_payload()
        {'eventId': 'e1', 'merchantId': 'm1', 'requestedAt': '2025-...'}
    """

    message_type: ClassVar[str] = TICKET_SALES_DATA_REQUEST_TYPE

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    event_id: str = Field(min_length=1, description="External event id")
    merchant_id: str = Field(min_length=1, description="External merchant id")
    requested_at: datetime = Field(default_factory=utcnow)

    def to_payload(self) -> dict[str, str]:
        return self.model_dump(mode="json", by_alias=True)


__all__ = ["TicketSalesDataRequest"]
