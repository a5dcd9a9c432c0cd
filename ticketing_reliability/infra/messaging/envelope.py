"""Wire envelope shared by every message this service publishes.

JSON on the wire:

    {"messageId": "...", "correlationId": "...", "type": "TicketSalesDataRequest",
     "payload": {...}, "publishedAt": "2025-01-01T00:00:00.123000Z"}
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticSerializationError

from ticketing_reliability.core.database.base import utcnow
from ticketing_reliability.core.exceptions import MessageSerializationError

CONTENT_TYPE = "application/json"


class MessageEnvelope(BaseModel):
    """Envelope around a message payload.

    Field names are snake_case in Python and camelCase on the wire.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    message_id: str = Field(min_length=1)
    correlation_id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    payload: Any = None
    published_at: datetime = Field(default_factory=utcnow)

    def to_bytes(self) -> bytes:
        """Serialize to the JSON body.

        Raises:
            MessageSerializationError: If the payload is not JSON-serializable.
        """
        try:
            return self.model_dump_json(by_alias=True).encode("utf-8")
        except (PydanticSerializationError, TypeError, ValueError) as e:
            raise MessageSerializationError(
                f"Payload of {self.type} message is not JSON-serializable: {e}",
                extra={"message_id": self.message_id, "type": self.type},
            ) from e

    @classmethod
    def from_bytes(cls, body: bytes) -> MessageEnvelope:
        """Parse a JSON body.

        Raises:
            MessageSerializationError: If the body is not a valid envelope.
        """
        try:
            return cls.model_validate_json(body)
        except ValidationError as e:
            raise MessageSerializationError(
                f"Invalid message envelope: {e.error_count()} validation error(s)",
                extra={"errors": e.errors(include_url=False)},
            ) from e


def build_envelope(
    *,
    message_id: str,
    correlation_id: str,
    message_type: str,
    payload: Any,
) -> MessageEnvelope:
    return MessageEnvelope(
        message_id=message_id,
        correlation_id=correlation_id,
        type=message_type,
        payload=payload,
    )


__all__ = ["CONTENT_TYPE", "MessageEnvelope", "build_envelope"]
