"""InboxMessage model: messages this service has received from the broker.

Delivery is at-least-once, so the same messageId can arrive more than once
(broker redelivery, or a publisher that crashed between confirm and
mark-sent). The inbox remembers which messages were already handled.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ticketing_reliability.core.database.base import Base, UTCDateTime, UUIDv7PKMixin, utcnow


class InboxMessage(Base, UUIDv7PKMixin):
    """One received message.

    Attributes:
        message_id: Envelope messageId (unique)
        correlation_id: Envelope correlationId
        message_type: Envelope type
        received_at: First time the message was seen
        processed_at: When a handler completed for it; None while unprocessed
        claimed_at: When a delivery started handling it; None when no handler is running
        attempts: Handler failures so far
        error: Last handler error
    """

    __tablename__ = "inbox_messages"

    message_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    correlation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    message_type: Mapped[str] = mapped_column(String(100), nullable=False)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None

    def __repr__(self) -> str:
        state = "processed" if self.is_processed else f"unprocessed (attempts={self.attempts})"
        return f"InboxMessage(message_id={self.message_id!r}, {state})"


__all__ = ["InboxMessage"]
