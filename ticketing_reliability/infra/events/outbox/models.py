"""OutboxMessage SQLAlchemy model for the transactional outbox pattern.

Every message bound for the broker is written here before any publish is
attempted. The row is the durable record of intent: the publisher marks it
``sent`` on a positive confirm, ``failed`` when delivery could not be
confirmed, and the retry sweeper re-drives failed or stale rows until they
are sent or marked ``dead``.
"""

from __future__ import annotations

from datetime import datetime
import enum
from typing import Any

from sqlalchemy import JSON, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from ticketing_reliability.core.database.base import (
    Base,
    TimestampMixin,
    UTCDateTime,
    UUIDv7PKMixin,
)


class OutboxStatus(str, enum.Enum):
    """Delivery state of an outbox message.

    State Machine:
        PENDING → SENT
           │
           ├→ FAILED → (retry) → SENT
           │     │
           ↓     ↓
          DEAD ← ┘

    SENT and DEAD are terminal.
    """

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DEAD = "dead"

    @classmethod
    def open_states(cls) -> tuple[str, ...]:
        """States a message can still leave."""
        return (cls.PENDING.value, cls.FAILED.value)


# Portable JSON column; JSONB on PostgreSQL
PayloadJSON = JSON().with_variant(JSONB(), "postgresql")


class OutboxMessage(Base, UUIDv7PKMixin, TimestampMixin):
    """Outbox row for one broker message.

    Attributes:
        id: UUID v7 primary key (time-sortable for FIFO processing)
        message_id: Globally unique message id, also the AMQP message_id
        correlation_id: Groups a request with its eventual outcome
        idempotency_key: Optional caller-supplied de-duplication key
        exchange: Target exchange
        routing_key: Routing key used on publish
        message_type: Envelope ``type`` (e.g. "TicketSalesDataRequest")
        payload: JSON payload
        status: pending | sent | failed | dead
        attempts: Failed publish attempts so far
        last_attempt_at: When the last failed attempt happened
        next_retry_at: Earliest time the sweeper should retry
        sent_at: When the broker confirmed the message
        error: Last error message (truncated)
    """

    __tablename__ = "outbox_messages"

    message_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        unique=True,
        comment="Globally unique message identifier",
    )
    correlation_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        index=True,
        comment="Correlates a request with its outcome",
    )
    idempotency_key: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        comment="Caller-supplied de-duplication key",
    )

    # Routing
    exchange: Mapped[str] = mapped_column(String(255), nullable=False)
    routing_key: Mapped[str] = mapped_column(String(255), nullable=False)
    message_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
        comment="Envelope type identifier",
    )
    payload: Mapped[dict[str, Any]] = mapped_column(PayloadJSON, nullable=False)

    # Delivery state
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=OutboxStatus.PENDING.value,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
        comment="Earliest time for the next retry attempt",
    )
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Last error message if publishing failed",
    )

    __table_args__ = (
        # Sweeper scan: open rows in creation order
        Index(
            "ix_outbox_messages_retry_scan",
            "status",
            "next_retry_at",
            "created_at",
            postgresql_where=(status.in_(OutboxStatus.open_states())),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (OutboxStatus.SENT.value, OutboxStatus.DEAD.value)

    def __repr__(self) -> str:
        return (
            f"OutboxMessage("
            f"message_id={self.message_id!r}, "
            f"type={self.message_type!r}, "
            f"status={self.status}, "
            f"attempts={self.attempts}"
            f")"
        )


__all__ = ["OutboxMessage", "OutboxStatus", "PayloadJSON"]
