"""Base database model classes with composable mixins.

This module provides the foundation for the reliability tables:
- Declarative base with a consistent constraint naming convention
- UUID v7 primary keys (time-sortable, FIFO friendly)
- Timestamp tracking (created_at, updated_at)
- A timezone-safe datetime column type

Example:
    class OutboxMessage(Base, UUIDv7PKMixin, TimestampMixin):
        __tablename__ = "outbox_messages"
        exchange: Mapped[str] = mapped_column(String(255))
"""

from __future__ import annotations

from datetime import UTC, datetime
import os
import time
from typing import Any
import uuid

from sqlalchemy import DateTime, MetaData
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator

# Consistent naming convention for database constraints
# Ensures predictable names for migrations and schema management
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Declarative base shared by all reliability tables.

    Every model sets ``__tablename__`` explicitly; the table names are part
    of the external interface (``outbox_messages``, ``scheduled_jobs``).
    """

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetime that always round-trips as UTC.

    PostgreSQL keeps the offset natively; SQLite drops it and hands back
    naive values. Binding converts to UTC and loading re-attaches UTC so
    Python-side comparisons never mix naive and aware datetimes.

    Example:
        >>> class Lease(Base):
        ...     locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


# ============================================================================
# Primary Key Mixins
# ============================================================================


class UUIDv7PKMixin:
    """UUID v7 primary key (time-sortable).

    UUID v7 encodes Unix timestamp in the first 48 bits, providing:
    - Natural time-ordering (later IDs sort after earlier ones)
    - Better B-tree index locality for sequential inserts
    - Global uniqueness (safe for distributed systems)

    Provides:
        id: UUID v7 primary key (time-ordered)
    """

    __allow_unmapped__ = True

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=lambda: generate_uuid7(),
        comment="UUID v7 primary key (time-sortable)",
    )


def generate_uuid7() -> uuid.UUID:
    """Generate a UUID v7 value."""
    timestamp_ms = int(time.time() * 1000)
    random_bytes = os.urandom(10)

    uuid_bytes = bytearray(16)
    uuid_bytes[0:6] = timestamp_ms.to_bytes(6, byteorder="big")
    uuid_bytes[6] = (random_bytes[0] & 0x0F) | 0x70  # Version 7
    uuid_bytes[7] = random_bytes[1]
    uuid_bytes[8] = (random_bytes[2] & 0x3F) | 0x80  # Variant
    uuid_bytes[9:16] = random_bytes[3:10]

    return uuid.UUID(bytes=bytes(uuid_bytes))


# ============================================================================
# Audit and Tracking Mixins
# ============================================================================


class TimestampMixin:
    """Timestamp tracking for create and update operations.

    Uses both Python-side defaults (for test environments) and database
    server defaults (for direct SQL inserts).

    Provides:
        created_at: Timestamp of record creation (immutable)
        updated_at: Timestamp of last modification (auto-updates)
    """

    __allow_unmapped__ = True

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        comment="Timestamp of record creation",
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
        comment="Timestamp of last update",
    )


__all__ = [
    "NAMING_CONVENTION",
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "UUIDv7PKMixin",
    "generate_uuid7",
    "utcnow",
]
