"""Core database package: declarative base, mixins, column types and repository."""

from ticketing_reliability.core.database.base import (
    NAMING_CONVENTION,
    Base,
    TimestampMixin,
    UTCDateTime,
    UUIDv7PKMixin,
    generate_uuid7,
    utcnow,
)
from ticketing_reliability.core.database.repository import BaseRepository

__all__ = [
    "NAMING_CONVENTION",
    "Base",
    "BaseRepository",
    "TimestampMixin",
    "UTCDateTime",
    "UUIDv7PKMixin",
    "generate_uuid7",
    "utcnow",
]
