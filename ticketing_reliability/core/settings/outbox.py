"""Outbox delivery configuration settings.

Provides settings for:
- Retry budget and backoff between publish attempts
- Retry sweeper cadence and batch size
- Retention of delivered messages
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OutboxSettings(BaseSettings):
    """Configuration for outbox publishing and the retry sweeper."""

    max_attempts: int = Field(default=3, ge=1, le=100)
    """Publish attempts allowed before a message is declared dead."""

    retry_delay_seconds: float = Field(default=60.0, gt=0)
    """Base delay for exponential backoff between retries (seconds)."""

    retry_max_delay_seconds: float = Field(default=3600.0, gt=0)
    """Maximum delay between retries (1 hour cap)."""

    stale_after_seconds: float = Field(default=30.0, ge=0)
    """Pending messages younger than this are assumed to still be in flight."""

    sweep_schedule: str = "1 minute"
    """Schedule of the retry sweeper job."""

    sweep_batch_size: int = Field(default=100, ge=1, le=10_000)
    """Maximum number of messages re-published per sweep."""

    retention_days: int = Field(default=7, ge=1)
    """How long sent messages are kept before cleanup."""

    cleanup_schedule: str = "0 3 * * *"
    """Schedule of the sent-message cleanup job (crontab)."""

    model_config = SettingsConfigDict(
        env_prefix="OUTBOX_",
        env_file=".env",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
    )


__all__ = ["OutboxSettings"]
