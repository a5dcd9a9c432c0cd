"""Job scheduler configuration settings."""

import os
import socket

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class SchedulerSettings(BaseSettings):
    """Configuration for the lease-locked job scheduler."""

    enabled: bool = True
    """Run scheduled jobs in this process."""

    lease_timeout_seconds: float = Field(default=600.0, gt=0)
    """A held lease older than this is considered abandoned and can be reclaimed."""

    poll_interval_seconds: float = Field(default=5.0, gt=0, le=3600)
    """How often the scheduler looks for due jobs."""

    worker_id: str = Field(default_factory=_default_worker_id, min_length=1, max_length=255)
    """Identity recorded as lease owner (defaults to host:pid)."""

    model_config = SettingsConfigDict(
        env_prefix="SCHEDULER_",
        env_file=".env",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
    )


__all__ = ["SchedulerSettings"]
