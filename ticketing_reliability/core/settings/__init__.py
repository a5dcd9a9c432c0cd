"""Modular Pydantic Settings v2 configuration.

Settings are split by domain (database/broker/outbox/scheduler/logging),
read from environment variables (and an optional .env file), frozen after
validation and cached by the loaders in `loader.py`:

    from ticketing_reliability.core.settings import get_rabbit_settings

    rabbit = get_rabbit_settings()
    print(rabbit.publish_timeout)
"""

from __future__ import annotations

from .database import DatabaseSettings
from .loader import (
    clear_settings_cache,
    get_db_settings,
    get_logging_settings,
    get_outbox_settings,
    get_rabbit_settings,
    get_scheduler_settings,
)
from .logs import LoggingSettings
from .outbox import OutboxSettings
from .rabbit import RabbitSettings
from .scheduler import SchedulerSettings

__all__ = [
    "DatabaseSettings",
    "LoggingSettings",
    "OutboxSettings",
    "RabbitSettings",
    "SchedulerSettings",
    "clear_settings_cache",
    "get_db_settings",
    "get_logging_settings",
    "get_outbox_settings",
    "get_rabbit_settings",
    "get_scheduler_settings",
]
