"""Context propagation for structured logging.

Fields bound with ``set_log_context`` (correlation_id, message_id, job, ...)
are copied into every record logged from the same asyncio task, so the
outbox, broker and scheduler logs can be joined on them without threading
the values through every call.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
import logging
from typing import Any

# Each asyncio task gets its own copy automatically
_log_context: ContextVar[dict[str, Any]] = ContextVar("log_context", default={})


def set_log_context(**kwargs: Any) -> None:
    """Add fields to the logging context of the current task.

    Example:
        set_log_context(correlation_id="c-123", message_id="m-456")
        logger.info("Publishing")  # record carries both ids
    """
    current = _log_context.get().copy()
    current.update(kwargs)
    _log_context.set(current)


def get_log_context() -> dict[str, Any]:
    """Return a copy of the current logging context."""
    return _log_context.get().copy()


def clear_log_context() -> None:
    """Drop every field from the current logging context."""
    _log_context.set({})


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Bind fields for the duration of a block, restoring the previous context after.

    Example:
        with log_context(job="outbox-retry-sweeper", lease_token=7):
            await handler()
    """
    token = _log_context.set({**_log_context.get(), **kwargs})
    try:
        yield
    finally:
        _log_context.reset(token)


class ContextInjectingFilter(logging.Filter):
    """Copy the contextvar-based log context onto each LogRecord.

    Installed on the root logger by ``configure_logging`` so formatters
    (JSONFormatter in particular) see the fields as record attributes.
    Attributes already present on the record are never overwritten.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True
