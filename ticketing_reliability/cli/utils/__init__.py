"""CLI utilities for running async operations and formatting output."""

from ticketing_reliability.cli.utils.async_runner import coro
from ticketing_reliability.cli.utils.formatters import (
    error,
    format_time,
    header,
    info,
    success,
    warning,
)

__all__ = [
    "coro",
    "error",
    "format_time",
    "header",
    "info",
    "success",
    "warning",
]
