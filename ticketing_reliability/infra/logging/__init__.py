"""Structured logging for the worker and the CLI.

Example:
    from ticketing_reliability.infra.logging import setup_logging, set_log_context

    setup_logging()
    set_log_context(correlation_id="c-123")
"""

from ticketing_reliability.infra.logging.config import (
    configure_logging,
    setup_logging,
    shutdown,
)
from ticketing_reliability.infra.logging.context import (
    ContextInjectingFilter,
    clear_log_context,
    get_log_context,
    log_context,
    set_log_context,
)
from ticketing_reliability.infra.logging.formatters import JSONFormatter

__all__ = [
    "ContextInjectingFilter",
    "JSONFormatter",
    "clear_log_context",
    "configure_logging",
    "get_log_context",
    "log_context",
    "set_log_context",
    "setup_logging",
    "shutdown",
]
