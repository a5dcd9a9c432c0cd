"""Logging configuration setup.

Uses:
- dictConfig for the root logger and its filters
- QueueHandler + QueueListener so handler I/O never blocks the event loop
- ContextInjectingFilter for correlation ids and job names
- JSONL output for machine parsing
"""

from __future__ import annotations

import atexit
import logging
import logging.config
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from queue import Queue
import time
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ticketing_reliability.core.settings.logs import LoggingSettings

_log_queue: Queue[logging.LogRecord] | None = None
_listener: QueueListener | None = None
_queue_handler: QueueHandler | None = None
_LOGGING_INITIALIZED = False

TEXT_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def complete(max_wait: float = 5.0) -> None:
    """Block until queued log records have been handed to the handlers."""
    if _log_queue is None or _listener is None:
        return

    start = time.monotonic()
    while not _log_queue.empty() and (time.monotonic() - start) < max_wait:
        time.sleep(0.01)


def shutdown() -> None:
    """Flush pending records and stop the QueueListener.

    Registered with atexit by configure_logging(); the CLI also calls it
    before exiting so the last lines of a command are not lost.
    """
    global _log_queue, _listener, _queue_handler

    if _listener is not None:
        complete()
        _listener.stop()
        _listener = None

    if _queue_handler is not None:
        logging.getLogger().removeHandler(_queue_handler)
        _queue_handler = None

    _log_queue = None


def setup_logging(
    log_settings: LoggingSettings | None = None,
    *,
    force: bool = False,
    **configure_kwargs: Any,
) -> None:
    """Configure logging once across entrypoints (worker, CLI).

    Args:
        log_settings: Logging settings; loaded via get_logging_settings() when omitted.
        force: Reconfigure even if logging was already initialized.
        **configure_kwargs: Explicit overrides for configure_logging().
    """
    global _LOGGING_INITIALIZED

    if _LOGGING_INITIALIZED and not force:
        return

    if log_settings is None:
        from ticketing_reliability.core.settings import get_logging_settings

        log_settings = get_logging_settings()

    log_config = {**log_settings.to_logging_kwargs(), **configure_kwargs}
    configure_logging(**log_config)
    _LOGGING_INITIALIZED = True


def configure_logging(
    log_level: str = "INFO",
    console_level: str | None = None,
    file_path: str | Path | None = None,
    json_logs: bool = True,
    console_enabled: bool = True,
    include_context: bool = True,
    capture_warnings: bool = True,
    file_max_bytes: int = 10 * 1024 * 1024,
    file_backup_count: int = 5,
    service_name: str = "ticketing-reliability",
) -> None:
    """Configure the root logger with dictConfig and the queue pattern.

    All handlers hang off a QueueListener; application loggers only ever
    reach a QueueHandler on the root logger.

    Args:
        log_level: Root logger level.
        console_level: Console handler level. If None, uses log_level.
        file_path: Rotating log file. None disables file logging.
        json_logs: Emit JSONL instead of human-readable text.
        console_enabled: Log to stderr.
        include_context: Install ContextInjectingFilter on the root logger.
        capture_warnings: Route the warnings module through logging.
        file_max_bytes: Size at which the log file rotates.
        file_backup_count: Rotated files to keep.
        service_name: Static "service" field on JSON records.

    Example:
        configure_logging(log_level="DEBUG", json_logs=False)
    """
    global _log_queue, _listener, _queue_handler

    # Reconfiguring replaces the previous listener instead of stacking handlers
    shutdown()

    if capture_warnings:
        logging.captureWarnings(True)

    file_path = Path(file_path) if file_path else None
    if file_path:
        file_path.parent.mkdir(parents=True, exist_ok=True)

    filters: dict[str, Any] = {}
    if include_context:
        filters["context"] = {
            "()": "ticketing_reliability.infra.logging.context.ContextInjectingFilter",
        }

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": filters,
            "root": {
                "level": log_level.upper(),
                "handlers": [],
                "filters": list(filters),
            },
            "loggers": {
                # aiormq/aio_pika log every frame at DEBUG
                "aiormq": {"level": "WARNING"},
                "aio_pika": {"level": "WARNING"},
                "apscheduler": {"level": "WARNING"},
            },
        }
    )

    handlers: list[logging.Handler] = []

    if console_enabled:
        console_handler = logging.StreamHandler()
        console_handler.setLevel((console_level or log_level).upper())
        console_handler.setFormatter(_build_formatter(json_logs, service_name))
        handlers.append(console_handler)

    if file_path:
        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=file_max_bytes,
            backupCount=file_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(log_level.upper())
        file_handler.setFormatter(_build_formatter(json_logs, service_name))
        handlers.append(file_handler)

    if not handlers:
        return

    _log_queue = Queue()
    _listener = QueueListener(_log_queue, *handlers, respect_handler_level=True)
    _listener.start()
    atexit.register(shutdown)

    _queue_handler = QueueHandler(_log_queue)
    if include_context:
        # Logger filters skip records propagated from child loggers
        from ticketing_reliability.infra.logging.context import ContextInjectingFilter

        _queue_handler.addFilter(ContextInjectingFilter())
    logging.getLogger().addHandler(_queue_handler)


def _build_formatter(json_logs: bool, service_name: str) -> logging.Formatter:
    from ticketing_reliability.infra.logging.formatters import JSONFormatter

    if json_logs:
        return JSONFormatter(
            fmt_keys={"level": "levelname", "logger": "name", "message": "message"},
            static={"service": service_name},
        )
    return logging.Formatter(fmt=TEXT_FORMAT, datefmt=DATE_FORMAT)
