"""Logging configuration for ContextSync.

This module provides structured logging setup for the entire application.
All modules should use `get_logger(__name__)` to get their logger.

Usage:
    from contextsync.logging import setup_logging, get_logger

    # At application startup
    setup_logging()

    # In each module
    logger = get_logger(__name__)
    logger.info("Source synced", extra={"duration_ms": 150, "source": "ticket"})
"""

import logging
import sys
from collections.abc import Callable
from typing import Any

from contextsync.constants import LOG_DATE_FORMAT, LOG_FORMAT

# Attributes every LogRecord carries; anything else came in through `extra=`.
_STANDARD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class StructuredFormatter(logging.Formatter):
    """A formatter that appends `extra=` fields as `key=value` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record with structured fields.

        Args:
            record: The log record to format.

        Returns:
            Formatted log string.
        """
        base_message = super().format(record)

        extra_fields: dict[str, Any] = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }

        if extra_fields:
            fields_str = " | ".join(f"{k}={v}" for k, v in extra_fields.items())
            return f"{base_message} | {fields_str}"

        return base_message


def setup_logging(
    level: int = logging.INFO,
    *,
    include_timestamp: bool = True,
) -> None:
    """Configure logging for the application.

    Logs go to stderr so that stdout stays free for the MCP stdio protocol.
    Should be called once at application startup.

    Args:
        level: The logging level (default: INFO).
        include_timestamp: Whether to include timestamps in output.
    """
    if include_timestamp:
        formatter = StructuredFormatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    else:
        formatter = StructuredFormatter("%(levelname)-8s | %(name)s | %(message)s")

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    logging.getLogger("contextsync").setLevel(level)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module.

    Args:
        name: The module name (typically __name__).

    Returns:
        A configured Logger instance.
    """
    return logging.getLogger(name)


class LogContext:
    """Context manager for adding structured fields to log messages.

    Usage:
        with LogContext(owner="alice", provider="slack"):
            logger.info("Fetching conversations")
            # The log will include: owner=alice | provider=slack
    """

    def __init__(self, **fields: Any) -> None:
        """Initialize the log context.

        Args:
            **fields: Extra fields to include in all log messages.
        """
        self.fields = fields
        self._old_factory: Callable[..., logging.LogRecord] | None = None

    def __enter__(self) -> "LogContext":
        """Install a record factory that stamps the fields on every record."""
        old_factory = logging.getLogRecordFactory()
        self._old_factory = old_factory
        fields = self.fields

        def record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
            record = old_factory(*args, **kwargs)
            for key, value in fields.items():
                setattr(record, key, value)
            return record

        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, *args: Any) -> None:
        """Restore the original log record factory."""
        if self._old_factory is not None:
            logging.setLogRecordFactory(self._old_factory)
