"""
Structured logging for the MCP Web URL Reader.

Every log line is a JSON object so that session lifecycle and fetch events can
be filtered by field (session_id, url, status, bytes). Fetched bodies are
never passed to the logger; callers log sizes and status codes only.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mcp_web_reader.config import LoggingConfig

PACKAGE_LOGGER = "mcp_web_reader"

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Attributes present on every LogRecord; anything else came from `extra=`
_RESERVED_ATTRS = frozenset(
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


class JSONFormatter(logging.Formatter):
    """
    A logging formatter that outputs log records as JSON objects.

    Each record carries:
    - timestamp: ISO 8601 timestamp in UTC
    - level: Log level name
    - logger: Logger name
    - message: Log message
    - any fields supplied through the record's `extra` dict
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in set(record.__dict__) - _RESERVED_ATTRS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    log_to_stdout: bool = True,
) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        config: Optional LoggingConfig. If provided, overrides the keyword
            arguments.
        level: Log level used when no config is provided.
        json_format: Whether to emit JSON lines (default: True).
        log_to_stdout: Whether to attach a stdout handler (default: True).

    Returns:
        The `mcp_web_reader` logger.

    Example:
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Server started", extra={"port": 8080})
    """
    if config is not None:
        log_level = config.level.upper()
        json_format = config.json_format
        log_to_stdout = config.log_to_stdout
    else:
        log_level = level.upper()

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, log_level, logging.INFO))
    logger.handlers.clear()

    if log_to_stdout:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(getattr(logging, log_level, logging.INFO))
        if json_format:
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        logger.addHandler(handler)

    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a child logger of the package logger.

    Args:
        name: Usually `__name__` of the calling module. The package prefix is
            added when missing.

    Returns:
        A logger instance.
    """
    if not name.startswith(PACKAGE_LOGGER):
        name = f"{PACKAGE_LOGGER}.{name}"

    return logging.getLogger(name)
