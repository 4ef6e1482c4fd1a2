"""
Logging setup for ipfs-update.

Two output styles are supported:
- Plain messages (the CLI default): one line per record, the way an operator
  reads progress such as "stashing old binary" or "installing new binary to".
- JSON records for machine consumption, carrying any `extra` fields.

All modules log through children of the "ipfs_update" logger obtained via
get_logger(); nothing reads a global verbose flag.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ipfs_update.config import LoggingConfig

ROOT_LOGGER_NAME = "ipfs_update"

# Plain format used by the CLI
PLAIN_LOG_FORMAT = "%(message)s"
VERBOSE_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_RESERVED_RECORD_KEYS = frozenset(
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

    Each log record is formatted as a JSON object with consistent fields:
    - timestamp: ISO 8601 formatted timestamp in UTC
    - level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - logger: Logger name
    - message: Log message
    - Additional fields from the record's extra dict
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            JSON-formatted string representation of the log record.
        """
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in set(record.__dict__.keys()) - _RESERVED_RECORD_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = False,
    verbose: bool = False,
) -> logging.Logger:
    """
    Configure the ipfs_update logger hierarchy.

    Args:
        config: Optional LoggingConfig. If provided, overrides level and
            json_format.
        level: Log level if no config is provided.
        json_format: Emit JSON records instead of plain messages.
        verbose: Force DEBUG level (the --verbose flag).

    Returns:
        The root logger of the ipfs_update package.

    Example:
        >>> from ipfs_update.logging import setup_logging
        >>> logger = setup_logging(verbose=True)
        >>> logger.debug("  - using GOOS=linux and GOARCH=amd64")
    """
    stream = sys.stderr
    if config is not None:
        level = config.level
        json_format = config.json_format
        stream = sys.stderr if config.log_to_stderr else sys.stdout

    log_level = "DEBUG" if verbose else level.upper()

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    handler = logging.StreamHandler(stream)
    handler.setLevel(getattr(logging, log_level, logging.INFO))
    if json_format:
        handler.setFormatter(JSONFormatter())
    elif log_level == "DEBUG":
        handler.setFormatter(logging.Formatter(VERBOSE_LOG_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(PLAIN_LOG_FORMAT))
    logger.addHandler(handler)

    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: The name for the logger, typically __name__ of the calling module.
            The "ipfs_update." prefix is added automatically if not present.

    Returns:
        A logger that is a child of the package logger.
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)
