"""Logging configuration for the migration engine."""

import json
import logging
import sys
from typing import Any

from hybridmigrate.core.config import get_settings

HUMAN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Root logger for every engine module (modules use logging.getLogger(__name__))
engine_logger = logging.getLogger("hybridmigrate")


class JsonFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, DATE_FORMAT),
            "logger": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def setup_logging(level: str | None = None, fmt: str | None = None) -> logging.Logger:
    """
    Attach a stdout handler to the engine logger.

    Calling this more than once only updates the level and formatter of the
    existing handler.

    Args:
        level: Log level name. Defaults to settings.LOG_LEVEL.
        fmt: "human" or "json". Defaults to settings.LOG_FORMAT.

    Returns:
        The configured engine logger.
    """
    settings = get_settings()
    level_name = (level or settings.LOG_LEVEL).upper()
    fmt = fmt or settings.LOG_FORMAT

    formatter: logging.Formatter
    if fmt == "json":
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(HUMAN_FORMAT, datefmt=DATE_FORMAT)

    engine_logger.setLevel(level_name)

    # Add handler only if not already added
    if not engine_logger.handlers:
        console_handler = logging.StreamHandler(sys.stdout)
        engine_logger.addHandler(console_handler)

    for handler in engine_logger.handlers:
        handler.setLevel(level_name)
        handler.setFormatter(formatter)

    return engine_logger
