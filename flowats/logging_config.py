"""Structured JSON logging configuration for FlowATS."""

from __future__ import annotations

import json
import logging
import sys
from typing import Optional, TextIO

from flowats.utils.time import iso_from_ms

LOGGER_NAME = "flowats"

# Public level names; "warn" maps onto logging.WARNING.
LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
LEVEL_NAMES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "error",
}

_COLORS = {
    "debug": "\x1b[90m",
    "info": "\x1b[36m",
    "warn": "\x1b[33m",
    "error": "\x1b[31m",
}
_RESET = "\x1b[0m"


def resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    return LEVELS.get(str(level).strip().lower(), logging.INFO)


class JSONFormatter(logging.Formatter):
    """Formats log records as one JSON object per line."""

    def __init__(self, colorize: bool = False) -> None:
        super().__init__()
        self.colorize = colorize

    def format(self, record: logging.LogRecord) -> str:
        level = LEVEL_NAMES.get(record.levelno, record.levelname.lower())
        base = {
            "level": level,
            "timestamp": iso_from_ms(record.created * 1000.0),
            "message": record.getMessage(),
        }

        # Context first, call-specific fields second: call fields win on collision.
        # The base keys are reapplied last and cannot be overwritten.
        log_entry = dict(base)
        log_entry.update(getattr(record, "context", None) or {})
        log_entry.update(getattr(record, "fields", None) or {})
        log_entry.update(base)

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        line = json.dumps(
            {k: v for k, v in log_entry.items() if v is not None},
            default=str,
        )
        if self.colorize:
            return f"{_COLORS.get(level, '')}{line}{_RESET}"
        return line


class _BelowErrorFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.ERROR


def _should_colorize(stream: TextIO, is_test: bool) -> bool:
    if is_test:
        return False
    isatty = getattr(stream, "isatty", None)
    try:
        return bool(isatty and isatty())
    except ValueError:
        # closed stream
        return False


def setup_logging(
    level: str | int = "info",
    *,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
    colorize: Optional[bool] = None,
    is_test: bool = False,
) -> logging.Logger:
    """Configure the ``flowats`` logger: errors to stderr, everything else to stdout."""
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr

    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = False
    logger.setLevel(resolve_level(level))

    out_handler = logging.StreamHandler(stdout)
    out_handler.addFilter(_BelowErrorFilter())
    out_handler.setFormatter(
        JSONFormatter(colorize if colorize is not None else _should_colorize(stdout, is_test))
    )

    err_handler = logging.StreamHandler(stderr)
    err_handler.setLevel(logging.ERROR)
    err_handler.setFormatter(
        JSONFormatter(colorize if colorize is not None else _should_colorize(stderr, is_test))
    )

    logger.addHandler(out_handler)
    logger.addHandler(err_handler)

    # Quiet noisy third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logger
