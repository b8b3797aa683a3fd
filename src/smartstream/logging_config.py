"""Logging setup with credential redaction.

Text output (default):
    timestamp | logger | level | message

JSON output (LOG_FORMAT=json) is one object per line with a ``stream``
field when the message carries a ``[key]`` prefix, so log aggregators can
filter by stream without parsing the text.

Security:
    Redaction happens once per record in CredentialFilter, installed on the
    root handler. Messages, exception text, stack info and string extras are
    masked before any formatter sees them, including records emitted by
    uvicorn's access logger.
"""
from __future__ import annotations

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from typing import Any, Final, Mapping

from .utils.strings import mask_credentials

# ============================================================================
# Constants
# ============================================================================

RESERVED_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}
"""LogRecord attributes that are not ``extra=`` fields."""

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS: Final[tuple[str, ...]] = ("text", "json")

STREAM_PREFIX: Final[re.Pattern[str]] = re.compile(r"^\[([^\]\s]+)\] ")
"""Leading ``[key] `` used by supervisor and API log lines."""

ROUTED_LOGGERS: Final[tuple[str, ...]] = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")


def _utc_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()


# ============================================================================
# Redaction
# ============================================================================

class CredentialFilter(logging.Filter):
    """Mask URLs with passwords or stream keys in place on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = mask_credentials(record.getMessage())
        record.args = None

        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = mask_credentials(record.exc_text)
        if record.stack_info:
            record.stack_info = mask_credentials(record.stack_info)

        for name, value in list(record.__dict__.items()):
            if name not in RESERVED_ATTRIBUTES and isinstance(value, str):
                setattr(record, name, mask_credentials(value))
        return True


# ============================================================================
# Formatters
# ============================================================================

class TextFormatter(logging.Formatter):
    """Column-aligned text lines.

    Example:
        2025-10-28T05:10:23.456+00:00 | smartstream.services.supervisor        | INFO     | [cam1] Stream running (PID=4242)
    """

    LOGGER_WIDTH = 40

    def format(self, record: logging.LogRecord) -> str:
        name = record.name
        if len(name) > self.LOGGER_WIDTH:
            name = "..." + name[-(self.LOGGER_WIDTH - 3):]

        line = f"{_utc_timestamp(record)} | {name:<{self.LOGGER_WIDTH}} | {record.levelname:<8} | {record.getMessage()}"
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            line += f"\n{record.exc_text}"
        return line


class JSONFormatter(logging.Formatter):
    """NDJSON lines: timestamp, level, logger, message, stream, extras."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        data: dict[str, Any] = {
            "timestamp": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }

        prefix = STREAM_PREFIX.match(message)
        if prefix:
            data["stream"] = prefix.group(1)

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            data["exception"] = record.exc_text
        if record.stack_info:
            data["stack_info"] = record.stack_info

        data.update(
            (name, value) for name, value in record.__dict__.items()
            if name not in RESERVED_ATTRIBUTES
        )
        return json.dumps(data, ensure_ascii=False, default=str)


# ============================================================================
# Configuration
# ============================================================================

def read_log_settings(environ: Mapping[str, str] | None = None) -> tuple[int, str]:
    """(level, format) from LOG_LEVEL and LOG_FORMAT, falling back to INFO/text."""
    env = os.environ if environ is None else environ

    level_name = env.get("LOG_LEVEL", "INFO").upper()
    if level_name not in LOG_LEVELS:
        logging.getLogger(__name__).warning(f"Unknown LOG_LEVEL '{level_name}', using INFO")
        level_name = "INFO"

    fmt = env.get("LOG_FORMAT", "text").lower()
    if fmt not in LOG_FORMATS:
        logging.getLogger(__name__).warning(f"Unknown LOG_FORMAT '{fmt}', using text")
        fmt = "text"

    return logging.getLevelName(level_name), fmt


def configure_logging(environ: Mapping[str, str] | None = None) -> None:
    """Install one redacting stdout handler on the root logger.

    Uvicorn and FastAPI loggers drop their own handlers and propagate to
    root so every line is redacted and shares one format.

    Environment:
        LOG_LEVEL: DEBUG, INFO, WARNING, ERROR, CRITICAL (default: INFO)
        LOG_FORMAT: text, json (default: text)
    """
    level, fmt = read_log_settings(environ)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(CredentialFilter())
    handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name in ROUTED_LOGGERS:
        routed = logging.getLogger(name)
        routed.handlers.clear()
        routed.setLevel(level)
        routed.propagate = True

    root.info(f"Logging configured: level={logging.getLevelName(level)}, format={fmt}")
