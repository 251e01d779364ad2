"""Logging setup: JSON lines for services, rich console output for operators."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

from mailbox_sync.config.settings import LoggingSettings

_STANDARD_RECORD_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__,
) | {"message", "asctime"}

_NOISY_LOGGERS: dict[str, int] = {
    "googleapiclient.discovery": logging.WARNING,
    "googleapiclient.discovery_cache": logging.ERROR,
    "google.auth.transport.requests": logging.WARNING,
    "urllib3": logging.WARNING,
}


def _jsonable(value: object) -> Any:
    """Return ``value`` if it serializes to JSON, else its string form."""
    if isinstance(value, datetime):
        return value.isoformat()
    try:
        json.dumps(value)
    except TypeError:
        return str(value)
    return value


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record, including ``extra=`` fields such as ``account_id``."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a JSON line.

        Args:
            record: Log record to format.

        Returns:
            JSON string.
        """
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _STANDARD_RECORD_ATTRS or key.startswith("_"):
                continue
            payload[key] = _jsonable(value)

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _level_from(settings: LoggingSettings) -> int:
    """Resolve the configured level name, falling back to INFO."""
    name = settings.level.strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(*, settings: LoggingSettings, console: Console | None = None) -> None:
    """Install a single root handler for CLI and scheduler runs.

    Args:
        settings: Logging settings.
        console: Rich console for human-readable output (stderr by default).
    """
    level = _level_from(settings)

    handler: logging.Handler
    if settings.json_logs:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonLogFormatter())
    else:
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
            log_time_format="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    handler.setLevel(level)

    logging.basicConfig(level=level, handlers=[handler], force=True)
    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(noisy_level, level))
