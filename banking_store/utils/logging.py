"""
Log setup shared by the CLI, the ingest path and maintenance jobs.

Two output modes: a one-line console format for operators, and JSON lines for
log shipping. In JSON mode every attribute passed through `extra=` becomes a
top-level key, so structured context such as `slot`, `table` or `count` can be
filtered on downstream without parsing the message.

    configure_logging(level="INFO", json_logs=True)
    get_logger(__name__).info("block merged", extra={"slot": 1234})
"""

from __future__ import annotations

import json
import logging
import logging.config
from typing import Any, Dict, Optional

CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Present on every LogRecord; anything else was supplied through `extra=`.
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "extra"}

# Libraries that log per connection checkout or per query at INFO/DEBUG.
_NOISY_LOGGERS = ("psycopg.pool", "asyncio")


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    context = {
        key: value
        for key, value in vars(record).items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }
    # Callers sometimes pass extra={"extra": {...}}
    nested = getattr(record, "extra", None)
    if isinstance(nested, dict):
        context.update(nested)
    return context


class JsonFormatter(logging.Formatter):
    """One JSON object per record: level, logger, message, then context keys."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """
    Install a single stream handler on the root logger.

    Parameters
    ----------
    level : str
        Root level name, e.g. "DEBUG" or "WARNING".
    json_logs : bool
        Emit JSON lines instead of the console format.
    """
    formatters: Dict[str, Any] = {
        "console": {"format": CONSOLE_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
        "json": {"()": JsonFormatter},
    }
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": formatters,
            "handlers": {
                "stream": {
                    "class": "logging.StreamHandler",
                    "formatter": "json" if json_logs else "console",
                    "level": level,
                }
            },
            "root": {"handlers": ["stream"], "level": level},
            "loggers": {name: {"level": "WARNING"} for name in _NOISY_LOGGERS},
        }
    )


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)


__all__ = ["CONSOLE_FORMAT", "JsonFormatter", "configure_logging", "get_logger"]
