"""Logging setup for the admission controller.

Everything goes through the standard logging module. Records carry the
request context (request id, hashed client id, algorithm, verdict) as
attributes, which the structured and JSON formats print.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from admission.app.core.config import settings

# Attributes set through extra=get_log_context(...)
CONTEXT_FIELDS = (
    "request_id",
    "client_id",
    "algorithm",
    "verdict",
    "source",  # store | fail_open | fail_closed
    "path",
    "method",
)

# Attributes every LogRecord has, plus the keys JSONFormatter writes itself
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "taskName",
}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source_location": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value

        extra = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in CONTEXT_FIELDS
        }
        if extra:
            entry["extra"] = extra

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(entry, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Give every record the context attributes, None when unset.

    The structured format string references them, so they must exist.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for field in CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, None)
        return True


def get_logging_config() -> Dict[str, Any]:
    """Build the dictConfig for the configured log_format and log_level."""
    log_format = settings.log_format.lower()
    log_level = settings.log_level.upper()

    base = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatters: Dict[str, Any] = {
        "standard": {"format": base},
        "structured": {
            "format": base
            + " - request_id=%(request_id)s - client_id=%(client_id)s - algorithm=%(algorithm)s"
        },
        "json": {"()": "admission.app.core.logging.JSONFormatter"},
    }
    formatter = {"json": "json", "structured": "structured"}.get(log_format, "standard")

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {"context": {"()": "admission.app.core.logging.ContextFilter"}},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": formatter,
                "stream": sys.stdout,
                "filters": ["context"],
            },
        },
        "loggers": {
            "admission": {"level": log_level, "handlers": ["console"], "propagate": False},
            "uvicorn": {"level": log_level, "handlers": ["console"], "propagate": False},
        },
        "root": {"level": log_level, "handlers": ["console"]},
    }


def setup_logging() -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config())

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str = "admission") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    request_id: Optional[str] = None,
    client_id: Optional[str] = None,
    algorithm: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Build an extra= mapping for a log call, leaving out unset fields.

    Example:
        >>> logger.info(
        ...     "Request denied",
        ...     extra=get_log_context(client_id="ab12", algorithm="token-bucket")
        ... )
    """
    context = {"request_id": request_id, "client_id": client_id, "algorithm": algorithm}
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}
