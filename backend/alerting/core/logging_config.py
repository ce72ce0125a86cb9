"""
Log output for the alert dispatch service.

Production writes one JSON object per line; every other environment gets a
coloured console line. Both formatters add the fields of the HTTP request
being served (see ``middleware.RequestLoggingMiddleware``) and any dispatch
fields passed through ``extra=``:

    logger.info("Batch %d sent", index, extra={"alert_id": alert.id, "batch_index": index})

Fan-out tasks started inside a request inherit its context, so every
channel attempt of a campaign carries the request id and actor that
triggered it.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.alerting.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar("alerting_request", default={})

# LogRecord attributes promoted to top-level JSON keys when present
EXTRA_FIELDS = (
    "alert_id", "recipient_id", "recipient_count", "channel",
    "batch_index", "batch_size", "duration_ms", "status_code", "endpoint",
)

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine")


def bind_request_context(**fields: Any) -> Token:
    """Attach request fields to every log line until the token is released."""
    return _request_context.set({k: v for k, v in fields.items() if v is not None})


def release_request_context(token: Token) -> None:
    _request_context.reset(token)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


class JSONFormatter(logging.Formatter):
    """One JSON document per record; request fields nested under ``request``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        request = get_request_context()
        if request:
            entry["request"] = request

        entry.update({
            key: getattr(record, key) for key in EXTRA_FIELDS if hasattr(record, key)
        })

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exception"] = {"type": type(exc).__name__, "message": str(exc)}

        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """
    Console line: time, level, [request id · actor], <alert id>, logger, message.
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        request = get_request_context()

        tags = []
        if request.get("request_id"):
            who = request.get("actor_id") or request.get("client_ip", "?")
            tags.append(f"[{request['request_id'][:8]} · {who}]")
        if hasattr(record, "alert_id"):
            tags.append(f"<{str(record.alert_id)[:8]}>")
        if hasattr(record, "batch_index"):
            tags.append(f"#{record.batch_index}")

        line = " ".join([
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}",
            *tags,
            f"{record.name}: {record.getMessage()}",
        ])
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def setup_logging(level: Optional[str] = None) -> None:
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else PrettyFormatter())
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
