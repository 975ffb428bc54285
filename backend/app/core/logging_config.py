"""
Structured logging configuration.

Provides:
    • JSON lines for production (one object per record, relay fields promoted)
    • Coloured console lines for development, tagged with the caller or the
      live view that emitted them
    • A context-local scope (request id, user, role, live view) merged into
      every record

    Format selection (LOG_FORMAT):
        auto    JSON in production, pretty elsewhere
        json    always JSON
        pretty  always pretty

Usage:
    from backend.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.warning("SOS raised", extra={"alert_id": "...", "correlation_id": "..."})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict

from backend.app.core.config import settings

# ── Context-local scope ──
_log_context: ContextVar[Dict[str, Any]] = ContextVar("relay_log_context", default={})

# `extra=` keys lifted into the JSON object and the pretty suffix
_RELAY_FIELDS = (
    "alert_id", "notification_id", "message_id", "correlation_id",
    "table", "event_type", "channel",
)
_HTTP_FIELDS = ("duration_ms", "status_code", "endpoint")


def set_log_context(**kwargs: Any) -> None:
    """Replace the current scope. Called with no arguments it clears it."""
    _log_context.set({k: v for k, v in kwargs.items() if v is not None})


def bind_log_context(**kwargs: Any) -> None:
    """Add keys to the current scope without dropping the existing ones."""
    merged = dict(_log_context.get())
    merged.update({k: v for k, v in kwargs.items() if v is not None})
    _log_context.set(merged)


def get_log_context() -> Dict[str, Any]:
    return _log_context.get()


def _relay_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in _RELAY_FIELDS if hasattr(record, key)}


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """One JSON object per record for the log pipeline."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": settings.APP_NAME,
            "environment": settings.ENVIRONMENT,
            "logger": record.name,
            "message": record.getMessage(),
            "line": record.lineno,
        }

        scope = get_log_context()
        if scope:
            entry["scope"] = scope

        relay = _relay_extras(record)
        if relay:
            entry["relay"] = relay
        for key in _HTTP_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
                "trace": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """
    Console format:

        09:30:01 WARNING  [guest-1 req:3f9a1c2e] backend.app.relay.services: SOS raised ... (alert=a1)
        09:30:01 INFO     [AlertCenterView:admin-1] backend.app.relay.views: ...
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _tag(scope: Dict[str, Any]) -> str:
        if scope.get("session_id"):
            return f" [{scope['session_id']}]"
        parts = []
        if scope.get("user_id"):
            parts.append(str(scope["user_id"]))
        if scope.get("request_id"):
            parts.append(f"req:{str(scope['request_id'])[:8]}")
        return f" [{' '.join(parts)}]" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{self._tag(get_log_context())} {record.name}: {record.getMessage()}"
        )

        relay = _relay_extras(record)
        if relay:
            short = {k.replace("_id", ""): v for k, v in relay.items()}
            line += " (" + ", ".join(f"{k}={v}" for k, v in short.items()) + ")"

        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


# ── Setup ──

def _use_json() -> bool:
    fmt = settings.LOG_FORMAT.lower()
    if fmt == "json":
        return True
    if fmt == "pretty":
        return False
    return settings.is_production


def setup_logging() -> None:
    """Install one stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if _use_json() else PrettyFormatter())
    root.addHandler(handler)

    # Third-party chatter
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    for name in ("httpx", "httpcore", "redis", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DATABASE_ECHO else logging.WARNING
    )


def get_logger(name: str) -> logging.Logger:
    """Named logger; call once per module."""
    return logging.getLogger(name)
