"""
Structured logging configuration for DonorSync.

Provides JSON-formatted structured logging with:
- Security filtering (no API keys, bearer tokens or donor PII)
- Low-cardinality fields (normalized URLs, no raw vendor payloads)
- Sync progress events keyed by request id

Usage:
    from donorsync.logging_config import setup_logging, get_logger

    setup_logging()  # Call once at startup
    logger = get_logger(__name__)
    logger.info("message", extra={"key": "value"})
"""

from __future__ import annotations

import json
import logging
import re
import sys
import time
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

# Matches URLs: https://api.example.org/v2/constituents?apikey=...
_URL_PATTERN = re.compile(r"(https?://[^\s\"'<>]+)")

# Order matters: specific key/value forms before the generic auth pattern
_SENSITIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # API keys in query strings or key/value text
    (re.compile(r"\b(api[_-]?key|apikey|subscription[_-]?key)[=:]\s*['\"]?[^\s&'\",]+['\"]?", re.I), "[API_KEY]"),
    (re.compile(r"\bkey=[^&\s]+", re.I), "key=[REDACTED]"),
    # Bearer tokens
    (re.compile(r"\bbearer\s+[\w\-\.~+/]+=*", re.I), "[TOKEN]"),
    (re.compile(r"\b(access_?token|refresh_?token|token)[=:]\s*['\"]?[\w\-\.~+/]+=*['\"]?", re.I), "[TOKEN]"),
    # Authorization headers
    (re.compile(r"\b(authorization|auth)[=:]\s*(basic|bearer)?\s*['\"]?[\w\-\.~+/]+=*['\"]?", re.I), "[AUTH]"),
    # IP addresses (v4)
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "[IP]"),
    # Email addresses
    (re.compile(r"\b[\w\.-]+@[\w\.-]+\.\w+\b"), "[EMAIL]"),
]

# Fields that should NEVER appear in logs
BLOCKED_FIELDS: frozenset[str] = frozenset(
    {
        # Vendor credentials
        "api_key",
        "apikey",
        "secret",
        "token",
        "password",
        "auth",
        "authorization",
        "bearer",
        "credential",
        "subscription_key",
        # Donor PII
        "email",
        "phone",
        "ip",
        "ip_address",
    }
)

# High-cardinality or raw-payload fields: replaced, never dumped
HIGH_CARDINALITY_FIELDS: dict[str, str] = {
    "url": "endpoint",  # Extract path only
    "body": "[BODY]",
    "payload": "[PAYLOAD]",
    "raw": "[RAW_RECORD]",
    "params": "[PARAMS]",
}

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
        "message",
        "taskName",
    }
)


def _normalize_url(url: str) -> str:
    """Extract normalized endpoint path from URL."""
    parts = urlsplit(url)
    return parts.path or "/"


def _sanitize_url_in_text(match: re.Match[str]) -> str:
    """Replace URL with normalized path only."""
    path = _normalize_url(match.group(1))
    return path if path != "/" else "[URL]"


def sanitize_text(text: str) -> str:
    """Sanitize free-form text (msg, exc, vendor error bodies).

    Removes/normalizes:
    - URLs with query strings -> path only
    - API keys, tokens, auth headers -> placeholders
    - IP addresses -> [IP]
    - Email addresses -> [EMAIL]
    """
    if not text:
        return text

    result = _URL_PATTERN.sub(_sanitize_url_in_text, text)
    for pattern, replacement in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def _is_blocked(key: str) -> bool:
    key_lower = key.lower()
    return key_lower in BLOCKED_FIELDS or any(blocked in key_lower for blocked in BLOCKED_FIELDS)


def filter_log_record(record: dict[str, Any], *, _depth: int = 0) -> dict[str, Any]:
    """Filter sensitive and high-cardinality fields from a log record.

    Recursively filters nested dicts up to depth 3.
    """
    if _depth > 3:
        return {"_truncated": "max depth exceeded"}

    filtered: dict[str, Any] = {}

    for key, value in record.items():
        key_lower = key.lower()

        if _is_blocked(key):
            continue

        if key_lower in HIGH_CARDINALITY_FIELDS:
            if key_lower == "url" and isinstance(value, str):
                filtered["endpoint"] = _normalize_url(value)
            else:
                filtered[key] = HIGH_CARDINALITY_FIELDS[key_lower]
            continue

        if isinstance(value, (int, float, bool, type(None))):
            filtered[key] = value
        elif isinstance(value, str):
            filtered[key] = sanitize_text(value)
        elif isinstance(value, Enum):
            filtered[key] = value.value
        elif isinstance(value, (list, tuple)):
            if len(value) <= 10:
                filtered[key] = list(value)
            else:
                filtered[key] = f"[list:{len(value)} items]"
        elif isinstance(value, dict):
            filtered[key] = filter_log_record(value, _depth=_depth + 1)
        else:
            filtered[key] = sanitize_text(str(value))

    return filtered


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_RECORD_KEYS}


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Output format:
    {"ts":"2024-01-01T00:00:00.000+00:00","level":"INFO","logger":"module","msg":"...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_dict: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": sanitize_text(record.getMessage()),
        }

        if record.levelno >= logging.WARNING:
            log_dict["file"] = record.filename
            log_dict["line"] = record.lineno

        if record.exc_info:
            log_dict["exc"] = sanitize_text(self.formatException(record.exc_info))

        extra = _extra_fields(record)
        if extra:
            log_dict.update(filter_log_record(extra))

        return json.dumps(log_dict, default=str, ensure_ascii=False)


class SimpleFormatter(logging.Formatter):
    """Human-readable formatter for development/testing."""

    def format(self, record: logging.LogRecord) -> str:
        base = f"{record.levelname:8s} {record.name}: {sanitize_text(record.getMessage())}"

        extra = _extra_fields(record)
        if extra:
            filtered = filter_log_record(extra)
            if filtered:
                extra_str = " ".join(f"{k}={v}" for k, v in filtered.items())
                base = f"{base} | {extra_str}"

        return base


def setup_logging(
    *,
    level: int | str = logging.INFO,
    json_format: bool = True,
    stream: Any = None,
) -> None:
    """Configure structured logging for the application.

    Call once at application startup.

    Args:
        level: Log level (default INFO).
        json_format: Use JSON formatter (default True for production).
        stream: Output stream (default stderr).
    """
    if stream is None:
        stream = sys.stderr

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter() if json_format else SimpleFormatter())

    root = logging.getLogger()
    root.setLevel(level.upper() if isinstance(level, str) else level)
    root.handlers.clear()
    root.addHandler(handler)

    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance (typically for __name__)."""
    return logging.getLogger(name)


# =============================================================================
# Sync progress events
# =============================================================================


class EventLevel(str, Enum):
    """Level of a sync progress event."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_LEVEL_ORDER: dict[EventLevel, int] = {
    EventLevel.DEBUG: 10,
    EventLevel.INFO: 20,
    EventLevel.WARN: 30,
    EventLevel.ERROR: 40,
}

_STDLIB_LEVELS: dict[EventLevel, int] = {
    EventLevel.DEBUG: logging.DEBUG,
    EventLevel.INFO: logging.INFO,
    EventLevel.WARN: logging.WARNING,
    EventLevel.ERROR: logging.ERROR,
}

EventSink = Callable[[dict[str, Any]], None]

_event_logger = logging.getLogger("donorsync.sync.events")


def _default_event_sink(event: dict[str, Any]) -> None:
    level = _STDLIB_LEVELS[EventLevel(event["level"])]
    extra = {k: v for k, v in event.items() if k not in {"message", "level"}}
    _event_logger.log(level, event["message"], extra=extra)


class SyncEventLogger:
    """
    Emits structured sync progress events for one run.

    Each event is a dict of shape
    ``{"timestamp", "requestId", "level", "message", **data}``. Events below
    ``min_level`` are dropped; when ``enabled`` is False every call is a no-op.
    The most recent ``buffer_size`` events are kept for the run's audit trail.
    """

    def __init__(
        self,
        request_id: str,
        *,
        enabled: bool = True,
        min_level: EventLevel | str = EventLevel.INFO,
        sink: EventSink | None = None,
        buffer_size: int = 500,
        time_fn: Callable[[], float] | None = None,
    ) -> None:
        self.request_id = request_id
        self.enabled = enabled
        self.min_level = EventLevel(min_level)
        self._sink = sink or _default_event_sink
        self._events: deque[dict[str, Any]] = deque(maxlen=buffer_size)
        self._time_fn = time_fn or time.time

    @property
    def events(self) -> list[dict[str, Any]]:
        """Events emitted so far (bounded)."""
        return list(self._events)

    def emit(self, level: EventLevel | str, message: str, **data: Any) -> dict[str, Any] | None:
        """Emit one event. Returns the event, or None if suppressed."""
        if not self.enabled:
            return None
        event_level = EventLevel(level)
        if _LEVEL_ORDER[event_level] < _LEVEL_ORDER[self.min_level]:
            return None

        event: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(self._time_fn(), tz=UTC).isoformat(
                timespec="milliseconds"
            ),
            "requestId": self.request_id,
            "level": event_level.value,
            "message": sanitize_text(message),
        }
        event.update(filter_log_record(data))
        self._events.append(event)
        self._sink(event)
        return event

    def debug(self, message: str, **data: Any) -> dict[str, Any] | None:
        return self.emit(EventLevel.DEBUG, message, **data)

    def info(self, message: str, **data: Any) -> dict[str, Any] | None:
        return self.emit(EventLevel.INFO, message, **data)

    def warn(self, message: str, **data: Any) -> dict[str, Any] | None:
        return self.emit(EventLevel.WARN, message, **data)

    def error(self, message: str, **data: Any) -> dict[str, Any] | None:
        return self.emit(EventLevel.ERROR, message, **data)
