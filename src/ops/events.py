"""In-process record of operational log events, grouped per run.

Log records carrying ``extra={"event_type": ...}`` are sanitized and kept in a
bounded buffer so an entry point can report what went wrong during its own run
without re-reading the log stream.
"""

from __future__ import annotations

import logging
import re
from collections import Counter, deque
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from threading import Lock
from typing import Any, Literal, TypedDict
from uuid import uuid4

EventLevel = Literal["info", "warning", "error"]

EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
ARGON2_HASH_RE = re.compile(r"\$argon2(?:id|i|d)\$[^\s]+")
# Substrings of payload keys whose values are never kept
SENSITIVE_KEYWORDS = ("email", "token", "password", "secret", "hash", "hmac", "original")
REDACTED = "[REDACTED]"

_run_id_ctx: ContextVar[str | None] = ContextVar("ops_run_id", default=None)


class OpsEvent(TypedDict):
    timestamp: str
    level: EventLevel
    component: str
    event_type: str
    message: str
    correlation_id: str | None
    payload: dict[str, Any]


def _level_for(record: logging.LogRecord) -> EventLevel:
    if record.levelno >= logging.ERROR:
        return "error"
    if record.levelno >= logging.WARNING:
        return "warning"
    return "info"


def redact_text(value: str) -> str:
    return ARGON2_HASH_RE.sub(REDACTED, EMAIL_RE.sub(REDACTED, value))


def sanitize_value(value: Any, key_hint: str | None = None) -> Any:
    if key_hint is not None and any(word in key_hint.lower() for word in SENSITIVE_KEYWORDS):
        return REDACTED
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return {key: sanitize_value(nested, key) for key, nested in value.items()}
    if isinstance(value, list | tuple):
        return [sanitize_value(item) for item in value]
    return value


def get_correlation_id() -> str | None:
    return _run_id_ctx.get()


@contextmanager
def correlation_scope(run_id: str | None = None) -> Iterator[str]:
    """Tag every event logged inside the block with ``run_id`` (generated if omitted)."""
    run_id = run_id or uuid4().hex
    token = _run_id_ctx.set(run_id)
    try:
        yield run_id
    finally:
        _run_id_ctx.reset(token)


class OpsEventBuffer:
    def __init__(self, max_size: int = 500) -> None:
        self._events: deque[OpsEvent] = deque(maxlen=max_size)
        self._lock = Lock()

    def add(self, event: OpsEvent) -> None:
        with self._lock:
            self._events.append(event)

    def for_correlation(
        self, correlation_id: str, *, level: EventLevel | None = None
    ) -> list[OpsEvent]:
        """Events of one run, oldest first."""
        with self._lock:
            items = list(self._events)
        return [
            item
            for item in items
            if item["correlation_id"] == correlation_id and (level is None or item["level"] == level)
        ]

    def level_counts(self, correlation_id: str) -> Counter[EventLevel]:
        return Counter(item["level"] for item in self.for_correlation(correlation_id))


ops_event_buffer = OpsEventBuffer()


class OpsEventHandler(logging.Handler):
    """Buffers records that carry an ``event_type``; plain log lines are ignored."""

    def emit(self, record: logging.LogRecord) -> None:
        event_type = getattr(record, "event_type", None)
        if event_type is None:
            return
        payload = sanitize_value(getattr(record, "ops_payload", {}))
        if not isinstance(payload, dict):
            payload = {"value": payload}

        ops_event_buffer.add(
            {
                "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
                "level": _level_for(record),
                "component": record.name,
                "event_type": str(event_type),
                "message": redact_text(record.getMessage()),
                "correlation_id": get_correlation_id(),
                "payload": payload,
            }
        )


def configure_ops_event_logging(max_size: int) -> OpsEventBuffer:
    """Install the buffering handler on the root logger once and start a fresh buffer."""
    global ops_event_buffer
    ops_event_buffer = OpsEventBuffer(max_size=max_size)

    root_logger = logging.getLogger()
    if not any(isinstance(handler, OpsEventHandler) for handler in root_logger.handlers):
        root_logger.addHandler(OpsEventHandler())
    return ops_event_buffer
