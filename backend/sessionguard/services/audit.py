"""Session audit events.

Recording is fire-and-forget: a failing listener is logged and skipped, and
nothing raised here ever reaches the session operation that emitted the event.
"""

import logging
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from .types import SessionEvent

logger = logging.getLogger(__name__)

# Field names whose values never reach the audit trail
SENSITIVE_KEYS = ("token", "secret", "password", "authorization", "api_key", "cookie")

AuditListener = Callable[[dict[str, Any]], None]


class AuditSink(Protocol):
    def record(self, event: SessionEvent, fields: dict[str, Any]) -> None: ...


def _sanitize(fields: dict[str, Any]) -> dict[str, Any]:
    clean = {}
    for key, value in fields.items():
        if key.lower().endswith(SENSITIVE_KEYS):
            clean[key] = "[REDACTED]"
        elif isinstance(value, datetime):
            clean[key] = value.isoformat()
        else:
            clean[key] = value
    return clean


class AuditLogger:
    """Default audit sink: logs each event and keeps a bounded recent buffer."""

    BUFFER_SIZE = 1000

    def __init__(self, buffer_size: int = BUFFER_SIZE):
        self._buffer: deque[dict[str, Any]] = deque(maxlen=buffer_size)
        self._listeners: list[AuditListener] = []

    def add_listener(self, callback: AuditListener) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: AuditListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def get_recent_events(self, count: int = 100) -> list[dict[str, Any]]:
        return list(self._buffer)[-count:]

    def record(self, event: SessionEvent, fields: dict[str, Any]) -> None:
        entry = {
            "event": event.value,
            "timestamp": datetime.now(UTC).isoformat(),
            **_sanitize(fields),
        }
        self._buffer.append(entry)
        logger.info(f"audit {event.value}: {entry}")

        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as e:
                logger.warning(f"Audit listener failed for {event.value}: {e}")
