"""In-process publish/subscribe bus with typed payloads.

Event names published by the services:

- ``error`` / ``warning``: a ``DiagnosticEvent`` was recorded
- ``clear``: ``ClearPayload``, all diagnostics were cleared
- ``crash``: ``ProcessCrash``, a build watcher exited non-zero
- ``trigger_<category>``: ``TriggerPayload`` from the trigger orchestrator
"""

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

EVENT_ERROR = "error"
EVENT_WARNING = "warning"
EVENT_CLEAR = "clear"
EVENT_CRASH = "crash"
TRIGGER_EVENT_PREFIX = "trigger_"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ClearPayload:
    """Diagnostics were cleared (``target_id`` is None for a global clear)."""

    target_id: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ProcessCrash:
    """A supervised process exited unexpectedly."""

    target_id: str
    process_name: str
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    restart_count: int = 0
    memory_usage: Optional[float] = None
    cpu_usage: Optional[float] = None
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class TriggerPayload:
    """Request for a downstream consumer to act (analysis, docs, UI test)."""

    category: str
    target_id: Optional[str]
    analysis: dict
    timestamp: datetime = field(default_factory=_utcnow)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def payload_to_dict(payload: Any) -> dict:
    """Convert an event payload to a JSON-serializable dict."""
    if payload is None:
        return {}
    if hasattr(payload, "to_dict"):
        return _jsonable(payload.to_dict())
    if dataclasses.is_dataclass(payload):
        return _jsonable(dataclasses.asdict(payload))
    if isinstance(payload, dict):
        return _jsonable(payload)
    return {"value": _jsonable(payload)}


Subscriber = Callable[[Any], None]
WildcardSubscriber = Callable[[str, Any], None]


class EventBus:
    """
    Thread-safe synchronous pub/sub.

    Subscribers run on the publishing thread. A subscriber that raises is
    logged and skipped; delivery to the remaining subscribers continues.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._wildcard: list[WildcardSubscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, callback: Subscriber) -> Callable[[], None]:
        """Subscribe to one event type. Returns a function that unsubscribes."""
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)
        return lambda: self.unsubscribe(event_type, callback)

    def subscribe_all(self, callback: WildcardSubscriber) -> Callable[[], None]:
        """Subscribe to every event; the callback receives (event_type, payload)."""
        with self._lock:
            self._wildcard.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._wildcard:
                    self._wildcard.remove(callback)

        return _unsubscribe

    def unsubscribe(self, event_type: str, callback: Subscriber) -> bool:
        with self._lock:
            callbacks = self._subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)
                return True
        return False

    def subscriber_count(self, event_type: Optional[str] = None) -> int:
        with self._lock:
            if event_type is None:
                return sum(len(c) for c in self._subscribers.values()) + len(self._wildcard)
            return len(self._subscribers.get(event_type, []))

    def publish(self, event_type: str, payload: Any = None) -> int:
        """
        Deliver an event to its subscribers.

        Returns:
            Number of subscribers that handled the event without raising
        """
        with self._lock:
            callbacks = list(self._subscribers.get(event_type, []))
            wildcard = list(self._wildcard)

        delivered = 0
        for callback in callbacks:
            try:
                callback(payload)
                delivered += 1
            except Exception as e:
                logger.error(f"Subscriber for {event_type} failed: {e}")

        for callback in wildcard:
            try:
                callback(event_type, payload)
                delivered += 1
            except Exception as e:
                logger.error(f"Wildcard subscriber failed on {event_type}: {e}")

        logger.debug(f"Published {event_type} to {delivered} subscriber(s)")
        return delivered

    def clear(self) -> None:
        """Drop every subscription."""
        with self._lock:
            self._subscribers.clear()
            self._wildcard.clear()
