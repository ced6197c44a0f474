"""Debounced triggers for downstream consumers.

Each (category, key) pair moves idle -> firing -> cooling-down -> idle.
Requests that arrive while a key is firing or cooling down are absorbed, so
at most one trigger per key is emitted per window.
"""

import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from ..config import DEFAULTS, deep_merge
from .error_patterns import DiagnosticEvent, DiagnosticKind
from .event_bus import (
    EVENT_CRASH,
    EVENT_ERROR,
    TRIGGER_EVENT_PREFIX,
    EventBus,
    ProcessCrash,
    TriggerPayload,
)

logger = logging.getLogger(__name__)

CATEGORY_ANALYSIS = "analysis"
CATEGORY_MULTI_ERROR = "multi_error_analysis"
CATEGORY_CRASH = "crash_analysis"
CATEGORY_DOCUMENTATION = "documentation"
CATEGORY_UI_TEST = "ui_test"

UI_PORTS = frozenset({3000, 3001, 4000, 4200, 5000, 8000, 8080, 8100, 9000, 9090})

FRAMEWORK_CONFIDENCE_THRESHOLD = 0.8
RECENT_TRIGGER_WINDOW = 3600  # seconds
RECENT_TRIGGER_LIMIT = 20


@dataclass(frozen=True)
class FrameworkDetection:
    name: str
    confidence: float
    indicators: tuple[str, ...] = ()


@dataclass
class TriggerRecord:
    """Last firing of one trigger key."""

    key: str
    category: str
    last_fired_at: float
    fired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _error_summary(event: DiagnosticEvent) -> dict:
    return {
        "message": event.message,
        "kind": event.kind.value,
        "file": event.file,
        "line": event.line,
        "language": event.language,
    }


class TriggerOrchestrator:
    """
    Turns error, crash, framework and port signals into debounced
    ``trigger_<category>`` events on the event bus.

    ``clock`` returns monotonic seconds and can be replaced in tests.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        config: Optional[dict] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._event_bus = event_bus
        self._config = copy.deepcopy(deep_merge(DEFAULTS["triggers"], config or {}))
        self._clock = clock

        self._records: dict[str, TriggerRecord] = {}
        self._active: set[str] = set()
        self._novelty: dict[str, float] = {}
        self._lock = threading.Lock()
        self._unsubscribers: list[Callable[[], None]] = []
        self._error_source: Optional[Callable[[str], Optional[list[DiagnosticEvent]]]] = None

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def attach(
        self,
        bus: EventBus,
        error_source: Optional[Callable[[str], Optional[list[DiagnosticEvent]]]] = None,
    ) -> None:
        """
        Subscribe to ``error`` and ``crash`` events and publish on ``bus``.

        Args:
            bus: Event bus carrying coordinator events
            error_source: Optional history lookup (e.g. ``ErrorWatcher.get_errors``);
                when given, each error also checks the multi-error threshold
                against the target's errors inside the multi-error window
        """
        self.detach()
        self._event_bus = bus
        self._error_source = error_source
        self._unsubscribers = [
            bus.subscribe(EVENT_ERROR, self._on_error),
            bus.subscribe(EVENT_CRASH, self.handle_process_crash),
        ]
        logger.debug("Trigger orchestrator attached to event bus")

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_error(self, event: DiagnosticEvent) -> None:
        self.handle_error(event)
        if self._error_source is None:
            return

        history = self._error_source(event.target_id) or []
        window = self._window(CATEGORY_MULTI_ERROR)
        cutoff = datetime.now(timezone.utc).timestamp() - window
        errors = [
            e for e in history
            if e.kind == DiagnosticKind.ERROR and e.timestamp.timestamp() >= cutoff
        ]
        self.handle_multiple_errors(event.target_id, errors)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def handle_error(self, event: DiagnosticEvent) -> None:
        """Single-error analysis, plus a documentation lookup for novel errors."""
        logger.debug(f"Processing error event for target {event.target_id}: {event.message}")

        if self._config["analysis_enabled"] and self._config["on_error"]:
            self._fire(
                CATEGORY_ANALYSIS,
                key=event.target_id,
                target_id=event.target_id,
                analysis={
                    "type": "error_analysis",
                    "error": _error_summary(event),
                    "context": "Single error detected in development environment",
                },
            )

        if (
            self._config["documentation_enabled"]
            and self._config["on_error_pattern"]
            and event.language
            and self._is_novel(event)
        ):
            self._fire(
                CATEGORY_DOCUMENTATION,
                key=f"{event.language}:error",
                target_id=event.target_id,
                analysis={
                    "library": event.language,
                    "query": event.message,
                    "type": "error",
                },
            )

    def handle_multiple_errors(self, target_id: str, events: list[DiagnosticEvent]) -> bool:
        count = len(events)
        threshold = self._config["multiple_error_threshold"]
        if not self._config["analysis_enabled"] or count < threshold:
            return False

        logger.info(f"Processing {count} errors for target {target_id}")
        return self._fire(
            CATEGORY_MULTI_ERROR,
            key=target_id,
            target_id=target_id,
            analysis={
                "type": "multiple_errors_analysis",
                "error_count": count,
                "errors": [_error_summary(e) for e in events],
                "context": f"Multiple errors ({count}) detected, requiring systematic analysis",
                "urgency": "high",
            },
        )

    def handle_process_crash(self, crash: ProcessCrash) -> bool:
        logger.warning(f"Processing process crash for target {crash.target_id}: {crash.process_name}")

        if not (self._config["analysis_enabled"] and self._config["on_process_crash"]):
            return False

        return self._fire(
            CATEGORY_CRASH,
            key=crash.target_id,
            target_id=crash.target_id,
            analysis={
                "type": "crash_analysis",
                "process": {
                    "name": crash.process_name,
                    "pid": crash.pid,
                    "exit_code": crash.exit_code,
                    "restart_count": crash.restart_count,
                    "memory_usage": crash.memory_usage,
                    "cpu_usage": crash.cpu_usage,
                },
                "context": "Process crashed, analyzing potential causes and recovery options",
                "urgency": "critical",
            },
        )

    def handle_framework_detection(self, frameworks: Iterable[FrameworkDetection]) -> int:
        """
        Documentation lookups for high-confidence frameworks.

        Returns:
            Number of lookups fired
        """
        frameworks = list(frameworks)
        logger.info(f"Framework detection completed: {', '.join(f.name for f in frameworks)}")

        if not (self._config["documentation_enabled"] and self._config["on_framework_detection"]):
            return 0

        fired = 0
        for framework in frameworks:
            if framework.confidence <= FRAMEWORK_CONFIDENCE_THRESHOLD:
                continue
            if self._fire(
                CATEGORY_DOCUMENTATION,
                key=f"{framework.name}:framework_setup",
                target_id=None,
                analysis={
                    "library": framework.name,
                    "query": f"{framework.name} best practices and common patterns",
                    "type": "framework_setup",
                    "indicators": list(framework.indicators),
                },
            ):
                fired += 1
        return fired

    def handle_port_change(self, port: int, status: str, target_id: Optional[str] = None) -> bool:
        if not (self._config["ui_testing_enabled"] and self._config["on_port_change"]):
            return False

        logger.debug(f"Port {port} {status}" + (f" in target {target_id}" if target_id else ""))
        if status != "opened" or port not in UI_PORTS:
            return False

        return self._fire(
            CATEGORY_UI_TEST,
            key=str(port),
            target_id=target_id,
            analysis={
                "port": port,
                "url": f"http://localhost:{port}",
                "test_type": "accessibility_audit",
            },
        )

    # ------------------------------------------------------------------
    # Debounce state machine
    # ------------------------------------------------------------------

    def _window(self, category: str) -> float:
        return self._config["windows"].get(category, 0)

    def _fire(self, category: str, key: str, target_id: Optional[str], analysis: dict) -> bool:
        record_key = f"{category}:{key}"
        now = self._clock()

        with self._lock:
            self._prune_records(now)
            if record_key in self._active:
                logger.debug(f"Trigger {record_key} already firing")
                return False
            record = self._records.get(record_key)
            if record and now - record.last_fired_at < self._window(category):
                logger.debug(f"Trigger {record_key} debounced")
                return False
            self._active.add(record_key)
            self._records[record_key] = TriggerRecord(
                key=record_key, category=category, last_fired_at=now,
            )

        try:
            logger.info(f"Triggering {category} for {target_id or key}")
            if self._event_bus is not None:
                self._event_bus.publish(
                    TRIGGER_EVENT_PREFIX + category,
                    TriggerPayload(category=category, target_id=target_id, analysis=analysis),
                )
        finally:
            with self._lock:
                self._active.discard(record_key)
        return True

    def _is_novel(self, event: DiagnosticEvent) -> bool:
        prefix = event.message[: self._config["novelty_prefix_length"]]
        key = f"{event.kind.value}:{prefix}"
        now = self._clock()

        with self._lock:
            window = self._config["novelty_window_seconds"]
            expired = [k for k, seen in self._novelty.items() if now - seen > window]
            for stale in expired:
                del self._novelty[stale]

            if key in self._novelty:
                return False
            self._novelty[key] = now
        return True

    def _prune_records(self, now: float) -> None:
        # Caller holds _lock. A record is kept while it still debounces its
        # key or still shows in recent stats.
        expired = [
            key for key, record in self._records.items()
            if key not in self._active
            and now - record.last_fired_at >= max(self._window(record.category), RECENT_TRIGGER_WINDOW)
        ]
        for key in expired:
            del self._records[key]

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def clear_history(self) -> None:
        with self._lock:
            self._records.clear()
            self._active.clear()
            self._novelty.clear()
        logger.info("Trigger history cleared")

    def get_stats(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            records = list(self._records.values())
            active = len(self._active)

        recent = sorted(
            (r for r in records if now - r.last_fired_at < RECENT_TRIGGER_WINDOW),
            key=lambda r: r.last_fired_at,
            reverse=True,
        )
        return {
            "total_triggers": len(records),
            "active_triggers": active,
            "recent_triggers": [
                {"key": r.key, "timestamp": r.fired_at.isoformat()}
                for r in recent[:RECENT_TRIGGER_LIMIT]
            ],
        }

    def update_config(self, **overrides: Any) -> None:
        with self._lock:
            self._config = deep_merge(self._config, overrides)
        logger.info("Trigger configuration updated")

    def get_config(self) -> dict:
        with self._lock:
            return copy.deepcopy(self._config)
