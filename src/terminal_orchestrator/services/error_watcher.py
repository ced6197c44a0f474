"""Error stream coordinator.

Connects pane log tails and language build watchers to the pattern engine,
keeps a bounded per-target diagnostic history and publishes ``error`` /
``warning`` / ``clear`` / ``crash`` events on the event bus.
"""

import logging
import subprocess
import threading
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import IO, NamedTuple, Optional

from ..errors import ValidationError
from .command_safety import CommandSafety
from .error_patterns import DiagnosticEvent, DiagnosticKind, Pattern, PatternEngine
from .event_bus import (
    EVENT_CLEAR,
    EVENT_CRASH,
    EVENT_ERROR,
    EVENT_WARNING,
    ClearPayload,
    EventBus,
    ProcessCrash,
)
from .file_tailer import FileTailer

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_CAPACITY = 100

BUILD_COMMANDS: dict[str, tuple[str, ...]] = {
    "typescript": ("tsc", "--watch", "--noEmit"),
    "javascript": ("eslint", "--cache", "--watch"),
    "rust": ("cargo", "check", "--watch"),
    "go": ("go", "build", "-watch"),
    "python": ("python", "-m", "py_compile"),
    "java": ("javac", "-Xlint:all"),
}

# Substring hints checked in order against the lowercased pane command.
LANGUAGE_HINTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("typescript", ("tsc", "typescript")),
    ("rust", ("cargo", "rust")),
    ("go", ("go ", "golang")),
    ("python", ("python", "py")),
    ("java", ("java", "javac")),
    ("javascript", ("node", "npm", "yarn")),
)

SUMMARY_WINDOWS = {
    "all": None,
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
}


def detect_language(command: Optional[str]) -> Optional[str]:
    """Guess the project language from the command running in a pane."""
    if not command:
        return None
    lowered = command.lower()
    for language, hints in LANGUAGE_HINTS:
        if any(hint in lowered for hint in hints):
            return language
    return None


@dataclass(frozen=True)
class WatchTarget:
    """Something to watch: a pane (or any target) with an optional log file."""

    target_id: str
    log_file: Optional[str] = None
    command: str = ""


class ErrorAnalysis(NamedTuple):
    """Aggregated view of one target's diagnostic history."""

    target_id: str
    recent: list[DiagnosticEvent]
    top_files: list[dict]
    kinds: list[dict]
    last_hour: int
    last_day: int

    def to_dict(self) -> dict:
        return {
            "target_id": self.target_id,
            "recent": [e.to_dict() for e in self.recent],
            "top_files": self.top_files,
            "kinds": self.kinds,
            "trends": {"last_hour": self.last_hour, "last_day": self.last_day},
        }


class ErrorWatcher:
    """
    Per-target error history fed from log tails and build watchers.

    Absence is explicit: ``get_errors`` returns None for a target that was
    never watched and never recorded anything, and ``[]`` for a watched
    target with no diagnostics yet.
    """

    def __init__(
        self,
        engine: Optional[PatternEngine] = None,
        tailer: Optional[FileTailer] = None,
        command_safety: Optional[CommandSafety] = None,
        event_bus: Optional[EventBus] = None,
        history_capacity: int = DEFAULT_HISTORY_CAPACITY,
        spawn_build_watchers: bool = True,
    ) -> None:
        self._engine = engine or PatternEngine()
        self._tailer = tailer or FileTailer()
        self._command_safety = command_safety or CommandSafety()
        self._event_bus = event_bus
        self._history_capacity = history_capacity
        self._spawn_build_watchers = spawn_build_watchers

        self._history: dict[str, deque[DiagnosticEvent]] = {}
        self._watched: set[str] = set()
        self._log_files: dict[str, tuple[str, int]] = {}
        self._build_watchers: dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    @property
    def engine(self) -> PatternEngine:
        return self._engine

    @property
    def tailer(self) -> FileTailer:
        return self._tailer

    @property
    def watched_targets(self) -> list[str]:
        with self._lock:
            return sorted(self._watched)

    def build_watcher_for(self, target_id: str) -> Optional[subprocess.Popen]:
        with self._lock:
            return self._build_watchers.get(target_id)

    # ------------------------------------------------------------------
    # Watch lifecycle
    # ------------------------------------------------------------------

    def start_watching(self, target: WatchTarget) -> bool:
        """
        Start watching a target.

        Tails its log file (a missing file is logged, not raised) and spawns a
        build watcher when the pane command implies a language.

        Returns:
            False if the target was already being watched
        """
        target_id = target.target_id
        with self._lock:
            if target_id in self._watched:
                logger.warning(f"Target {target_id} is already being watched")
                return False
            self._watched.add(target_id)

        logger.info(f"Starting error watching for target: {target_id}")

        if target.log_file:
            try:
                subscription = self._tailer.watch(
                    target.log_file,
                    lambda text, tid=target_id: self.process_output(text, tid),
                )
            except OSError as e:
                logger.error(f"Cannot tail log file {target.log_file} for {target_id}: {e}")
            else:
                with self._lock:
                    self._log_files[target_id] = (target.log_file, subscription)

        self._start_build_watcher(target)
        return True

    def stop_watching(self, target_id: str) -> bool:
        """
        Stop watching a target: kill its build watcher, stop its tail and
        drop its history.

        Returns:
            True if the target was being watched
        """
        with self._lock:
            was_watched = target_id in self._watched
            self._watched.discard(target_id)
            process = self._build_watchers.pop(target_id, None)
            tail = self._log_files.pop(target_id, None)
            self._history.pop(target_id, None)

        if process is not None:
            self._kill(process, target_id)
        if tail is not None:
            self._tailer.stop(*tail)

        logger.info(f"Error watching stopped for target: {target_id}")
        return was_watched

    def shutdown(self) -> None:
        """Stop every build watcher and tail, and drop all state."""
        logger.info("Shutting down error watcher")
        with self._lock:
            processes = list(self._build_watchers.items())
            self._build_watchers.clear()
            self._watched.clear()
            self._log_files.clear()
            self._history.clear()

        for target_id, process in processes:
            self._kill(process, target_id)
        self._tailer.stop_all()

    def _start_build_watcher(self, target: WatchTarget) -> None:
        if not self._spawn_build_watchers:
            return

        language = detect_language(target.command)
        if not language:
            logger.debug(f"No specific language detected for target {target.target_id}")
            return

        argv = BUILD_COMMANDS.get(language)
        if not argv:
            logger.debug(f"No build command available for language: {language}")
            return

        try:
            process = self._command_safety.spawn(argv[0], argv[1:])
        except (OSError, ValidationError) as e:
            logger.error(f"Failed to start {language} build watcher for {target.target_id}: {e}")
            return

        with self._lock:
            self._build_watchers[target.target_id] = process

        for name, stream in (("stdout", process.stdout), ("stderr", process.stderr)):
            threading.Thread(
                target=self._read_stream,
                args=(target.target_id, stream, language),
                name=f"build-{name}-{target.target_id}",
                daemon=True,
            ).start()
        threading.Thread(
            target=self._wait_for_exit,
            args=(target.target_id, process, argv[0]),
            name=f"build-exit-{target.target_id}",
            daemon=True,
        ).start()

        logger.debug(f"Started {language} build watcher for target {target.target_id}")

    def _read_stream(self, target_id: str, stream: Optional[IO[bytes]], language: str) -> None:
        if stream is None:
            return
        try:
            for raw in iter(stream.readline, b""):
                self.process_output(raw.decode("utf-8", errors="replace"), target_id, language)
        except (OSError, ValueError) as e:
            logger.debug(f"Build watcher stream closed for {target_id}: {e}")

    def _wait_for_exit(self, target_id: str, process: subprocess.Popen, name: str) -> None:
        exit_code = process.wait()
        with self._lock:
            # Absent means stop_watching already removed and killed it
            owned = self._build_watchers.get(target_id) is process
            if owned:
                del self._build_watchers[target_id]

        if not owned:
            return

        logger.debug(f"Build watcher exited for target {target_id} with code {exit_code}")
        if exit_code != 0:
            logger.warning(f"Build watcher {name} crashed for target {target_id} (exit {exit_code})")
            self._publish(
                EVENT_CRASH,
                ProcessCrash(
                    target_id=target_id,
                    process_name=name,
                    pid=process.pid,
                    exit_code=exit_code,
                ),
            )

    def _kill(self, process: subprocess.Popen, target_id: str) -> None:
        try:
            process.kill()
        except OSError as e:
            logger.debug(f"Build watcher for {target_id} already gone: {e}")

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def process_output(
        self,
        text: str,
        target_id: str,
        language: Optional[str] = None,
    ) -> list[DiagnosticEvent]:
        """
        Classify every non-blank line, record matches and publish them.

        Returns:
            The events recorded from this chunk, in line order
        """
        events = []
        for line in text.splitlines():
            if not line.strip():
                continue

            event = self._engine.classify(line, target_id=target_id, language=language)
            if event is None:
                continue

            self._record(event)
            events.append(event)

            if event.kind == DiagnosticKind.ERROR:
                self._publish(EVENT_ERROR, event)
            elif event.kind == DiagnosticKind.WARNING:
                self._publish(EVENT_WARNING, event)

        return events

    def _record(self, event: DiagnosticEvent) -> None:
        with self._lock:
            history = self._history.get(event.target_id)
            if history is None:
                history = deque(maxlen=self._history_capacity)
                self._history[event.target_id] = history
            history.append(event)

    def _publish(self, event_type: str, payload) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event_type, payload)

    def add_pattern(self, pattern: Pattern, replace: bool = False) -> None:
        self._engine.add_pattern(pattern, replace=replace)

    def remove_pattern(self, name: str) -> bool:
        return self._engine.remove_pattern(name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_errors(self, target_id: str) -> Optional[list[DiagnosticEvent]]:
        """History for a target, oldest first. None if never watched or recorded."""
        with self._lock:
            history = self._history.get(target_id)
            if history is None:
                return [] if target_id in self._watched else None
            return list(history)

    def get_all_errors(self) -> dict[str, list[DiagnosticEvent]]:
        with self._lock:
            return {tid: list(history) for tid, history in self._history.items()}

    def clear_errors(self, target_id: Optional[str] = None) -> None:
        """Clear one target's history, or everything (publishes ``clear``)."""
        if target_id:
            with self._lock:
                self._history.pop(target_id, None)
            logger.debug(f"Cleared errors for target: {target_id}")
            return

        with self._lock:
            self._history.clear()
        logger.debug("Cleared all errors")
        self._publish(EVENT_CLEAR, ClearPayload())

    def _select(
        self,
        target_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> list[DiagnosticEvent]:
        with self._lock:
            if target_id:
                events = list(self._history.get(target_id, ()))
            else:
                events = [e for history in self._history.values() for e in history]
        if since is not None:
            events = [e for e in events if e.timestamp >= since]
        return events

    def get_summary(self, target_id: Optional[str] = None, window: str = "all") -> dict:
        """
        Count diagnostics by kind.

        Args:
            target_id: Restrict to one target (default: all targets)
            window: ``all``, ``hour`` or ``day``

        Raises:
            ValueError: for an unknown window
        """
        if window not in SUMMARY_WINDOWS:
            raise ValueError(f"Unknown summary window: {window}")

        span = SUMMARY_WINDOWS[window]
        since = datetime.now(timezone.utc) - span if span else None
        counts = Counter(e.kind for e in self._select(target_id, since))

        return {
            "target_id": target_id,
            "window": window,
            "total": sum(counts.values()),
            "errors": counts[DiagnosticKind.ERROR],
            "warnings": counts[DiagnosticKind.WARNING],
            "info": counts[DiagnosticKind.INFO],
        }

    def top_files(self, target_id: Optional[str] = None, limit: int = 5) -> list[dict]:
        counts = Counter(e.file for e in self._select(target_id) if e.file)
        return [{"file": f, "count": c} for f, c in counts.most_common(limit)]

    def top_kinds(self, target_id: Optional[str] = None, limit: int = 5) -> list[dict]:
        counts = Counter(e.kind.value for e in self._select(target_id))
        return [{"kind": k, "count": c} for k, c in counts.most_common(limit)]

    def recent(self, target_id: Optional[str] = None, limit: int = 10) -> list[DiagnosticEvent]:
        """Most recent diagnostics, oldest first."""
        events = sorted(self._select(target_id), key=lambda e: e.timestamp)
        return events[-limit:] if limit > 0 else []

    def analyze(self, target_id: str) -> ErrorAnalysis:
        now = datetime.now(timezone.utc)
        events = self._select(target_id)
        return ErrorAnalysis(
            target_id=target_id,
            recent=events[-10:],
            top_files=self.top_files(target_id),
            kinds=self.top_kinds(target_id, limit=len(DiagnosticKind)),
            last_hour=sum(1 for e in events if now - e.timestamp < timedelta(hours=1)),
            last_day=sum(1 for e in events if now - e.timestamp < timedelta(days=1)),
        )
