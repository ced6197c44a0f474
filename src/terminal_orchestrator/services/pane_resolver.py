"""Bidirectional mapping between tmux native pane IDs and structured IDs.

tmux reports panes as ``%3`` and those handles are not stable across some
operations (respawn, join-pane, server restarts). Callers address panes as
``session:window.pane`` instead; this registry translates between the two.

Resolution is fail-open: an unknown ID is logged and passed through as-is so
tmux can attempt it as a target directly.
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_INTERVAL = 1800  # seconds between background sweeps
DEFAULT_IDLE_THRESHOLD = 3600  # seconds before an unseen mapping is dropped

_NATIVE_ID_PATTERN = re.compile(r"^%\d+$")
_STRUCTURED_ID_PATTERN = re.compile(r"^(?P<session>.+):(?P<window>\d+)\.(?P<pane>\d+)$")


def is_native_id(pane_id: str | None) -> bool:
    """True if the ID looks like a tmux native pane handle (``%N``)."""
    if not pane_id:
        return False
    return bool(_NATIVE_ID_PATTERN.match(pane_id))


def build_structured_id(session_name: str, window_index: int, pane_index: int) -> str:
    """Build the structured ID ``session:window.pane``."""
    return f"{session_name}:{window_index}.{pane_index}"


def parse_structured_id(pane_id: str) -> Optional[tuple[str, int, int]]:
    """Split a structured ID into (session, window, pane), or None if malformed."""
    match = _STRUCTURED_ID_PATTERN.match(pane_id or "")
    if not match:
        return None
    return match.group("session"), int(match.group("window")), int(match.group("pane"))


@dataclass
class PaneMapping:
    """A live mapping between a native pane ID and its structured ID."""

    native_id: str
    structured_id: str
    session_name: str
    window_index: int
    pane_index: int
    last_seen: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PaneResolver:
    """
    Thread-safe registry of pane ID mappings.

    Both directions are indexed so lookups are O(1); session clearing and
    structured-shape reconstruction are linear scans over live mappings.
    A daemon thread drops mappings that have not been resolved for longer
    than the idle threshold.
    """

    def __init__(
        self,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        idle_threshold: float = DEFAULT_IDLE_THRESHOLD,
    ) -> None:
        self._cleanup_interval = cleanup_interval
        self._idle_threshold = idle_threshold

        self._native_to_mapping: dict[str, PaneMapping] = {}
        self._structured_to_mapping: dict[str, PaneMapping] = {}
        self._lock = threading.Lock()

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def thread(self) -> Optional[threading.Thread]:
        return self._thread

    def start(self) -> None:
        """Start the background cleanup thread."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._cleanup_loop,
            name="pane-resolver-cleanup",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            f"Pane resolver cleanup started "
            f"(interval={self._cleanup_interval}s, idle_threshold={self._idle_threshold}s)"
        )

    def stop(self) -> None:
        """Stop the background cleanup thread."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Pane resolver cleanup stopped")

    def register_pane(
        self,
        native_id: str,
        session_name: str,
        window_index: int,
        pane_index: int,
    ) -> str:
        """
        Register (or refresh) a pane mapping observed from tmux.

        Re-registering the same position with a new native ID evicts the old
        native entry, and a native ID moving to a new position evicts its old
        structured entry, so neither direction can return a stale handle.

        Args:
            native_id: tmux native pane ID (e.g. ``%3``)
            session_name: Session the pane belongs to
            window_index: Window index within the session
            pane_index: Pane index within the window

        Returns:
            The structured ID for the pane
        """
        structured_id = build_structured_id(session_name, window_index, pane_index)
        mapping = PaneMapping(
            native_id=native_id,
            structured_id=structured_id,
            session_name=session_name,
            window_index=window_index,
            pane_index=pane_index,
        )

        with self._lock:
            previous = self._structured_to_mapping.get(structured_id)
            if previous and previous.native_id != native_id:
                self._native_to_mapping.pop(previous.native_id, None)

            moved = self._native_to_mapping.get(native_id)
            if moved and moved.structured_id != structured_id:
                self._structured_to_mapping.pop(moved.structured_id, None)

            self._native_to_mapping[native_id] = mapping
            self._structured_to_mapping[structured_id] = mapping

        logger.debug(f"Registered pane mapping: {native_id} <-> {structured_id}")
        return structured_id

    def resolve_to_native(self, pane_id: str) -> str:
        """
        Resolve any pane ID format to a tmux native ID for command execution.

        Never raises. Unknown IDs are returned unchanged so tmux can try them
        as a direct target.
        """
        if is_native_id(pane_id):
            self._touch(pane_id)
            return pane_id

        with self._lock:
            mapping = self._structured_to_mapping.get(pane_id)
            if mapping:
                mapping.last_seen = datetime.now(timezone.utc)
                return mapping.native_id

        parsed = parse_structured_id(pane_id)
        if parsed:
            native_id = self._reconstruct(*parsed)
            if native_id:
                return native_id

        logger.warning(f"Unknown pane ID format: {pane_id}, attempting direct use")
        return pane_id

    def resolve_to_structured(self, pane_id: str) -> str:
        """Resolve any pane ID format to a structured ID for API responses."""
        if not is_native_id(pane_id):
            return pane_id

        with self._lock:
            mapping = self._native_to_mapping.get(pane_id)
            if mapping:
                mapping.last_seen = datetime.now(timezone.utc)
                return mapping.structured_id

        logger.warning(f"No structured mapping found for native ID: {pane_id}")
        return pane_id

    def get_mapping(self, pane_id: str) -> Optional[PaneMapping]:
        """Look up a mapping by either ID format without touching freshness."""
        with self._lock:
            return (
                self._native_to_mapping.get(pane_id)
                or self._structured_to_mapping.get(pane_id)
            )

    def get_session_mappings(self, session_name: str) -> list[PaneMapping]:
        """Get all mappings for a session."""
        with self._lock:
            return [
                m for m in self._native_to_mapping.values()
                if m.session_name == session_name
            ]

    def clear_session(self, session_name: str) -> int:
        """
        Remove all mappings for a session.

        Returns:
            Number of mappings removed
        """
        with self._lock:
            doomed = [
                m for m in self._native_to_mapping.values()
                if m.session_name == session_name
            ]
            for mapping in doomed:
                self._native_to_mapping.pop(mapping.native_id, None)
                self._structured_to_mapping.pop(mapping.structured_id, None)

        logger.debug(f"Cleared {len(doomed)} mappings for session: {session_name}")
        return len(doomed)

    def cleanup_stale(self, max_idle_seconds: Optional[float] = None) -> int:
        """
        Drop mappings not resolved within the idle threshold.

        Args:
            max_idle_seconds: Override for the configured idle threshold

        Returns:
            Number of mappings removed
        """
        threshold = self._idle_threshold if max_idle_seconds is None else max_idle_seconds
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=threshold)

        with self._lock:
            stale = [m for m in self._native_to_mapping.values() if m.last_seen < cutoff]
            for mapping in stale:
                self._native_to_mapping.pop(mapping.native_id, None)
                self._structured_to_mapping.pop(mapping.structured_id, None)

        if stale:
            logger.debug(f"Cleaned up {len(stale)} old pane mappings")
        return len(stale)

    def get_stats(self) -> dict:
        """Get statistics about current mappings."""
        with self._lock:
            mappings = list(self._native_to_mapping.values())

        seen = [m.last_seen for m in mappings]
        return {
            "total_mappings": len(mappings),
            "session_count": len({m.session_name for m in mappings}),
            "oldest_mapping": min(seen) if seen else None,
            "newest_mapping": max(seen) if seen else None,
        }

    def clear(self) -> None:
        """Remove every mapping."""
        with self._lock:
            self._native_to_mapping.clear()
            self._structured_to_mapping.clear()

    def _touch(self, native_id: str) -> None:
        with self._lock:
            mapping = self._native_to_mapping.get(native_id)
            if mapping:
                mapping.last_seen = datetime.now(timezone.utc)

    def _reconstruct(self, session_name: str, window_index: int, pane_index: int) -> Optional[str]:
        """Find a native ID by position when the structured key itself is missing."""
        with self._lock:
            for mapping in self._native_to_mapping.values():
                if (
                    mapping.session_name == session_name
                    and mapping.window_index == window_index
                    and mapping.pane_index == pane_index
                ):
                    mapping.last_seen = datetime.now(timezone.utc)
                    return mapping.native_id
        return None

    def _cleanup_loop(self) -> None:
        while not self._stop_event.wait(self._cleanup_interval):
            try:
                self.cleanup_stale()
            except Exception as e:
                logger.error(f"Error in pane resolver cleanup: {e}")
