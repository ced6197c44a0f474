"""Session metadata storage boundary.

The orchestrator only needs get/put/delete/list by session name. Any backend
satisfying ``SessionStore`` can be plugged in; ``MemorySessionStore`` keeps
records in process memory.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_MAX_SESSIONS = 50
DEFAULT_SESSION_TIMEOUT = 24 * 60 * 60  # seconds


@dataclass
class SessionRecord:
    """Metadata remembered about a session the orchestrator created."""

    session_name: str
    log_directory: str = ""
    layout: dict = field(default_factory=dict)
    error_watch_enabled: bool = False
    custom_patterns: list[str] = field(default_factory=list)
    created: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_accessed: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "session_name": self.session_name,
            "log_directory": self.log_directory,
            "layout": self.layout,
            "error_watch_enabled": self.error_watch_enabled,
            "custom_patterns": list(self.custom_patterns),
            "created": self.created.isoformat(),
            "last_accessed": self.last_accessed.isoformat(),
        }


class SessionStore(Protocol):
    def get(self, name: str) -> Optional[SessionRecord]: ...

    def put(self, name: str, record: SessionRecord) -> None: ...

    def delete(self, name: str) -> bool: ...

    def list_names(self) -> list[str]: ...


class MemorySessionStore:
    """
    In-memory ``SessionStore``.

    Holds at most ``max_sessions`` records; adding one more evicts the least
    recently accessed. ``cleanup_expired`` drops records idle for longer
    than ``session_timeout`` seconds.
    """

    def __init__(
        self,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        session_timeout: float = DEFAULT_SESSION_TIMEOUT,
    ) -> None:
        self._max_sessions = max_sessions
        self._session_timeout = session_timeout
        self._records: dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> Optional[SessionRecord]:
        with self._lock:
            record = self._records.get(name)
            if record:
                record.last_accessed = datetime.now(timezone.utc)
            return record

    def put(self, name: str, record: SessionRecord) -> None:
        with self._lock:
            if name not in self._records and len(self._records) >= self._max_sessions:
                oldest = min(self._records.values(), key=lambda r: r.last_accessed)
                del self._records[oldest.session_name]
                logger.info(f"Evicted session metadata for {oldest.session_name}")
            record.last_accessed = datetime.now(timezone.utc)
            self._records[name] = record
        logger.debug(f"Stored session metadata: {name}")

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._records.pop(name, None) is not None

    def list_names(self) -> list[str]:
        with self._lock:
            return sorted(self._records)

    def cleanup_expired(self) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self._session_timeout)
        with self._lock:
            expired = [n for n, r in self._records.items() if r.last_accessed < cutoff]
            for name in expired:
                del self._records[name]
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired session records")
        return len(expired)
