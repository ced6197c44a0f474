"""Fan-out of event bus traffic to Server-Sent Events streams.

Every bus event gets a sequence number and lands in a bounded replay log,
so a browser reconnecting with ``Last-Event-ID`` resumes where it left off.
Each connected stream has its own bounded queue. A stream that stops
draining loses events and is dropped once it has missed too many.
"""

import json
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from queue import Empty, Full, Queue
from typing import Any, Iterable, NamedTuple, Optional

from .event_bus import EventBus, payload_to_dict

logger = logging.getLogger(__name__)

DEFAULT_REPLAY_BUFFER_SIZE = 200
STREAM_QUEUE_SIZE = 1000
MAX_FAILED_WRITES = 3


class StreamFilter(NamedTuple):
    """Which events a stream wants. Empty fields accept everything."""

    types: frozenset[str] = frozenset()
    target_id: Optional[str] = None

    @classmethod
    def build(cls, types: Optional[Iterable[str]] = None, target_id: Optional[str] = None) -> "StreamFilter":
        return cls(types=frozenset(types or ()), target_id=target_id or None)

    def accepts(self, event_type: str, data: dict) -> bool:
        if self.types and event_type not in self.types:
            return False
        return self.target_id is None or data.get("target_id") == self.target_id


@dataclass(frozen=True)
class StreamEvent:
    """One sequenced bus event as sent on the wire."""

    event_type: str
    data: dict
    event_id: int

    def format(self) -> str:
        return f"event: {self.event_type}\nid: {self.event_id}\ndata: {json.dumps(self.data)}\n\n"


@dataclass
class StreamClient:
    """A connected stream. ``last_seen`` is monotonic seconds."""

    client_id: str
    filter: StreamFilter
    last_seen: float
    queue: Queue = field(default_factory=lambda: Queue(maxsize=STREAM_QUEUE_SIZE))
    failed_writes: int = 0
    is_active: bool = True


class Broadcaster:
    """
    Registry of SSE streams fed from the event bus.

    A background reaper drops streams that failed too many writes or have
    been silent longer than ``connection_timeout``.
    """

    def __init__(
        self,
        max_connections: int = 100,
        heartbeat_interval: float = 30.0,
        connection_timeout: float = 60.0,
        retry_after: int = 5,
        replay_buffer_size: int = DEFAULT_REPLAY_BUFFER_SIZE,
    ) -> None:
        self._max_connections = max_connections
        self._heartbeat_interval = heartbeat_interval
        self._connection_timeout = connection_timeout
        self._retry_after = retry_after

        self._streams: dict[str, StreamClient] = {}
        self._replay: deque[StreamEvent] = deque(maxlen=replay_buffer_size)
        self._sequence = 0
        self._lock = threading.Lock()

        self._reaper: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._unsubscribe = None

    @property
    def active_connections(self) -> int:
        with self._lock:
            return len(self._streams)

    @property
    def heartbeat_interval(self) -> float:
        return self._heartbeat_interval

    @property
    def retry_after(self) -> int:
        return self._retry_after

    @property
    def running(self) -> bool:
        return self._reaper is not None and not self._stopping.is_set()

    @property
    def thread(self) -> Optional[threading.Thread]:
        return self._reaper

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._reaper = threading.Thread(target=self._reap_loop, daemon=True, name="sse-reaper")
        self._reaper.start()
        logger.info("Broadcaster started")

    def stop(self) -> None:
        """Stop reaping, detach from the bus and end every open stream."""
        if not self.running:
            return
        self._stopping.set()
        self.detach()
        with self._lock:
            streams = list(self._streams.values())
            self._streams.clear()
        for stream in streams:
            stream.is_active = False
            self._offer(stream, None)
        self._reaper.join(timeout=5.0)
        logger.info("Broadcaster stopped")

    def attach(self, bus: EventBus) -> None:
        """Forward every event published on the bus to connected streams."""
        self.detach()
        self._unsubscribe = bus.subscribe_all(
            lambda event_type, payload: self.broadcast(event_type, payload_to_dict(payload))
        )

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def can_accept_connection(self) -> bool:
        return self.active_connections < self._max_connections

    def register_client(
        self,
        types: Optional[list[str]] = None,
        target_id: Optional[str] = None,
    ) -> Optional[str]:
        """Open a stream. Returns its ID, or None at the connection limit."""
        stream = StreamClient(
            client_id=uuid.uuid4().hex,
            filter=StreamFilter.build(types, target_id),
            last_seen=time.monotonic(),
        )
        with self._lock:
            if len(self._streams) >= self._max_connections:
                logger.warning(f"SSE connection limit reached ({self._max_connections})")
                return None
            self._streams[stream.client_id] = stream
        logger.info(f"Stream opened: {stream.client_id} {stream.filter}")
        return stream.client_id

    def unregister_client(self, client_id: str) -> bool:
        with self._lock:
            stream = self._streams.pop(client_id, None)
        if stream is None:
            return False
        stream.is_active = False
        logger.info(f"Stream closed: {client_id}")
        return True

    def get_client(self, client_id: str) -> Optional[StreamClient]:
        with self._lock:
            return self._streams.get(client_id)

    def broadcast(self, event_type: str, data: dict) -> int:
        """Sequence an event and queue it on every accepting stream."""
        with self._lock:
            self._sequence += 1
            event = StreamEvent(event_type=event_type, data=data, event_id=self._sequence)
            self._replay.append(event)
            targets = [
                s for s in self._streams.values()
                if s.is_active and s.filter.accepts(event_type, data)
            ]

        delivered = sum(1 for stream in targets if self._offer(stream, event))
        logger.debug(f"Event {event.event_id} ({event_type}) queued for {delivered} streams")
        return delivered

    def _offer(self, stream: StreamClient, event: Optional[StreamEvent]) -> bool:
        try:
            stream.queue.put_nowait(event)
        except Full:
            self.mark_failed_write(stream.client_id)
            return False
        return True

    def get_replay_events(
        self, last_event_id: int, stream_filter: Optional[StreamFilter] = None,
    ) -> list[StreamEvent]:
        """Buffered events after ``last_event_id`` that pass ``stream_filter``."""
        accepts = (stream_filter or StreamFilter()).accepts
        with self._lock:
            return [
                e for e in self._replay
                if e.event_id > last_event_id and accepts(e.event_type, e.data)
            ]

    def get_next_event(self, client_id: str, timeout: Optional[float] = None) -> Optional[StreamEvent]:
        """Wait for a stream's next event. None means send a heartbeat (or stop)."""
        stream = self.get_client(client_id)
        if stream is None or not stream.is_active:
            return None
        try:
            event = stream.queue.get(timeout=self._heartbeat_interval if timeout is None else timeout)
        except Empty:
            event = None
        stream.last_seen = time.monotonic()
        return event

    def mark_failed_write(self, client_id: str) -> None:
        stream = self.get_client(client_id)
        if stream is not None:
            stream.failed_writes += 1
            logger.warning(f"Stream {client_id} missed a write ({stream.failed_writes})")

    def _reap_loop(self) -> None:
        while not self._stopping.wait(self._connection_timeout):
            try:
                self._cleanup_stale_connections()
            except Exception as e:
                logger.error(f"SSE reaper failed: {e}")

    def _cleanup_stale_connections(self) -> None:
        cutoff = time.monotonic() - self._connection_timeout
        with self._lock:
            stale = [
                s.client_id for s in self._streams.values()
                if s.failed_writes >= MAX_FAILED_WRITES or s.last_seen < cutoff
            ]
        for client_id in stale:
            if self.unregister_client(client_id):
                logger.info(f"Reaped stale stream: {client_id}")

    def get_health_status(self) -> dict[str, Any]:
        return {
            "status": "healthy" if self.running else "stopped",
            "active_connections": self.active_connections,
            "max_connections": self._max_connections,
            "running": self.running,
        }


def create_broadcaster(config: Optional[dict] = None) -> Broadcaster:
    """Build a broadcaster from the ``sse`` config section."""
    sse = (config or {}).get("sse", {})
    return Broadcaster(
        max_connections=sse.get("max_connections", 100),
        heartbeat_interval=sse.get("heartbeat_interval_seconds", 30),
        connection_timeout=sse.get("connection_timeout_seconds", 60),
        retry_after=sse.get("retry_after_seconds", 5),
    )
