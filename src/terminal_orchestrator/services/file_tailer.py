"""Incremental tailing of growing log files.

Each watched file keeps a byte offset. On a change notification only the
range ``[offset, size)`` is read and handed to the consumers, so large,
fast-growing pane logs are never re-scanned. A file shrinking below the
recorded offset is treated as truncation and the offset resets to zero.

Only complete lines are delivered. A trailing partial line (including a
multibyte character split across writes) is held back until its newline
arrives, or until it grows past ``MAX_PENDING_BYTES``.
"""

import itertools
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB
MAX_PENDING_BYTES = 64 * 1024


@dataclass
class TailState:
    """Read position and subscribers for one watched file."""

    file_path: str
    offset: int
    subscribers: dict[int, Callable[[str], None]] = field(default_factory=dict)
    pending: bytes = b""
    lock: threading.Lock = field(default_factory=threading.Lock)


class FileTailer:
    """
    Watches files and delivers newly appended text to per-file callbacks.

    Change notifications come from a Watchdog observer with one scheduled
    handler per directory. ``check`` can also be called directly (e.g. from a
    polling loop) and is safe to call at any time.

    Several consumers may tail the same file. They share one offset; a late
    subscriber only sees content appended after it subscribed.

    Lock order: ``_schedule_lock`` before ``_lock``; ``TailState.lock`` before
    ``_lock``. Observer calls are made only under ``_schedule_lock``, which
    event handlers never take, because Watchdog holds its own lock while
    dispatching to them.
    """

    def __init__(self, max_file_size: int = DEFAULT_MAX_FILE_SIZE) -> None:
        self._max_file_size = max_file_size
        self._states: dict[str, TailState] = {}
        self._dir_watches: dict[str, object] = {}
        self._lock = threading.Lock()
        self._schedule_lock = threading.Lock()
        self._observer: Optional[Observer] = None
        self._ids = itertools.count(1)

    @property
    def watched_files(self) -> list[str]:
        with self._lock:
            return list(self._states.keys())

    @property
    def observer(self) -> Optional[Observer]:
        return self._observer

    def subscriber_count(self, file_path: str) -> int:
        with self._lock:
            state = self._states.get(os.path.abspath(file_path))
            return len(state.subscribers) if state else 0

    def start(self) -> None:
        """Start the Watchdog observer if it is not already running."""
        with self._schedule_lock:
            if self._observer is not None:
                return
            observer = Observer()
            observer.daemon = True
            observer.start()
            self._observer = observer
        logger.info("File tailer observer started")

    def watch(self, file_path: str, on_append: Callable[[str], None]) -> int:
        """
        Start tailing a file.

        Files larger than the configured maximum are tailed from their current
        end; smaller files are delivered from the beginning. Subscribing to a
        file that is already tailed keeps its offset.

        Returns:
            Subscription ID to pass to ``stop``

        Raises:
            FileNotFoundError: if the file does not exist
        """
        path = os.path.abspath(file_path)
        size = os.path.getsize(path)
        subscription = next(self._ids)

        with self._lock:
            state = self._states.get(path)
            if state is None:
                if size > self._max_file_size:
                    logger.warning(f"File {path} exceeds max size, watching from end")
                    offset = size
                else:
                    offset = 0
                state = TailState(file_path=path, offset=offset)
                self._states[path] = state
            state.subscribers[subscription] = on_append
            offset = state.offset

        self.start()
        self._schedule(os.path.dirname(path))

        logger.debug(f"Started watching file: {path} (offset={offset}, subscription={subscription})")
        return subscription

    def check(self, file_path: str) -> bool:
        """
        Deliver any complete lines appended since the last check.

        Returns:
            True if new content was delivered to the callbacks
        """
        path = os.path.abspath(file_path)
        with self._lock:
            state = self._states.get(path)
        if state is None:
            return False

        with state.lock:
            try:
                size = os.path.getsize(path)
            except OSError as e:
                logger.error(f"Error handling file change for {path}: {e}")
                return False

            if size < state.offset:
                logger.debug(f"File {path} truncated, resetting offset")
                state.offset = 0
                state.pending = b""
                return False

            if size == state.offset:
                return False

            try:
                with open(path, "rb") as f:
                    f.seek(state.offset)
                    data = f.read(size - state.offset)
            except OSError as e:
                logger.error(f"Error reading {path}: {e}")
                return False

            state.offset += len(data)
            buffered = state.pending + data
            cut = buffered.rfind(b"\n") + 1
            if cut == 0 and len(buffered) > MAX_PENDING_BYTES:
                cut = len(buffered)
            state.pending = buffered[cut:]

            text = buffered[:cut].decode("utf-8", errors="replace")
            if not text.strip():
                return False

            with self._lock:
                callbacks = list(state.subscribers.values())
            for callback in callbacks:
                try:
                    callback(text)
                except Exception as e:
                    logger.error(f"Error in tail callback for {path}: {e}")
            return True

    def get_offset(self, file_path: str) -> Optional[int]:
        """Current offset for a watched file, or None if not watched."""
        with self._lock:
            state = self._states.get(os.path.abspath(file_path))
        return state.offset if state else None

    def stop(self, file_path: str, subscription: Optional[int] = None) -> bool:
        """
        Drop one subscription, or every subscription when none is given.

        The file's offset is forgotten once its last subscriber is gone.
        """
        path = os.path.abspath(file_path)
        with self._lock:
            state = self._states.get(path)
            if state is None:
                return False
            if subscription is not None:
                if state.subscribers.pop(subscription, None) is None:
                    return False
                if state.subscribers:
                    logger.debug(f"Dropped subscription {subscription} for {path}")
                    return True
            del self._states[path]

        self._unschedule_if_unused(os.path.dirname(path))
        logger.debug(f"Stopped watching file: {path}")
        return True

    def stop_all(self) -> None:
        """Stop tailing every file and shut down the observer."""
        with self._schedule_lock:
            with self._lock:
                self._states.clear()
            self._dir_watches.clear()
            observer, self._observer = self._observer, None

        if observer is not None:
            observer.unschedule_all()
            observer.stop()
            observer.join(timeout=5)
            logger.info("File tailer observer stopped")

    def _schedule(self, directory: str) -> None:
        with self._schedule_lock:
            if directory in self._dir_watches or self._observer is None:
                return
            self._dir_watches[directory] = self._observer.schedule(
                _TailEventHandler(self), directory, recursive=False
            )

    def _unschedule_if_unused(self, directory: str) -> None:
        with self._schedule_lock:
            with self._lock:
                if any(os.path.dirname(p) == directory for p in self._states):
                    return
            watch = self._dir_watches.pop(directory, None)
            if self._observer is None or watch is None:
                return
            try:
                self._observer.unschedule(watch)
            except KeyError:
                logger.debug(f"Watch for {directory} already removed")


class _TailEventHandler(FileSystemEventHandler):
    """Watchdog handler routing file events in one directory to the tailer."""

    def __init__(self, tailer: FileTailer) -> None:
        super().__init__()
        self._tailer = tailer

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._tailer.check(os.fsdecode(event.src_path))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._tailer.check(os.fsdecode(event.src_path))
