"""tmux bridge: sessions, panes, command delivery and pane logging.

Every tmux call is an argument vector run through ``subprocess.run`` with a
timeout. Failures come back as ``SendResult`` values or empty lists; only
command validation raises (``ValidationError``), and it does so before tmux
is touched.

Pane IDs may be given in either form (``%3`` or ``session:0.1``); they are
resolved to native handles through the ``PaneResolver`` right before use.
"""

import logging
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import NamedTuple, Optional

from .command_safety import CommandSafety
from .pane_resolver import PaneResolver, build_structured_id

logger = logging.getLogger(__name__)

DEFAULT_SUBPROCESS_TIMEOUT = 5  # seconds
DEFAULT_LOG_DIRECTORY = "logs/panes"

_FIELD_SEPARATOR = "\t"

_SESSION_FORMAT = _FIELD_SEPARATOR.join((
    "#{session_name}", "#{session_id}", "#{session_created}",
    "#{session_attached}", "#{session_windows}",
))
_WINDOW_FORMAT = _FIELD_SEPARATOR.join((
    "#{window_index}", "#{window_id}", "#{window_name}", "#{window_active}",
))
_PANE_FORMAT = _FIELD_SEPARATOR.join((
    "#{pane_id}", "#{session_name}", "#{window_index}", "#{pane_index}",
    "#{pane_title}", "#{pane_current_command}", "#{pane_pid}",
    "#{pane_active}", "#{pane_current_path}",
))

# Per-pane send lock registry; keeps concurrent sends to one pane from
# interleaving keystrokes.
_send_locks: dict[str, threading.Lock] = {}
_send_locks_meta_lock = threading.Lock()


def _get_send_lock(pane_id: str) -> threading.Lock:
    with _send_locks_meta_lock:
        if pane_id not in _send_locks:
            _send_locks[pane_id] = threading.Lock()
        return _send_locks[pane_id]


def release_send_lock(pane_id: str) -> None:
    """Remove a pane's send lock once the pane is gone."""
    with _send_locks_meta_lock:
        _send_locks.pop(pane_id, None)


class TmuxBridgeErrorType(str, Enum):
    """Error types for tmux bridge operations."""

    PANE_NOT_FOUND = "pane_not_found"
    SESSION_EXISTS = "session_exists"
    TMUX_NOT_INSTALLED = "tmux_not_installed"
    SUBPROCESS_FAILED = "subprocess_failed"
    NO_PANE_ID = "no_pane_id"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class SendResult(NamedTuple):
    """Result of a tmux operation."""

    success: bool
    error_type: TmuxBridgeErrorType | None = None
    error_message: str | None = None
    latency_ms: int = 0


@dataclass
class PaneConfig:
    command: Optional[str] = None
    working_directory: Optional[str] = None


@dataclass
class WindowConfig:
    name: str
    panes: list[PaneConfig] = field(default_factory=list)


@dataclass
class SessionConfig:
    """Layout for a new session: windows, their panes and startup commands."""

    name: str
    windows: list[WindowConfig] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)
    working_directory: Optional[str] = None


class TmuxSession(NamedTuple):
    name: str
    session_id: str
    created: Optional[datetime]
    attached: bool
    window_count: int


class TmuxWindow(NamedTuple):
    index: int
    window_id: str
    name: str
    active: bool


class TmuxPane(NamedTuple):
    """A pane as seen by ``list-panes``, with its structured ID registered."""

    structured_id: str
    native_id: str
    session_name: str
    window_index: int
    pane_index: int
    title: str
    command: str
    pid: Optional[int]
    active: bool
    working_directory: str
    log_file: Optional[str] = None


def _classify_subprocess_error(error: subprocess.CalledProcessError) -> TmuxBridgeErrorType:
    """Classify a tmux subprocess error based on stderr content."""
    stderr = _stderr_text(error).lower()
    if "duplicate session" in stderr:
        return TmuxBridgeErrorType.SESSION_EXISTS
    if "can't find" in stderr or "no such" in stderr or "not found" in stderr:
        return TmuxBridgeErrorType.PANE_NOT_FOUND
    return TmuxBridgeErrorType.SUBPROCESS_FAILED


def _stderr_text(error: subprocess.CalledProcessError) -> str:
    stderr = error.stderr or b""
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    return stderr.strip()


def _to_int(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class TmuxBridge:
    """
    tmux client bound to a pane resolver and a command safety layer.

    Args:
        resolver: Registry updated by ``list_panes`` and used for every target
        command_safety: Validates and escapes commands for ``send_command``
        subprocess_timeout: Timeout for each tmux invocation
        log_directory: Where ``pipe-pane`` logs are written
        enable_logging: Pipe new panes to their log files automatically
    """

    def __init__(
        self,
        resolver: Optional[PaneResolver] = None,
        command_safety: Optional[CommandSafety] = None,
        subprocess_timeout: float = DEFAULT_SUBPROCESS_TIMEOUT,
        log_directory: str = DEFAULT_LOG_DIRECTORY,
        enable_logging: bool = True,
    ) -> None:
        self._resolver = resolver or PaneResolver()
        self._command_safety = command_safety or CommandSafety()
        self._timeout = subprocess_timeout
        self._log_directory = log_directory
        self._enable_logging = enable_logging

    @property
    def resolver(self) -> PaneResolver:
        return self._resolver

    @property
    def log_directory(self) -> str:
        return self._log_directory

    # ------------------------------------------------------------------
    # Subprocess plumbing
    # ------------------------------------------------------------------

    def _run(self, args: list[str]) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["tmux", *args],
            check=True,
            timeout=self._timeout,
            capture_output=True,
        )

    def _execute(self, args: list[str], action: str) -> SendResult:
        """Run a tmux command and fold every failure into a SendResult."""
        start_time = time.time()
        try:
            self._run(args)
            return SendResult(success=True, latency_ms=int((time.time() - start_time) * 1000))

        except FileNotFoundError:
            return SendResult(
                success=False,
                error_type=TmuxBridgeErrorType.TMUX_NOT_INSTALLED,
                error_message="tmux is not installed or not on PATH.",
                latency_ms=int((time.time() - start_time) * 1000),
            )

        except subprocess.CalledProcessError as e:
            stderr_text = _stderr_text(e)
            return SendResult(
                success=False,
                error_type=_classify_subprocess_error(e),
                error_message=f"tmux {action} failed: {stderr_text}" if stderr_text else f"tmux {action} failed",
                latency_ms=int((time.time() - start_time) * 1000),
            )

        except subprocess.TimeoutExpired:
            return SendResult(
                success=False,
                error_type=TmuxBridgeErrorType.TIMEOUT,
                error_message=f"tmux {action} timed out after {self._timeout}s.",
                latency_ms=int((time.time() - start_time) * 1000),
            )

    def _query(self, args: list[str], action: str) -> Optional[str]:
        """Run a read-only tmux command. Returns stdout, or None on failure."""
        try:
            result = self._run(args)
        except subprocess.CalledProcessError as e:
            stderr_text = _stderr_text(e)
            if "no server running" in stderr_text or "no sessions" in stderr_text:
                return ""
            logger.warning(f"tmux {action} failed: {stderr_text}")
            return None
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"tmux {action} failed: {e}")
            return None
        return result.stdout.decode("utf-8", errors="replace")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_tmux(self) -> bool:
        """True if the tmux binary can be executed."""
        try:
            self._run(["-V"])
        except (OSError, subprocess.SubprocessError):
            return False
        return True

    def has_session(self, session_name: str) -> bool:
        return self._execute(["has-session", "-t", session_name], "has-session").success

    def list_sessions(self) -> list[TmuxSession]:
        output = self._query(["list-sessions", "-F", _SESSION_FORMAT], "list-sessions")
        sessions = []
        for line in (output or "").strip().splitlines():
            parts = line.split(_FIELD_SEPARATOR)
            if len(parts) < 5:
                continue
            created = _to_int(parts[2])
            sessions.append(TmuxSession(
                name=parts[0],
                session_id=parts[1],
                created=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
                attached=parts[3] not in ("", "0"),
                window_count=_to_int(parts[4]) or 0,
            ))
        return sessions

    def list_windows(self, session_name: str) -> list[TmuxWindow]:
        output = self._query(
            ["list-windows", "-t", session_name, "-F", _WINDOW_FORMAT], "list-windows",
        )
        windows = []
        for line in (output or "").strip().splitlines():
            parts = line.split(_FIELD_SEPARATOR)
            if len(parts) < 4:
                continue
            windows.append(TmuxWindow(
                index=_to_int(parts[0]) or 0,
                window_id=parts[1],
                name=parts[2],
                active=parts[3] == "1",
            ))
        return windows

    def list_panes(self, session_name: Optional[str] = None) -> list[TmuxPane]:
        """
        List panes of one session (or all sessions) and register each with
        the resolver.
        """
        if session_name:
            args = ["list-panes", "-s", "-t", session_name, "-F", _PANE_FORMAT]
        else:
            args = ["list-panes", "-a", "-F", _PANE_FORMAT]

        output = self._query(args, "list-panes")
        panes = []
        for line in (output or "").strip().splitlines():
            parts = line.split(_FIELD_SEPARATOR)
            if len(parts) < 9:
                continue
            window_index = _to_int(parts[2])
            pane_index = _to_int(parts[3])
            if window_index is None or pane_index is None:
                continue

            structured_id = self._resolver.register_pane(parts[0], parts[1], window_index, pane_index)
            panes.append(TmuxPane(
                structured_id=structured_id,
                native_id=parts[0],
                session_name=parts[1],
                window_index=window_index,
                pane_index=pane_index,
                title=parts[4],
                command=parts[5],
                pid=_to_int(parts[6]),
                active=parts[7] == "1",
                working_directory=parts[8],
                log_file=self.log_file_for(parts[1], window_index, pane_index) if self._enable_logging else None,
            ))
        return panes

    def capture_pane(self, pane_id: str, lines: int = 50, join_wrapped: bool = False) -> str:
        """Capture the last N lines of a pane (empty string on error)."""
        native_id = self._resolver.resolve_to_native(pane_id)
        args = ["capture-pane", "-t", native_id, "-p", "-S", f"-{lines}"]
        if join_wrapped:
            args.append("-J")
        return self._query(args, f"capture-pane {native_id}") or ""

    def log_file_for(self, session_name: str, window_index: int, pane_index: int) -> str:
        return os.path.join(self._log_directory, f"{session_name}_{window_index}_{pane_index}.log")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_session(self, config: SessionConfig) -> SendResult:
        """
        Create a detached session laid out per ``config``.

        The first window is renamed, further windows are added, extra panes
        are split off, and each pane's startup command is sent through
        ``send_command``. Panes are piped to log files when logging is on.
        """
        logger.info(f"Creating tmux session: {config.name}")

        if self.has_session(config.name):
            return SendResult(
                success=False,
                error_type=TmuxBridgeErrorType.SESSION_EXISTS,
                error_message=f"Session {config.name} already exists",
            )

        args = ["new-session", "-d", "-s", config.name, "-c", config.working_directory or os.getcwd()]
        result = self._execute(args, "new-session")
        if not result.success:
            return result

        for key, value in config.environment.items():
            self._execute(["set-environment", "-t", config.name, key, value], "set-environment")

        for i, window in enumerate(config.windows):
            if i == 0:
                self.rename_window(config.name, 0, window.name)
            else:
                self.new_window(config.name, window.name)
            for _ in window.panes[1:]:
                self.split_window(config.name, i)

        self.list_panes(config.name)

        for i, window in enumerate(config.windows):
            for j, pane in enumerate(window.panes):
                if pane.command:
                    self.send_command(build_structured_id(config.name, i, j), pane.command)

        if self._enable_logging:
            for pane in self.list_panes(config.name):
                self.enable_pipe_logging(pane.native_id, pane.log_file)

        logger.info(f"Session {config.name} created successfully")
        return result

    def rename_window(self, session_name: str, window_index: int, name: str) -> SendResult:
        return self._execute(["rename-window", "-t", f"{session_name}:{window_index}", name], "rename-window")

    def new_window(self, session_name: str, name: str, working_directory: Optional[str] = None) -> SendResult:
        args = ["new-window", "-t", session_name, "-n", name]
        if working_directory:
            args.extend(["-c", working_directory])
        return self._execute(args, "new-window")

    def split_window(
        self,
        session_name: str,
        window_index: int = 0,
        horizontal: bool = False,
        working_directory: Optional[str] = None,
    ) -> SendResult:
        args = ["split-window", "-t", f"{session_name}:{window_index}"]
        if horizontal:
            args.append("-h")
        if working_directory:
            args.extend(["-c", working_directory])
        return self._execute(args, "split-window")

    def create_pane(
        self,
        session_name: str,
        window_index: int = 0,
        command: Optional[str] = None,
    ) -> Optional[TmuxPane]:
        """Split a new pane off a window, optionally run a command in it."""
        logger.info(f"Creating new pane in session {session_name}:{window_index}")

        output = self._query(
            ["split-window", "-t", f"{session_name}:{window_index}", "-P", "-F", "#{pane_id}"],
            "split-window",
        )
        native_id = (output or "").strip()
        if not native_id:
            logger.error(f"Failed to create pane in {session_name}:{window_index}")
            return None

        pane = next((p for p in self.list_panes(session_name) if p.native_id == native_id), None)
        if pane is None:
            logger.error(f"New pane {native_id} not listed in session {session_name}")
            return None

        if command:
            self.send_command(pane.structured_id, command)
        if self._enable_logging:
            self.enable_pipe_logging(pane.native_id, pane.log_file)

        logger.info(f"Pane created successfully: {pane.structured_id}")
        return pane

    def send_command(self, pane_id: str, command: str) -> SendResult:
        """
        Type a command into a pane and press Enter.

        The pane ID is resolved, the command validated and escaped, then
        delivered as ``send-keys -t <native> <escaped> Enter``.

        Raises:
            ValidationError: if the command fails safety validation
        """
        self._command_safety.validate_line(command)

        native_id = self._resolver.resolve_to_native(pane_id)
        if not native_id:
            return SendResult(
                success=False,
                error_type=TmuxBridgeErrorType.NO_PANE_ID,
                error_message=f"Invalid pane ID: {pane_id!r}",
            )

        escaped = self._command_safety.escape_for_send_keys(command)
        logger.debug(f"Executing command in pane {pane_id}: {command}")

        with _get_send_lock(native_id):
            result = self._execute(["send-keys", "-t", native_id, escaped, "Enter"], "send-keys")

        if result.success:
            logger.info(f"Sent command to tmux pane {pane_id} ({result.latency_ms}ms)")
        return result

    def enable_pipe_logging(self, pane_id: str, log_file: Optional[str] = None) -> SendResult:
        """Pipe a pane's output to its log file (``pipe-pane 'cat >> file'``)."""
        native_id = self._resolver.resolve_to_native(pane_id)
        if log_file is None:
            mapping = self._resolver.get_mapping(native_id)
            if mapping is None:
                return SendResult(
                    success=False,
                    error_type=TmuxBridgeErrorType.PANE_NOT_FOUND,
                    error_message=f"No log file known for pane {pane_id}",
                )
            log_file = self.log_file_for(mapping.session_name, mapping.window_index, mapping.pane_index)

        try:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create log directory for {log_file}: {e}")
            return SendResult(
                success=False,
                error_type=TmuxBridgeErrorType.UNKNOWN,
                error_message=str(e),
            )

        result = self._execute(
            ["pipe-pane", "-t", native_id, f"cat >> {shlex.quote(log_file)}"], "pipe-pane",
        )
        if result.success:
            logger.debug(f"Enabled logging for pane {pane_id} -> {log_file}")
        else:
            logger.error(f"Failed to enable logging for pane {pane_id}: {result.error_message}")
        return result

    def disable_pipe_logging(self, pane_id: str) -> SendResult:
        native_id = self._resolver.resolve_to_native(pane_id)
        return self._execute(["pipe-pane", "-t", native_id], "pipe-pane")

    def kill_session(self, session_name: str) -> SendResult:
        """Kill a session and drop its pane mappings."""
        if not session_name:
            return SendResult(
                success=False,
                error_type=TmuxBridgeErrorType.NO_PANE_ID,
                error_message="Empty session name",
            )

        logger.info(f"Destroying tmux session: {session_name}")
        native_ids = [m.native_id for m in self._resolver.get_session_mappings(session_name)]
        result = self._execute(["kill-session", "-t", session_name], "kill-session")

        self._resolver.clear_session(session_name)
        for native_id in native_ids:
            release_send_lock(native_id)

        if result.success:
            logger.info(f"Killed tmux session '{session_name}' ({result.latency_ms}ms)")
        return result
