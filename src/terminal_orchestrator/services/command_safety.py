"""Command validation, escaping, and argv execution.

Two distinct transforms live here and must not be confused:

- ``escape_for_send_keys`` produces the single string handed to
  ``tmux send-keys``, which the pane's shell then interprets.
- ``format_for_display`` is a weaker quoting used only for audit logs.

Execution always goes through an argument vector (``shell=False``).
"""

import logging
import os
import re
import subprocess
import time
from enum import Enum
from typing import Iterable, NamedTuple, Optional, Sequence

from ..errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30  # seconds
TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127

DANGEROUS_COMMANDS = frozenset({
    "rm",
    "rmdir",
    "dd",
    "mkfs",
    "fdisk",
    "sudo",
    "su",
    "chmod",
    "chown",
    "kill",
    "killall",
    "pkill",
    "halt",
    "reboot",
    "shutdown",
    "format",
    "del",
    "deltree",
})

SAFE_DEVELOPMENT_COMMANDS = frozenset({
    "node", "npm", "yarn", "pnpm",
    "python", "python3", "pip",
    "cargo", "rustc", "go",
    "java", "javac",
    "tsc", "tsx", "jest", "vitest", "mocha", "pytest",
    "git", "docker", "docker-compose", "make", "cmake",
    "webpack", "vite", "rollup", "esbuild",
    "ls", "cat", "echo", "pwd", "cd", "mkdir", "touch", "cp", "mv",
    "grep", "find", "which", "whereis",
    "ps", "top", "htop", "curl", "wget", "ping", "netstat", "lsof",
})

# Chaining into a destructive verb. Checked regardless of allow_dangerous.
INJECTION_PATTERNS = (
    re.compile(r";\s*(rm|del|format)", re.IGNORECASE),
    re.compile(r"\|\s*(rm|del|format)", re.IGNORECASE),
    re.compile(r"&&\s*(rm|del|format)", re.IGNORECASE),
    re.compile(r"\$\([^)]*rm[^)]*\)", re.IGNORECASE),
    re.compile(r"`[^`]*rm[^`]*`", re.IGNORECASE),
)

# Applied in order. Later entries never touch characters introduced by
# earlier ones except backslash, which is handled first.
SEND_KEYS_ESCAPES = (
    ("\\", "\\\\"),
    ('"', '\\"'),
    ("'", "'\"'\"'"),
    ("$", "\\$"),
    ("`", "\\`"),
    (";", "\\;"),
    ("|", "\\|"),
    ("&", "\\&"),
)

_DISPLAY_QUOTE_PATTERN = re.compile(r"[\s\"'`$;&|<>(){}\[\]\\*?]")

# Tab is the only control character a pane command may carry. A newline or
# carriage return would make the pane shell run a second command.
_CONTROL_CHARACTER_PATTERN = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")


class CommandStatus(str, Enum):
    """Outcome category for an executed command."""

    OK = "ok"
    FAILED = "failed"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"


class CommandResult(NamedTuple):
    """Result of a command execution."""

    stdout: str
    stderr: str
    exit_code: int
    status: CommandStatus = CommandStatus.OK
    latency_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status == CommandStatus.OK


class SafetyCheck(NamedTuple):
    """Non-throwing result of a safety pre-flight."""

    safe: bool
    reason: Optional[str] = None


def base_command_name(command: str) -> str:
    """Strip any directory prefix from a command (``/bin/rm`` -> ``rm``)."""
    return command.rsplit("/", 1)[-1] or command


def _reject_control_characters(text: str, base: str) -> None:
    if not _CONTROL_CHARACTER_PATTERN.search(text):
        return
    if "\n" in text or "\r" in text:
        raise ValidationError(
            f"Multi-line command rejected: {text!r}",
            command=base,
            reason="multiline_command",
        )
    raise ValidationError(
        f"Control character in command rejected: {text!r}",
        command=base,
        reason="control_character",
    )


def escape_for_send_keys(command: str) -> str:
    """Escape a command string for ``tmux send-keys``.

    Backslash, double quote, single quote (quote-break-requote), dollar,
    backtick, semicolon, pipe and ampersand are each escaped in that order.
    """
    escaped = command
    for char, replacement in SEND_KEYS_ESCAPES:
        escaped = escaped.replace(char, replacement)
    return escaped


def format_for_display(command: str, args: Sequence[str] = ()) -> str:
    """Format a command for human-readable logs. Never use for execution."""
    shown = []
    for arg in args:
        if _DISPLAY_QUOTE_PATTERN.search(arg):
            shown.append('"' + arg.replace('"', '\\"') + '"')
        else:
            shown.append(arg)
    return " ".join([command, *shown])


class CommandSafety:
    """
    Validates, escapes, and executes commands.

    Denylist and allowlist are copied in at construction so independent
    instances never share mutable state.
    """

    def __init__(
        self,
        allow_dangerous: bool = False,
        log_commands: bool = True,
        default_timeout: float = DEFAULT_TIMEOUT,
        dangerous_commands: Iterable[str] = DANGEROUS_COMMANDS,
        safe_commands: Iterable[str] = SAFE_DEVELOPMENT_COMMANDS,
    ) -> None:
        self._allow_dangerous = allow_dangerous
        self._log_commands = log_commands
        self._default_timeout = default_timeout
        self._dangerous_commands = frozenset(dangerous_commands)
        self._safe_commands = frozenset(safe_commands)

    @property
    def allow_dangerous(self) -> bool:
        return self._allow_dangerous

    @property
    def dangerous_commands(self) -> list[str]:
        return sorted(self._dangerous_commands)

    @property
    def safe_commands(self) -> list[str]:
        return sorted(self._safe_commands)

    def escape_for_send_keys(self, command: str) -> str:
        return escape_for_send_keys(command)

    def format_for_display(self, command: str, args: Sequence[str] = ()) -> str:
        return format_for_display(command, args)

    def validate(self, command: str, args: Sequence[str] = ()) -> None:
        """
        Validate a command and its arguments.

        Raises:
            ValidationError: if the command is denylisted (and dangerous
                commands are not allowed), or the arguments chain into a
                destructive command. It also rejects newlines and other
                control characters. Neither check is overridable.
        """
        base = base_command_name(command)

        for part in (command, *args):
            _reject_control_characters(part, base)

        if base in self._dangerous_commands and not self._allow_dangerous:
            raise ValidationError(
                f"Dangerous command blocked: {base}. "
                f"Use allow_dangerous option to override.",
                command=base,
                reason="dangerous_command",
            )

        joined = " ".join(args)
        for pattern in INJECTION_PATTERNS:
            if pattern.search(joined):
                raise ValidationError(
                    f"Suspicious command pattern detected in arguments: {joined}",
                    command=base,
                    reason="suspicious_pattern",
                )

        if base not in self._safe_commands and base != "tmux":
            logger.warning(f"Executing non-standard development command: {base}")

    def validate_line(self, line: str) -> None:
        """
        Validate a raw command line before it is typed into a pane.

        The whole line is checked for control characters before it is split,
        since splitting would turn a newline into ordinary whitespace.

        Raises:
            ValidationError: as for ``validate``
        """
        tokens = line.split()
        _reject_control_characters(line, base_command_name(tokens[0]) if tokens else "")
        if tokens:
            self.validate(tokens[0], tokens[1:])

    def is_safe(self, command: str, args: Sequence[str] = ()) -> SafetyCheck:
        """Pre-flight check with the same rules as ``validate``, never raising."""
        try:
            self.validate(command, args)
        except ValidationError as e:
            return SafetyCheck(safe=False, reason=str(e))
        return SafetyCheck(safe=True)

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        validate: bool = True,
    ) -> CommandResult:
        """
        Execute a command as an argument vector and capture its output.

        Timeouts and missing binaries are reported through ``status``;
        only validation failures raise.
        """
        if validate:
            self.validate(command, args)

        if self._log_commands:
            logger.debug(f"Executing command: {format_for_display(command, args)}")

        timeout = timeout or self._default_timeout
        start_time = time.time()
        try:
            completed = subprocess.run(
                [command, *args],
                cwd=cwd,
                env={**os.environ, **env} if env else None,
                timeout=timeout,
                capture_output=True,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"Command timed out after {timeout}s: {base_command_name(command)}")
            return CommandResult(
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr) or f"Timed out after {timeout}s",
                exit_code=TIMEOUT_EXIT_CODE,
                status=CommandStatus.TIMEOUT,
                latency_ms=int((time.time() - start_time) * 1000),
            )
        except FileNotFoundError as e:
            return CommandResult(
                stdout="",
                stderr=str(e),
                exit_code=NOT_FOUND_EXIT_CODE,
                status=CommandStatus.NOT_FOUND,
                latency_ms=int((time.time() - start_time) * 1000),
            )

        return CommandResult(
            stdout=_decode(completed.stdout),
            stderr=_decode(completed.stderr),
            exit_code=completed.returncode,
            status=CommandStatus.OK if completed.returncode == 0 else CommandStatus.FAILED,
            latency_ms=int((time.time() - start_time) * 1000),
        )

    def spawn(
        self,
        command: str,
        args: Sequence[str] = (),
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        validate: bool = True,
    ) -> subprocess.Popen:
        """Start a long-running process with piped stdout/stderr."""
        if validate:
            self.validate(command, args)

        if self._log_commands:
            logger.debug(f"Spawning process: {format_for_display(command, args)}")

        return subprocess.Popen(
            [command, *args],
            cwd=cwd,
            env={**os.environ, **env} if env else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, str):
        return data
    return data.decode("utf-8", errors="replace")
