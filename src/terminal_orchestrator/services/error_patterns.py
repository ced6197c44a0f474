"""Ordered regex cascade that turns raw output lines into diagnostic events.

Patterns are tried in list order and the first match wins. Roles are pulled
from named groups: ``file``, ``line``, ``column``, ``message`` and an
optional ``severity`` that can downgrade an error pattern to a warning.
Two catch-all patterns sit at the end of the default cascade so common
failure vocabulary is always classified.
"""

import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class DiagnosticKind(str, Enum):
    """Severity of a classified line."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class Pattern:
    """A named, compiled matcher in the classification cascade."""

    name: str
    regex: re.Pattern
    kind: DiagnosticKind = DiagnosticKind.ERROR
    language: Optional[str] = None

    @classmethod
    def compile(
        cls,
        name: str,
        expression: str,
        kind: DiagnosticKind = DiagnosticKind.ERROR,
        language: Optional[str] = None,
        flags: int = 0,
    ) -> "Pattern":
        return cls(name=name, regex=re.compile(expression, flags), kind=kind, language=language)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "regex": self.regex.pattern,
            "kind": self.kind.value,
            "language": self.language,
        }


@dataclass(frozen=True)
class DiagnosticEvent:
    """An immutable classified error/warning/info line."""

    target_id: str
    message: str
    kind: DiagnosticKind
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    language: Optional[str] = None
    pattern_name: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "target_id": self.target_id,
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "message": self.message,
            "kind": self.kind.value,
            "language": self.language,
            "pattern_name": self.pattern_name,
            "timestamp": self.timestamp.isoformat(),
        }


DEFAULT_PATTERNS: tuple[Pattern, ...] = (
    Pattern.compile(
        "typescript",
        r"^(?P<file>.+?)\((?P<line>\d+),(?P<column>\d+)\):\s*(?P<severity>error|warning)\s*TS\d+:\s*(?P<message>.+)$",
        language="typescript",
        flags=re.IGNORECASE,
    ),
    Pattern.compile(
        "javascript",
        r"^(?P<file>.+?):(?P<line>\d+):(?P<column>\d+):\s*(?:Error|SyntaxError|TypeError|ReferenceError):\s*(?P<message>.+)$",
        language="javascript",
        flags=re.IGNORECASE,
    ),
    Pattern.compile(
        "eslint",
        r"^\s*(?P<line>\d+):(?P<column>\d+)\s+(?P<severity>error|warning)\s+(?P<message>.+?)\s+(?P<rule>[\w@/-]+)$",
        language="javascript",
    ),
    Pattern.compile(
        "python_traceback",
        r'^\s*File "(?P<file>[^"]+)", line (?P<line>\d+)',
        language="python",
    ),
    Pattern.compile(
        "python",
        r"^(?P<exception>[A-Za-z_][\w.]*(?:Error|Exception)):\s*(?P<message>.+)$",
        language="python",
    ),
    Pattern.compile(
        "rust",
        r"^(?P<severity>error|warning)(?:\[E\d{4}\])?:\s*(?P<message>.+)$",
        language="rust",
    ),
    Pattern.compile(
        "go",
        r"^(?:\./)?(?P<file>[^\s:]+\.go):(?P<line>\d+)(?::(?P<column>\d+))?:\s*(?P<message>.+)$",
        language="go",
    ),
    Pattern.compile(
        "npm_error",
        r"npm ERR!\s*(?P<message>.+)",
        language="npm",
        flags=re.IGNORECASE,
    ),
    Pattern.compile(
        "docker_error",
        r"docker: Error response from daemon: (?P<message>.+)",
        language="docker",
        flags=re.IGNORECASE,
    ),
    Pattern.compile(
        "general_error",
        r"(ERROR|FAIL|Exception|Error:|Failed)",
        flags=re.IGNORECASE,
    ),
    Pattern.compile(
        "general_warning",
        r"(WARN|Warning|Deprecated|Notice)",
        kind=DiagnosticKind.WARNING,
        flags=re.IGNORECASE,
    ),
)


# Tried in order; the first match wins.
TIMESTAMP_PATTERNS = (
    re.compile(r"\[(\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)\]"),
    re.compile(r"(\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)"),
    re.compile(r"\[(\d{2}:\d{2}:\d{2})\]"),
)


def extract_timestamp(line: str) -> Optional[datetime]:
    """Best-effort timestamp extraction from a log line.

    Naive timestamps are assumed UTC; a bare ``HH:MM:SS`` is placed on
    today's UTC date. Returns None when nothing parses.
    """
    for pattern in TIMESTAMP_PATTERNS:
        match = pattern.search(line)
        if not match:
            continue
        raw = match.group(1)
        try:
            if len(raw) == 8:
                clock = datetime.strptime(raw, "%H:%M:%S").time()
                return datetime.combine(datetime.now(timezone.utc).date(), clock, tzinfo=timezone.utc)
            parsed = datetime.fromisoformat(raw.replace(" ", "T", 1).replace("Z", "+00:00"))
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _group(match: re.Match, name: str) -> Optional[str]:
    if name not in match.re.groupindex:
        return None
    return match.group(name)


class PatternEngine:
    """
    First-match-wins classifier over an ordered pattern list.

    The list is seeded from ``patterns`` (defaults to ``DEFAULT_PATTERNS``)
    and is only changed through ``add_pattern`` / ``remove_pattern``.
    Duplicate names may coexist; see ``add_pattern``.
    """

    def __init__(self, patterns: Optional[list[Pattern]] = None) -> None:
        self._patterns: list[Pattern] = list(DEFAULT_PATTERNS if patterns is None else patterns)
        self._lock = threading.Lock()

    @property
    def patterns(self) -> list[Pattern]:
        with self._lock:
            return list(self._patterns)

    def add_pattern(self, pattern: Pattern, replace: bool = False, index: Optional[int] = None) -> None:
        """
        Add a pattern to the cascade.

        By default the pattern is appended, after the generic catch-alls, and
        an existing pattern with the same name is left in place (the earlier
        one keeps precedence). ``replace=True`` swaps the first same-named
        pattern in place instead. ``index`` inserts at a given position.
        """
        with self._lock:
            if replace:
                for i, existing in enumerate(self._patterns):
                    if existing.name == pattern.name:
                        self._patterns[i] = pattern
                        logger.debug(f"Replaced error pattern: {pattern.name}")
                        return
            if index is None:
                self._patterns.append(pattern)
            else:
                self._patterns.insert(index, pattern)
        logger.debug(f"Added custom error pattern: {pattern.name}")

    def remove_pattern(self, name: str) -> bool:
        """Remove the earliest pattern with this name."""
        with self._lock:
            for i, existing in enumerate(self._patterns):
                if existing.name == name:
                    del self._patterns[i]
                    logger.debug(f"Removed error pattern: {name}")
                    return True
        return False

    def match_pattern_name(self, line: str) -> Optional[str]:
        """Name of the first pattern matching the line, if any."""
        for pattern in self.patterns:
            if pattern.regex.search(line):
                return pattern.name
        return None

    def classify(
        self,
        line: str,
        target_id: str = "",
        language: Optional[str] = None,
    ) -> Optional[DiagnosticEvent]:
        """
        Classify a single line.

        Args:
            line: Raw output line
            target_id: Target (pane/structured ID) the line came from
            language: When set, patterns bound to another language are skipped

        Returns:
            DiagnosticEvent for the first matching pattern, or None
        """
        for pattern in self.patterns:
            if language and pattern.language and pattern.language != language:
                continue

            try:
                match = pattern.regex.search(line)
            except Exception as e:
                logger.error(f"Pattern {pattern.name} failed on line: {e}")
                continue
            if not match:
                continue

            kind = pattern.kind
            severity = _group(match, "severity")
            if severity and severity.lower().startswith("warn"):
                kind = DiagnosticKind.WARNING

            return DiagnosticEvent(
                target_id=target_id,
                file=_group(match, "file"),
                line=_parse_int(_group(match, "line")),
                column=_parse_int(_group(match, "column")),
                message=_group(match, "message") or line.strip(),
                kind=kind,
                language=pattern.language or language,
                pattern_name=pattern.name,
            )

        return None
