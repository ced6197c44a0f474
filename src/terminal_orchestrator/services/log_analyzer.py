"""Offline analysis of pane log files."""

import logging
import os
import re
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from .error_patterns import DiagnosticEvent, DiagnosticKind, PatternEngine, extract_timestamp

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINES = 1000
ERROR_SAMPLE_COUNT = 5
WARNING_SAMPLE_COUNT = 3
REPORT_SAMPLE_COUNT = 3


def target_id_from_path(file_path: str) -> str:
    """``logs/panes/dev_0_1.log`` -> ``dev_0_1``."""
    basename = os.path.basename(file_path)
    return basename[:-4] if basename.endswith(".log") and len(basename) > 4 else basename


@dataclass
class LogSummary:
    target_id: str
    total_lines: int
    errors: int
    warnings: int
    time_range: Optional[tuple[datetime, datetime]] = None
    samples: list[DiagnosticEvent] = field(default_factory=list)
    patterns: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "target_id": self.target_id,
            "total_lines": self.total_lines,
            "errors": self.errors,
            "warnings": self.warnings,
            "time_range": (
                {"start": self.time_range[0].isoformat(), "end": self.time_range[1].isoformat()}
                if self.time_range else None
            ),
            "samples": [e.to_dict() for e in self.samples],
            "patterns": dict(self.patterns),
        }


class LogAnalyzer:
    """Summarizes, tails and searches log files using the shared pattern engine."""

    def __init__(self, engine: Optional[PatternEngine] = None) -> None:
        self._engine = engine or PatternEngine()

    def analyze_log_file(self, file_path: str, max_lines: int = DEFAULT_MAX_LINES) -> LogSummary:
        """
        Summarize a log file.

        Every line is counted, but only the last ``max_lines`` are classified.

        Raises:
            FileNotFoundError: if the file does not exist
        """
        target_id = target_id_from_path(file_path)
        total_lines = 0
        window: deque[str] = deque(maxlen=max_lines)

        try:
            with open(file_path, "r", encoding="utf-8", errors="replace") as f:
                for line in f:
                    total_lines += 1
                    window.append(line.rstrip("\r\n"))
        except OSError as e:
            logger.error(f"Failed to analyze log file {file_path}: {e}")
            raise

        errors: list[DiagnosticEvent] = []
        warnings: list[DiagnosticEvent] = []
        patterns: Counter = Counter()
        first_seen: Optional[datetime] = None
        last_seen: Optional[datetime] = None

        for line in window:
            timestamp = extract_timestamp(line)
            if timestamp:
                first_seen = first_seen or timestamp
                last_seen = timestamp

            event = self._engine.classify(line, target_id=target_id)
            if event is None:
                continue
            if event.kind == DiagnosticKind.ERROR:
                errors.append(event)
            elif event.kind == DiagnosticKind.WARNING:
                warnings.append(event)
            if event.pattern_name:
                patterns[event.pattern_name] += 1

        return LogSummary(
            target_id=target_id,
            total_lines=total_lines,
            errors=len(errors),
            warnings=len(warnings),
            time_range=(first_seen, last_seen) if first_seen else None,
            samples=errors[-ERROR_SAMPLE_COUNT:] + warnings[-WARNING_SAMPLE_COUNT:],
            patterns=dict(patterns),
        )

    def recent_lines(self, file_path: str, count: int = 50) -> list[str]:
        try:
            with open(file_path, "r", encoding="utf-8", errors="replace") as f:
                return [line.rstrip("\r\n") for line in deque(f, maxlen=count)]
        except OSError as e:
            logger.error(f"Failed to get recent logs from {file_path}: {e}")
            return []

    def search(self, file_path: str, pattern: str, max_results: int = 100) -> list[str]:
        """
        Case-insensitive regex search.

        Raises:
            re.error: if the pattern does not compile
        """
        regex = re.compile(pattern, re.IGNORECASE)
        matches = []
        try:
            with open(file_path, "r", encoding="utf-8", errors="replace") as f:
                for line in f:
                    if regex.search(line):
                        matches.append(line.rstrip("\r\n"))
                        if len(matches) >= max_results:
                            break
        except OSError as e:
            logger.error(f"Failed to search logs in {file_path}: {e}")
            return []
        return matches

    def summary_report(self, file_paths: Iterable[str]) -> str:
        """Markdown report across several log files; unreadable files are skipped."""
        summaries = []
        for path in file_paths:
            try:
                summaries.append(self.analyze_log_file(path))
            except OSError as e:
                logger.warning(f"Could not analyze log {path}: {e}")

        lines = [
            "# Log Analysis Summary",
            "",
            f"**Total Lines**: {sum(s.total_lines for s in summaries)}",
            f"**Total Errors**: {sum(s.errors for s in summaries)}",
            f"**Total Warnings**: {sum(s.warnings for s in summaries)}",
            "",
        ]

        if summaries:
            lines.extend(["## Per-Pane Breakdown", ""])
            for summary in summaries:
                lines.extend([
                    f"### Pane: {summary.target_id}",
                    f"- Lines: {summary.total_lines}",
                    f"- Errors: {summary.errors}",
                    f"- Warnings: {summary.warnings}",
                ])
                if summary.samples:
                    lines.append("- Recent Issues:")
                    for event in summary.samples[:REPORT_SAMPLE_COUNT]:
                        lines.append(f"  - {event.kind.value}: {event.message}")
                lines.append("")

        return "\n".join(lines) + "\n"
