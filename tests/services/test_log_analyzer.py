"""Tests for the log analyzer."""

import re

import pytest

from terminal_orchestrator.services.log_analyzer import LogAnalyzer, target_id_from_path


@pytest.fixture
def analyzer():
    return LogAnalyzer()


@pytest.fixture
def pane_log(tmp_path):
    path = tmp_path / "dev_0_1.log"
    path.write_text(
        "[2024-05-01T09:00:00Z] starting dev server\n"
        "src/index.ts(42,10): error TS2339: Property 'foo' does not exist on type 'string'.\n"
        "Warning: React version not specified\n"
        "ERROR: Something went wrong!\n"
        "[2024-05-01T09:05:00Z] compiled\n"
    )
    return path


class TestTargetIdFromPath:
    def test_strips_log_suffix(self):
        assert target_id_from_path("logs/panes/dev_0_1.log") == "dev_0_1"

    def test_other_names_unchanged(self):
        assert target_id_from_path("/var/log/syslog") == "syslog"
        assert target_id_from_path(".log") == ".log"


class TestAnalyzeLogFile:
    """Tests for log summaries."""

    def test_summary(self, analyzer, pane_log):
        summary = analyzer.analyze_log_file(str(pane_log))

        assert summary.target_id == "dev_0_1"
        assert summary.total_lines == 5
        assert summary.errors == 2
        assert summary.warnings == 1
        assert summary.patterns == {"typescript": 1, "general_warning": 1, "general_error": 1}
        start, end = summary.time_range
        assert (start.minute, end.minute) == (0, 5)

    def test_samples_are_errors_then_warnings(self, analyzer, pane_log):
        samples = analyzer.analyze_log_file(str(pane_log)).samples
        assert [s.kind.value for s in samples] == ["error", "error", "warning"]

    def test_only_last_lines_classified(self, analyzer, tmp_path):
        path = tmp_path / "big.log"
        path.write_text("ERROR: early\n" + "ok\n" * 10)

        summary = analyzer.analyze_log_file(str(path), max_lines=5)

        assert summary.total_lines == 11
        assert summary.errors == 0

    def test_missing_file_raises(self, analyzer, tmp_path):
        with pytest.raises(FileNotFoundError):
            analyzer.analyze_log_file(str(tmp_path / "missing.log"))

    def test_to_dict(self, analyzer, pane_log):
        data = analyzer.analyze_log_file(str(pane_log)).to_dict()
        assert data["time_range"]["start"].startswith("2024-05-01T09:00:00")
        assert len(data["samples"]) == 3

    def test_no_timestamps(self, analyzer, tmp_path):
        path = tmp_path / "plain.log"
        path.write_text("hello\n")
        assert analyzer.analyze_log_file(str(path)).to_dict()["time_range"] is None


class TestRecentAndSearch:
    """Tests for recent lines and search."""

    def test_recent_lines(self, analyzer, pane_log):
        lines = analyzer.recent_lines(str(pane_log), count=2)
        assert lines == ["ERROR: Something went wrong!", "[2024-05-01T09:05:00Z] compiled"]

    def test_recent_lines_missing(self, analyzer, tmp_path):
        assert analyzer.recent_lines(str(tmp_path / "missing.log")) == []

    def test_search_case_insensitive(self, analyzer, pane_log):
        matches = analyzer.search(str(pane_log), "error")
        assert len(matches) == 2

    def test_search_max_results(self, analyzer, pane_log):
        assert len(analyzer.search(str(pane_log), "error", max_results=1)) == 1

    def test_search_invalid_pattern(self, analyzer, pane_log):
        with pytest.raises(re.error):
            analyzer.search(str(pane_log), "(unclosed")

    def test_search_missing_file(self, analyzer, tmp_path):
        assert analyzer.search(str(tmp_path / "missing.log"), "x") == []


class TestSummaryReport:
    """Tests for the markdown report."""

    def test_report(self, analyzer, pane_log, tmp_path):
        report = analyzer.summary_report([str(pane_log), str(tmp_path / "missing.log")])

        assert report.startswith("# Log Analysis Summary\n")
        assert "**Total Errors**: 2" in report
        assert "### Pane: dev_0_1" in report
        assert "  - error: Property 'foo' does not exist on type 'string'." in report
        assert "missing" not in report

    def test_empty_report(self, analyzer):
        report = analyzer.summary_report([])
        assert "**Total Lines**: 0" in report
        assert "Per-Pane Breakdown" not in report
