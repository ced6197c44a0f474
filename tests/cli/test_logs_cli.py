"""Tests for the flask logs CLI commands."""

import pytest


@pytest.fixture
def log_file(tmp_path):
    path = tmp_path / "dev_0_1.log"
    path.write_text("compiling\nERROR: build failed\nWarning: deprecated API\nready\n")
    return path


class TestLogsAnalyzeCommand:
    """Tests for flask logs analyze."""

    def test_report_for_one_file(self, runner, log_file):
        result = runner.invoke(args=["logs", "analyze", str(log_file)])

        assert result.exit_code == 0
        assert "# Log Analysis Summary" in result.output
        assert "### Pane: dev_0_1" in result.output
        assert "**Total Errors**: 1" in result.output
        assert "**Total Warnings**: 1" in result.output

    def test_missing_files_are_skipped(self, runner, log_file, tmp_path):
        missing = tmp_path / "gone.log"

        result = runner.invoke(args=["logs", "analyze", str(log_file), str(missing)])

        assert result.exit_code == 0
        assert "skipping missing log file" in result.output
        assert "### Pane: gone" not in result.output

    def test_all_missing_fails(self, runner, tmp_path):
        result = runner.invoke(args=["logs", "analyze", str(tmp_path / "gone.log")])

        assert result.exit_code == 1
        assert "log file not found" in result.output

    def test_requires_a_path(self, runner):
        result = runner.invoke(args=["logs", "analyze"])
        assert result.exit_code == 2


class TestLogsSearchCommand:
    """Tests for flask logs search."""

    def test_prints_matches(self, runner, log_file):
        result = runner.invoke(args=["logs", "search", str(log_file), "error|warning"])

        assert result.exit_code == 0
        assert result.output.splitlines() == ["ERROR: build failed", "Warning: deprecated API"]

    def test_max_results(self, runner, log_file):
        result = runner.invoke(args=["logs", "search", str(log_file), ".", "--max-results", "2"])

        assert result.exit_code == 0
        assert result.output.splitlines() == ["compiling", "ERROR: build failed"]

    def test_no_matches_exits_one(self, runner, log_file):
        result = runner.invoke(args=["logs", "search", str(log_file), "segfault"])

        assert result.exit_code == 1
        assert "No matches" in result.output

    def test_invalid_pattern_exits_two(self, runner, log_file):
        result = runner.invoke(args=["logs", "search", str(log_file), "("])

        assert result.exit_code == 2
        assert "invalid pattern" in result.output
