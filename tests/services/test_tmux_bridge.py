"""Tests for the tmux bridge."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from terminal_orchestrator.errors import ValidationError
from terminal_orchestrator.services.command_safety import CommandSafety
from terminal_orchestrator.services.pane_resolver import PaneResolver
from terminal_orchestrator.services.tmux_bridge import (
    PaneConfig,
    SessionConfig,
    TmuxBridge,
    TmuxBridgeErrorType,
    WindowConfig,
    _classify_subprocess_error,
    _get_send_lock,
    _send_locks,
    release_send_lock,
)

RUN = "terminal_orchestrator.services.tmux_bridge.subprocess.run"


def _completed(stdout=""):
    return MagicMock(returncode=0, stdout=stdout.encode(), stderr=b"")


def _pane_line(native, session, window, pane, command="bash", pid="100", active="1", path="/tmp"):
    return "\t".join([native, session, str(window), str(pane), "title", command, pid, active, path])


@pytest.fixture
def resolver():
    return PaneResolver()


@pytest.fixture
def bridge(resolver, tmp_path):
    return TmuxBridge(
        resolver=resolver,
        command_safety=CommandSafety(log_commands=False),
        log_directory=str(tmp_path / "panes"),
        enable_logging=False,
    )


def _tmux_args(mock_run, index=-1):
    return mock_run.call_args_list[index][0][0]


class TestClassifySubprocessError:
    """Tests for _classify_subprocess_error."""

    def test_duplicate_session(self):
        error = subprocess.CalledProcessError(1, "tmux", stderr=b"duplicate session: dev")
        assert _classify_subprocess_error(error) == TmuxBridgeErrorType.SESSION_EXISTS

    @pytest.mark.parametrize("stderr", [b"can't find pane: %99", b"no such session", b"pane not found"])
    def test_pane_not_found(self, stderr):
        error = subprocess.CalledProcessError(1, "tmux", stderr=stderr)
        assert _classify_subprocess_error(error) == TmuxBridgeErrorType.PANE_NOT_FOUND

    def test_generic(self):
        error = subprocess.CalledProcessError(1, "tmux", stderr=None)
        assert _classify_subprocess_error(error) == TmuxBridgeErrorType.SUBPROCESS_FAILED


class TestSendLocks:
    """Tests for the per-pane send lock registry."""

    def test_same_lock_per_pane(self):
        assert _get_send_lock("%500") is _get_send_lock("%500")
        assert _get_send_lock("%500") is not _get_send_lock("%501")
        release_send_lock("%500")
        release_send_lock("%501")

    def test_release(self):
        _get_send_lock("%502")
        release_send_lock("%502")
        assert "%502" not in _send_locks


class TestQueries:
    """Tests for read-only tmux queries."""

    @patch(RUN)
    def test_has_tmux(self, mock_run, bridge):
        mock_run.return_value = _completed("tmux 3.4")
        assert bridge.has_tmux() is True

        mock_run.side_effect = FileNotFoundError("tmux")
        assert bridge.has_tmux() is False

    @patch(RUN)
    def test_list_sessions(self, mock_run, bridge):
        mock_run.return_value = _completed("dev\t$1\t1700000000\t1\t2\nscratch\t$2\t1700000100\t0\t1\n")

        sessions = bridge.list_sessions()

        assert [s.name for s in sessions] == ["dev", "scratch"]
        assert sessions[0].attached is True
        assert sessions[0].window_count == 2
        assert sessions[1].attached is False
        assert sessions[0].created.year == 2023

    @patch(RUN)
    def test_list_sessions_no_server(self, mock_run, bridge):
        mock_run.side_effect = subprocess.CalledProcessError(
            1, "tmux", stderr=b"no server running on /tmp/tmux-1000/default",
        )
        assert bridge.list_sessions() == []

    @patch(RUN)
    def test_list_windows(self, mock_run, bridge):
        mock_run.return_value = _completed("0\t@1\teditor\t1\n1\t@2\tserver\t0\n")

        windows = bridge.list_windows("dev")

        assert [(w.index, w.name, w.active) for w in windows] == [(0, "editor", True), (1, "server", False)]
        assert _tmux_args(mock_run)[:4] == ["tmux", "list-windows", "-t", "dev"]

    @patch(RUN)
    def test_list_panes_registers_mappings(self, mock_run, bridge, resolver):
        mock_run.return_value = _completed(
            _pane_line("%1", "dev", 0, 0) + "\n" + _pane_line("%4", "dev", 0, 1, command="node") + "\n"
        )

        panes = bridge.list_panes("dev")

        assert [p.structured_id for p in panes] == ["dev:0.0", "dev:0.1"]
        assert panes[1].command == "node"
        assert panes[1].pid == 100
        assert resolver.resolve_to_native("dev:0.1") == "%4"
        assert _tmux_args(mock_run)[:5] == ["tmux", "list-panes", "-s", "-t", "dev"]

    @patch(RUN)
    def test_list_all_panes(self, mock_run, bridge):
        mock_run.return_value = _completed("")
        assert bridge.list_panes() == []
        assert _tmux_args(mock_run)[:3] == ["tmux", "list-panes", "-a"]

    @patch(RUN)
    def test_list_panes_log_file_when_logging(self, mock_run, resolver, tmp_path):
        bridge = TmuxBridge(resolver=resolver, log_directory=str(tmp_path), enable_logging=True)
        mock_run.return_value = _completed(_pane_line("%1", "dev", 2, 3) + "\n")

        pane = bridge.list_panes("dev")[0]

        assert pane.log_file == str(tmp_path / "dev_2_3.log")

    @patch(RUN)
    def test_capture_pane_resolves_id(self, mock_run, bridge, resolver):
        resolver.register_pane("%7", "dev", 0, 0)
        mock_run.return_value = _completed("line 1\nline 2\n")

        output = bridge.capture_pane("dev:0.0", lines=20)

        assert output == "line 1\nline 2\n"
        assert _tmux_args(mock_run) == ["tmux", "capture-pane", "-t", "%7", "-p", "-S", "-20"]

    @patch(RUN)
    def test_capture_pane_failure_is_empty(self, mock_run, bridge):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="tmux", timeout=5)
        assert bridge.capture_pane("%1") == ""


class TestSendCommand:
    """Tests for command delivery."""

    @patch(RUN)
    def test_send_resolves_and_escapes(self, mock_run, bridge, resolver):
        resolver.register_pane("%3", "dev", 0, 1)
        mock_run.return_value = _completed()

        result = bridge.send_command("dev:0.1", 'echo "$HOME"')

        assert result.success is True
        assert _tmux_args(mock_run) == ["tmux", "send-keys", "-t", "%3", 'echo \\"\\$HOME\\"', "Enter"]

    @patch(RUN)
    def test_unknown_pane_passed_through(self, mock_run, bridge):
        mock_run.return_value = _completed()
        bridge.send_command("%9", "ls")
        assert _tmux_args(mock_run)[3] == "%9"

    @patch(RUN)
    def test_dangerous_command_rejected_before_tmux(self, mock_run, bridge):
        with pytest.raises(ValidationError):
            bridge.send_command("%1", "rm -rf /")
        mock_run.assert_not_called()

    @pytest.mark.parametrize("command", ["echo hi\nrm -rf /", "echo hi\rrm -rf /", "ls\n"])
    @patch(RUN)
    def test_multiline_command_rejected_before_tmux(self, mock_run, bridge, command):
        with pytest.raises(ValidationError) as exc_info:
            bridge.send_command("%1", command)

        assert exc_info.value.reason == "multiline_command"
        mock_run.assert_not_called()

    @patch(RUN)
    def test_empty_pane_id(self, mock_run, bridge):
        result = bridge.send_command("", "ls")
        assert result.success is False
        assert result.error_type == TmuxBridgeErrorType.NO_PANE_ID
        mock_run.assert_not_called()

    @patch(RUN)
    def test_pane_not_found(self, mock_run, bridge):
        mock_run.side_effect = subprocess.CalledProcessError(1, "tmux", stderr=b"can't find pane: %99")

        result = bridge.send_command("%99", "ls")

        assert result.success is False
        assert result.error_type == TmuxBridgeErrorType.PANE_NOT_FOUND
        assert "can't find pane" in result.error_message

    @patch(RUN)
    def test_tmux_not_installed(self, mock_run, bridge):
        mock_run.side_effect = FileNotFoundError("tmux")
        result = bridge.send_command("%1", "ls")
        assert result.error_type == TmuxBridgeErrorType.TMUX_NOT_INSTALLED

    @patch(RUN)
    def test_timeout(self, mock_run, bridge):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="tmux", timeout=5)
        result = bridge.send_command("%1", "ls")
        assert result.error_type == TmuxBridgeErrorType.TIMEOUT


class TestSessions:
    """Tests for session creation and teardown."""

    @patch(RUN)
    def test_existing_session(self, mock_run, bridge):
        mock_run.return_value = _completed()

        result = bridge.create_session(SessionConfig(name="dev"))

        assert result.success is False
        assert result.error_type == TmuxBridgeErrorType.SESSION_EXISTS
        assert mock_run.call_count == 1

    @patch(RUN)
    def test_create_session_layout(self, mock_run, bridge, resolver):
        listing = _completed(
            _pane_line("%1", "dev", 0, 0) + "\n"
            + _pane_line("%2", "dev", 0, 1) + "\n"
            + _pane_line("%3", "dev", 1, 0) + "\n"
        )

        def fake_run(args, **kwargs):
            if args[1] == "has-session":
                raise subprocess.CalledProcessError(1, args, stderr=b"can't find session: dev")
            if args[1] == "list-panes":
                return listing
            return _completed()

        mock_run.side_effect = fake_run
        config = SessionConfig(
            name="dev",
            windows=[
                WindowConfig("editor", [PaneConfig(), PaneConfig(command="npm run dev")]),
                WindowConfig("logs"),
            ],
            environment={"NODE_ENV": "development"},
            working_directory="/work",
        )

        result = bridge.create_session(config)

        assert result.success is True
        commands = [c[0][0][1:] for c in mock_run.call_args_list]
        assert ["new-session", "-d", "-s", "dev", "-c", "/work"] in commands
        assert ["set-environment", "-t", "dev", "NODE_ENV", "development"] in commands
        assert ["rename-window", "-t", "dev:0", "editor"] in commands
        assert ["new-window", "-t", "dev", "-n", "logs"] in commands
        assert ["split-window", "-t", "dev:0"] in commands
        assert ["send-keys", "-t", "%2", "npm run dev", "Enter"] in commands
        assert resolver.resolve_to_native("dev:1.0") == "%3"

    @patch(RUN)
    def test_create_session_pipes_logs(self, mock_run, resolver, tmp_path):
        bridge = TmuxBridge(resolver=resolver, log_directory=str(tmp_path / "panes"), enable_logging=True)

        def fake_run(args, **kwargs):
            if args[1] == "has-session":
                raise subprocess.CalledProcessError(1, args, stderr=b"can't find session")
            if args[1] == "list-panes":
                return _completed(_pane_line("%1", "dev", 0, 0) + "\n")
            return _completed()

        mock_run.side_effect = fake_run

        bridge.create_session(SessionConfig(name="dev", windows=[WindowConfig("main")]))

        pipe_calls = [c[0][0] for c in mock_run.call_args_list if c[0][0][1] == "pipe-pane"]
        log_file = tmp_path / "panes" / "dev_0_0.log"
        assert pipe_calls == [["tmux", "pipe-pane", "-t", "%1", f"cat >> {log_file}"]]
        assert (tmp_path / "panes").is_dir()

    @patch(RUN)
    def test_kill_session_clears_resolver(self, mock_run, bridge, resolver):
        resolver.register_pane("%1", "dev", 0, 0)
        resolver.register_pane("%2", "other", 0, 0)
        _get_send_lock("%1")
        mock_run.return_value = _completed()

        result = bridge.kill_session("dev")

        assert result.success is True
        assert resolver.get_mapping("%1") is None
        assert resolver.get_mapping("%2") is not None
        assert "%1" not in _send_locks

    @patch(RUN)
    def test_kill_session_empty_name(self, mock_run, bridge):
        result = bridge.kill_session("")
        assert result.success is False
        mock_run.assert_not_called()


class TestPanes:
    """Tests for pane creation and logging."""

    @patch(RUN)
    def test_create_pane(self, mock_run, bridge):
        def fake_run(args, **kwargs):
            if args[1] == "split-window":
                return _completed("%8\n")
            if args[1] == "list-panes":
                return _completed(_pane_line("%1", "dev", 0, 0) + "\n" + _pane_line("%8", "dev", 0, 1) + "\n")
            return _completed()

        mock_run.side_effect = fake_run

        pane = bridge.create_pane("dev", 0, command="npm test")

        assert pane.structured_id == "dev:0.1"
        assert ["tmux", "send-keys", "-t", "%8", "npm test", "Enter"] in [c[0][0] for c in mock_run.call_args_list]

    @patch(RUN)
    def test_create_pane_failure(self, mock_run, bridge):
        mock_run.side_effect = subprocess.CalledProcessError(1, "tmux", stderr=b"no space for new pane")
        assert bridge.create_pane("dev") is None

    @patch(RUN)
    def test_enable_logging_unknown_pane(self, mock_run, bridge):
        result = bridge.enable_pipe_logging("%42")
        assert result.success is False
        assert result.error_type == TmuxBridgeErrorType.PANE_NOT_FOUND
        mock_run.assert_not_called()

    @patch(RUN)
    def test_enable_logging_quotes_path(self, mock_run, bridge, tmp_path):
        mock_run.return_value = _completed()
        log_file = tmp_path / "with space" / "p.log"

        result = bridge.enable_pipe_logging("%1", str(log_file))

        assert result.success is True
        assert _tmux_args(mock_run)[-1] == f"cat >> '{log_file}'"

    @patch(RUN)
    def test_disable_logging(self, mock_run, bridge):
        mock_run.return_value = _completed()
        bridge.disable_pipe_logging("%1")
        assert _tmux_args(mock_run) == ["tmux", "pipe-pane", "-t", "%1"]
