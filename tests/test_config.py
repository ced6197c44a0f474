"""Tests for configuration loading."""

import yaml

from terminal_orchestrator.config import (
    DEFAULTS,
    apply_env_overrides,
    deep_merge,
    get_tmux_config,
    get_trigger_config,
    get_value,
    load_config,
)


def _write(tmp_path, data):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestConfigLoading:
    """Test configuration loading."""

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")

        assert config["server"]["host"] == "127.0.0.1"
        assert config["server"]["port"] == 5060
        assert config["triggers"]["windows"]["documentation"] == 600

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path)["error_watcher"]["history_capacity"] == 100

    def test_yaml_overrides_defaults(self, tmp_path):
        config = load_config(_write(tmp_path, {"server": {"port": 8080}}))

        assert config["server"]["port"] == 8080
        assert config["server"]["host"] == "127.0.0.1"

    def test_defaults_not_mutated(self, tmp_path):
        load_config(_write(tmp_path, {"triggers": {"windows": {"analysis": 1}}}))
        assert DEFAULTS["triggers"]["windows"]["analysis"] == 300

    def test_env_override_port(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ORCHESTRATOR_SERVER_PORT", "9000")

        config = load_config(_write(tmp_path, {"server": {"port": 5050}}))

        assert config["server"]["port"] == 9000

    def test_env_override_bool(self, tmp_path, monkeypatch):
        monkeypatch.setenv("COMMAND_SAFETY_ALLOW_DANGEROUS", "yes")
        monkeypatch.setenv("TMUX_ENABLE_LOGGING", "0")

        config = load_config(tmp_path / "absent.yaml")

        assert config["command_safety"]["allow_dangerous"] is True
        assert config["tmux"]["enable_logging"] is False

    def test_env_override_creates_missing_section(self, monkeypatch):
        monkeypatch.setenv("SSE_MAX_CONNECTIONS", "3")
        assert apply_env_overrides({})["sse"] == {"max_connections": 3}


class TestHelpers:
    def test_deep_merge_nested(self):
        base = {"a": {"b": 1, "c": 2}, "d": 3}
        merged = deep_merge(base, {"a": {"b": 10}})

        assert merged == {"a": {"b": 10, "c": 2}, "d": 3}
        assert base["a"]["b"] == 1

    def test_get_value(self):
        config = {"a": {"b": {"c": 1}}}

        assert get_value(config, "a", "b", "c") == 1
        assert get_value(config, "a", "x", default="fallback") == "fallback"

    def test_tmux_log_directory_expands_user(self):
        config = {"tmux": {"log_directory": "~/panes"}}
        assert not get_tmux_config(config)["log_directory"].startswith("~")

    def test_trigger_config_partial_override(self):
        config = get_trigger_config({"triggers": {"windows": {"analysis": 60}, "on_error": False}})

        assert config["windows"]["analysis"] == 60
        assert config["windows"]["crash_analysis"] == 300
        assert config["on_error"] is False
        assert config["analysis_enabled"] is True

    def test_trigger_config_missing_section(self):
        assert get_trigger_config({}) == DEFAULTS["triggers"]
