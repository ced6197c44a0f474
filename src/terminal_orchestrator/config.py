"""Configuration loader with YAML and environment variable support."""

import os
from pathlib import Path
from typing import Any

import yaml


# Default configuration values
DEFAULTS = {
    "server": {
        "host": "127.0.0.1",
        "port": 5060,
        "debug": False,
    },
    "logging": {
        "level": "INFO",
        "file": "logs/app.log",
        "max_bytes": 10_000_000,
        "backup_count": 5,
    },
    "tmux": {
        "subprocess_timeout": 5,
        "log_directory": "logs/panes",
        "enable_logging": True,
    },
    "resolver": {
        "cleanup_interval_seconds": 1800,
        "idle_threshold_seconds": 3600,
    },
    "command_safety": {
        "allow_dangerous": False,
        "log_commands": True,
        "default_timeout": 30,
    },
    "tailer": {
        "max_file_size": 10 * 1024 * 1024,
    },
    "error_watcher": {
        "history_capacity": 100,
        "spawn_build_watchers": True,
    },
    "triggers": {
        "analysis_enabled": True,
        "on_error": True,
        "on_process_crash": True,
        "multiple_error_threshold": 3,
        "documentation_enabled": True,
        "on_error_pattern": True,
        "on_framework_detection": True,
        "ui_testing_enabled": False,
        "on_port_change": False,
        "windows": {
            "analysis": 300,
            "multi_error_analysis": 300,
            "crash_analysis": 300,
            "documentation": 600,
            "ui_test": 120,
        },
        "novelty_prefix_length": 50,
        "novelty_window_seconds": 1800,
    },
    "sse": {
        "heartbeat_interval_seconds": 30,
        "max_connections": 100,
        "connection_timeout_seconds": 60,
        "retry_after_seconds": 5,
    },
}


def _to_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


# Environment variable mappings
# Maps env var name to (config_section, config_key, type_converter)
ENV_MAPPINGS = {
    "ORCHESTRATOR_SERVER_HOST": ("server", "host", str),
    "ORCHESTRATOR_SERVER_PORT": ("server", "port", int),
    "ORCHESTRATOR_DEBUG": ("server", "debug", _to_bool),
    "ORCHESTRATOR_LOG_LEVEL": ("logging", "level", str),
    "ORCHESTRATOR_LOG_FILE": ("logging", "file", str),
    "TMUX_SUBPROCESS_TIMEOUT": ("tmux", "subprocess_timeout", float),
    "TMUX_LOG_DIRECTORY": ("tmux", "log_directory", str),
    "TMUX_ENABLE_LOGGING": ("tmux", "enable_logging", _to_bool),
    "RESOLVER_IDLE_THRESHOLD_SECONDS": ("resolver", "idle_threshold_seconds", int),
    "COMMAND_SAFETY_ALLOW_DANGEROUS": ("command_safety", "allow_dangerous", _to_bool),
    "COMMAND_SAFETY_DEFAULT_TIMEOUT": ("command_safety", "default_timeout", float),
    "TAILER_MAX_FILE_SIZE": ("tailer", "max_file_size", int),
    "ERROR_WATCHER_HISTORY_CAPACITY": ("error_watcher", "history_capacity", int),
    "ERROR_WATCHER_SPAWN_BUILD_WATCHERS": ("error_watcher", "spawn_build_watchers", _to_bool),
    "TRIGGERS_MULTIPLE_ERROR_THRESHOLD": ("triggers", "multiple_error_threshold", int),
    "SSE_MAX_CONNECTIONS": ("sse", "max_connections", int),
    "SSE_CONNECTION_TIMEOUT_SECONDS": ("sse", "connection_timeout_seconds", int),
}


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries, with override taking precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_yaml_config(config_path: Path) -> dict:
    """Load configuration from YAML file."""
    if not config_path.exists():
        return {}

    with open(config_path, "r") as f:
        content = yaml.safe_load(f)
        return content if content else {}


def apply_env_overrides(config: dict) -> dict:
    """Apply environment variable overrides to configuration."""
    result = config.copy()

    for env_var, (section, key, converter) in ENV_MAPPINGS.items():
        value = os.environ.get(env_var)
        if value is not None:
            result[section] = dict(result.get(section, {}))
            result[section][key] = converter(value)

    return result


def load_config(config_path: str | Path = "config.yaml") -> dict:
    """Load config: env vars > config.yaml > DEFAULTS."""
    if isinstance(config_path, str):
        config_path = Path(config_path)

    config = deep_merge(DEFAULTS, {})

    yaml_config = load_yaml_config(config_path)
    config = deep_merge(config, yaml_config)

    config = apply_env_overrides(config)

    return config


def get_value(config: dict, *keys: str, default: Any = None) -> Any:
    """Get a nested configuration value by key path."""
    result = config
    for key in keys:
        if isinstance(result, dict) and key in result:
            result = result[key]
        else:
            return default
    return result


def get_tmux_config(config: dict) -> dict:
    """Get tmux bridge configuration with defaults."""
    log_directory = get_value(config, "tmux", "log_directory", default="logs/panes")
    return {
        "subprocess_timeout": get_value(
            config, "tmux", "subprocess_timeout", default=5
        ),
        "log_directory": os.path.expanduser(log_directory),
        "enable_logging": get_value(
            config, "tmux", "enable_logging", default=True
        ),
    }


def get_resolver_config(config: dict) -> dict:
    """Get pane resolver configuration with defaults."""
    return {
        "cleanup_interval_seconds": get_value(
            config, "resolver", "cleanup_interval_seconds", default=1800
        ),
        "idle_threshold_seconds": get_value(
            config, "resolver", "idle_threshold_seconds", default=3600
        ),
    }


def get_command_safety_config(config: dict) -> dict:
    """Get command safety configuration with defaults."""
    return {
        "allow_dangerous": get_value(
            config, "command_safety", "allow_dangerous", default=False
        ),
        "log_commands": get_value(
            config, "command_safety", "log_commands", default=True
        ),
        "default_timeout": get_value(
            config, "command_safety", "default_timeout", default=30
        ),
    }


def get_tailer_config(config: dict) -> dict:
    """Get file tailer configuration with defaults."""
    return {
        "max_file_size": get_value(
            config, "tailer", "max_file_size", default=10 * 1024 * 1024
        ),
    }


def get_error_watcher_config(config: dict) -> dict:
    """Get error watcher configuration with defaults."""
    return {
        "history_capacity": get_value(
            config, "error_watcher", "history_capacity", default=100
        ),
        "spawn_build_watchers": get_value(
            config, "error_watcher", "spawn_build_watchers", default=True
        ),
    }


def get_trigger_config(config: dict) -> dict:
    """Get trigger orchestrator configuration merged over defaults."""
    return deep_merge(DEFAULTS["triggers"], config.get("triggers", {}) or {})
