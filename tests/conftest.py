"""Pytest fixtures for Terminal Orchestrator tests."""

import pytest
import yaml

from terminal_orchestrator.app import create_app, shutdown_services


@pytest.fixture
def config_file(tmp_path):
    """Write a config.yaml that keeps logs and pane logs inside tmp_path."""
    config = {
        "logging": {"level": "DEBUG", "file": "logs/app.log"},
        "tmux": {"log_directory": str(tmp_path / "panes"), "enable_logging": False},
        "error_watcher": {"spawn_build_watchers": False},
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config))
    return path


@pytest.fixture
def app(config_file):
    """Create a Flask application for testing (no background threads)."""
    app = create_app(config_path=str(config_file), testing=True)

    yield app

    shutdown_services(app)


@pytest.fixture
def client(app):
    """Create a test client."""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a CLI test runner."""
    return app.test_cli_runner()
