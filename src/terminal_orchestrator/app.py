"""Flask application factory."""

import logging
import logging.config
import threading
from pathlib import Path

from flask import Flask, jsonify

from . import __version__
from .config import (
    get_command_safety_config,
    get_error_watcher_config,
    get_resolver_config,
    get_tailer_config,
    get_tmux_config,
    get_trigger_config,
    get_value,
    load_config,
)
from .errors import ValidationError


def setup_logging(config: dict, app_root: Path) -> None:
    """Configure logging to console and a rotating file."""
    log_level = get_value(config, "logging", "level", default="INFO")
    log_file = get_value(config, "logging", "file", default="logs/app.log")
    max_bytes = get_value(config, "logging", "max_bytes", default=10_000_000)  # 10MB
    backup_count = get_value(config, "logging", "backup_count", default=5)

    log_path = app_root / log_file
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S%z",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "standard",
                "stream": "ext://sys.stdout",
            },
            "file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": log_level,
                "formatter": "standard",
                "filename": str(log_path),
                "maxBytes": max_bytes,
                "backupCount": backup_count,
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["console", "file"],
        },
    }

    logging.config.dictConfig(logging_config)


def create_app(config_path: str = "config.yaml", testing: bool = False) -> Flask:
    """
    Create and configure the Flask application.

    Args:
        config_path: Path to the YAML configuration file
        testing: If True, background threads (resolver sweep, SSE cleanup)
            are not started

    Returns:
        Configured Flask application instance
    """
    app_root = Path(config_path).parent.absolute()
    if not app_root.exists():
        app_root = Path.cwd()

    config = load_config(config_path)

    app = Flask(__name__)
    if testing:
        app.config["TESTING"] = True

    app.config["DEBUG"] = get_value(config, "server", "debug", default=False)
    app.config["APP_CONFIG"] = config
    app.config["APP_VERSION"] = __version__
    app.config["APP_ROOT"] = str(app_root)

    setup_logging(config, app_root)
    logger = logging.getLogger(__name__)
    logger.info(f"Starting Terminal Orchestrator v{__version__}")

    init_services(app, config)

    def _get_background_thread_status():
        """Alive status of every service that owns a background thread."""
        status = {}
        for name in ("pane_resolver", "broadcaster", "file_tailer"):
            svc = app.extensions.get(name)
            thread = getattr(svc, "thread", None) or getattr(svc, "observer", None)
            if svc is None:
                status[name] = "disabled"
            elif isinstance(thread, threading.Thread):
                status[name] = "alive" if thread.is_alive() else "dead"
            else:
                status[name] = "idle"
        return status

    app.extensions["_get_background_thread_status"] = _get_background_thread_status

    import atexit

    @atexit.register
    def cleanup():
        # logging may already be shut down during atexit
        try:
            shutdown_services(app)
        except Exception as e:
            logger.warning(f"Error during shutdown cleanup: {e}")

    register_error_handlers(app)
    register_blueprints(app)
    register_cli_commands(app)

    return app


def init_services(app: Flask, config: dict) -> None:
    """Build the service graph and store it in ``app.extensions``."""
    from .services.broadcaster import create_broadcaster
    from .services.command_safety import CommandSafety
    from .services.error_patterns import PatternEngine
    from .services.error_watcher import ErrorWatcher
    from .services.event_bus import EventBus
    from .services.file_tailer import FileTailer
    from .services.log_analyzer import LogAnalyzer
    from .services.pane_resolver import PaneResolver
    from .services.process_monitor import ProcessMonitor
    from .services.session_store import MemorySessionStore
    from .services.tmux_bridge import TmuxBridge
    from .services.trigger_orchestrator import TriggerOrchestrator

    logger = logging.getLogger(__name__)
    testing = app.config.get("TESTING", False)

    event_bus = EventBus()
    app.extensions["event_bus"] = event_bus

    broadcaster = create_broadcaster(config)
    broadcaster.attach(event_bus)
    if not testing:
        broadcaster.start()
    app.extensions["broadcaster"] = broadcaster
    logger.info("SSE broadcaster initialized")

    resolver_config = get_resolver_config(config)
    pane_resolver = PaneResolver(
        cleanup_interval=resolver_config["cleanup_interval_seconds"],
        idle_threshold=resolver_config["idle_threshold_seconds"],
    )
    if not testing:
        pane_resolver.start()
    app.extensions["pane_resolver"] = pane_resolver

    command_safety = CommandSafety(**get_command_safety_config(config))
    app.extensions["command_safety"] = command_safety

    tmux_config = get_tmux_config(config)
    app.extensions["tmux"] = TmuxBridge(
        resolver=pane_resolver,
        command_safety=command_safety,
        subprocess_timeout=tmux_config["subprocess_timeout"],
        log_directory=tmux_config["log_directory"],
        enable_logging=tmux_config["enable_logging"],
    )

    pattern_engine = PatternEngine()
    app.extensions["pattern_engine"] = pattern_engine

    file_tailer = FileTailer(**get_tailer_config(config))
    app.extensions["file_tailer"] = file_tailer

    error_watcher = ErrorWatcher(
        engine=pattern_engine,
        tailer=file_tailer,
        command_safety=command_safety,
        event_bus=event_bus,
        **get_error_watcher_config(config),
    )
    app.extensions["error_watcher"] = error_watcher

    trigger_orchestrator = TriggerOrchestrator(config=get_trigger_config(config))
    trigger_orchestrator.attach(event_bus, error_source=error_watcher.get_errors)
    app.extensions["trigger_orchestrator"] = trigger_orchestrator

    app.extensions["log_analyzer"] = LogAnalyzer(pattern_engine)
    app.extensions["process_monitor"] = ProcessMonitor()
    app.extensions["session_store"] = MemorySessionStore()

    logger.info("Services initialized")


def shutdown_services(app: Flask) -> None:
    """Stop background threads, build watchers and tails."""
    for name in ("trigger_orchestrator", "broadcaster"):
        svc = app.extensions.get(name)
        if svc is not None:
            svc.detach()

    error_watcher = app.extensions.get("error_watcher")
    if error_watcher is not None:
        error_watcher.shutdown()

    for name in ("broadcaster", "pane_resolver"):
        svc = app.extensions.get(name)
        if svc is not None:
            svc.stop()


def register_error_handlers(app: Flask) -> None:
    """Register JSON error handlers."""

    @app.errorhandler(ValidationError)
    def validation_error(error):
        return jsonify({
            "error": str(error),
            "command": error.command,
            "reason": error.reason,
        }), 400

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({"error": "Internal server error"}), 500


def register_blueprints(app: Flask) -> None:
    """Register application blueprints."""
    from .routes.commands import commands_bp
    from .routes.errors import errors_bp
    from .routes.health import health_bp
    from .routes.logs import logs_bp
    from .routes.processes import processes_bp
    from .routes.sessions import sessions_bp
    from .routes.sse import sse_bp
    from .routes.triggers import triggers_bp

    app.register_blueprint(commands_bp)
    app.register_blueprint(errors_bp)
    app.register_blueprint(health_bp)
    app.register_blueprint(logs_bp)
    app.register_blueprint(processes_bp)
    app.register_blueprint(sessions_bp)
    app.register_blueprint(sse_bp)
    app.register_blueprint(triggers_bp)


def register_cli_commands(app: Flask) -> None:
    """Register Flask CLI command groups."""
    from .cli.commands_cli import commands_cli
    from .cli.logs_cli import logs_cli

    app.cli.add_command(commands_cli)
    app.cli.add_command(logs_cli)
