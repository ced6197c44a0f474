"""Session and pane API endpoints."""

import logging

from flask import Blueprint, current_app, jsonify, request

from ..services.error_watcher import WatchTarget
from ..services.session_store import SessionRecord
from ..services.tmux_bridge import PaneConfig, SessionConfig, TmuxBridgeErrorType, WindowConfig

logger = logging.getLogger(__name__)

sessions_bp = Blueprint("sessions", __name__, url_prefix="/api")

_ERROR_STATUS = {
    TmuxBridgeErrorType.SESSION_EXISTS: 409,
    TmuxBridgeErrorType.PANE_NOT_FOUND: 404,
    TmuxBridgeErrorType.NO_PANE_ID: 400,
    TmuxBridgeErrorType.TMUX_NOT_INSTALLED: 503,
    TmuxBridgeErrorType.TIMEOUT: 504,
}


def _result_error(result):
    status = _ERROR_STATUS.get(result.error_type, 500)
    return jsonify({
        "error": result.error_message,
        "error_type": result.error_type.value if result.error_type else None,
    }), status


def _session_config_from_json(data: dict) -> SessionConfig:
    windows = []
    for window in data.get("windows") or []:
        panes = [
            PaneConfig(command=p.get("command"), working_directory=p.get("working_directory"))
            for p in window.get("panes") or [{}]
        ]
        windows.append(WindowConfig(name=window.get("name") or "main", panes=panes))
    return SessionConfig(
        name=data["name"],
        windows=windows,
        environment=dict(data.get("environment") or {}),
        working_directory=data.get("working_directory"),
    )


@sessions_bp.route("/sessions", methods=["GET"])
def list_sessions():
    tmux = current_app.extensions["tmux"]
    store = current_app.extensions["session_store"]
    sessions = []
    for session in tmux.list_sessions():
        record = store.get(session.name)
        sessions.append({
            "name": session.name,
            "session_id": session.session_id,
            "created": session.created.isoformat() if session.created else None,
            "attached": session.attached,
            "window_count": session.window_count,
            "metadata": record.to_dict() if record else None,
        })
    return jsonify({"sessions": sessions})


@sessions_bp.route("/sessions", methods=["POST"])
def create_session():
    """
    Create a tmux session from a layout.

    Request body:
        name: Session name
        windows: [{name, panes: [{command, working_directory}]}] (optional)
        environment: Environment variables for the session (optional)
        working_directory: Start directory (optional)
        error_watch: Watch every new pane's log for errors (optional)

    Raises:
        ValidationError: if a pane startup command is rejected (handled as 400)
    """
    data = request.get_json(silent=True) or {}
    if not data.get("name"):
        return jsonify({"error": "name is required"}), 400

    config = _session_config_from_json(data)
    tmux = current_app.extensions["tmux"]
    result = tmux.create_session(config)
    if not result.success:
        return _result_error(result)

    error_watch = bool(data.get("error_watch"))
    current_app.extensions["session_store"].put(config.name, SessionRecord(
        session_name=config.name,
        log_directory=tmux.log_directory,
        layout=data,
        error_watch_enabled=error_watch,
    ))

    panes = tmux.list_panes(config.name)
    if error_watch:
        watcher = current_app.extensions["error_watcher"]
        for pane in panes:
            watcher.start_watching(WatchTarget(
                target_id=pane.structured_id,
                log_file=pane.log_file,
                command=pane.command,
            ))

    return jsonify({
        "name": config.name,
        "panes": [p._asdict() for p in panes],
    }), 201


@sessions_bp.route("/sessions/<name>", methods=["DELETE"])
def delete_session(name: str):
    tmux = current_app.extensions["tmux"]
    watcher = current_app.extensions["error_watcher"]
    for mapping in tmux.resolver.get_session_mappings(name):
        watcher.stop_watching(mapping.structured_id)

    result = tmux.kill_session(name)
    current_app.extensions["session_store"].delete(name)
    if not result.success:
        return _result_error(result)
    return jsonify({"status": "killed", "name": name})


@sessions_bp.route("/sessions/<name>/panes", methods=["GET"])
def list_session_panes(name: str):
    panes = current_app.extensions["tmux"].list_panes(name)
    return jsonify({"session": name, "panes": [p._asdict() for p in panes]})


@sessions_bp.route("/panes/<pane_id>/command", methods=["POST"])
def send_pane_command(pane_id: str):
    """
    Send a command to a pane.

    Request body:
        command: Command line to type into the pane
    """
    data = request.get_json(silent=True) or {}
    command = data.get("command")
    if not command or not isinstance(command, str):
        return jsonify({"error": "command is required"}), 400

    result = current_app.extensions["tmux"].send_command(pane_id, command)
    if not result.success:
        return _result_error(result)
    return jsonify({"status": "sent", "pane_id": pane_id, "latency_ms": result.latency_ms})


@sessions_bp.route("/panes/<pane_id>/capture", methods=["GET"])
def capture_pane(pane_id: str):
    try:
        lines = max(1, int(request.args.get("lines", 50)))
    except ValueError:
        lines = 50
    output = current_app.extensions["tmux"].capture_pane(pane_id, lines=lines)
    return jsonify({"pane_id": pane_id, "output": output})
