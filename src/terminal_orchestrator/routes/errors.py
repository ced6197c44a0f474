"""Error history API endpoints."""

import logging
import re

from flask import Blueprint, current_app, jsonify, request

from ..services.error_patterns import DiagnosticKind, Pattern
from ..services.error_watcher import WatchTarget

logger = logging.getLogger(__name__)

errors_bp = Blueprint("errors", __name__, url_prefix="/api/errors")


def _limit_arg(default: int) -> int:
    try:
        return max(1, int(request.args.get("limit", default)))
    except ValueError:
        return default


@errors_bp.route("/summary", methods=["GET"])
def error_summary():
    """
    Counts of recorded diagnostics.

    Query params:
        target: Restrict to one target (optional)
        window: all | hour | day (default all)
    """
    watcher = current_app.extensions["error_watcher"]
    try:
        summary = watcher.get_summary(
            target_id=request.args.get("target") or None,
            window=request.args.get("window", "all"),
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(summary)


@errors_bp.route("/top-files", methods=["GET"])
def top_files():
    watcher = current_app.extensions["error_watcher"]
    return jsonify({
        "files": watcher.top_files(request.args.get("target") or None, limit=_limit_arg(5)),
    })


@errors_bp.route("/top-kinds", methods=["GET"])
def top_kinds():
    watcher = current_app.extensions["error_watcher"]
    return jsonify({
        "kinds": watcher.top_kinds(request.args.get("target") or None, limit=_limit_arg(5)),
    })


@errors_bp.route("/<target_id>/analysis", methods=["GET"])
def error_analysis(target_id: str):
    watcher = current_app.extensions["error_watcher"]
    if watcher.get_errors(target_id) is None:
        return jsonify({"error": f"Target not watched: {target_id}"}), 404
    return jsonify(watcher.analyze(target_id).to_dict())


@errors_bp.route("/<target_id>", methods=["GET"])
def target_errors(target_id: str):
    """Recorded diagnostics for one target; 404 if it was never watched."""
    watcher = current_app.extensions["error_watcher"]
    events = watcher.get_errors(target_id)
    if events is None:
        return jsonify({"error": f"Target not watched: {target_id}"}), 404
    return jsonify({
        "target_id": target_id,
        "count": len(events),
        "errors": [e.to_dict() for e in events],
    })


@errors_bp.route("", methods=["DELETE"])
def clear_all_errors():
    current_app.extensions["error_watcher"].clear_errors()
    return jsonify({"status": "cleared"})


@errors_bp.route("/<target_id>", methods=["DELETE"])
def clear_target_errors(target_id: str):
    current_app.extensions["error_watcher"].clear_errors(target_id)
    return jsonify({"status": "cleared", "target_id": target_id})


@errors_bp.route("/watch", methods=["POST"])
def start_watch():
    """
    Start watching a target.

    Request body:
        target_id: Target to watch (pane ID or any name)
        log_file: Log file to tail (optional)
        command: Command running in the pane, used to pick a build watcher (optional)
    """
    data = request.get_json(silent=True) or {}
    target_id = data.get("target_id") or data.get("pane_id")
    if not target_id:
        return jsonify({"error": "target_id is required"}), 400

    watcher = current_app.extensions["error_watcher"]
    started = watcher.start_watching(WatchTarget(
        target_id=target_id,
        log_file=data.get("log_file"),
        command=data.get("command") or "",
    ))
    if not started:
        return jsonify({"error": f"Target already watched: {target_id}"}), 409
    return jsonify({"status": "watching", "target_id": target_id}), 201


@errors_bp.route("/watch/<target_id>", methods=["DELETE"])
def stop_watch(target_id: str):
    watcher = current_app.extensions["error_watcher"]
    if not watcher.stop_watching(target_id):
        return jsonify({"error": f"Target not watched: {target_id}"}), 404
    return jsonify({"status": "stopped", "target_id": target_id})


@errors_bp.route("/patterns", methods=["GET"])
def list_patterns():
    """The classification cascade, in match order."""
    engine = current_app.extensions["error_watcher"].engine
    return jsonify({"patterns": [p.to_dict() for p in engine.patterns]})


@errors_bp.route("/patterns", methods=["POST"])
def add_pattern():
    """
    Add a custom classification pattern.

    Request body:
        name: Pattern name
        regex: Regular expression matched against each line
        kind: error | warning | info (default error)
        language: Language hint carried on matches (optional)
        replace: Swap an existing same-named pattern in place (default false)
        ignore_case: Compile the regex case-insensitively (default false)
    """
    data = request.get_json(silent=True) or {}
    name = data.get("name")
    expression = data.get("regex")
    if not name or not expression:
        return jsonify({"error": "name and regex are required"}), 400

    try:
        kind = DiagnosticKind(data.get("kind", DiagnosticKind.ERROR.value))
    except ValueError:
        return jsonify({"error": f"Unknown kind: {data.get('kind')}"}), 400

    try:
        pattern = Pattern.compile(
            name,
            expression,
            kind=kind,
            language=data.get("language") or None,
            flags=re.IGNORECASE if data.get("ignore_case") else 0,
        )
    except re.error as e:
        return jsonify({"error": f"Invalid regex: {e}"}), 400

    current_app.extensions["error_watcher"].add_pattern(pattern, replace=bool(data.get("replace")))
    logger.info(f"Custom error pattern added: {name}")
    return jsonify(pattern.to_dict()), 201


@errors_bp.route("/patterns/<name>", methods=["DELETE"])
def remove_pattern(name: str):
    if not current_app.extensions["error_watcher"].remove_pattern(name):
        return jsonify({"error": f"Pattern not found: {name}"}), 404
    return jsonify({"status": "removed", "name": name})
