"""Log file analysis endpoints."""

import logging
import re

from flask import Blueprint, current_app, jsonify, request

logger = logging.getLogger(__name__)

logs_bp = Blueprint("logs", __name__, url_prefix="/api/logs")


def _int_arg(name: str, default: int) -> int:
    try:
        return max(1, int(request.args.get(name, default)))
    except ValueError:
        return default


@logs_bp.route("/analyze", methods=["GET"])
def analyze_log():
    path = request.args.get("path")
    if not path:
        return jsonify({"error": "path is required"}), 400

    analyzer = current_app.extensions["log_analyzer"]
    try:
        summary = analyzer.analyze_log_file(path, max_lines=_int_arg("max_lines", 1000))
    except FileNotFoundError:
        return jsonify({"error": f"Log file not found: {path}"}), 404
    except OSError as e:
        return jsonify({"error": f"Cannot read log file: {e}"}), 500
    return jsonify(summary.to_dict())


@logs_bp.route("/recent", methods=["GET"])
def recent_log_lines():
    path = request.args.get("path")
    if not path:
        return jsonify({"error": "path is required"}), 400

    lines = current_app.extensions["log_analyzer"].recent_lines(path, count=_int_arg("count", 50))
    return jsonify({"path": path, "lines": lines})


@logs_bp.route("/search", methods=["GET"])
def search_log():
    """
    Case-insensitive regex search of a log file.

    Query params:
        path: Log file
        pattern: Regular expression
        max_results: Result cap (default 100)
    """
    path = request.args.get("path")
    pattern = request.args.get("pattern")
    if not path or not pattern:
        return jsonify({"error": "path and pattern are required"}), 400

    try:
        matches = current_app.extensions["log_analyzer"].search(
            path, pattern, max_results=_int_arg("max_results", 100),
        )
    except re.error as e:
        return jsonify({"error": f"Invalid pattern: {e}"}), 400
    return jsonify({"path": path, "pattern": pattern, "matches": matches})
