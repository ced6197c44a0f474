"""Trigger orchestrator endpoints."""

from flask import Blueprint, current_app, jsonify, request

from ..services.trigger_orchestrator import FrameworkDetection

triggers_bp = Blueprint("triggers", __name__, url_prefix="/api/triggers")


@triggers_bp.route("/stats", methods=["GET"])
def trigger_stats():
    return jsonify(current_app.extensions["trigger_orchestrator"].get_stats())


@triggers_bp.route("/config", methods=["GET"])
def trigger_config():
    return jsonify(current_app.extensions["trigger_orchestrator"].get_config())


@triggers_bp.route("/clear", methods=["POST"])
def clear_triggers():
    current_app.extensions["trigger_orchestrator"].clear_history()
    return jsonify({"status": "cleared"})


@triggers_bp.route("/frameworks", methods=["POST"])
def report_frameworks():
    """
    Report frameworks detected in a project.

    Request body:
        frameworks: List of {name, confidence, indicators (optional)}
    """
    data = request.get_json(silent=True) or {}
    entries = data.get("frameworks")
    if not isinstance(entries, list):
        return jsonify({"error": "frameworks must be a list"}), 400

    try:
        frameworks = [
            FrameworkDetection(
                name=str(entry["name"]),
                confidence=float(entry["confidence"]),
                indicators=tuple(entry.get("indicators") or ()),
            )
            for entry in entries
        ]
    except (KeyError, TypeError, ValueError, AttributeError):
        return jsonify({"error": "each framework needs a name and a numeric confidence"}), 400

    fired = current_app.extensions["trigger_orchestrator"].handle_framework_detection(frameworks)
    return jsonify({"fired": fired})
