"""Command safety check endpoint."""

import logging

from flask import Blueprint, current_app, jsonify, request

logger = logging.getLogger(__name__)

commands_bp = Blueprint("commands", __name__, url_prefix="/api/commands")


@commands_bp.route("/check", methods=["POST"])
def check_command():
    """
    Check a command against the safety rules without running it.

    Request body:
        command: Program name
        args: List of arguments (optional)
    """
    data = request.get_json(silent=True) or {}
    command = data.get("command")
    args = data.get("args") or []

    if not command or not isinstance(command, str):
        return jsonify({"error": "command is required"}), 400
    if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
        return jsonify({"error": "args must be a list of strings"}), 400

    command_safety = current_app.extensions["command_safety"]
    check = command_safety.is_safe(command, args)
    return jsonify({
        "command": command,
        "args": args,
        "safe": check.safe,
        "reason": check.reason,
        "display": command_safety.format_for_display(command, args),
    })
