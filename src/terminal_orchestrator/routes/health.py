"""Health check endpoint."""

import logging

from flask import Blueprint, current_app, jsonify

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__)


def get_sse_health() -> dict:
    """SSE broadcaster health, or a placeholder when it is not configured."""
    broadcaster = current_app.extensions.get("broadcaster")
    if broadcaster is None:
        return {
            "status": "not_initialized",
            "active_connections": 0,
            "max_connections": 0,
            "running": False,
        }
    return broadcaster.get_health_status()


@health_bp.route("/health")
def health_check():
    """
    Health check endpoint.

    Returns:
        JSON response with status, version, tmux availability, SSE health
        and background thread status
    """
    version = current_app.config.get("APP_VERSION", "unknown")
    sse_health = get_sse_health()

    tmux = current_app.extensions.get("tmux")
    tmux_available = tmux.has_tmux() if tmux else False

    overall_status = "healthy"
    if sse_health.get("status") not in ("healthy", "stopped", "not_initialized"):
        overall_status = "degraded"

    thread_status_fn = current_app.extensions.get("_get_background_thread_status")
    background_threads = thread_status_fn() if thread_status_fn else {}
    if any(v == "dead" for v in background_threads.values()):
        overall_status = "degraded"

    error_watcher = current_app.extensions.get("error_watcher")

    return jsonify({
        "status": overall_status,
        "version": version,
        "tmux": "available" if tmux_available else "unavailable",
        "sse": sse_health,
        "background_threads": background_threads,
        "watched_targets": error_watcher.watched_targets if error_watcher else [],
    })
