"""Process, port and system load endpoints."""

from dataclasses import asdict

from flask import Blueprint, current_app, jsonify, request

processes_bp = Blueprint("processes", __name__, url_prefix="/api")


@processes_bp.route("/processes", methods=["GET"])
def list_processes():
    """
    Running processes with their listening ports.

    Query params:
        pattern: Case-insensitive substring of the command line (optional)
    """
    monitor = current_app.extensions["process_monitor"]
    processes = monitor.list_processes(pattern=request.args.get("pattern") or None)
    return jsonify({
        "count": len(processes),
        "processes": [asdict(p) for p in processes],
    })


@processes_bp.route("/processes/<int:pid>", methods=["GET"])
def get_process(pid: int):
    process = current_app.extensions["process_monitor"].get_process(pid)
    if process is None:
        return jsonify({"error": f"Process not found: {pid}"}), 404
    return jsonify(asdict(process))


@processes_bp.route("/ports", methods=["GET"])
def list_ports():
    """
    Listening ports.

    Ports that opened or closed since the previous call are reported under
    ``changes`` and passed to the trigger orchestrator, which fires a UI test
    trigger for well-known dev server ports.

    Query params:
        target: Target the ports belong to, carried on fired triggers (optional)
    """
    monitor = current_app.extensions["process_monitor"]
    orchestrator = current_app.extensions["trigger_orchestrator"]
    target_id = request.args.get("target") or None

    ports = monitor.list_ports()
    changes = []
    for port, status in monitor.port_changes(ports):
        triggered = orchestrator.handle_port_change(port.port, status, target_id=target_id)
        changes.append({"port": port.port, "status": status, "triggered": triggered})

    return jsonify({
        "ports": [asdict(p) for p in ports],
        "changes": changes,
    })


@processes_bp.route("/system/load", methods=["GET"])
def system_load():
    return jsonify(current_app.extensions["process_monitor"].get_health_status())
