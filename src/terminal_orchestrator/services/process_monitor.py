"""OS process and port enumeration.

Shells out to ``lsof`` (falling back to ``netstat``), ``ps aux`` and
``uptime`` through the command safety layer. The output parsers are plain
functions so they can be exercised against captured fixture text.
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .command_safety import CommandSafety

logger = logging.getLogger(__name__)

MONITOR_COMMAND_TIMEOUT = 10  # seconds
PROC_UPTIME_PATH = "/proc/uptime"

_LSOF_PORT_PATTERN = re.compile(r":(\d+)$")
_NETSTAT_PORT_PATTERN = re.compile(r"[.:](\d+)$")
_LOAD_AVERAGE_PATTERN = re.compile(
    r"load averages?:\s*([0-9.]+),?\s*([0-9.]+),?\s*([0-9.]+)", re.IGNORECASE,
)

_STATUS_MAP = {
    "r": "running",
    "s": "sleeping",
    "i": "sleeping",
    "t": "stopped",
    "z": "stopped",
}


@dataclass(frozen=True)
class PortInfo:
    port: int
    protocol: str
    state: str
    pid: Optional[int] = None


@dataclass
class ProcessInfo:
    pid: int
    name: str
    command: str
    cpu_percent: float
    memory_percent: float
    status: str
    ports: list[PortInfo] = field(default_factory=list)


@dataclass(frozen=True)
class SystemLoad:
    load_average: tuple[float, float, float]
    uptime_seconds: float


def map_process_status(stat: str) -> str:
    """Map a ``ps`` STAT code to running / sleeping / stopped."""
    return _STATUS_MAP.get(stat[:1].lower(), "sleeping") if stat else "sleeping"


def parse_lsof_output(output: str) -> list[PortInfo]:
    """Parse ``lsof -i -P -n`` output, keeping LISTEN sockets once per (port, protocol)."""
    ports: list[PortInfo] = []
    seen: set[tuple[int, str]] = set()

    for line in output.splitlines():
        if "LISTEN" not in line:
            continue
        parts = line.split()
        if len(parts) < 9:
            continue

        match = _LSOF_PORT_PATTERN.search(parts[8])
        if not match:
            continue
        port = int(match.group(1))
        protocol = "tcp" if "TCP" in line else "udp"
        if (port, protocol) in seen:
            continue
        seen.add((port, protocol))

        try:
            pid = int(parts[1])
        except ValueError:
            pid = None
        ports.append(PortInfo(port=port, protocol=protocol, state="listening", pid=pid))

    return ports


def parse_netstat_output(output: str) -> list[PortInfo]:
    """Parse ``netstat -an`` LISTEN lines (Linux ``host:port`` or BSD ``host.port``)."""
    ports: list[PortInfo] = []
    seen: set[int] = set()

    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 4 or "LISTEN" not in line or not parts[0].startswith("tcp"):
            continue

        match = _NETSTAT_PORT_PATTERN.search(parts[3])
        if not match:
            continue
        port = int(match.group(1))
        if port <= 0 or port in seen:
            continue
        seen.add(port)
        ports.append(PortInfo(port=port, protocol="tcp", state="listening"))

    return ports


def parse_ps_output(output: str) -> list[ProcessInfo]:
    """Parse ``ps aux`` output (header line is skipped)."""
    processes = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 11:
            continue
        try:
            pid = int(parts[1])
            cpu = float(parts[2])
            memory = float(parts[3])
        except ValueError:
            continue

        processes.append(ProcessInfo(
            pid=pid,
            name=parts[10].rsplit("/", 1)[-1] or parts[10],
            command=" ".join(parts[10:]),
            cpu_percent=cpu,
            memory_percent=memory,
            status=map_process_status(parts[7]),
        ))
    return processes


def parse_load_average(output: str) -> tuple[float, float, float]:
    match = _LOAD_AVERAGE_PATTERN.search(output)
    if not match:
        return (0.0, 0.0, 0.0)
    return (float(match.group(1)), float(match.group(2)), float(match.group(3)))


class ProcessMonitor:
    """Lists listening ports, processes and system load."""

    def __init__(self, command_safety: Optional[CommandSafety] = None) -> None:
        self._command_safety = command_safety or CommandSafety(
            log_commands=False,
            default_timeout=MONITOR_COMMAND_TIMEOUT,
        )
        self._known_ports: set[tuple[int, str]] = set()
        self._ports_lock = threading.Lock()

    def list_ports(self) -> list[PortInfo]:
        result = self._command_safety.run("lsof", ["-i", "-P", "-n"])
        if result.success or result.stdout.strip():
            ports = parse_lsof_output(result.stdout)
            logger.debug(f"Found {len(ports)} listening ports")
            return ports

        logger.debug(f"lsof unavailable ({result.status.value}), falling back to netstat")
        result = self._command_safety.run("netstat", ["-an"])
        if not result.success:
            logger.error(f"Failed to list ports with both lsof and netstat: {result.stderr}")
            return []
        return parse_netstat_output(result.stdout)

    def port_changes(self, ports: list[PortInfo]) -> list[tuple[PortInfo, str]]:
        """
        Diff a port listing against the previous one passed in.

        Returns:
            (port, "opened" | "closed") pairs. Every port counts as opened on
            the first call.
        """
        current = {(p.port, p.protocol): p for p in ports}
        with self._ports_lock:
            previous = self._known_ports
            self._known_ports = set(current)

        changes = [(current[key], "opened") for key in sorted(current.keys() - previous)]
        changes.extend(
            (PortInfo(port=port, protocol=protocol, state="closed"), "closed")
            for port, protocol in sorted(previous - current.keys())
        )
        return changes

    def list_processes(self, pattern: Optional[str] = None) -> list[ProcessInfo]:
        """
        List processes, optionally filtered by a case-insensitive substring
        of the command line. Each process carries its listening ports.
        """
        result = self._command_safety.run("ps", ["aux"])
        if not result.success:
            logger.error(f"Failed to list processes: {result.stderr}")
            return []

        processes = parse_ps_output(result.stdout)
        if pattern:
            needle = pattern.lower()
            processes = [p for p in processes if needle in p.command.lower()]

        ports_by_pid: dict[int, list[PortInfo]] = {}
        for port in self.list_ports():
            if port.pid is not None:
                ports_by_pid.setdefault(port.pid, []).append(port)
        for process in processes:
            process.ports = ports_by_pid.get(process.pid, [])

        logger.debug(f"Found {len(processes)} processes")
        return processes

    def get_process(self, pid: int) -> Optional[ProcessInfo]:
        return next((p for p in self.list_processes() if p.pid == pid), None)

    def get_system_load(self) -> SystemLoad:
        result = self._command_safety.run("uptime", validate=False)
        load = parse_load_average(result.stdout) if result.success else (0.0, 0.0, 0.0)

        uptime_seconds = 0.0
        try:
            uptime_seconds = float(Path(PROC_UPTIME_PATH).read_text().split()[0])
        except (OSError, ValueError, IndexError):
            logger.debug(f"{PROC_UPTIME_PATH} not readable, uptime unknown")

        return SystemLoad(load_average=load, uptime_seconds=uptime_seconds)

    def get_health_status(self) -> dict[str, Any]:
        load = self.get_system_load()
        return {
            "load_average": list(load.load_average),
            "uptime_seconds": load.uptime_seconds,
        }
