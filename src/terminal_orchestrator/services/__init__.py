"""Services package for Terminal Orchestrator."""

from .pane_resolver import PaneMapping, PaneResolver, build_structured_id, parse_structured_id
from .command_safety import CommandResult, CommandSafety, CommandStatus, SafetyCheck
from .file_tailer import FileTailer
from .error_patterns import DiagnosticEvent, DiagnosticKind, Pattern, PatternEngine
from .event_bus import EventBus
from .error_watcher import ErrorWatcher, WatchTarget
from .trigger_orchestrator import FrameworkDetection, TriggerOrchestrator
from .tmux_bridge import SendResult, SessionConfig, TmuxBridge, TmuxBridgeErrorType
from .process_monitor import ProcessMonitor
from .session_store import MemorySessionStore, SessionRecord, SessionStore
from .log_analyzer import LogAnalyzer, LogSummary
from .broadcaster import Broadcaster, create_broadcaster

__all__ = [
    "PaneMapping",
    "PaneResolver",
    "build_structured_id",
    "parse_structured_id",
    "CommandResult",
    "CommandSafety",
    "CommandStatus",
    "SafetyCheck",
    "FileTailer",
    "DiagnosticEvent",
    "DiagnosticKind",
    "Pattern",
    "PatternEngine",
    "EventBus",
    "ErrorWatcher",
    "WatchTarget",
    "FrameworkDetection",
    "TriggerOrchestrator",
    "SendResult",
    "SessionConfig",
    "TmuxBridge",
    "TmuxBridgeErrorType",
    "ProcessMonitor",
    "MemorySessionStore",
    "SessionRecord",
    "SessionStore",
    "LogAnalyzer",
    "LogSummary",
    "Broadcaster",
    "create_broadcaster",
]
