"""Routes package for Terminal Orchestrator."""

# No route authenticates its caller. Bind the server to localhost (the
# default) or put it behind an authenticating proxy.

from .commands import commands_bp
from .errors import errors_bp
from .health import health_bp
from .logs import logs_bp
from .processes import processes_bp
from .sessions import sessions_bp
from .sse import sse_bp
from .triggers import triggers_bp

__all__ = [
    "commands_bp",
    "errors_bp",
    "health_bp",
    "logs_bp",
    "processes_bp",
    "sessions_bp",
    "sse_bp",
    "triggers_bp",
]
