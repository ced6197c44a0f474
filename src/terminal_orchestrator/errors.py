"""Exception hierarchy for terminal orchestrator.

Only command validation raises to the caller. Resolution misses degrade to
passthrough, and streaming/monitoring failures are logged where they occur.
"""


class OrchestratorError(Exception):
    """Base class for terminal orchestrator errors."""


class ValidationError(OrchestratorError):
    """A command was rejected before any side effect took place."""

    def __init__(self, message: str, command: str = "", reason: str = "") -> None:
        super().__init__(message)
        self.command = command
        self.reason = reason
