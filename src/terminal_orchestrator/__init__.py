"""Terminal Orchestrator - structured tmux control and log intelligence."""

__version__ = "0.1.0"
