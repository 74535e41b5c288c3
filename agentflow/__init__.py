"""Agent workflow engine: executes graphs of agent-backed steps."""

__version__ = "1.0.0"
