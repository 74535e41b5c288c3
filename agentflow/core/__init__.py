"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    InvalidGraph,
    UnknownNodeType,
    MissingConfiguration,
    EvaluationError,
    CollaboratorError,
    NodeTimeoutError,
    NodeExecutionError,
    ExecutionNotFoundError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "InvalidGraph",
    "UnknownNodeType",
    "MissingConfiguration",
    "EvaluationError",
    "CollaboratorError",
    "NodeTimeoutError",
    "NodeExecutionError",
    "ExecutionNotFoundError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
]
