"""Custom exceptions for the workflow engine with structured error information."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    EVALUATION = "evaluation"
    COLLABORATOR = "collaborator"
    CONFIGURATION = "configuration"
    NOT_FOUND = "not_found"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class InvalidGraph(WorkflowEngineError):
    """Raised when a workflow definition is structurally invalid."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class UnknownNodeType(WorkflowEngineError):
    """Raised when a node's type is not one of the recognized node types."""

    def __init__(self, node_type: str, node_id: Optional[str] = None, **kwargs):
        super().__init__(
            f"Unknown node type: {node_type}",
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.node_type = node_type
        self.add_details(node_type=node_type)
        if node_id:
            self.add_context(node_id=node_id)


class MissingConfiguration(WorkflowEngineError):
    """Raised when a node lacks the configuration its type requires."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        fields: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        self.fields = fields or []
        if node_id:
            self.add_context(node_id=node_id)
        if fields:
            self.add_details(missing_fields=fields)


class EvaluationError(WorkflowEngineError):
    """Raised when an expression cannot be parsed or evaluated."""

    def __init__(self, message: str, expression: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.EVALUATION,
            **kwargs
        )
        self.expression = expression
        if expression is not None:
            self.add_details(expression=expression)


class CollaboratorError(WorkflowEngineError):
    """Raised when the agent collaborator fails (network, model or tool)."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.COLLABORATOR,
            recoverable=True,
            **kwargs
        )
        if status_code is not None:
            self.add_details(status_code=status_code)


class NodeTimeoutError(WorkflowEngineError):
    """Raised when a node does not finish within its timeout."""

    def __init__(self, node_id: str, timeout: float, **kwargs):
        super().__init__(
            f"Node {node_id} timed out after {timeout} seconds",
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            recoverable=True,
            **kwargs
        )
        self.add_context(node_id=node_id)
        self.add_details(timeout=timeout)


class NodeExecutionError(WorkflowEngineError):
    """Raised when node execution fails."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        execution_time: Optional[float] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)
        if execution_id:
            self.add_context(execution_id=execution_id)
        if execution_time:
            self.add_details(execution_time=execution_time)


class ExecutionNotFoundError(WorkflowEngineError):
    """Raised when an execution id is not present in the run registry."""

    def __init__(self, execution_id: str, **kwargs):
        super().__init__(
            f"Execution {execution_id} not found",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.NOT_FOUND,
            **kwargs
        )
        self.add_context(execution_id=execution_id)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
