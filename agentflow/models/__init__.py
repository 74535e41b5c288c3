"""Data models for the workflow engine."""

from .core import (
    NodeType,
    EdgeType,
    ExecutionStatusEnum,
    NodeStatusEnum,
    WorkflowEventType,
    ValidationResult,
    WorkflowNode,
    WorkflowEdge,
    WorkflowDefinition,
    WorkflowExecutionOptions,
    NodeExecution,
    WorkflowExecution,
    ExecutionSummary,
    WorkflowEvent,
    ToolCall,
    AgentResponse,
    ChatResponse,
)

__all__ = [
    "NodeType",
    "EdgeType",
    "ExecutionStatusEnum",
    "NodeStatusEnum",
    "WorkflowEventType",
    "ValidationResult",
    "WorkflowNode",
    "WorkflowEdge",
    "WorkflowDefinition",
    "WorkflowExecutionOptions",
    "NodeExecution",
    "WorkflowExecution",
    "ExecutionSummary",
    "WorkflowEvent",
    "ToolCall",
    "AgentResponse",
    "ChatResponse",
]
