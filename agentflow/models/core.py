"""Core Pydantic models for the workflow engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model accepting camelCase or snake_case input and emitting camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NodeType(str, Enum):
    """Closed set of node types the dispatcher knows how to run."""
    START = "start"
    END = "end"
    SERVER = "server"
    TOOL = "tool"
    CONDITIONAL = "conditional"
    TRANSFORM = "transform"
    LOOP = "loop"
    PARALLEL = "parallel"
    AGGREGATOR = "aggregator"


class EdgeType(str, Enum):
    """Enumeration of edge types."""
    DEFAULT = "default"
    CONDITIONAL = "conditional"
    LOOP = "loop"
    PARALLEL = "parallel"


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow execution statuses."""
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    PAUSED = "paused"


class NodeStatusEnum(str, Enum):
    """Enumeration of node execution statuses."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"


class WorkflowEventType(str, Enum):
    """Enumeration of lifecycle event types."""
    EXECUTION_STARTED = "execution_started"
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_ERROR = "node_error"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_ERROR = "execution_error"
    EXECUTION_STOPPED = "execution_stopped"


class ValidationResult(CamelModel):
    """Result of workflow validation."""
    is_valid: bool = Field(..., description="Whether the workflow is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class WorkflowNode(CamelModel):
    """A single typed step of a workflow. Read-only configuration."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(..., description="Unique identifier for the node")
    type: str = Field(..., description="Node type, one of NodeType")
    data: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")
    position: Optional[Dict[str, float]] = Field(None, description="Editor position, ignored by the engine")

    @field_validator('id')
    @classmethod
    def validate_id(cls, node_id):
        """Ensure node ID is not blank."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @property
    def label(self) -> str:
        return self.data.get("label") or self.id


class WorkflowEdge(CamelModel):
    """A directed connection between two nodes, optionally guarded by a condition."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: Optional[str] = Field(None, description="Edge identifier")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    type: EdgeType = Field(EdgeType.DEFAULT, description="Edge type")
    data: Optional[Dict[str, Any]] = Field(None, description="Edge configuration, e.g. condition")

    @field_validator('type', mode='before')
    @classmethod
    def default_missing_type(cls, edge_type):
        """Treat a null edge type as a plain edge."""
        return EdgeType.DEFAULT if edge_type is None else edge_type

    @property
    def condition(self) -> Optional[str]:
        return (self.data or {}).get("condition")


class WorkflowDefinition(CamelModel):
    """Complete definition of a workflow graph. Immutable once built."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(..., description="Workflow identifier")
    name: str = Field(..., description="Name of the workflow")
    description: Optional[str] = Field(None, description="Description of the workflow")
    nodes: List[WorkflowNode] = Field(default_factory=list, description="Nodes in the graph")
    edges: List[WorkflowEdge] = Field(default_factory=list, description="Edges connecting nodes")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Free-form editor metadata")

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        """Find a node definition by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[WorkflowEdge]:
        """Outgoing edges of a node in declaration order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def start_nodes(self) -> List[WorkflowNode]:
        return [node for node in self.nodes if node.type == NodeType.START.value]

    def validate_structure(self) -> ValidationResult:
        """Check the graph invariants the interpreter relies on."""
        errors = []
        warnings = []

        start_nodes = self.start_nodes()
        if not start_nodes:
            errors.append("Workflow must have a start node")
        elif len(start_nodes) > 1:
            errors.append(
                f"Workflow can only have one start node, found {len(start_nodes)}: "
                f"{', '.join(node.id for node in start_nodes)}"
            )

        node_ids = [node.id for node in self.nodes]
        duplicates = sorted({node_id for node_id in node_ids if node_ids.count(node_id) > 1})
        if duplicates:
            errors.append(f"Duplicate node IDs: {', '.join(duplicates)}")

        known_ids = set(node_ids)
        for edge in self.edges:
            if edge.source not in known_ids:
                errors.append(f"Edge references non-existent source node: {edge.source}")
            if edge.target not in known_ids:
                errors.append(f"Edge references non-existent target node: {edge.target}")

        known_types = {node_type.value for node_type in NodeType}
        for node in self.nodes:
            if node.type not in known_types:
                warnings.append(f"Node {node.id} has unknown type '{node.type}'")
            if node.type == NodeType.CONDITIONAL.value:
                if not any(edge.type == EdgeType.CONDITIONAL for edge in self.outgoing_edges(node.id)):
                    warnings.append(f"Conditional node {node.id} has no conditional outgoing edges")

        if len(start_nodes) == 1 and not errors:
            unreachable = known_ids - self.reachable_nodes(start_nodes[0].id)
            if unreachable:
                warnings.append(f"Unreachable nodes detected: {', '.join(sorted(unreachable))}")
            if self.back_edges():
                warnings.append("Graph contains cycles; traversal is bounded by the node visit limit")

        return ValidationResult(
            is_valid=len(errors) == 0,
            errors=errors,
            warnings=warnings
        )

    def _adjacency(self, skip: Iterable[Tuple[str, str]] = ()) -> Dict[str, List[str]]:
        skipped = set(skip)
        graph: Dict[str, List[str]] = {}
        for edge in self.edges:
            if (edge.source, edge.target) not in skipped:
                graph.setdefault(edge.source, []).append(edge.target)
        return graph

    def reachable_nodes(self, entry_point: str, skip: Iterable[Tuple[str, str]] = ()) -> Set[str]:
        """Find all nodes reachable from the entry point (BFS), ignoring ``skip`` edges."""
        graph = self._adjacency(skip)
        reachable = {entry_point}
        queue = [entry_point]
        while queue:
            current = queue.pop(0)
            for neighbor in graph.get(current, []):
                if neighbor not in reachable:
                    reachable.add(neighbor)
                    queue.append(neighbor)
        return reachable

    def back_edges(self) -> FrozenSet[Tuple[str, str]]:
        """
        ``(source, target)`` pairs of the edges that close a cycle.

        Found by depth-first search from the start node in edge declaration
        order, then from any node the start does not reach.
        """
        graph = self._adjacency()
        back: Set[Tuple[str, str]] = set()
        visited: Set[str] = set()
        roots = [node.id for node in self.start_nodes()] + [node.id for node in self.nodes]

        for root in roots:
            if root in visited:
                continue
            visited.add(root)
            on_stack = {root}
            stack = [(root, iter(graph.get(root, [])))]
            while stack:
                node_id, neighbors = stack[-1]
                for neighbor in neighbors:
                    if neighbor in on_stack:
                        back.add((node_id, neighbor))
                    elif neighbor not in visited:
                        visited.add(neighbor)
                        on_stack.add(neighbor)
                        stack.append((neighbor, iter(graph.get(neighbor, []))))
                        break
                else:
                    stack.pop()
                    on_stack.discard(node_id)

        return frozenset(back)

    def join_nodes(self, back_edges: Iterable[Tuple[str, str]] = ()) -> FrozenSet[str]:
        """Nodes entered by more than one edge, not counting loop-body edges or ``back_edges``."""
        closing = set(back_edges)
        incoming: Dict[str, int] = {}
        for edge in self.edges:
            if edge.type == EdgeType.LOOP or (edge.source, edge.target) in closing:
                continue
            incoming[edge.target] = incoming.get(edge.target, 0) + 1
        return frozenset(node_id for node_id, count in incoming.items() if count > 1)


class WorkflowExecutionOptions(CamelModel):
    """Per-run options accepted by the engine."""
    timeout: Optional[float] = Field(None, gt=0, description="Per-node timeout in seconds")
    max_retries: Optional[int] = Field(None, ge=0, description="Retries for recoverable node failures")
    continue_on_error: bool = Field(False, description="Keep traversing after a node fails")
    debug_mode: bool = Field(False, description="Log every node result at debug level")


class NodeExecution(CamelModel):
    """Execution record of one node within a run."""
    node_id: str
    status: NodeStatusEnum = NodeStatusEnum.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = Field(None, description="Duration in milliseconds")
    output: Any = None
    error: Optional[str] = None
    retry_count: int = 0


class WorkflowExecution(CamelModel):
    """External record of a workflow run."""
    id: str
    workflow_id: str
    status: ExecutionStatusEnum = ExecutionStatusEnum.RUNNING
    start_time: datetime = Field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    current_node_id: Optional[str] = None
    error: Optional[str] = None
    node_executions: List[NodeExecution] = Field(default_factory=list)
    execution_path: List[str] = Field(default_factory=list)
    node_results: Dict[str, Any] = Field(default_factory=dict)
    final_result: Any = None

    def get_node_execution(self, node_id: str) -> Optional[NodeExecution]:
        for node_execution in self.node_executions:
            if node_execution.node_id == node_id:
                return node_execution
        return None

    @property
    def is_finished(self) -> bool:
        return self.status != ExecutionStatusEnum.RUNNING


class ExecutionSummary(CamelModel):
    """Condensed view of a run for listings."""
    id: str
    workflow_id: str
    status: ExecutionStatusEnum
    start_time: datetime
    end_time: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def from_execution(cls, execution: WorkflowExecution) -> "ExecutionSummary":
        return cls(
            id=execution.id,
            workflow_id=execution.workflow_id,
            status=execution.status,
            start_time=execution.start_time,
            end_time=execution.end_time,
            error=execution.error,
        )


class WorkflowEvent(CamelModel):
    """Immutable notification published once per lifecycle transition."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: WorkflowEventType
    workflow_id: str
    execution_id: str
    node_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    data: Optional[Dict[str, Any]] = None


class ToolCall(CamelModel):
    """A tool invocation reported by the agent."""
    name: str
    args: Any = Field(default_factory=dict)
    result: Any = None
    status: Optional[str] = None
    duration: Optional[float] = None
    server_id: Optional[str] = None


class AgentResponse(CamelModel):
    """Reply of the agent collaborator to a prompt."""
    content: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)

    @field_validator('tool_calls', mode='before')
    @classmethod
    def default_missing_tool_calls(cls, tool_calls):
        return tool_calls or []


class ChatResponse(CamelModel):
    """Human-readable progress update for one node of a chat-streamed run."""
    node_id: str
    node_type: str
    message: str
    tool_calls: Optional[List[ToolCall]] = None
    timestamp: datetime = Field(default_factory=utc_now)
    next_node_id: Optional[str] = None
    is_complete: bool = False
    is_node_complete: bool = False
    condition_result: Optional[bool] = None
