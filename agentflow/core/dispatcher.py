"""Node dispatch: one handler per node type."""

import asyncio
import json
from typing import AbstractSet, Any, ClassVar, Dict, FrozenSet, List, Optional, Protocol, Type

from pydantic import ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..models.core import (
    AgentResponse, CamelModel, EdgeType, NodeType, WorkflowDefinition, WorkflowNode, utc_now
)
from .agent import AgentCollaborator
from .context import ExecutionContext
from .exceptions import (
    CollaboratorError, EvaluationError, MissingConfiguration, UnknownNodeType, WorkflowEngineError
)
from .expressions import ExpressionEvaluator
from .logging import get_logger


logger = get_logger(__name__)

EVALUATOR_CONDITION_TYPES = frozenset({"expression", "javascript", "simple", "jq"})


class NodeConfig(CamelModel):
    """Settings every node may carry in its ``data`` bag."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow", protected_namespaces=()
    )

    missing_message: ClassVar[str] = "Node has invalid configuration"

    label: Optional[str] = None
    continue_on_error: bool = False
    timeout: Optional[float] = Field(None, gt=0, description="Timeout in seconds")
    retry_count: Optional[int] = Field(None, ge=0, description="Maximum retries")
    model_id: Optional[str] = None


class ServerNodeConfig(NodeConfig):
    missing_message: ClassVar[str] = "Server node must have a server selected"

    server_id: str = Field(..., min_length=1)
    selected_tools: Optional[List[str]] = None


class ToolNodeConfig(NodeConfig):
    missing_message: ClassVar[str] = "Tool node must have both server and tool selected"

    server_id: str = Field(..., min_length=1)
    tool_name: str = Field(..., min_length=1)
    parameters: Optional[Dict[str, Any]] = None


class ConditionalNodeConfig(NodeConfig):
    missing_message: ClassVar[str] = "Conditional node must have a condition defined"

    condition: str = Field(..., min_length=1)
    condition_type: Optional[str] = None


class TransformNodeConfig(NodeConfig):
    missing_message: ClassVar[str] = "Transform node must have a transformation script"

    transform_script: str = Field(..., min_length=1)


class LoopNodeConfig(NodeConfig):
    missing_message: ClassVar[str] = "Loop node has invalid iteration settings"

    loop_condition: Optional[str] = None
    max_iterations: int = Field(10, ge=0)
    iteration_delay: Optional[float] = Field(None, ge=0, description="Seconds to wait before each iteration")


class AggregatorNodeConfig(NodeConfig):
    missing_message: ClassVar[str] = "Aggregator node has invalid aggregation settings"

    aggregation_type: str = "merge"
    aggregation_script: Optional[str] = None


NODE_CONFIGS: Dict[NodeType, Type[NodeConfig]] = {
    NodeType.START: NodeConfig,
    NodeType.END: NodeConfig,
    NodeType.SERVER: ServerNodeConfig,
    NodeType.TOOL: ToolNodeConfig,
    NodeType.CONDITIONAL: ConditionalNodeConfig,
    NodeType.TRANSFORM: TransformNodeConfig,
    NodeType.LOOP: LoopNodeConfig,
    NodeType.PARALLEL: NodeConfig,
    NodeType.AGGREGATOR: AggregatorNodeConfig,
}

_HANDLERS: Dict[NodeType, str] = {
    NodeType.START: "_run_start",
    NodeType.END: "_run_end",
    NodeType.SERVER: "_run_server",
    NodeType.TOOL: "_run_tool",
    NodeType.CONDITIONAL: "_run_conditional",
    NodeType.TRANSFORM: "_run_transform",
    NodeType.LOOP: "_run_loop",
    NodeType.PARALLEL: "_run_parallel",
    NodeType.AGGREGATOR: "_run_aggregator",
}

_unhandled = set(NodeType) - set(_HANDLERS) | set(NodeType) - set(NODE_CONFIGS)
if _unhandled:
    raise RuntimeError(f"Node types without dispatch handler: {sorted(t.value for t in _unhandled)}")


def resolve_node_type(node: WorkflowNode) -> NodeType:
    try:
        return NodeType(node.type)
    except ValueError:
        raise UnknownNodeType(node.type, node_id=node.id)


def parse_node_config(node: WorkflowNode, node_type: NodeType) -> NodeConfig:
    """Parse ``node.data`` into the typed config of its node type."""
    config_class = NODE_CONFIGS[node_type]
    try:
        return config_class.model_validate(node.data)
    except ValidationError as e:
        fields = [".".join(str(part) for part in error["loc"]) for error in e.errors()]
        raise MissingConfiguration(config_class.missing_message, node_id=node.id, fields=fields)


def node_settings(node: WorkflowNode) -> NodeConfig:
    """Shared settings of a node, falling back to defaults when they do not parse."""
    try:
        return NodeConfig.model_validate(node.data)
    except ValidationError:
        logger.warning(f"Ignoring invalid shared settings on node {node.id}")
        return NodeConfig()


class Walker(Protocol):
    """What container nodes need from the interpreter to traverse sub-graphs."""

    definition: WorkflowDefinition
    concurrent: bool

    @property
    def stopped(self) -> bool: ...

    async def visit(
        self,
        node_id: str,
        context: ExecutionContext,
        stop_at: AbstractSet[str] = frozenset(),
        reached: Optional[List[str]] = None
    ) -> Any: ...

    def branch_joins(self, entries: List[str]) -> FrozenSet[str]: ...

    def continue_with(self, node_id: str, context: ExecutionContext, targets: List[str]) -> None: ...


def _timestamp() -> str:
    return utc_now().isoformat()


class NodeDispatcher:
    """
    Executes a single node against the execution context.

    Leaf nodes talk to the agent collaborator or the expression evaluator.
    Container nodes (``loop`` and ``parallel``) traverse their sub-graphs
    through the walker on forks of the context and merge them back.
    """

    def __init__(
        self,
        agent: AgentCollaborator,
        evaluator: ExpressionEvaluator,
        default_iteration_delay: float = 0.0
    ):
        self.agent = agent
        self.evaluator = evaluator
        self.default_iteration_delay = default_iteration_delay

    async def dispatch(self, node: WorkflowNode, context: ExecutionContext, walker: Walker) -> Any:
        node_type = resolve_node_type(node)
        config = parse_node_config(node, node_type)
        handler = getattr(self, _HANDLERS[node_type])
        return await handler(node, config, context, walker)

    async def _ask_agent(self, prompt: str, config: NodeConfig) -> AgentResponse:
        try:
            response = await self.agent.process_message(prompt, model_id=config.model_id)
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise CollaboratorError(f"Agent call failed: {e}") from e

        if isinstance(response, AgentResponse):
            return response
        try:
            return AgentResponse.model_validate(response)
        except ValidationError as e:
            raise CollaboratorError(f"Agent returned malformed response: {e.error_count()} validation errors")

    @staticmethod
    def _tool_calls(response: AgentResponse) -> List[Dict[str, Any]]:
        return [call.model_dump(by_alias=True, exclude_none=True) for call in response.tool_calls]

    @staticmethod
    def _results_json(context: ExecutionContext) -> str:
        return json.dumps(context.node_results, default=str)

    async def _run_start(self, node, config, context, walker):
        initial = context.initial_input
        return {} if initial is None else initial

    async def _run_end(self, node, config, context, walker):
        return {"status": "workflow_completed"}

    async def _run_server(self, node, config: ServerNodeConfig, context, walker):
        query = context.user_query or "Process this request"
        tools = ", ".join(config.selected_tools) if config.selected_tools else "all available tools"
        prompt = (
            'You are processing a workflow node of type "server" with the following configuration:\n\n'
            f"Server ID: {config.server_id}\n"
            f"Selected Tools: {tools}\n"
            f'User Query: "{query}"\n'
            f"Context: {self._results_json(context)}\n\n"
            "Please use the available MCP server tools to fulfill this request. "
            f'Focus on using tools from the "{config.server_id}" server if available.'
        )
        response = await self._ask_agent(prompt, config)
        return {
            "serverId": config.server_id,
            "selectedTools": config.selected_tools or ["all"],
            "llmResponse": response.content,
            "toolCalls": self._tool_calls(response),
            "timestamp": _timestamp(),
            "success": True,
        }

    async def _run_tool(self, node, config: ToolNodeConfig, context, walker):
        query = context.user_query or "Execute this tool"
        parameters = config.parameters or {}
        prompt = (
            "You need to execute a specific tool with the following configuration:\n\n"
            f"Server ID: {config.server_id}\n"
            f"Tool Name: {config.tool_name}\n"
            f"Parameters: {json.dumps(parameters, default=str)}\n"
            f'User Query: "{query}"\n'
            f"Context: {self._results_json(context)}\n\n"
            f'Please execute the "{config.tool_name}" tool from the "{config.server_id}" server '
            "with the provided parameters to fulfill the user's request."
        )
        response = await self._ask_agent(prompt, config)
        return {
            "toolName": config.tool_name,
            "serverId": config.server_id,
            "parameters": parameters,
            "llmResponse": response.content,
            "toolCalls": self._tool_calls(response),
            "result": response.content,
            "timestamp": _timestamp(),
        }

    async def _run_conditional(self, node, config: ConditionalNodeConfig, context, walker):
        if config.condition_type in EVALUATOR_CONDITION_TYPES:
            decision = self.evaluator.evaluate_bool(config.condition, context.variables())
            return {
                "condition": config.condition,
                "conditionType": config.condition_type,
                "result": decision,
                "evaluatedAt": _timestamp(),
            }

        query = context.user_query or "Evaluate this condition"
        prompt = (
            "You need to evaluate a workflow condition with the following details:\n\n"
            f'Condition: "{config.condition}"\n'
            f"Condition Type: {config.condition_type}\n"
            f'User Query: "{query}"\n'
            f"Current Context: {self._results_json(context)}\n"
            f"Execution Path: {' -> '.join(context.execution_path)}\n\n"
            "Please evaluate whether this condition is true or false based on the current context and user query.\n"
            'Respond with a clear "TRUE" or "FALSE" followed by your reasoning.'
        )
        response = await self._ask_agent(prompt, config)
        text = response.content.lower()
        return {
            "condition": config.condition,
            "conditionType": config.condition_type,
            "result": "true" in text and "false" not in text,
            "llmEvaluation": response.content,
            "evaluatedAt": _timestamp(),
        }

    async def _run_transform(self, node, config: TransformNodeConfig, context, walker):
        original = context.previous_result()
        transformed = self.evaluator.evaluate(config.transform_script, context.variables(input=original))
        return {"original": original, "transformed": transformed, "script": config.transform_script}

    async def _run_loop(self, node, config: LoopNodeConfig, context: ExecutionContext, walker: Walker):
        body_edges = [
            edge for edge in walker.definition.outgoing_edges(node.id) if edge.type == EdgeType.LOOP
        ]
        delay = config.iteration_delay
        if delay is None:
            delay = self.default_iteration_delay

        results = []
        iteration = 0
        while iteration < config.max_iterations:
            if walker.stopped:
                break
            if config.loop_condition:
                try:
                    keep_going = self.evaluator.evaluate_bool(
                        config.loop_condition, context.variables(iteration=iteration)
                    )
                except EvaluationError as e:
                    logger.warning(f"Loop {node.id} condition failed, ending loop: {e.message}")
                    break
                if not keep_going:
                    break

            if delay:
                await asyncio.sleep(delay)

            body_results = {}
            for edge in body_edges:
                fork = context.fork()
                fork.global_variables["iteration"] = iteration
                base_length = len(fork.execution_path)
                body_results[edge.target] = await walker.visit(edge.target, fork)
                context.merge(fork, base_length)

            results.append({"iteration": iteration, "results": body_results, "timestamp": _timestamp()})
            iteration += 1
            context.iteration_count = iteration

        return {"iterations": iteration, "results": results}

    async def _run_parallel(self, node, config, context: ExecutionContext, walker: Walker):
        edges = walker.definition.outgoing_edges(node.id)
        entries = [edge.target for edge in edges]
        joins = walker.branch_joins(entries)
        base_length = len(context.execution_path)
        forks = [context.fork() for _ in edges]
        reached: List[List[str]] = [[] for _ in edges]

        def branch(index: int):
            # A branch stops where another branch's sub-graph begins.
            stop_at = joins | (set(entries) - {entries[index]})
            return walker.visit(entries[index], forks[index], stop_at=stop_at, reached=reached[index])

        try:
            if walker.concurrent:
                tasks = [asyncio.ensure_future(branch(index)) for index in range(len(edges))]
                try:
                    branch_results = await asyncio.gather(*tasks)
                except (Exception, asyncio.CancelledError):
                    for task in tasks:
                        task.cancel()
                    await asyncio.gather(*tasks, return_exceptions=True)
                    raise
            else:
                branch_results = []
                for index in range(len(edges)):
                    branch_results.append(await branch(index))
        finally:
            # Merge every fork, failed or not, in edge declaration order.
            for fork in forks:
                context.merge(fork, base_length)

        continuation: List[str] = []
        for targets in reached:
            for target in targets:
                if target not in entries and target not in continuation:
                    continuation.append(target)
        walker.continue_with(node.id, context, continuation)

        return {"branchResults": list(branch_results), "executedAt": _timestamp()}

    async def _run_aggregator(self, node, config: AggregatorNodeConfig, context, walker):
        inputs = list(context.node_results.values())
        aggregation_type = config.aggregation_type

        if aggregation_type == "merge":
            aggregated: Any = {}
            for item in inputs:
                if isinstance(item, dict):
                    aggregated.update(item)
        elif aggregation_type == "array":
            aggregated = inputs
        elif aggregation_type == "first":
            aggregated = inputs[0] if inputs else None
        elif aggregation_type == "last":
            aggregated = inputs[-1] if inputs else None
        elif aggregation_type == "custom" and config.aggregation_script:
            aggregated = self.evaluator.evaluate(config.aggregation_script, context.variables(results=inputs))
        else:
            aggregated = inputs

        return {"aggregated": aggregated, "type": aggregation_type, "inputCount": len(inputs)}
