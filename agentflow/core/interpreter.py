"""Graph traversal: walks a workflow definition node by node."""

import asyncio
import inspect
import time
import uuid
from typing import AbstractSet, Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set, Tuple

from ..models.core import (
    ChatResponse, EdgeType, ExecutionStatusEnum, NodeExecution, NodeStatusEnum, NodeType,
    WorkflowDefinition, WorkflowEdge, WorkflowEventType, WorkflowExecution,
    WorkflowExecutionOptions, WorkflowNode, utc_now
)
from . import chat
from .context import ExecutionContext
from .dispatcher import NodeConfig, NodeDispatcher, node_settings
from .error_recovery import RetryConfig, execute_async_with_retry, run_with_timeout
from .events import EventBus
from .exceptions import EvaluationError, InvalidGraph, NodeExecutionError, UnknownNodeType
from .logging import get_logger, logging_context, set_logging_context, clear_logging_context
from .registry import ExecutionRegistry


logger = get_logger(__name__)

# Node types that call out to a collaborator; timeouts and retries apply to these.
LEAF_NODE_TYPES = frozenset({NodeType.SERVER.value, NodeType.TOOL.value, NodeType.CONDITIONAL.value})

ProgressCallback = Callable[[ChatResponse], Any]
NodeStartedHook = Callable[[WorkflowNode, ExecutionContext], Awaitable[None]]
NodeFinishedHook = Callable[
    [WorkflowNode, Any, Optional[Exception], ExecutionContext, List[str]], Awaitable[None]
]


def _new_execution_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _first_set(*values):
    for value in values:
        if value is not None:
            return value
    return None


def _error_message(error: Exception) -> str:
    return getattr(error, "message", None) or str(error) or type(error).__name__


class _Walk:
    """Per-run traversal state handed to the dispatcher as its walker."""

    def __init__(
        self,
        interpreter: "GraphInterpreter",
        definition: WorkflowDefinition,
        execution: WorkflowExecution,
        options: WorkflowExecutionOptions,
        concurrent: bool,
        on_node_started: Optional[NodeStartedHook] = None,
        on_node_finished: Optional[NodeFinishedHook] = None
    ):
        self.interpreter = interpreter
        self.definition = definition
        self.execution = execution
        self.options = options
        self.concurrent = concurrent
        self.on_node_started = on_node_started
        self.on_node_finished = on_node_finished
        self.visit_count = 0
        self.first_error: Optional[str] = None
        self.last_result: Any = None
        self.back_edges = definition.back_edges()
        self.join_ids = definition.join_nodes(self.back_edges)
        self._downstream: Dict[str, Set[str]] = {}
        self._continuations: Dict[Tuple[str, int], List[str]] = {}

    @property
    def stopped(self) -> bool:
        return self.execution.status == ExecutionStatusEnum.PAUSED

    def tolerates(self, settings: NodeConfig) -> bool:
        return self.options.continue_on_error or settings.continue_on_error

    def branch_joins(self, entries: List[str]) -> FrozenSet[str]:
        """Nodes reachable from more than one of the branch ``entries``."""
        counts: Dict[str, int] = {}
        for entry in entries:
            for node_id in self.definition.reachable_nodes(entry, skip=self.back_edges):
                counts[node_id] = counts.get(node_id, 0) + 1
        return frozenset(node_id for node_id, count in counts.items() if count > 1)

    def continue_with(self, node_id: str, context: ExecutionContext, targets: List[str]) -> None:
        """Nodes to visit after ``node_id`` finishes on ``context``, instead of its edges."""
        self._continuations[(node_id, id(context))] = targets

    async def visit(
        self,
        node_id: str,
        context: ExecutionContext,
        stop_at: AbstractSet[str] = frozenset(),
        reached: Optional[List[str]] = None
    ) -> Any:
        """
        Run a node, then everything reachable through its selected edges.

        Traversal is depth-first in edge declaration order and runs every
        node at most once per visit. A node entered by several edges waits
        until nothing else is pending, so it runs after all of its incoming
        branches. Following an edge that closes a cycle makes the nodes of
        that cycle runnable again. Nodes in ``stop_at`` are not run; they are
        appended to ``reached``. Returns the result of ``node_id`` itself.
        """
        done: Set[str] = set()
        waiting: List[str] = []

        first_result, next_ids = await self._step(node_id, context)
        done.add(node_id)
        pending = self._follow(node_id, next_ids, done)

        while (pending or waiting) and not self.stopped:
            if pending:
                target = pending.pop()
                if target in stop_at:
                    if reached is not None and target not in reached:
                        reached.append(target)
                    continue
                if target in done:
                    continue
                if target in self.join_ids:
                    if target not in waiting:
                        waiting.append(target)
                    continue
            else:
                target = waiting.pop(0)
                if target in done:
                    continue

            _, next_ids = await self._step(target, context)
            done.add(target)
            pending.extend(self._follow(target, next_ids, done))

        return first_result

    def _follow(self, source: str, next_ids: List[str], done: Set[str]) -> List[str]:
        """Stack entries for ``next_ids``; re-opens the cycle behind any closing edge."""
        for target in next_ids:
            if (source, target) in self.back_edges:
                if target not in self._downstream:
                    self._downstream[target] = self.definition.reachable_nodes(target)
                done.difference_update(self._downstream[target])
        return list(reversed(next_ids))

    async def _step(self, node_id: str, context: ExecutionContext) -> Tuple[Any, List[str]]:
        if self.stopped:
            logger.info(f"Execution {self.execution.id} stopped before node {node_id}")
            return None, []

        node = self.definition.get_node(node_id)
        if node is None:
            return None, []

        self.visit_count += 1
        if self.visit_count > self.interpreter.max_node_visits:
            raise NodeExecutionError(
                f"Node visit limit of {self.interpreter.max_node_visits} exceeded",
                node_id=node_id,
                execution_id=self.execution.id
            )

        settings = node_settings(node)
        result, error = await self._execute_node(node, settings, context)
        continuation = self._continuations.pop((node.id, id(context)), None)

        if error is not None and not self.tolerates(settings):
            await self._notify_finished(node, None, error, context, [])
            raise error

        if node.type == NodeType.END.value or isinstance(error, UnknownNodeType):
            next_ids = []
        elif node.type == NodeType.PARALLEL.value:
            next_ids = continuation or []
        else:
            next_ids = self.interpreter.select_next(self.definition, node, result, context)

        await self._notify_finished(node, result, error, context, next_ids)
        return result, next_ids

    async def _execute_node(
        self,
        node: WorkflowNode,
        settings: NodeConfig,
        context: ExecutionContext
    ) -> Tuple[Any, Optional[Exception]]:
        execution = self.execution
        record = execution.get_node_execution(node.id)
        record.status = NodeStatusEnum.RUNNING
        record.start_time = utc_now()
        record.end_time = None
        record.error = None
        record.retry_count = 0
        context.begin_node(node.id)
        execution.current_node_id = node.id

        self.interpreter.event_bus.emit(
            WorkflowEventType.NODE_STARTED, execution.workflow_id, execution.id, node_id=node.id
        )
        if self.on_node_started is not None:
            await self.on_node_started(node, context)

        try:
            with logging_context(node_id=node.id):
                result = await self._dispatch(node, settings, context, record)
        except asyncio.CancelledError:
            record.status = NodeStatusEnum.SKIPPED
            record.end_time = utc_now()
            raise
        except Exception as e:
            message = _error_message(e)
            record.status = NodeStatusEnum.ERROR
            record.end_time = utc_now()
            record.duration = (record.end_time - record.start_time).total_seconds() * 1000
            record.error = message
            if self.first_error is None:
                self.first_error = message

            logger.error(f"Node {node.id} ({node.type}) failed: {message}")
            self.interpreter.event_bus.emit(
                WorkflowEventType.NODE_ERROR, execution.workflow_id, execution.id,
                node_id=node.id, data={"error": message, "duration": record.duration}
            )
            if self.tolerates(settings):
                context.record_result(node.id, None)
            return None, e

        record.status = NodeStatusEnum.COMPLETED
        record.end_time = utc_now()
        record.duration = (record.end_time - record.start_time).total_seconds() * 1000
        record.output = result
        context.record_result(node.id, result)
        self.last_result = result

        if self.options.debug_mode:
            logger.debug(f"Node {node.id} result: {result!r}")
        self.interpreter.event_bus.emit(
            WorkflowEventType.NODE_COMPLETED, execution.workflow_id, execution.id,
            node_id=node.id, data={"result": result, "duration": record.duration}
        )
        return result, None

    async def _dispatch(
        self,
        node: WorkflowNode,
        settings: NodeConfig,
        context: ExecutionContext,
        record: NodeExecution
    ) -> Any:
        dispatcher = self.interpreter.dispatcher

        if node.type not in LEAF_NODE_TYPES:
            return await dispatcher.dispatch(node, context, self)

        timeout = _first_set(settings.timeout, self.options.timeout, self.interpreter.default_node_timeout)
        retries = _first_set(settings.retry_count, self.options.max_retries, self.interpreter.default_max_retries)
        retry_config = RetryConfig(max_retries=retries or 0, base_delay=self.interpreter.retry_base_delay)

        def on_retry(retries_used: int, error: Exception) -> None:
            record.retry_count = retries_used

        return await execute_async_with_retry(
            lambda: run_with_timeout(lambda: dispatcher.dispatch(node, context, self), timeout, node.id),
            retry_config,
            operation=f"node {node.id}",
            on_retry=on_retry
        )

    async def _notify_finished(self, node, result, error, context, next_ids) -> None:
        if self.on_node_finished is not None:
            await self.on_node_finished(node, result, error, context, next_ids)


class GraphInterpreter:
    """
    Executes workflow definitions.

    ``run`` produces a :class:`WorkflowExecution` and fans parallel branches
    out concurrently. ``stream`` walks the same graph strictly sequentially
    and reports chat-style progress for every node.
    """

    def __init__(
        self,
        dispatcher: NodeDispatcher,
        event_bus: EventBus,
        registry: ExecutionRegistry,
        default_node_timeout: Optional[float] = None,
        default_max_retries: int = 0,
        retry_base_delay: float = 0.5,
        max_node_visits: int = 1000
    ):
        self.dispatcher = dispatcher
        self.event_bus = event_bus
        self.registry = registry
        self.default_node_timeout = default_node_timeout
        self.default_max_retries = default_max_retries
        self.retry_base_delay = retry_base_delay
        self.max_node_visits = max_node_visits

    async def run(
        self,
        definition: WorkflowDefinition,
        initial_input: Any = None,
        options: Optional[WorkflowExecutionOptions] = None
    ) -> WorkflowExecution:
        """Execute a workflow. Node and graph failures are reported on the returned record, never raised."""
        execution, _ = await self._drive(
            definition,
            {} if initial_input is None else initial_input,
            options or WorkflowExecutionOptions(),
            execution_id=_new_execution_id("exec"),
            concurrent=True
        )
        return execution

    def reject(self, workflow_id: str, error: InvalidGraph) -> WorkflowExecution:
        """Record a run whose definition or options could not be parsed."""
        execution_id = _new_execution_id("exec")
        message = error.message
        if error.validation_errors:
            message = f"{message}: {'; '.join(error.validation_errors)}"
        execution = WorkflowExecution(
            id=execution_id,
            workflow_id=workflow_id,
            status=ExecutionStatusEnum.ERROR,
            error=message
        )
        execution.end_time = utc_now()
        self.registry.register(execution)

        logger.error(f"Execution {execution_id} rejected: {message}")
        self.event_bus.emit(WorkflowEventType.EXECUTION_STARTED, workflow_id, execution_id)
        self.event_bus.emit(
            WorkflowEventType.EXECUTION_ERROR, workflow_id, execution_id,
            data={"error": message}
        )
        return execution

    async def stream(
        self,
        definition: WorkflowDefinition,
        query: str,
        on_progress: Optional[ProgressCallback] = None,
        options: Optional[WorkflowExecutionOptions] = None,
        rewrite_query: bool = False
    ) -> List[ChatResponse]:
        """
        Walk a workflow for a chat query, one node at a time.

        Returns the completed-node responses collected up to the end of the
        walk or the first unrecoverable failure. Raises InvalidGraph when
        the definition does not validate. With ``rewrite_query`` the agent
        tailors the user query to every node after the start node.
        """
        responses: List[ChatResponse] = []

        async def notify(response: ChatResponse) -> None:
            if on_progress is None:
                return
            try:
                outcome = on_progress(response)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Chat progress callback failed: {e}", exc_info=True)

        async def node_started(node: WorkflowNode, context: ExecutionContext) -> None:
            if rewrite_query:
                context.query_override = await chat.rewrite_query(self.dispatcher.agent, query, node, responses)
            await notify(chat.starting_response(node))

        async def node_finished(node, result, error, context, next_ids) -> None:
            if error is not None:
                response = chat.error_response(node, error)
            else:
                response = chat.completed_response(
                    node, result, context, next_node_id=next_ids[0] if next_ids else None
                )
            responses.append(response)
            await notify(response)

        _, invalid = await self._drive(
            definition,
            {"userQuery": query},
            options or WorkflowExecutionOptions(),
            execution_id=_new_execution_id("chat"),
            concurrent=False,
            on_node_started=node_started,
            on_node_finished=node_finished
        )
        if invalid is not None:
            raise invalid
        return responses

    def select_next(
        self,
        definition: WorkflowDefinition,
        node: WorkflowNode,
        result: Any,
        context: ExecutionContext
    ) -> List[str]:
        """Targets of the outgoing edges to follow after ``node``, in declaration order."""
        if node.type == NodeType.PARALLEL.value:
            return []

        edges = definition.outgoing_edges(node.id)
        if node.type == NodeType.LOOP.value:
            edges = [edge for edge in edges if edge.type != EdgeType.LOOP]

        decision = None
        if node.type == NodeType.CONDITIONAL.value and isinstance(result, dict):
            if isinstance(result.get("result"), bool):
                decision = result["result"]

        return [
            edge.target for edge in edges
            if edge.type != EdgeType.CONDITIONAL or self._edge_satisfied(edge, decision, context)
        ]

    def _edge_satisfied(self, edge: WorkflowEdge, decision: Optional[bool], context: ExecutionContext) -> bool:
        condition = edge.condition
        if condition is None or condition == "":
            return True
        condition = str(condition)

        # Only a bare true/false label follows the decision; expressions are evaluated.
        label = condition.strip().lower()
        if decision is not None and label in ("true", "false"):
            return (label == "true") == decision

        try:
            return self.dispatcher.evaluator.evaluate_bool(condition, context.variables())
        except EvaluationError as e:
            logger.warning(f"Edge {edge.id or edge.source + '->' + edge.target} condition not satisfied: {e.message}")
            return False

    async def _drive(
        self,
        definition: WorkflowDefinition,
        initial_input: Any,
        options: WorkflowExecutionOptions,
        execution_id: str,
        concurrent: bool,
        on_node_started: Optional[NodeStartedHook] = None,
        on_node_finished: Optional[NodeFinishedHook] = None
    ) -> Tuple[WorkflowExecution, Optional[InvalidGraph]]:
        execution = WorkflowExecution(
            id=execution_id,
            workflow_id=definition.id,
            node_executions=[NodeExecution(node_id=node.id) for node in definition.nodes]
        )
        self.registry.register(execution)
        events = self.event_bus

        log_token = set_logging_context(execution_id=execution_id, workflow_id=definition.id)
        try:
            logger.info(f"Starting execution {execution_id} of workflow {definition.id}")
            events.emit(WorkflowEventType.EXECUTION_STARTED, definition.id, execution_id)

            validation = definition.validate_structure()
            for warning in validation.warnings:
                logger.warning(f"Workflow {definition.id}: {warning}")
            if not validation.is_valid:
                invalid = InvalidGraph(
                    f"Invalid workflow: {'; '.join(validation.errors)}",
                    validation_errors=validation.errors,
                    workflow_id=definition.id
                )
                execution.status = ExecutionStatusEnum.ERROR
                execution.error = invalid.message
                execution.end_time = utc_now()
                logger.error(invalid.message)
                events.emit(
                    WorkflowEventType.EXECUTION_ERROR, definition.id, execution_id,
                    data={"error": invalid.message}
                )
                return execution, invalid

            context = ExecutionContext(
                workflow_id=definition.id,
                execution_id=execution_id,
                start_time=execution.start_time
            )
            context.seed(initial_input)
            execution.execution_path = context.execution_path
            execution.node_results = context.node_results

            walk = _Walk(
                self, definition, execution, options, concurrent,
                on_node_started=on_node_started, on_node_finished=on_node_finished
            )
            start_node = definition.start_nodes()[0]

            try:
                await walk.visit(start_node.id, context)
            except asyncio.CancelledError:
                execution.status = ExecutionStatusEnum.ERROR
                execution.error = "Execution cancelled"
                execution.end_time = utc_now()
                events.emit(
                    WorkflowEventType.EXECUTION_ERROR, definition.id, execution_id,
                    data={"error": execution.error}
                )
                raise
            except Exception as e:
                execution.status = ExecutionStatusEnum.ERROR
                execution.error = walk.first_error or _error_message(e)

            execution.final_result = walk.last_result
            execution.current_node_id = context.current_node_id

            if execution.status == ExecutionStatusEnum.PAUSED:
                logger.info(f"Execution {execution_id} stopped")
                events.emit(WorkflowEventType.EXECUTION_STOPPED, definition.id, execution_id)
            elif execution.status == ExecutionStatusEnum.RUNNING:
                execution.status = ExecutionStatusEnum.COMPLETED
                execution.end_time = utc_now()
                logger.info(f"Execution {execution_id} completed")
                events.emit(WorkflowEventType.EXECUTION_COMPLETED, definition.id, execution_id)
            else:
                execution.end_time = utc_now()
                logger.error(f"Execution {execution_id} failed: {execution.error}")
                events.emit(
                    WorkflowEventType.EXECUTION_ERROR, definition.id, execution_id,
                    data={"error": execution.error}
                )
            return execution, None
        finally:
            clear_logging_context(log_token)
