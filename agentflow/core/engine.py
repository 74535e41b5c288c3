"""Run-control surface of the workflow engine."""

from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from ..config import AppConfig, get_config
from ..models.core import (
    ChatResponse, ValidationResult, WorkflowDefinition, WorkflowExecution, WorkflowExecutionOptions
)
from .agent import AgentCollaborator
from .dispatcher import NodeDispatcher
from .events import EventBus, EventCallback
from .exceptions import InvalidGraph
from .expressions import ExpressionEvaluator, SafeExpressionEvaluator
from .interpreter import GraphInterpreter, ProgressCallback
from .logging import get_logger
from .registry import ExecutionRegistry


logger = get_logger(__name__)

DefinitionInput = Union[WorkflowDefinition, Dict[str, Any]]
OptionsInput = Union[WorkflowExecutionOptions, Dict[str, Any], None]


def _describe(error: ValidationError) -> List[str]:
    return [f"{'.'.join(str(part) for part in item['loc'])}: {item['msg']}" for item in error.errors()]


def _workflow_id(definition: Any) -> str:
    if isinstance(definition, WorkflowDefinition):
        return definition.id
    if isinstance(definition, dict) and isinstance(definition.get("id"), str):
        return definition["id"]
    return "unknown"


class WorkflowEngine:
    """
    Facade wiring the interpreter, dispatcher, event bus and run registry.

    Definitions and options may be passed as models or as camelCase dicts
    straight from the workflow editor.
    """

    def __init__(
        self,
        agent: AgentCollaborator,
        evaluator: Optional[ExpressionEvaluator] = None,
        event_bus: Optional[EventBus] = None,
        registry: Optional[ExecutionRegistry] = None,
        config: Optional[AppConfig] = None
    ):
        self.config = config or get_config()
        self.agent = agent
        self.evaluator = evaluator or SafeExpressionEvaluator()
        self.event_bus = event_bus or EventBus()
        self.registry = registry or ExecutionRegistry(max_executions=self.config.max_tracked_executions)
        self.dispatcher = NodeDispatcher(
            agent,
            self.evaluator,
            default_iteration_delay=self.config.loop_iteration_delay
        )
        self.interpreter = GraphInterpreter(
            self.dispatcher,
            self.event_bus,
            self.registry,
            default_node_timeout=self.config.default_node_timeout,
            default_max_retries=self.config.default_max_retries,
            retry_base_delay=self.config.retry_base_delay,
            max_node_visits=self.config.max_node_visits
        )
        logger.info("WorkflowEngine initialized")

    @staticmethod
    def _coerce_definition(definition: DefinitionInput) -> WorkflowDefinition:
        if isinstance(definition, WorkflowDefinition):
            return definition
        try:
            return WorkflowDefinition.model_validate(definition)
        except ValidationError as e:
            raise InvalidGraph("Workflow definition could not be parsed", validation_errors=_describe(e))

    @staticmethod
    def _coerce_options(options: OptionsInput) -> WorkflowExecutionOptions:
        if options is None:
            return WorkflowExecutionOptions()
        if isinstance(options, WorkflowExecutionOptions):
            return options
        try:
            return WorkflowExecutionOptions.model_validate(options)
        except ValidationError as e:
            raise InvalidGraph("Execution options could not be parsed", validation_errors=_describe(e))

    def validate_workflow(self, definition: DefinitionInput) -> ValidationResult:
        try:
            workflow = self._coerce_definition(definition)
        except InvalidGraph as e:
            return ValidationResult(is_valid=False, errors=e.validation_errors)
        return workflow.validate_structure()

    async def execute_workflow(
        self,
        definition: DefinitionInput,
        initial_input: Any = None,
        options: OptionsInput = None
    ) -> WorkflowExecution:
        """
        Execute a workflow to completion.

        Never raises: node failures, structural problems and definitions or
        options that cannot be parsed are all reported on the returned
        execution.
        """
        try:
            workflow = self._coerce_definition(definition)
            run_options = self._coerce_options(options)
        except InvalidGraph as e:
            return self.interpreter.reject(_workflow_id(definition), e)
        return await self.interpreter.run(workflow, initial_input, run_options)

    async def process_query_through_workflow(
        self,
        definition: DefinitionInput,
        query: str,
        on_progress: Optional[ProgressCallback] = None,
        options: OptionsInput = None,
        rewrite_query: Optional[bool] = None
    ) -> List[ChatResponse]:
        """
        Walk a workflow for a chat query, reporting progress per node.

        ``rewrite_query`` defaults to the ``chat_rewrite_queries`` setting.
        """
        workflow = self._coerce_definition(definition)
        if rewrite_query is None:
            rewrite_query = self.config.chat_rewrite_queries
        return await self.interpreter.stream(
            workflow, query, on_progress, self._coerce_options(options), rewrite_query=rewrite_query
        )

    def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        return self.registry.get(execution_id)

    def list_executions(self) -> List[WorkflowExecution]:
        return self.registry.list()

    def stop_execution(self, execution_id: str) -> bool:
        """Request a running execution to stop at its next node boundary."""
        return self.registry.request_stop(execution_id)

    def dispose_execution(self, execution_id: str) -> bool:
        return self.registry.dispose(execution_id)

    def on_event(self, listener_id: str, callback: EventCallback):
        """Subscribe to workflow events. Returns a disposer removing the subscription."""
        return self.event_bus.subscribe(callback, listener_id=listener_id)

    def remove_event_listener(self, listener_id: str) -> bool:
        return self.event_bus.unsubscribe(listener_id)
