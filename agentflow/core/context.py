"""Run-scoped mutable state with explicit fork and merge."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from ..models.core import CamelModel, ExecutionStatusEnum, utc_now


INITIAL_RESULT_KEY = "__initial"


class ExecutionContext(CamelModel):
    """
    Mutable state of one workflow run.

    Parallel branches and loop iterations work on a fork (a deep copy) and
    are folded back with ``merge`` once they finish, so concurrent branches
    never write into the same dictionaries.
    """

    workflow_id: str
    execution_id: str
    current_node_id: Optional[str] = None
    node_results: Dict[str, Any] = Field(default_factory=dict)
    global_variables: Dict[str, Any] = Field(default_factory=dict)
    execution_path: List[str] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=utc_now)
    status: ExecutionStatusEnum = ExecutionStatusEnum.RUNNING
    iteration_count: Optional[int] = None
    query_override: Optional[str] = None

    def seed(self, initial_input: Any) -> None:
        self.node_results[INITIAL_RESULT_KEY] = initial_input

    @property
    def initial_input(self) -> Any:
        return self.node_results.get(INITIAL_RESULT_KEY)

    @property
    def initial_query(self) -> Optional[str]:
        initial = self.initial_input
        if isinstance(initial, dict):
            return initial.get("userQuery")
        return None

    @property
    def user_query(self) -> Optional[str]:
        """Query handed to agent prompts; a rewritten query wins over the initial one."""
        return self.query_override or self.initial_query

    def begin_node(self, node_id: str) -> None:
        """Append a node to the path and make it current."""
        self.execution_path.append(node_id)
        self.current_node_id = node_id

    def record_result(self, node_id: str, result: Any) -> None:
        self.node_results[node_id] = result

    def previous_result(self) -> Any:
        """Result of the node that ran right before the current one on this path."""
        if len(self.execution_path) < 2:
            return self.initial_input
        return self.node_results.get(self.execution_path[-2])

    def fork(self) -> "ExecutionContext":
        """Deep copy owned by one parallel branch or loop iteration."""
        return self.model_copy(deep=True)

    def merge(self, fork: "ExecutionContext", base_path_length: int) -> None:
        """
        Fold a finished fork back into this context.

        Path entries appended by the fork after ``base_path_length`` are
        added to this path and their results copied over. Global variables
        set by the fork win over the parent's.
        """
        for node_id in fork.execution_path[base_path_length:]:
            self.execution_path.append(node_id)
            if node_id in fork.node_results:
                self.node_results[node_id] = fork.node_results[node_id]
        self.global_variables.update(fork.global_variables)

    def variables(self, **extra: Any) -> Dict[str, Any]:
        """Names bound when evaluating an expression against this context."""
        bound: Dict[str, Any] = dict(self.global_variables)
        bound.update({
            "context": self.model_dump(by_alias=True),
            "results": self.node_results,
            "variables": self.global_variables,
            "iteration": self.global_variables.get("iteration", self.iteration_count),
        })
        bound.update(extra)
        return bound
