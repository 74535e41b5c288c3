"""Tests for the execution registry and the execution context."""

import pytest

from agentflow.core.context import INITIAL_RESULT_KEY, ExecutionContext
from agentflow.core.exceptions import ExecutionNotFoundError
from agentflow.core.registry import ExecutionRegistry
from agentflow.models.core import ExecutionStatusEnum, WorkflowExecution


def make_execution(execution_id, status=ExecutionStatusEnum.RUNNING):
    return WorkflowExecution(id=execution_id, workflow_id="wf", status=status)


class TestExecutionRegistry:
    """Registry lifecycle."""

    def test_register_and_lookup(self):
        registry = ExecutionRegistry()
        execution = make_execution("exec_1")

        registry.register(execution)

        assert registry.get("exec_1") is execution
        assert registry.require("exec_1") is execution
        assert registry.get("exec_2") is None
        assert len(registry) == 1

    def test_require_unknown_raises(self):
        with pytest.raises(ExecutionNotFoundError) as exc_info:
            ExecutionRegistry().require("exec_missing")

        assert exc_info.value.context["execution_id"] == "exec_missing"

    def test_oldest_finished_executions_are_evicted(self):
        registry = ExecutionRegistry(max_executions=2)
        registry.register(make_execution("old_running"))
        registry.register(make_execution("old_done", ExecutionStatusEnum.COMPLETED))
        registry.register(make_execution("newest"))

        assert [execution.id for execution in registry.list()] == ["old_running", "newest"]

    def test_running_executions_are_never_evicted(self):
        registry = ExecutionRegistry(max_executions=1)
        registry.register(make_execution("a"))
        registry.register(make_execution("b"))

        assert len(registry) == 2

    def test_request_stop_pauses_running_execution(self):
        registry = ExecutionRegistry()
        execution = make_execution("exec_1")
        registry.register(execution)

        assert registry.request_stop("exec_1") is True
        assert execution.status == ExecutionStatusEnum.PAUSED
        assert execution.end_time is not None
        assert registry.request_stop("exec_1") is False

    def test_request_stop_ignores_finished_and_unknown(self):
        registry = ExecutionRegistry()
        registry.register(make_execution("done", ExecutionStatusEnum.ERROR))

        assert registry.request_stop("done") is False
        assert registry.request_stop("missing") is False

    def test_dispose(self):
        registry = ExecutionRegistry()
        registry.register(make_execution("exec_1"))

        assert registry.dispose("exec_1") is True
        assert registry.dispose("exec_1") is False
        assert registry.list() == []


class TestExecutionContext:
    """Run-scoped state."""

    @pytest.fixture
    def context(self):
        ctx = ExecutionContext(workflow_id="wf", execution_id="exec_1")
        ctx.seed({"userQuery": "hello"})
        return ctx

    def test_seed_stores_initial_input(self, context):
        assert context.node_results[INITIAL_RESULT_KEY] == {"userQuery": "hello"}
        assert context.user_query == "hello"

    def test_user_query_requires_mapping_input(self):
        ctx = ExecutionContext(workflow_id="wf", execution_id="exec_1")
        ctx.seed("plain text")

        assert ctx.user_query is None

    def test_previous_result_follows_path(self, context):
        context.begin_node("start")
        assert context.previous_result() == {"userQuery": "hello"}

        context.record_result("start", {"step": 1})
        context.begin_node("next")
        assert context.previous_result() == {"step": 1}
        assert context.current_node_id == "next"

    def test_fork_is_independent(self, context):
        context.global_variables["shared"] = {"count": 1}
        fork = context.fork()

        fork.global_variables["shared"]["count"] = 2
        fork.begin_node("branch")

        assert context.global_variables["shared"] == {"count": 1}
        assert context.execution_path == []

    def test_merge_appends_new_path_and_results(self, context):
        context.begin_node("par")
        fork = context.fork()
        base = len(fork.execution_path)
        fork.begin_node("a")
        fork.record_result("a", "A")
        fork.global_variables["iteration"] = 3

        context.merge(fork, base)

        assert context.execution_path == ["par", "a"]
        assert context.node_results["a"] == "A"
        assert context.global_variables["iteration"] == 3

    def test_variables_binding(self, context):
        context.global_variables["limit"] = 5
        context.record_result("tool", {"ok": True})

        bound = context.variables(input="x")

        assert bound["limit"] == 5
        assert bound["results"]["tool"] == {"ok": True}
        assert bound["variables"] == {"limit": 5}
        assert bound["input"] == "x"
        assert bound["context"]["executionId"] == "exec_1"
        assert bound["iteration"] is None
