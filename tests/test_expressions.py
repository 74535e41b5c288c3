"""Tests for the restricted expression evaluator."""

import pytest

from agentflow.core.exceptions import EvaluationError
from agentflow.core.expressions import SafeExpressionEvaluator, normalize_expression


@pytest.fixture
def evaluator():
    return SafeExpressionEvaluator()


@pytest.fixture
def variables():
    return {
        "results": {
            "tool": {"toolName": "read_file", "count": 3, "items": ["a", "b", "c"]},
            "check": {"result": True},
        },
        "threshold": 2,
        "iteration": 1,
    }


class TestNormalization:
    """JavaScript spellings accepted from the workflow editor."""

    @pytest.mark.parametrize("source,expected", [
        ("a === b", "a == b"),
        ("a !== b", "a != b"),
        ("a && b", "a  and  b"),
        ("a || b", "a  or  b"),
        ("!a", "not a"),
        ("a != b", "a != b"),
        ("x == true", "x == True"),
        ("y === null || z === undefined", "y == None  or  z == None"),
    ])
    def test_rewrites(self, source, expected):
        assert normalize_expression(source) == expected

    def test_string_literals_are_untouched(self):
        assert normalize_expression("label == 'true && false'") == "label == 'true && false'"


class TestEvaluation:
    """Supported expression forms."""

    @pytest.mark.parametrize("expression,expected", [
        ("results.tool.count > threshold", True),
        ("results.tool.toolName == 'read_file'", True),
        ("results['tool']['items'][-1]", "c"),
        ("results.tool.items[0:2]", ["a", "b"]),
        ("len(results.tool.items) * 2", 6),
        ("1 < iteration + 1 <= 2", True),
        ("max([1, 5, 3])", 5),
        ("'yes' if results.check.result else 'no'", "yes"),
        ("{'total': results.tool.count}", {"total": 3}),
        ("'b' in results.tool.items", True),
        ("results.missing", None),
        ("-threshold ** 2", -4),
        ("round(10 / 4, 1)", 2.5),
    ])
    def test_expressions(self, evaluator, variables, expression, expected):
        assert evaluator.evaluate(expression, variables) == expected

    def test_javascript_style_condition(self, evaluator, variables):
        assert evaluator.evaluate("results.check.result === true && !(threshold > 5)", variables) is True

    def test_boolean_operators_short_circuit(self, evaluator):
        assert evaluator.evaluate("false && missing_name", {}) is False
        assert evaluator.evaluate("true || missing_name", {}) is True

    def test_boolean_operators_return_deciding_operand(self, evaluator):
        assert evaluator.evaluate("0 or 'fallback'", {}) == "fallback"

    def test_evaluate_bool(self, evaluator):
        assert evaluator.evaluate_bool("[]", {}) is False
        assert evaluator.evaluate_bool("results.tool.items", {"results": {"tool": {"items": [1]}}}) is True


class TestRestrictions:
    """Everything outside the whitelist raises EvaluationError."""

    @pytest.mark.parametrize("expression", [
        "__import__('os')",
        "open('/etc/passwd')",
        "results.__class__",
        "threshold.__class__",
        "results.tool.get('count')",
        "'abc'.upper()",
        "[x for x in results]",
        "lambda: 1",
        "2 ** 1000",
        "'a' * 100000",
        "max(*results)",
        "dict(**results)",
        "missing_name",
        "None.field",
        "1 +",
        "",
        "   ",
    ])
    def test_rejected(self, evaluator, variables, expression):
        with pytest.raises(EvaluationError):
            evaluator.evaluate(expression, variables)

    def test_error_carries_expression(self, evaluator):
        with pytest.raises(EvaluationError) as exc_info:
            evaluator.evaluate("unknown > 1", {})

        assert exc_info.value.expression == "unknown > 1"
        assert exc_info.value.details["expression"] == "unknown > 1"
        assert exc_info.value.recoverable is False

    def test_runtime_errors_are_wrapped(self, evaluator):
        with pytest.raises(EvaluationError, match="division by zero"):
            evaluator.evaluate("1 / 0", {})
