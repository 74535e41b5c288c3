"""
Restricted expression evaluation for conditions, transforms and aggregation scripts.

Expressions are parsed with :mod:`ast` and interpreted node by node against a
whitelist; nothing is ever handed to ``eval``. JavaScript-flavoured spellings
written by the workflow editor (``===``, ``&&``, ``true``, ``null`` ...) are
normalised to Python before parsing.
"""

import ast
import operator
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Dict

from .exceptions import EvaluationError


SAFE_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Not: operator.not_,
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.In: lambda x, y: x in y,
    ast.NotIn: lambda x, y: x not in y,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

SAFE_FUNCTIONS = {
    'len': len,
    'str': str,
    'int': int,
    'float': float,
    'bool': bool,
    'abs': abs,
    'min': min,
    'max': max,
    'sum': sum,
    'round': round,
    'sorted': sorted,
    'any': any,
    'all': all,
    'list': list,
    'dict': dict,
}

MAX_EXPONENT = 100
MAX_SEQUENCE_LENGTH = 10000

_STRING_LITERAL = re.compile(r"""("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')""")

_JS_REWRITES = [
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\bnull\b"), "None"),
    (re.compile(r"\bundefined\b"), "None"),
]


def normalize_expression(expression: str) -> str:
    """Rewrite JavaScript operators and literals outside of string literals."""
    parts = _STRING_LITERAL.split(expression)
    for index in range(0, len(parts), 2):
        segment = parts[index]
        for pattern, replacement in _JS_REWRITES:
            segment = pattern.sub(replacement, segment)
        parts[index] = segment
    return "".join(parts).strip()


class ExpressionEvaluator(ABC):
    """Pluggable evaluator used by the dispatcher and the interpreter."""

    @abstractmethod
    def evaluate(self, expression: str, variables: Dict[str, Any]) -> Any:
        """Evaluate ``expression`` with ``variables`` bound; raise EvaluationError on failure."""

    def evaluate_bool(self, expression: str, variables: Dict[str, Any]) -> bool:
        return bool(self.evaluate(expression, variables))


class _SafeVisitor(ast.NodeVisitor):
    """AST visitor that only understands the whitelisted node types."""

    def __init__(self, variables: Dict[str, Any]):
        self.variables = variables

    def visit_Expression(self, node):
        return self.visit(node.body)

    def visit_Constant(self, node):
        return node.value

    def visit_Name(self, node):
        if node.id in self.variables:
            return self.variables[node.id]
        raise ValueError(f"Undefined variable: {node.id}")

    def visit_List(self, node):
        return [self.visit(element) for element in node.elts]

    def visit_Tuple(self, node):
        return tuple(self.visit(element) for element in node.elts)

    def visit_Set(self, node):
        return {self.visit(element) for element in node.elts}

    def visit_Dict(self, node):
        if any(key is None for key in node.keys):
            raise ValueError("Dictionary unpacking is not allowed")
        return {self.visit(key): self.visit(value) for key, value in zip(node.keys, node.values)}

    def visit_Attribute(self, node):
        if node.attr.startswith("_"):
            raise ValueError(f"Access to private attribute not allowed: {node.attr}")
        value = self.visit(node.value)
        if isinstance(value, Mapping):
            return value.get(node.attr)
        if value is None:
            raise ValueError(f"Cannot read attribute '{node.attr}' of None")
        attribute = getattr(value, node.attr)
        if callable(attribute):
            raise ValueError(f"Method access not allowed: {node.attr}")
        return attribute

    def visit_Subscript(self, node):
        value = self.visit(node.value)
        return value[self.visit(node.slice)]

    def visit_Slice(self, node):
        lower = self.visit(node.lower) if node.lower is not None else None
        upper = self.visit(node.upper) if node.upper is not None else None
        step = self.visit(node.step) if node.step is not None else None
        return slice(lower, upper, step)

    def visit_BinOp(self, node):
        left = self.visit(node.left)
        right = self.visit(node.right)
        op_type = type(node.op)

        if op_type not in SAFE_OPERATORS:
            raise ValueError(f"Operator not allowed: {op_type.__name__}")

        if op_type is ast.Pow and isinstance(right, (int, float)) and abs(right) > MAX_EXPONENT:
            raise ValueError(f"Exponent too large: {right}")
        if op_type is ast.Mult:
            self._check_repetition(left, right)
            self._check_repetition(right, left)

        return SAFE_OPERATORS[op_type](left, right)

    @staticmethod
    def _check_repetition(sequence, count):
        if isinstance(sequence, (str, list, tuple)) and isinstance(count, int):
            if len(sequence) * count > MAX_SEQUENCE_LENGTH:
                raise ValueError("Sequence repetition too large")

    def visit_UnaryOp(self, node):
        operand = self.visit(node.operand)
        op_type = type(node.op)

        if op_type not in SAFE_OPERATORS:
            raise ValueError(f"Operator not allowed: {op_type.__name__}")

        return SAFE_OPERATORS[op_type](operand)

    def visit_Compare(self, node):
        left = self.visit(node.left)

        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            op_type = type(op)

            if op_type not in SAFE_OPERATORS:
                raise ValueError(f"Operator not allowed: {op_type.__name__}")

            if not SAFE_OPERATORS[op_type](left, right):
                return False

            left = right

        return True

    def visit_BoolOp(self, node):
        # Short-circuits and yields the deciding operand, like Python itself.
        if isinstance(node.op, ast.And):
            value = True
            for operand in node.values:
                value = self.visit(operand)
                if not value:
                    return value
            return value
        if isinstance(node.op, ast.Or):
            value = False
            for operand in node.values:
                value = self.visit(operand)
                if value:
                    return value
            return value
        raise ValueError(f"Boolean operator not allowed: {type(node.op).__name__}")

    def visit_IfExp(self, node):
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)

    def visit_Call(self, node):
        if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_FUNCTIONS:
            name = getattr(node.func, 'id', getattr(node.func, 'attr', 'unknown'))
            raise ValueError(f"Function not allowed: {name}")

        args = []
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                raise ValueError("Argument unpacking is not allowed")
            args.append(self.visit(arg))

        kwargs = {}
        for keyword in node.keywords:
            if keyword.arg is None:
                raise ValueError("Keyword unpacking is not allowed")
            kwargs[keyword.arg] = self.visit(keyword.value)

        return SAFE_FUNCTIONS[node.func.id](*args, **kwargs)

    def generic_visit(self, node):
        raise ValueError(f"Expression element not allowed: {type(node).__name__}")


class SafeExpressionEvaluator(ExpressionEvaluator):
    """
    Default evaluator: a whitelisted subset of Python expressions.

    Examples:
        >>> SafeExpressionEvaluator().evaluate("results.tool.count > 2", {"results": {"tool": {"count": 3}}})
        True
        >>> SafeExpressionEvaluator().evaluate("input.value === 'x' && true", {"input": {"value": "x"}})
        True
    """

    def evaluate(self, expression: str, variables: Dict[str, Any]) -> Any:
        if not isinstance(expression, str) or not expression.strip():
            raise EvaluationError("Expression must be a non-empty string", expression=expression)

        source = normalize_expression(expression)
        try:
            tree = ast.parse(source, mode='eval')
        except SyntaxError as e:
            raise EvaluationError(f"Invalid expression syntax: {e.msg}", expression=expression)

        try:
            return _SafeVisitor(variables).visit(tree)
        except EvaluationError:
            raise
        except Exception as e:
            raise EvaluationError(f"Expression evaluation failed: {e}", expression=expression)
