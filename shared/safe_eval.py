"""Sandboxed condition expressions.

Only boolean and comparison operators over whitelisted names are
supported; nothing is ever handed to ``eval``/``exec``. Attribute access
walks mappings and never touches private or dunder names.
"""

from __future__ import annotations

import ast
from typing import Any, Iterable, Mapping


class SafeExpressionError(ValueError):
    """Raised when an expression contains unsupported/unsafe constructs."""


_ALLOWED_FUNCS = {
    "len": len,
}

_LITERAL_NAMES = {
    "True": True,
    "False": False,
    "None": None,
    "true": True,
    "false": False,
    "null": None,
}


class _SafeEvaluator:
    def __init__(self, namespace: Mapping[str, Any], allowed_names: Iterable[str]):
        self.namespace = namespace
        self.allowed_names = set(allowed_names)

    def eval(self, expression: str) -> Any:
        try:
            tree = ast.parse(expression, mode="eval")
        except SyntaxError as exc:
            raise SafeExpressionError(f"Invalid expression syntax: {exc.msg}") from exc
        return self._eval_node(tree)

    def _eval_node(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return self._eval_node(node.body)

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in _LITERAL_NAMES:
                return _LITERAL_NAMES[node.id]
            if node.id not in self.allowed_names:
                raise SafeExpressionError(f"Name '{node.id}' is not available in conditions")
            return self.namespace.get(node.id)

        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_"):
                raise SafeExpressionError(f"Access to '{node.attr}' is not allowed")
            value = self._eval_node(node.value)
            if isinstance(value, Mapping):
                return value.get(node.attr)
            return None

        if isinstance(node, ast.Subscript):
            value = self._eval_node(node.value)
            index = self._eval_node(node.slice)
            if isinstance(value, (list, tuple)) and isinstance(index, int):
                if -len(value) <= index < len(value):
                    return value[index]
                return None
            if isinstance(value, Mapping):
                if isinstance(index, str) and index.startswith("_"):
                    raise SafeExpressionError(f"Access to '{index}' is not allowed")
                return value.get(index)
            return None

        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval_node(item) for item in node.elts]

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return all(bool(self._eval_node(value)) for value in node.values)
            if isinstance(node.op, ast.Or):
                return any(bool(self._eval_node(value)) for value in node.values)
            raise SafeExpressionError("Unsupported boolean operator")

        if isinstance(node, ast.UnaryOp):
            operand = self._eval_node(node.operand)
            if isinstance(node.op, ast.Not):
                return not bool(operand)
            if isinstance(node.op, ast.USub) and isinstance(operand, (int, float)):
                return -operand
            raise SafeExpressionError("Unsupported unary operator")

        if isinstance(node, ast.Compare):
            left = self._eval_node(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval_node(comparator)
                if not self._compare(op, left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name):
                raise SafeExpressionError("Only direct safe function calls are allowed")
            fn = _ALLOWED_FUNCS.get(node.func.id)
            if fn is None:
                raise SafeExpressionError(f"Function '{node.func.id}' is not allowed")
            if node.keywords or len(node.args) != 1:
                raise SafeExpressionError(f"Function '{node.func.id}' takes exactly one argument")
            value = self._eval_node(node.args[0])
            return fn(value) if value is not None else 0

        raise SafeExpressionError(f"Unsupported expression node: {type(node).__name__}")

    def _compare(self, op: ast.cmpop, left: Any, right: Any) -> bool:
        try:
            if isinstance(op, ast.Eq):
                return left == right
            if isinstance(op, ast.NotEq):
                return left != right
            if isinstance(op, ast.Lt):
                return left < right
            if isinstance(op, ast.LtE):
                return left <= right
            if isinstance(op, ast.Gt):
                return left > right
            if isinstance(op, ast.GtE):
                return left >= right
            if isinstance(op, ast.In):
                return left in right
            if isinstance(op, ast.NotIn):
                return left not in right
            if isinstance(op, ast.Is):
                return left is right
            if isinstance(op, ast.IsNot):
                return left is not right
        except TypeError as exc:
            raise SafeExpressionError(f"Cannot compare {type(left).__name__} with {type(right).__name__}") from exc
        raise SafeExpressionError(f"Unsupported comparison operator: {type(op).__name__}")


def evaluate_expression(
    expression: str,
    namespace: Mapping[str, Any],
    allowed_names: Iterable[str] | None = None,
) -> Any:
    """Evaluate a constrained expression, raising SafeExpressionError on misuse."""
    expr = str(expression or "").strip()
    if not expr:
        raise SafeExpressionError("Expression is empty")
    names = namespace.keys() if allowed_names is None else allowed_names
    return _SafeEvaluator(namespace, names).eval(expr)


def evaluate_bool(
    expression: str,
    namespace: Mapping[str, Any],
    allowed_names: Iterable[str] | None = None,
) -> bool:
    return bool(evaluate_expression(expression, namespace, allowed_names))
