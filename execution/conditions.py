"""Condition evaluation for conditional nodes.

Conditions are resolved in this order:
1. a predicate registered under the condition name;
2. the literals ``true`` / ``false``;
3. when enabled, a sandboxed expression over whitelisted context fields.

Anything else is an unknown condition and fails the node.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from registry.action_registry import call_handler
from shared.errors import WorkflowError
from shared.safe_eval import SafeExpressionError, evaluate_bool
from shared.workflow_contracts import ExecutionContext

logger = logging.getLogger(__name__)

Predicate = Callable[[ExecutionContext], Any]

EXPRESSION_FIELDS: tuple[str, ...] = ("results", "flags", "config", "target_ids", "rolls", "initiator_id", "correlation_id")

_LITERALS = {"true": True, "false": False}


class ConditionEvaluator:
    """Closed registry of named predicates, with optional safe expressions."""

    def __init__(self, allow_expressions: bool = False):
        self.allow_expressions = allow_expressions
        self._predicates: dict[str, Predicate] = {}

    def register(self, name: str, predicate: Predicate) -> None:
        key = str(name or "").strip()
        if not key:
            raise WorkflowError("Condition name must not be empty")
        if key.lower() in _LITERALS:
            raise WorkflowError(f"Condition name '{key}' is reserved")
        if not callable(predicate):
            raise WorkflowError(f"Condition {key} must be callable")
        self._predicates[key] = predicate

    def list(self) -> list[str]:
        return list(self._predicates.keys())

    async def evaluate(self, name: str, context: ExecutionContext) -> bool:
        """Evaluate ``name`` against ``context``; raises WorkflowError on failure."""
        key = str(name or "").strip()

        predicate = self._predicates.get(key)
        if predicate is not None:
            try:
                return bool(await call_handler(predicate, context))
            except Exception as exc:
                raise WorkflowError(f"Condition '{key}' failed: {exc}") from exc

        if key.lower() in _LITERALS:
            return _LITERALS[key.lower()]

        if self.allow_expressions:
            namespace = self._expression_namespace(context)
            try:
                return evaluate_bool(key, namespace, allowed_names=(*EXPRESSION_FIELDS, "ctx"))
            except SafeExpressionError as exc:
                logger.warning("Condition expression rejected: %s (%s)", key, exc)
                raise WorkflowError(f"Condition evaluation failed: {exc}") from exc

        raise WorkflowError(f"Unknown condition: {key}")

    def _expression_namespace(self, context: ExecutionContext) -> dict[str, Any]:
        data = context.model_dump(include=set(EXPRESSION_FIELDS))
        data["ctx"] = dict(data)
        return data
