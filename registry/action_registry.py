"""
Action Registry — Maps action name → bound action implementation.

Responsibility:
- Check the action contract once, at registration time
- Bind optional capabilities (compensate, idempotency_key) or their defaults

Prohibitions:
- No execution logic
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol, runtime_checkable

from shared.errors import WorkflowError
from shared.workflow_contracts import ExecutionContext, WorkflowResult

logger = logging.getLogger(__name__)


@runtime_checkable
class Action(Protocol):
    """Contract every workflow action implements.

    ``validate`` and ``check_permission`` signal rejection by raising and
    must not have side effects. ``execute`` returns a WorkflowResult (or a
    dict with the same fields). Each method may be sync or ``async``.
    """

    def validate(self, ctx: ExecutionContext) -> Any:
        ...

    def check_permission(self, ctx: ExecutionContext) -> Any:
        ...

    def execute(self, ctx: ExecutionContext) -> Any:
        ...


@runtime_checkable
class CompensatableAction(Protocol):
    """Optional capability: best-effort undo of a completed execution."""

    def compensate(self, ctx: ExecutionContext, result: WorkflowResult) -> Any:
        ...


@runtime_checkable
class IdempotentAction(Protocol):
    """Optional capability: stable key a retry layer can deduplicate on."""

    def idempotency_key(self, ctx: ExecutionContext) -> str | None:
        ...


async def call_handler(fn: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async callable and return its resolved value."""
    outcome = fn(*args)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


def _noop(ctx: ExecutionContext) -> None:
    return None


@dataclass(frozen=True)
class RegisteredAction:
    name: str
    handler: Any
    validate: Callable[[ExecutionContext], Any]
    check_permission: Callable[[ExecutionContext], Any]
    execute: Callable[[ExecutionContext], Any]
    compensate: Callable[[ExecutionContext, WorkflowResult], Any] | None
    idempotency_key: Callable[[ExecutionContext], Any]

    @property
    def compensatable(self) -> bool:
        return self.compensate is not None


def _bound(handler: Any, attr: str) -> Callable[..., Any] | None:
    fn = getattr(handler, attr, None)
    return fn if callable(fn) else None


class ActionRegistry:
    """Registry mapping action names to their bound implementations."""

    def __init__(self) -> None:
        self._actions: dict[str, RegisteredAction] = {}

    def register(self, name: str, handler: Any) -> RegisteredAction:
        """Register an action object (instance, class or module)."""
        key = str(name or "").strip()
        if not key:
            raise WorkflowError("Action name must not be empty")

        execute = _bound(handler, "execute")
        if execute is None:
            raise WorkflowError(f"Action {key} missing execute method")

        compensate = _bound(handler, "compensate")
        registered = RegisteredAction(
            name=key,
            handler=handler,
            validate=_bound(handler, "validate") or _noop,
            check_permission=_bound(handler, "check_permission") or _noop,
            execute=execute,
            compensate=compensate,
            idempotency_key=_bound(handler, "idempotency_key") or _noop,
        )

        if key in self._actions:
            logger.info("Replacing registered action: %s", key)
        if compensate is None:
            logger.info("Action %s is not compensatable", key)

        self._actions[key] = registered
        logger.debug("Registered action: %s → %s", key, getattr(handler, "__name__", type(handler).__name__))
        return registered

    def get(self, name: str) -> RegisteredAction | None:
        """Resolve an action by name. Returns None if not found."""
        return self._actions.get(name)

    def list(self) -> list[str]:
        return list(self._actions.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._actions
