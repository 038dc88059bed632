"""Saga compensation: undo completed steps in reverse (LIFO) order."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from registry.action_registry import ActionRegistry, call_handler
from shared.workflow_contracts import ExecutedStep, ExecutionContext

if TYPE_CHECKING:
    from observability.hooks import HookBus
    from observability.logger import Observability

logger = logging.getLogger(__name__)


class CompensationManager:
    """Best-effort rollback over executed steps. Never raises to the caller."""

    def __init__(self, actions: ActionRegistry, hooks: HookBus | None = None):
        self.actions = actions
        self.hooks = hooks

    async def compensate(
        self,
        steps: list[ExecutedStep],
        context: ExecutionContext,
        obs: Observability | None = None,
        workflow: str | None = None,
    ) -> list[str]:
        """Compensate ``steps`` most-recent first. Returns node ids that were undone."""
        if not steps:
            return []

        self._log(obs, "compensation_started", {"step_count": len(steps)}, "info")
        compensated: list[str] = []

        for step in reversed(steps):
            action = self.actions.get(step.action_name)
            if action is None or action.compensate is None:
                self._log(
                    obs,
                    "step_not_compensatable",
                    {"node_id": step.node_id, "action": step.action_name},
                    "warn",
                )
                continue

            try:
                await call_handler(action.compensate, step.context_snapshot, step.result)
            except Exception as exc:
                self._log(
                    obs,
                    "compensation_failed",
                    {"node_id": step.node_id, "action": step.action_name, "error": str(exc)},
                    "error",
                )
                continue

            compensated.append(step.node_id)
            self._log(obs, "step_compensated", {"node_id": step.node_id, "action": step.action_name}, "debug")
            if self.hooks is not None:
                self.hooks.emit(
                    "step.compensated",
                    workflow=workflow,
                    run_id=context.workflow_id,
                    node_id=step.node_id,
                    payload={
                        "action": step.action_name,
                        "context": step.context_snapshot,
                        "result": step.result,
                    },
                )

        self._log(obs, "compensation_completed", {"compensated": compensated}, "info")
        return compensated

    def _log(self, obs: Observability | None, event: str, payload: dict, level: str) -> None:
        if obs is not None:
            obs.log_event(event, payload, level=level)
            return
        log_method = logger.warning if level in ("warn", "error") else logger.debug
        log_method("%s %s", event, payload)
