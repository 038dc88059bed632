"""
Workflow Coordinator — public facade over the interpreter.

Responsibility:
- Own one set of collaborators (actions, graphs, conditions, hooks, tokens)
- Track active runs and let the host cancel them by run id
- Expose registration/definition at definition time, ``run`` at run time

Prohibitions:
- No domain logic: actions, conditions and artifacts are supplied by the host
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from execution.compensation import CompensationManager
from execution.conditions import ConditionEvaluator, Predicate
from execution.engine import WorkflowExecutor, new_run_id
from execution.resume_tokens import ResumeTokenManager
from execution.token_store import InMemoryResumeTokenStore, ResumeTokenStore, SQLiteResumeTokenStore
from observability.hooks import HookBus, HookCallback
from registry.action_registry import ActionRegistry, RegisteredAction
from registry.graph_store import GraphStore
from shared.config import CoordinatorSettings
from shared.workflow_contracts import ExecutionContext, RunOptions, WorkflowGraph, WorkflowResult

logger = logging.getLogger(__name__)


@dataclass
class ActiveRun:
    run_id: str
    workflow: str
    started_at: datetime
    cancel_event: asyncio.Event


class WorkflowCoordinator:
    """Registers actions and graphs, then interprets runs against them."""

    def __init__(
        self,
        settings: CoordinatorSettings | None = None,
        token_store: ResumeTokenStore | None = None,
    ):
        self.settings = settings or CoordinatorSettings()
        if token_store is None:
            if self.settings.token_db_path:
                token_store = SQLiteResumeTokenStore(db_path=self.settings.token_db_path)
            else:
                token_store = InMemoryResumeTokenStore()

        self.hooks = HookBus()
        self.actions = ActionRegistry()
        self.graphs = GraphStore()
        self.conditions = ConditionEvaluator(allow_expressions=self.settings.allow_condition_expressions)
        self.tokens = ResumeTokenManager(
            token_store,
            ttl_seconds=self.settings.resume_token_ttl_seconds,
            single_use=self.settings.single_use_resume_tokens,
        )
        self.compensation = CompensationManager(self.actions, hooks=self.hooks)
        self.executor = WorkflowExecutor(
            graphs=self.graphs,
            actions=self.actions,
            conditions=self.conditions,
            tokens=self.tokens,
            compensation=self.compensation,
            hooks=self.hooks,
            settings=self.settings,
        )
        self._active: dict[str, ActiveRun] = {}

    @classmethod
    def from_env(cls, token_store: ResumeTokenStore | None = None) -> "WorkflowCoordinator":
        return cls(settings=CoordinatorSettings.from_env(), token_store=token_store)

    # ─── Definition time ───────────────────────────────────────

    def register_action(self, name: str, action: Any) -> RegisteredAction:
        return self.actions.register(name, action)

    def get_action(self, name: str) -> RegisteredAction | None:
        return self.actions.get(name)

    def list_actions(self) -> list[str]:
        return self.actions.list()

    def define_workflow(self, name: str, graph: WorkflowGraph | dict[str, Any]) -> WorkflowGraph:
        return self.graphs.define(name, graph)

    def get_workflow(self, name: str) -> WorkflowGraph | None:
        return self.graphs.get(name)

    def list_workflows(self) -> list[str]:
        return self.graphs.list()

    def register_condition(self, name: str, predicate: Predicate) -> None:
        self.conditions.register(name, predicate)

    def register_artifact_type(self, cls: type, name: str | None = None) -> None:
        self.tokens.register_artifact_type(cls, name=name)

    def on(self, event_type: str, callback: HookCallback) -> None:
        self.hooks.on(event_type, callback)

    def off(self, event_type: str, callback: HookCallback) -> bool:
        return self.hooks.off(event_type, callback)

    # ─── Run time ──────────────────────────────────────────────

    async def run(
        self,
        graph_name: str,
        context: ExecutionContext | dict[str, Any] | None = None,
        options: RunOptions | None = None,
    ) -> WorkflowResult:
        """Run (or resume) ``graph_name``. Never raises; see WorkflowResult.errors."""
        run_id = new_run_id()
        active = ActiveRun(
            run_id=run_id,
            workflow=graph_name,
            started_at=datetime.now(timezone.utc),
            cancel_event=asyncio.Event(),
        )
        self._active[run_id] = active
        try:
            return await self.executor.run(
                graph_name,
                context,
                options,
                run_id=run_id,
                cancel_event=active.cancel_event,
            )
        finally:
            self._active.pop(run_id, None)

    def list_active_runs(self) -> list[dict[str, Any]]:
        return [
            {
                "run_id": active.run_id,
                "workflow": active.workflow,
                "started_at": active.started_at.isoformat(),
                "cancelling": active.cancel_event.is_set(),
            }
            for active in self._active.values()
        ]

    def cancel_run(self, run_id: str) -> bool:
        """Request cancellation; the run stops before its next node."""
        active = self._active.get(run_id)
        if active is None:
            return False
        active.cancel_event.set()
        logger.info("Cancellation requested for run %s (%s)", run_id, active.workflow)
        return True

    async def close(self) -> None:
        for active in self._active.values():
            active.cancel_event.set()
        await self.hooks.drain()
        self.tokens.store.close()
