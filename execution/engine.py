"""Workflow Executor — the graph interpreter.

Walks a workflow graph one node at a time from its start node (or from a
resumed node), dispatching each node by type:

- ``action``: validate → check_permission → execute (execute skipped on dry runs)
- ``conditional``: evaluate a named condition, follow onTrue/onFalse
- ``parallel``: run single-action branches concurrently and join them
- ``pause``: persist a resume token and hand it back to the caller
- ``loop``: accepted but not implemented (warning only)
- ``end``: terminal

Any node failure compensates every completed action step in reverse
order. ``run`` never raises; every failure mode is a non-ok WorkflowResult.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from execution.compensation import CompensationManager
from execution.conditions import ConditionEvaluator
from execution.resume_tokens import ResumeTokenManager
from observability.hooks import HookBus
from observability.logger import Observability
from registry.action_registry import ActionRegistry, call_handler
from registry.graph_store import GraphStore
from shared.config import CoordinatorSettings, normalize_log_level
from shared.errors import ActionPermissionError, ActionValidationError, WorkflowError
from shared.workflow_contracts import (
    ActionNode,
    CancellationSignal,
    ConditionalNode,
    EndNode,
    ExecutedStep,
    ExecutionContext,
    LoopNode,
    ParallelBranch,
    ParallelNode,
    PauseNode,
    RunOptions,
    WorkflowGraph,
    WorkflowResult,
)

logger = logging.getLogger(__name__)


@dataclass
class NodeOutcome:
    result: WorkflowResult
    next_node: str | None = None
    pause: bool = False
    completed_branches: list[ExecutedStep] = field(default_factory=list)
    duration_ms: float = 0.0


@dataclass
class _RunState:
    run_id: str
    graph: WorkflowGraph
    context: ExecutionContext
    obs: Observability
    dry_run: bool
    signals: list[CancellationSignal]
    executed: list[ExecutedStep] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    trace: list[dict[str, Any]] = field(default_factory=list)

    def cancelled(self) -> bool:
        return any(signal.is_set() for signal in self.signals)


def new_run_id() -> str:
    return f"wf_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class WorkflowExecutor:
    """Interpreter over graphs from a GraphStore and actions from an ActionRegistry."""

    def __init__(
        self,
        graphs: GraphStore,
        actions: ActionRegistry,
        conditions: ConditionEvaluator,
        tokens: ResumeTokenManager,
        compensation: CompensationManager | None = None,
        hooks: HookBus | None = None,
        settings: CoordinatorSettings | None = None,
    ):
        self.graphs = graphs
        self.actions = actions
        self.conditions = conditions
        self.tokens = tokens
        self.hooks = hooks or HookBus()
        self.compensation = compensation or CompensationManager(actions, hooks=self.hooks)
        self.settings = settings or CoordinatorSettings()

    async def run(
        self,
        graph_name: str,
        context: ExecutionContext | dict[str, Any] | None = None,
        options: RunOptions | None = None,
        *,
        run_id: str | None = None,
        cancel_event: CancellationSignal | None = None,
    ) -> WorkflowResult:
        """Execute ``graph_name`` against ``context``. Never raises."""
        started = time.perf_counter()
        options = options or RunOptions()
        run_id = run_id or new_run_id()
        obs = Observability(
            run_id=run_id,
            level=normalize_log_level(options.log_level or self.settings.log_level),
            hooks=self.hooks,
            workflow=graph_name,
        )
        obs.log_event(
            "workflow_started",
            {"dry_run": options.dry_run, "resume": bool(options.resume_token)},
        )

        try:
            result = await self._run(graph_name, context, options, run_id, obs, cancel_event)
        except WorkflowError as exc:
            result = WorkflowResult.failure(
                exc.message,
                type="workflow",
                meta={"workflow_id": run_id, "error_code": exc.code},
            )
        except Exception as exc:
            logger.exception("Workflow %s crashed", graph_name)
            result = WorkflowResult.failure(
                f"Workflow execution error: {exc}",
                type="workflow",
                meta={"workflow_id": run_id, "error_code": "INTERNAL_ERROR"},
            )

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        result = result.model_copy(
            update={"meta": {**result.meta, "workflow": graph_name, "dry_run": options.dry_run, "duration_ms": duration_ms}}
        )

        if result.meta.get("paused"):
            return result
        if result.ok:
            obs.log_event("workflow_completed", {"duration_ms": duration_ms})
            self.hooks.emit("workflow.completed", workflow=graph_name, run_id=run_id, payload={"result": result})
        else:
            obs.log_event("workflow_failed", {"errors": result.errors, "duration_ms": duration_ms}, level="error")
            self.hooks.emit(
                "workflow.failed",
                workflow=graph_name,
                run_id=run_id,
                payload={"errors": list(result.errors), "result": result},
            )
        return result

    async def _run(
        self,
        graph_name: str,
        context: ExecutionContext | dict[str, Any] | None,
        options: RunOptions,
        run_id: str,
        obs: Observability,
        cancel_event: CancellationSignal | None,
    ) -> WorkflowResult:
        graph = self.graphs.get(graph_name)
        if graph is None:
            raise WorkflowError(f"Unknown workflow: {graph_name}")

        ctx = self._coerce_context(context)
        current = graph.start
        resumed_from: str | None = None

        signals = [signal for signal in (options.signal, cancel_event) if signal is not None]

        if options.resume_token:
            # an aborted resume leaves the token in the store
            if any(signal.is_set() for signal in signals):
                raise WorkflowError("Workflow execution was aborted", code="ABORTED")
            state = self.tokens.validate(options.resume_token, graph_name=graph_name)
            self._merge_resumed_context(ctx, state.context)
            current = state.node_id
            resumed_from = state.node_id
            obs.log_event("workflow_resumed", {"node_id": current})
            self.hooks.emit(
                "workflow.resumed",
                workflow=graph_name,
                run_id=run_id,
                node_id=current,
                payload={"context": ctx, "from_step": current},
            )

        ctx.workflow_id = run_id
        if ctx.timestamp is None:
            ctx.timestamp = datetime.now(timezone.utc)

        self.hooks.emit(
            "workflow.started",
            workflow=graph_name,
            run_id=run_id,
            node_id=current,
            payload={"context": ctx, "dry_run": options.dry_run},
        )

        run = _RunState(
            run_id=run_id,
            graph=graph,
            context=ctx,
            obs=obs,
            dry_run=options.dry_run,
            signals=signals,
        )
        return await self._execute_graph(run, current, resumed_from)

    # ─── Control loop ──────────────────────────────────────────

    async def _execute_graph(self, run: _RunState, start_node: str, resumed_from: str | None) -> WorkflowResult:
        ctx = run.context
        current: str | None = start_node
        satisfied_pause = resumed_from
        max_steps = self.settings.max_steps
        step_count = 0

        while current is not None and step_count < max_steps:
            if run.cancelled():
                run.obs.log_event("workflow_aborted", {"node_id": current}, level="warn")
                return await self._fail(run, ["Workflow execution was aborted"], "ABORTED")

            node = run.graph.nodes.get(current)
            if node is None:
                return await self._fail(run, [f"Unknown node: {current}"], "WORKFLOW_ERROR")

            outcome = await self._dispatch(run, current, node, resumed_pause=current == satisfied_pause)
            satisfied_pause = None
            step_count += 1
            run.trace.append(self._trace_entry(current, node, outcome))

            if outcome.pause:
                try:
                    handle = self.tokens.create(run.graph.name, current, ctx)
                except WorkflowError as exc:
                    return await self._fail(run, [exc.message], exc.code)
                return self._paused(run, current, node, handle, outcome)

            if not outcome.result.ok:
                run.warnings.extend(outcome.result.warnings)
                error_code = str(outcome.result.meta.get("error_code", "STEP_FAILED"))
                return await self._fail(run, list(outcome.result.errors), error_code, outcome.completed_branches)

            if isinstance(node, ActionNode):
                run.executed.append(
                    ExecutedStep(
                        node_id=current,
                        action_name=node.action,
                        result=outcome.result,
                        context_snapshot=ctx.snapshot(),
                    )
                )
                ctx.results[node.action] = outcome.result

            for branch_step in outcome.completed_branches:
                run.executed.append(branch_step)
                ctx.results[branch_step.action_name] = branch_step.result

            if outcome.result.rolls:
                ctx.rolls.extend(outcome.result.rolls)
            run.warnings.extend(outcome.result.warnings)

            current = self._next_node(node, outcome)

        if current is not None:
            run.obs.log_event("step_limit_exceeded", {"max_steps": max_steps, "node_id": current}, level="error")
            return await self._fail(run, [f"Workflow exceeded maximum step limit ({max_steps})"], "STEP_LIMIT_EXCEEDED")

        return WorkflowResult.success(
            type="workflow",
            data={"results": dict(ctx.results)},
            warnings=list(run.warnings),
            meta=self._run_meta(run),
            rolls=list(ctx.rolls),
        )

    def _next_node(self, node: Any, outcome: NodeOutcome) -> str | None:
        if isinstance(node, ConditionalNode):
            return outcome.next_node
        if isinstance(node, EndNode):
            return None
        return getattr(node, "next", None)

    async def _fail(
        self,
        run: _RunState,
        errors: list[str],
        error_code: str,
        extra_steps: list[ExecutedStep] | None = None,
    ) -> WorkflowResult:
        # a dry run executed nothing, so there is nothing to undo
        steps = [] if run.dry_run else run.executed + list(extra_steps or [])
        compensated = await self.compensation.compensate(steps, run.context, obs=run.obs, workflow=run.graph.name)
        meta = self._run_meta(run)
        meta.update({"error_code": error_code, "compensated": compensated})
        return WorkflowResult.failure(
            errors,
            type="workflow",
            warnings=list(run.warnings),
            meta=meta,
            rolls=list(run.context.rolls),
        )

    def _paused(self, run: _RunState, node_id: str, node: Any, handle: str, outcome: NodeOutcome) -> WorkflowResult:
        message = getattr(node, "message", "")
        run.obs.log_event("workflow_paused", {"node_id": node_id})
        self.hooks.emit(
            "workflow.paused",
            workflow=run.graph.name,
            run_id=run.run_id,
            node_id=node_id,
            payload={"context": run.context, "resume_token": handle, "message": message},
        )
        meta = self._run_meta(run)
        meta.update({"paused": True, "resume_token": handle, "node_id": node_id})
        return WorkflowResult.success(
            type="workflow-paused",
            data={"resume_token": handle, "message": message},
            warnings=run.warnings + list(outcome.result.warnings),
            meta=meta,
            rolls=list(run.context.rolls),
        )

    def _run_meta(self, run: _RunState) -> dict[str, Any]:
        return {"workflow_id": run.run_id, "steps": list(run.trace)}

    def _trace_entry(self, node_id: str, node: Any, outcome: NodeOutcome) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "node_id": node_id,
            "type": node.type,
            "ok": outcome.result.ok,
            "duration_ms": outcome.duration_ms,
        }
        if isinstance(node, ActionNode):
            entry["action"] = node.action
            key = outcome.result.meta.get("idempotency_key")
            if key:
                entry["idempotency_key"] = key
        elif isinstance(node, ParallelNode):
            entry["actions"] = [step.action for branch in node.branches for step in branch.steps]
        return entry

    # ─── Node dispatch ─────────────────────────────────────────

    async def _dispatch(self, run: _RunState, node_id: str, node: Any, resumed_pause: bool = False) -> NodeOutcome:
        self.hooks.emit(
            "step.pre_execute",
            workflow=run.graph.name,
            run_id=run.run_id,
            node_id=node_id,
            payload={"type": node.type, "context": run.context},
        )

        with run.obs.measure("node", {"node_id": node_id, "type": node.type}) as timing:
            try:
                outcome = await self._dispatch_by_type(run, node_id, node, resumed_pause)
            except WorkflowError as exc:
                outcome = NodeOutcome(
                    WorkflowResult.failure(exc.message, type=node.type, meta={"error_code": exc.code})
                )
            except Exception as exc:
                logger.exception("Step %s crashed", node_id)
                outcome = NodeOutcome(
                    WorkflowResult.failure(
                        f"Step {node_id} failed: {exc}",
                        type=node.type,
                        meta={"error_code": "STEP_ERROR"},
                    )
                )
        outcome.duration_ms = timing["duration_ms"]

        self.hooks.emit(
            "step.post_execute",
            workflow=run.graph.name,
            run_id=run.run_id,
            node_id=node_id,
            payload={"type": node.type, "context": run.context, "result": outcome.result},
        )
        return outcome

    async def _dispatch_by_type(self, run: _RunState, node_id: str, node: Any, resumed_pause: bool) -> NodeOutcome:
        if isinstance(node, ActionNode):
            return NodeOutcome(await self._execute_action(run, node.action))

        if isinstance(node, ConditionalNode):
            return await self._execute_conditional(run, node)

        if isinstance(node, ParallelNode):
            return await self._execute_parallel(run, node_id, node)

        if isinstance(node, PauseNode):
            if resumed_pause:
                return NodeOutcome(
                    WorkflowResult.success(type="pause", data={"message": node.message, "resumed": True})
                )
            return NodeOutcome(WorkflowResult.success(type="pause", data={"message": node.message}), pause=True)

        if isinstance(node, LoopNode):
            run.obs.log_event("loop_not_implemented", {"node_id": node_id}, level="warn")
            return NodeOutcome(
                WorkflowResult.success(
                    type="loop",
                    data={"iterations": 0},
                    warnings=[f"Loop node '{node_id}' skipped: loop nodes are not implemented"],
                )
            )

        if isinstance(node, EndNode):
            return NodeOutcome(WorkflowResult.success(type="end"))

        raise WorkflowError(f"Unknown node type: {getattr(node, 'type', None)}")

    async def _execute_action(self, run: _RunState, action_name: str) -> WorkflowResult:
        action = self.actions.get(action_name)
        if action is None:
            raise WorkflowError(f"Unknown action: {action_name}")

        ctx = run.context
        run.obs.log_event("action_started", {"action": action_name}, level="debug")

        try:
            await call_handler(action.validate, ctx)
        except Exception as exc:
            raise ActionValidationError(f"Action validation failed: {exc}") from exc

        try:
            await call_handler(action.check_permission, ctx)
        except Exception as exc:
            raise ActionPermissionError(f"Permission denied: {exc}") from exc

        idempotency_key = await call_handler(action.idempotency_key, ctx)
        key_meta = {"idempotency_key": str(idempotency_key)} if idempotency_key else {}

        if run.dry_run:
            return WorkflowResult.success(type=action_name, data={"dry_run": True}, meta=key_meta)

        self.hooks.emit(
            "action.pre_execute",
            workflow=run.graph.name,
            run_id=run.run_id,
            payload={"action": action_name, "idempotency_key": key_meta.get("idempotency_key"), "context": ctx},
        )

        try:
            raw = await call_handler(action.execute, ctx)
        except WorkflowError:
            raise
        except Exception as exc:
            raise WorkflowError(f"Action '{action_name}' failed: {exc}", code="ACTION_ERROR") from exc

        result = self._coerce_result(action_name, raw)
        if key_meta and "idempotency_key" not in result.meta:
            result = result.model_copy(update={"meta": {**result.meta, **key_meta}})

        self.hooks.emit(
            "action.post_execute",
            workflow=run.graph.name,
            run_id=run.run_id,
            payload={"action": action_name, "context": ctx, "result": result},
        )
        return result

    async def _execute_conditional(self, run: _RunState, node: ConditionalNode) -> NodeOutcome:
        run.obs.log_event("condition_evaluating", {"condition": node.condition}, level="debug")
        value = await self.conditions.evaluate(node.condition, run.context)
        chosen = node.on_true if value else node.on_false
        return NodeOutcome(
            WorkflowResult.success(
                type="conditional",
                data={"condition": node.condition, "result": value, "next_node": chosen},
            ),
            next_node=chosen,
        )

    async def _execute_parallel(self, run: _RunState, node_id: str, node: ParallelNode) -> NodeOutcome:
        branches = node.branches
        limit = self.settings.max_parallel_branches
        if len(branches) > limit:
            raise WorkflowError(f"Too many parallel branches: {len(branches)} (max {limit})")

        run.obs.log_event("parallel_started", {"node_id": node_id, "count": len(branches)}, level="debug")
        labels = [branch.name or f"branch-{index}" for index, branch in enumerate(branches)]
        settled = await asyncio.gather(
            *(self._run_branch(run, node_id, label, branch) for label, branch in zip(labels, branches)),
            return_exceptions=True,
        )

        branch_results: list[WorkflowResult] = []
        completed: list[ExecutedStep] = []
        errors: list[str] = []
        warnings: list[str] = []
        rolls: list[Any] = []

        for label, item in zip(labels, settled):
            if isinstance(item, BaseException):
                branch_result = WorkflowResult.failure(
                    f"Branch {label} rejected: {item}",
                    type="parallel-branch",
                    meta={"branch": label},
                )
                executed = None
            else:
                branch_result, executed = item

            branch_results.append(branch_result)
            errors.extend(branch_result.errors)
            warnings.extend(branch_result.warnings)
            rolls.extend(branch_result.rolls)
            if executed is not None:
                completed.append(executed)

        meta = {"branch_count": len(branches), "branches": labels}
        data = {"branches": branch_results}
        if errors:
            result = WorkflowResult.failure(errors, type="parallel", data=data, warnings=warnings, meta=meta, rolls=rolls)
        else:
            result = WorkflowResult.success(type="parallel", data=data, warnings=warnings, meta=meta, rolls=rolls)
        return NodeOutcome(result, completed_branches=completed)

    async def _run_branch(
        self,
        run: _RunState,
        node_id: str,
        label: str,
        branch: ParallelBranch,
    ) -> tuple[WorkflowResult, ExecutedStep | None]:
        if not branch.steps:
            return (
                WorkflowResult.success(
                    type="parallel-branch",
                    data={"branch": label},
                    warnings=[f"Branch {label} has no steps"],
                ),
                None,
            )
        if len(branch.steps) > 1:
            return (
                WorkflowResult.failure(
                    f"Branch {label} must contain exactly one action step",
                    type="parallel-branch",
                    meta={"branch": label},
                ),
                None,
            )

        step = branch.steps[0]
        try:
            result = await self._execute_action(run, step.action)
        except WorkflowError as exc:
            return (
                WorkflowResult.failure(exc.message, type="parallel-branch", meta={"branch": label, "error_code": exc.code}),
                None,
            )

        if not result.ok:
            return result, None
        executed = ExecutedStep(
            node_id=f"{node_id}.{label}",
            action_name=step.action,
            result=result,
            context_snapshot=run.context.snapshot(),
        )
        return result, executed

    # ─── Helpers ───────────────────────────────────────────────

    def _coerce_context(self, context: ExecutionContext | dict[str, Any] | None) -> ExecutionContext:
        if context is None:
            return ExecutionContext()
        if isinstance(context, ExecutionContext):
            return context
        try:
            return ExecutionContext.model_validate(context)
        except PydanticValidationError as exc:
            raise WorkflowError(f"Invalid execution context: {exc.error_count()} error(s)") from exc

    def _merge_resumed_context(self, ctx: ExecutionContext, stored: ExecutionContext) -> None:
        """Copy stored fields onto ``ctx`` unless the caller supplied them."""
        supplied = ctx.caller_fields()
        for key in stored.caller_fields():
            if key in supplied:
                continue
            setattr(ctx, key, getattr(stored, key))

    def _coerce_result(self, action_name: str, raw: Any) -> WorkflowResult:
        if isinstance(raw, WorkflowResult):
            return raw
        if isinstance(raw, dict):
            payload = {"type": action_name, **raw}
            try:
                return WorkflowResult.model_validate(payload)
            except PydanticValidationError as exc:
                raise WorkflowError(
                    f"Action '{action_name}' returned an invalid result: {exc.errors()[0].get('msg', exc)}",
                    code="ACTION_ERROR",
                ) from exc
        raise WorkflowError(f"Action '{action_name}' returned no result", code="ACTION_ERROR")
