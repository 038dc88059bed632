"""Workflow graph, result and context contracts.

These models are domain-agnostic: actions, conditions and side-channel
artifacts are opaque to the interpreter. Graph documents may use the
camelCase keys ``onTrue``/``onFalse``; attributes are snake_case.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Protocol, Union

from pydantic import BaseModel, Field, model_validator


NodeType = Literal["action", "conditional", "parallel", "loop", "pause", "end"]
NODE_TYPES: tuple[str, ...] = ("action", "conditional", "parallel", "loop", "pause", "end")

LogLevel = Literal["error", "warn", "info", "debug", "trace"]
LOG_LEVELS: tuple[str, ...] = ("error", "warn", "info", "debug", "trace")

EventType = Literal[
    "workflow.started",
    "workflow.completed",
    "workflow.failed",
    "workflow.paused",
    "workflow.resumed",
    "step.pre_execute",
    "step.post_execute",
    "action.pre_execute",
    "action.post_execute",
    "step.compensated",
    "coordinator.log",
]


# ─── Result envelope ───────────────────────────────────────────

class WorkflowResult(BaseModel):
    """Standard success/failure envelope for actions, nodes and whole runs."""

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    ok: bool
    type: str = Field(default="result")
    data: Any = Field(default=None)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)
    rolls: list[Any] = Field(default_factory=list)
    effects: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_status_matches_errors(self) -> "WorkflowResult":
        if not self.ok and not self.errors:
            raise ValueError("A failed result must carry at least one error")
        if self.ok and self.errors:
            raise ValueError("A successful result must not carry errors")
        return self

    @classmethod
    def success(cls, type: str = "result", **fields: Any) -> "WorkflowResult":
        return cls(ok=True, type=type, **fields)

    @classmethod
    def failure(cls, errors: list[str] | str, type: str = "result", **fields: Any) -> "WorkflowResult":
        if isinstance(errors, str):
            errors = [errors]
        return cls(ok=False, type=type, errors=list(errors), **fields)


# ─── Graph nodes ───────────────────────────────────────────────

class _NodeBase(BaseModel):
    model_config = {"frozen": True, "populate_by_name": True}

    metadata: dict[str, Any] = Field(default_factory=dict)


class ActionNode(_NodeBase):
    type: Literal["action"] = "action"
    action: str = Field(default="", description="Registry name of the action to run")
    next: str | None = Field(default=None)


class ConditionalNode(_NodeBase):
    type: Literal["conditional"] = "conditional"
    condition: str = Field(default="", description="Named predicate or literal true/false")
    on_true: str = Field(default="", alias="onTrue")
    on_false: str = Field(default="", alias="onFalse")


class ParallelBranch(BaseModel):
    """One concurrently executed sub-sequence of a parallel node."""

    model_config = {"frozen": True}

    name: str = Field(default="")
    steps: list[ActionNode] = Field(default_factory=list)


class ParallelNode(_NodeBase):
    type: Literal["parallel"] = "parallel"
    branches: list[ParallelBranch] = Field(default_factory=list)
    next: str | None = Field(default=None)


class LoopNode(_NodeBase):
    """Reserved node type. Accepted by validation, not executed."""

    model_config = {"frozen": True, "populate_by_name": True, "extra": "allow"}

    type: Literal["loop"] = "loop"
    next: str | None = Field(default=None)


class PauseNode(_NodeBase):
    type: Literal["pause"] = "pause"
    message: str = Field(default="")
    next: str | None = Field(default=None)


class EndNode(_NodeBase):
    type: Literal["end"] = "end"


WorkflowNode = Annotated[
    Union[ActionNode, ConditionalNode, ParallelNode, LoopNode, PauseNode, EndNode],
    Field(discriminator="type"),
]


class WorkflowGraph(BaseModel):
    """Named, validated workflow graph. Replaced wholesale, never patched."""

    model_config = {"frozen": True}

    name: str
    nodes: dict[str, WorkflowNode]
    start: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def check_node_types(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        nodes = data.get("nodes")
        if not isinstance(nodes, dict):
            return data
        for node_id, node in nodes.items():
            node_type = node.get("type") if isinstance(node, dict) else getattr(node, "type", None)
            if not node_type:
                raise ValueError(f"Node '{node_id}' missing type")
            if node_type not in NODE_TYPES:
                raise ValueError(f"Node '{node_id}' has unrecognized type '{node_type}'")
        return data

    @model_validator(mode="after")
    def validate_graph(self) -> "WorkflowGraph":
        if not self.name.strip():
            raise ValueError("Workflow name is required")
        if not self.nodes:
            raise ValueError("Workflow nodes must not be empty")
        if self.start not in self.nodes:
            raise ValueError(f"Workflow start node '{self.start}' not found in nodes")

        for node_id, node in self.nodes.items():
            if isinstance(node, ActionNode) and not node.action.strip():
                raise ValueError(f"Action node '{node_id}' missing action name")

            if isinstance(node, ConditionalNode):
                if not node.condition.strip():
                    raise ValueError(f"Conditional node '{node_id}' missing condition")
                for label, target in (("onTrue", node.on_true), ("onFalse", node.on_false)):
                    if target not in self.nodes:
                        raise ValueError(
                            f"Conditional node '{node_id}' {label} references unknown node '{target}'"
                        )

            if isinstance(node, ParallelNode):
                labels: set[str] = set()
                for index, branch in enumerate(node.branches):
                    label = branch.name or f"branch-{index}"
                    if label in labels:
                        raise ValueError(f"Parallel node '{node_id}' has duplicate branch name '{label}'")
                    labels.add(label)
                    for step in branch.steps:
                        if not step.action.strip():
                            raise ValueError(
                                f"Parallel node '{node_id}' branch {index} has a step without an action name"
                            )

            next_id = getattr(node, "next", None)
            if next_id and next_id not in self.nodes:
                raise ValueError(f"Node '{node_id}' references unknown next node '{next_id}'")

        return self


# ─── Execution context ─────────────────────────────────────────

class ExecutionContext(BaseModel):
    """Caller-owned data threaded by reference through one run.

    Extra fields are allowed so the embedding application can carry its own
    inputs (actor ids, item ids, ...) without subclassing.
    """

    model_config = {"extra": "allow", "arbitrary_types_allowed": True}

    workflow_id: str | None = Field(default=None)
    correlation_id: str | None = Field(default=None)
    timestamp: datetime | None = Field(default=None)
    initiator_id: str | None = Field(default=None)
    results: dict[str, WorkflowResult] = Field(default_factory=dict)
    rolls: list[Any] = Field(default_factory=list)
    flags: dict[str, Any] = Field(default_factory=dict)
    config: dict[str, Any] = Field(default_factory=dict)
    target_ids: list[str] = Field(default_factory=list)

    def caller_fields(self) -> set[str]:
        """Names of the fields explicitly supplied by the caller."""
        return set(self.model_fields_set) | set(self.model_extra or {})

    def snapshot(self) -> "ExecutionContext":
        """Shallow copy with its own results and rolls containers."""
        return self.model_copy(update={"results": dict(self.results), "rolls": list(self.rolls)})


@dataclass
class ExecutedStep:
    """A completed action step, kept for compensation."""

    node_id: str
    action_name: str
    result: WorkflowResult
    context_snapshot: ExecutionContext


# ─── Resume tokens ─────────────────────────────────────────────

class ResumeToken(BaseModel):
    """Persisted state of a paused run."""

    model_config = {"frozen": True}

    graph_name: str
    node_id: str
    serialized_context: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) > self.expires_at


# ─── Run options & events ──────────────────────────────────────

class CancellationSignal(Protocol):
    """Anything with ``is_set()``: asyncio.Event, threading.Event, ..."""

    def is_set(self) -> bool:
        ...


@dataclass
class RunOptions:
    signal: CancellationSignal | None = None
    log_level: str | None = None
    resume_token: str | None = None
    dry_run: bool = False


class WorkflowEvent(BaseModel):
    """Lifecycle notification envelope delivered to hook subscribers."""

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    event_id: str
    event_type: EventType
    workflow: str | None = Field(default=None)
    run_id: str | None = Field(default=None)
    node_id: str | None = Field(default=None)
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
