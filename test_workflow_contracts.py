import pytest
from pydantic import ValidationError

from shared.workflow_contracts import (
    ConditionalNode,
    ExecutionContext,
    ParallelNode,
    WorkflowEvent,
    WorkflowGraph,
    WorkflowResult,
)


def _attack_graph() -> dict:
    return {
        "name": "attack",
        "start": "roll",
        "nodes": {
            "roll": {"type": "action", "action": "roll_attack", "next": "check"},
            "check": {"type": "conditional", "condition": "hit", "onTrue": "damage", "onFalse": "done"},
            "damage": {"type": "action", "action": "apply_damage", "next": "done"},
            "done": {"type": "end"},
        },
    }


def test_graph_accepts_camel_case_branch_keys() -> None:
    graph = WorkflowGraph.model_validate(_attack_graph())

    check = graph.nodes["check"]
    assert isinstance(check, ConditionalNode)
    assert check.on_true == "damage"
    assert check.on_false == "done"
    assert graph.model_dump(by_alias=True)["nodes"]["check"]["onTrue"] == "damage"


def test_graph_parses_parallel_branches() -> None:
    graph = WorkflowGraph.model_validate(
        {
            "name": "volley",
            "start": "fan",
            "nodes": {
                "fan": {
                    "type": "parallel",
                    "branches": [
                        {"name": "left", "steps": [{"type": "action", "action": "arrow"}]},
                        {"name": "right", "steps": [{"type": "action", "action": "bolt"}]},
                    ],
                    "next": "done",
                },
                "done": {"type": "end"},
            },
        }
    )
    fan = graph.nodes["fan"]
    assert isinstance(fan, ParallelNode)
    assert [branch.steps[0].action for branch in fan.branches] == ["arrow", "bolt"]


@pytest.mark.parametrize(
    "mutate, message",
    [
        (lambda g: g.update(start="missing"), "start node 'missing' not found"),
        (lambda g: g["nodes"]["roll"].pop("type"), "Node 'roll' missing type"),
        (lambda g: g["nodes"]["roll"].update(type="teleport"), "unrecognized type 'teleport'"),
        (lambda g: g["nodes"]["roll"].update(action=""), "Action node 'roll' missing action name"),
        (lambda g: g["nodes"]["check"].update(onTrue="nowhere"), "onTrue references unknown node 'nowhere'"),
        (lambda g: g["nodes"]["damage"].update(next="nowhere"), "unknown next node 'nowhere'"),
        (lambda g: g.update(nodes={}), "nodes must not be empty"),
    ],
)
def test_graph_rejects_structural_errors(mutate, message) -> None:
    payload = _attack_graph()
    mutate(payload)
    with pytest.raises(ValidationError) as excinfo:
        WorkflowGraph.model_validate(payload)
    assert message in str(excinfo.value)


def test_result_status_must_match_errors() -> None:
    with pytest.raises(ValidationError):
        WorkflowResult(ok=False)
    with pytest.raises(ValidationError):
        WorkflowResult(ok=True, errors=["boom"])

    failed = WorkflowResult.failure("boom", type="attack")
    assert failed.ok is False
    assert failed.errors == ["boom"]
    assert failed.type == "attack"


def test_execution_context_tracks_caller_fields_and_extras() -> None:
    ctx = ExecutionContext(initiator_id="hero", target_ids=["orc"], encounter="cave")

    assert ctx.caller_fields() == {"initiator_id", "target_ids", "encounter"}
    assert ctx.encounter == "cave"


def test_execution_context_snapshot_isolates_containers() -> None:
    ctx = ExecutionContext(rolls=[4])
    snapshot = ctx.snapshot()

    ctx.rolls.append(6)
    ctx.results["roll"] = WorkflowResult.success()

    assert snapshot.rolls == [4]
    assert snapshot.results == {}


def test_workflow_event_rejects_unknown_event_type() -> None:
    with pytest.raises(ValidationError):
        WorkflowEvent(event_id="evt-1", event_type="workflow.exploded")


def test_graph_rejects_duplicate_parallel_branch_names() -> None:
    with pytest.raises(ValidationError) as excinfo:
        WorkflowGraph.model_validate(
            {
                "name": "volley",
                "start": "fan",
                "nodes": {
                    "fan": {
                        "type": "parallel",
                        "branches": [
                            {"name": "left", "steps": [{"type": "action", "action": "arrow"}]},
                            {"name": "left", "steps": [{"type": "action", "action": "bolt"}]},
                        ],
                    },
                },
            }
        )
    assert "duplicate branch name 'left'" in str(excinfo.value)
