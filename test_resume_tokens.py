from datetime import datetime, timedelta, timezone

import pytest

from execution.resume_tokens import ResumeTokenManager
from execution.token_store import InMemoryResumeTokenStore
from shared.errors import ResumeError, WorkflowError
from shared.workflow_contracts import ExecutionContext, WorkflowResult


class DiceRoll:
    def __init__(self, sides: int, value: int) -> None:
        self.sides = sides
        self.value = value

    def to_bytes(self) -> bytes:
        return f"{self.sides}:{self.value}".encode()

    @classmethod
    def from_bytes(cls, data: bytes) -> "DiceRoll":
        sides, value = data.decode().split(":")
        return cls(int(sides), int(value))


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def _context() -> ExecutionContext:
    return ExecutionContext(
        initiator_id="cleric",
        results={"prepare": WorkflowResult.success(type="prepare", data={"mana": 3})},
        rolls=[DiceRoll(20, 14)],
        flags={"holy": True},
    )


def test_create_and_validate_round_trip_with_artifacts() -> None:
    manager = ResumeTokenManager(InMemoryResumeTokenStore())
    manager.register_artifact_type(DiceRoll)

    handle = manager.create("ritual", "wait", _context())
    state = manager.validate(handle, graph_name="ritual")

    assert handle.startswith("rt-")
    assert state.node_id == "wait"
    assert state.context.initiator_id == "cleric"
    assert state.context.results["prepare"].data == {"mana": 3}
    assert isinstance(state.context.rolls[0], DiceRoll)
    assert state.context.rolls[0].value == 14


def test_tokens_are_single_use_by_default() -> None:
    manager = ResumeTokenManager(InMemoryResumeTokenStore())
    handle = manager.create("ritual", "wait", ExecutionContext())

    manager.validate(handle)
    with pytest.raises(ResumeError) as excinfo:
        manager.validate(handle)
    assert excinfo.value.message == "Invalid or expired resume token"


def test_reusable_tokens_when_single_use_disabled() -> None:
    manager = ResumeTokenManager(InMemoryResumeTokenStore(), single_use=False)
    handle = manager.create("ritual", "wait", ExecutionContext())

    assert manager.validate(handle).node_id == "wait"
    assert manager.validate(handle).node_id == "wait"


def test_expired_token_is_rejected_and_removed() -> None:
    clock = _Clock()
    store = InMemoryResumeTokenStore()
    manager = ResumeTokenManager(store, ttl_seconds=60, clock=clock)
    handle = manager.create("ritual", "wait", ExecutionContext())

    clock.now += timedelta(seconds=61)
    with pytest.raises(ResumeError) as excinfo:
        manager.validate(handle)

    assert excinfo.value.message == "Resume token has expired"
    assert store.get(handle) is None


def test_token_for_other_workflow_is_rejected() -> None:
    manager = ResumeTokenManager(InMemoryResumeTokenStore())
    handle = manager.create("ritual", "wait", ExecutionContext())

    with pytest.raises(ResumeError):
        manager.validate(handle, graph_name="attack")
    assert manager.validate(handle, graph_name="ritual").node_id == "wait"


def test_unregistered_artifact_cannot_be_stored() -> None:
    manager = ResumeTokenManager(InMemoryResumeTokenStore())

    with pytest.raises(WorkflowError):
        manager.create("ritual", "wait", _context())


def test_unknown_or_empty_handle() -> None:
    manager = ResumeTokenManager(InMemoryResumeTokenStore())
    with pytest.raises(ResumeError):
        manager.validate("rt-does-not-exist")
    with pytest.raises(ResumeError):
        manager.validate("")
