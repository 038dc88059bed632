import asyncio

from execution.coordinator import WorkflowCoordinator
from shared.config import CoordinatorSettings
from shared.workflow_contracts import ExecutionContext, WorkflowResult


class _Volley:
    """Branch action; ``wait_for`` makes it block until another branch has started."""

    def __init__(self, name: str, journal: list[str], started: dict[str, asyncio.Event], wait_for: str | None = None, fail: bool = False) -> None:
        self.name = name
        self.journal = journal
        self.started = started
        self.wait_for = wait_for
        self.fail = fail

    async def execute(self, ctx):
        self.started.setdefault(self.name, asyncio.Event()).set()
        if self.wait_for:
            other = self.started.setdefault(self.wait_for, asyncio.Event())
            await asyncio.wait_for(other.wait(), timeout=1.0)
        self.journal.append(self.name)
        if self.fail:
            return WorkflowResult.failure(f"{self.name} missed", type=self.name)
        return WorkflowResult.success(type=self.name, data={"hit": True}, rolls=[self.name])

    def compensate(self, ctx, result):
        self.journal.append(f"undo:{self.name}")


def _volley_graph(branches: list[dict]) -> dict:
    return {
        "start": "aim",
        "nodes": {
            "aim": {"type": "action", "action": "aim", "next": "fan"},
            "fan": {"type": "parallel", "branches": branches, "next": "done"},
            "done": {"type": "end"},
        },
    }


def _branch(name: str, action: str) -> dict:
    return {"name": name, "steps": [{"type": "action", "action": action}]}


def _coordinator(journal: list[str], settings: CoordinatorSettings | None = None, **flags) -> WorkflowCoordinator:
    started: dict[str, asyncio.Event] = {}
    coordinator = WorkflowCoordinator(settings=settings)
    coordinator.register_action("aim", _Volley("aim", journal, started))
    coordinator.register_action("arrow", _Volley("arrow", journal, started, wait_for="bolt", fail=flags.get("arrow_fails", False)))
    coordinator.register_action("bolt", _Volley("bolt", journal, started))
    coordinator.register_action("spear", _Volley("spear", journal, started))
    return coordinator


def test_branches_run_concurrently_and_keep_declared_order() -> None:
    async def _run() -> None:
        journal: list[str] = []
        coordinator = _coordinator(journal)
        coordinator.define_workflow("volley", _volley_graph([_branch("left", "arrow"), _branch("right", "bolt")]))
        ctx = ExecutionContext()

        result = await coordinator.run("volley", ctx)

        assert result.ok is True
        # arrow waits for bolt to start, so bolt must finish its turn first
        assert journal == ["aim", "bolt", "arrow"]
        fan = [step for step in result.meta["steps"] if step["node_id"] == "fan"][0]
        assert fan["actions"] == ["arrow", "bolt"]
        assert set(ctx.results) == {"aim", "arrow", "bolt"}
        assert result.rolls == ["aim", "arrow", "bolt"]

    asyncio.run(_run())


def test_parallel_data_preserves_branch_order() -> None:
    async def _run() -> None:
        journal: list[str] = []
        coordinator = _coordinator(journal)
        coordinator.define_workflow("volley", _volley_graph([_branch("left", "arrow"), _branch("right", "bolt")]))
        seen = []
        coordinator.on("step.post_execute", lambda event: seen.append(event.payload["result"]))

        await coordinator.run("volley")

        fan_result = [result for result in seen if result.type == "parallel"][0]
        assert [branch.type for branch in fan_result.data["branches"]] == ["arrow", "bolt"]
        assert fan_result.meta["branches"] == ["left", "right"]

    asyncio.run(_run())


def test_failed_branch_compensates_siblings_and_earlier_steps() -> None:
    async def _run() -> None:
        journal: list[str] = []
        coordinator = _coordinator(journal, arrow_fails=True)
        coordinator.define_workflow("volley", _volley_graph([_branch("left", "arrow"), _branch("right", "bolt")]))

        result = await coordinator.run("volley")

        assert result.ok is False
        assert result.errors == ["arrow missed"]
        assert journal[-2:] == ["undo:bolt", "undo:aim"]
        assert "undo:arrow" not in journal
        assert result.meta["compensated"] == ["fan.right", "aim"]

    asyncio.run(_run())


def test_too_many_branches_fails_node() -> None:
    async def _run() -> None:
        journal: list[str] = []
        coordinator = _coordinator(journal, settings=CoordinatorSettings(max_parallel_branches=2))
        coordinator.define_workflow(
            "volley",
            _volley_graph([_branch("a", "bolt"), _branch("b", "spear"), _branch("c", "bolt")]),
        )

        result = await coordinator.run("volley")

        assert result.ok is False
        assert result.errors == ["Too many parallel branches: 3 (max 2)"]
        assert journal == ["aim", "undo:aim"]

    asyncio.run(_run())


def test_branch_with_multiple_steps_is_rejected() -> None:
    async def _run() -> None:
        journal: list[str] = []
        coordinator = _coordinator(journal)
        coordinator.define_workflow(
            "volley",
            _volley_graph(
                [
                    {"name": "combo", "steps": [{"type": "action", "action": "bolt"}, {"type": "action", "action": "spear"}]},
                    _branch("single", "spear"),
                ]
            ),
        )

        result = await coordinator.run("volley")

        assert result.ok is False
        assert result.errors == ["Branch combo must contain exactly one action step"]
        assert "undo:spear" in journal

    asyncio.run(_run())


def test_failed_fan_out_keeps_every_branch_result() -> None:
    async def _run() -> None:
        journal: list[str] = []
        coordinator = _coordinator(journal, arrow_fails=True)
        coordinator.define_workflow("volley", _volley_graph([_branch("left", "arrow"), _branch("right", "bolt")]))
        seen = []
        coordinator.on("step.post_execute", lambda event: seen.append(event.payload["result"]))

        await coordinator.run("volley")

        fan_result = [result for result in seen if result.type == "parallel"][0]
        left, right = fan_result.data["branches"]
        assert fan_result.ok is False
        assert fan_result.errors == ["arrow missed"]
        assert left.ok is False
        assert left.errors == ["arrow missed"]
        assert right.ok is True
        assert right.data == {"hit": True}
        assert "arrow" in journal and "bolt" in journal

    asyncio.run(_run())
