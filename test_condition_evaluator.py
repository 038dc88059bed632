import asyncio

import pytest

from execution.conditions import ConditionEvaluator
from shared.errors import WorkflowError
from shared.workflow_contracts import ExecutionContext, WorkflowResult


def _hit_context(total: int) -> ExecutionContext:
    return ExecutionContext(
        results={"roll_attack": WorkflowResult.success(data={"total": total})},
        flags={"advantage": True},
    )


def test_registered_predicate_sync_and_async() -> None:
    async def _run() -> None:
        evaluator = ConditionEvaluator()

        async def is_critical(ctx):
            return ctx.results["roll_attack"].data["total"] >= 20

        evaluator.register("hit", lambda ctx: ctx.results["roll_attack"].data["total"] >= 12)
        evaluator.register("critical", is_critical)

        assert await evaluator.evaluate("hit", _hit_context(15)) is True
        assert await evaluator.evaluate("critical", _hit_context(15)) is False
        assert sorted(evaluator.list()) == ["critical", "hit"]

    asyncio.run(_run())


def test_literal_conditions() -> None:
    async def _run() -> None:
        evaluator = ConditionEvaluator()
        assert await evaluator.evaluate("true", ExecutionContext()) is True
        assert await evaluator.evaluate("FALSE", ExecutionContext()) is False

    asyncio.run(_run())


def test_unknown_condition_fails_when_expressions_disabled() -> None:
    async def _run() -> None:
        evaluator = ConditionEvaluator()
        with pytest.raises(WorkflowError) as excinfo:
            await evaluator.evaluate("flags.advantage", _hit_context(10))
        assert excinfo.value.message == "Unknown condition: flags.advantage"

    asyncio.run(_run())


def test_expressions_read_whitelisted_context_fields() -> None:
    async def _run() -> None:
        evaluator = ConditionEvaluator(allow_expressions=True)
        ctx = _hit_context(17)
        assert await evaluator.evaluate("results.roll_attack.data.total >= 15 and flags.advantage", ctx) is True
        assert await evaluator.evaluate("ctx.flags.advantage == false", ctx) is False

    asyncio.run(_run())


def test_unsafe_expression_is_rejected() -> None:
    async def _run() -> None:
        evaluator = ConditionEvaluator(allow_expressions=True)
        with pytest.raises(WorkflowError) as excinfo:
            await evaluator.evaluate("__import__('os').getcwd()", ExecutionContext())
        assert excinfo.value.message.startswith("Condition evaluation failed:")

    asyncio.run(_run())


def test_failing_predicate_is_wrapped() -> None:
    async def _run() -> None:
        evaluator = ConditionEvaluator()

        def explode(ctx):
            raise KeyError("roll_attack")

        evaluator.register("hit", explode)
        with pytest.raises(WorkflowError) as excinfo:
            await evaluator.evaluate("hit", ExecutionContext())
        assert "Condition 'hit' failed" in excinfo.value.message

    asyncio.run(_run())


def test_register_rejects_reserved_and_non_callable() -> None:
    evaluator = ConditionEvaluator()
    with pytest.raises(WorkflowError):
        evaluator.register("true", lambda ctx: False)
    with pytest.raises(WorkflowError):
        evaluator.register("hit", "not callable")
