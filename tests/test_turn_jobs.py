import asyncio

import pytest

from turnflow.service.runtime import get_runtime
from turnflow.service.turn_jobs import TurnJobRegistry


async def test_take_is_one_shot():
    registry = TurnJobRegistry(fallback_delay_seconds=10)

    async def job():
        return "done"

    turn_id = registry.register("conv-1", job)
    registry.schedule_fallback(turn_id)

    pending = registry.take(turn_id)
    assert pending is not None
    assert pending.key == "conv-1"
    assert await pending.job() == "done"
    assert registry.take(turn_id) is None
    assert registry.pending() == []
    await registry.close()


async def test_fallback_runs_unclaimed_turn():
    registry = TurnJobRegistry(fallback_delay_seconds=0.01)
    ran = asyncio.Event()

    async def job():
        ran.set()

    turn_id = registry.register("conv-2", job)
    task = registry.schedule_fallback(turn_id)
    await task

    assert ran.is_set()
    assert registry.take(turn_id) is None


async def test_claim_cancels_fallback():
    registry = TurnJobRegistry(fallback_delay_seconds=0.05)
    runs = []

    async def job():
        runs.append("ran")

    turn_id = registry.register("conv-3", job)
    task = registry.schedule_fallback(turn_id)
    registry.take(turn_id)
    await asyncio.sleep(0.1)

    assert task.cancelled()
    assert runs == []


async def test_fallback_failure_is_contained():
    registry = TurnJobRegistry(fallback_delay_seconds=0)

    async def job():
        raise RuntimeError("boom")

    turn_id = registry.register("conv-4", job)
    await registry.schedule_fallback(turn_id)


def test_duplicate_turn_id_rejected():
    registry = TurnJobRegistry()

    async def job():
        return None

    registry.register("conv-5", job, turn_id="t-1")
    with pytest.raises(ValueError):
        registry.register("conv-5", job, turn_id="t-1")


async def test_runtime_runs_workflow_under_turn_lock():
    runtime = get_runtime()
    seen = []

    async def step(node_id, parameters, context):
        seen.append(runtime.store.get_turn_lock("conv-rt") is not None)
        return parameters["reply"]

    runtime.handlers.register("reply", step)
    result = await runtime.run_workflow_turn(
        "conv-rt",
        {"id": "wf", "nodes": [{"id": "n", "type": "reply", "parameters": {"reply": "hello"}}]},
    )

    assert result.output == "hello"
    assert seen == [True]
    assert runtime.store.get_turn_lock("conv-rt") is None
