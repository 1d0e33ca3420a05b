import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from turnflow.service.errors import LockTimeoutError
from turnflow.service.turn_gate import TurnGate
from turnflow.storage.errors import ConstraintViolation
from turnflow.storage.memory import MemoryLockStore
from turnflow.storage.models import utcnow
from turnflow.storage.sqlite import SqliteLockStore


def _gate(store=None, **kwargs) -> TurnGate:
    params = {
        "wait_timeout_seconds": 2.0,
        "poll_interval_seconds": 0.005,
        "stale_after_seconds": 300,
        "heartbeat_interval_seconds": 0,
    }
    params.update(kwargs)
    return TurnGate(store or MemoryLockStore(), **params)


@pytest.fixture(params=["memory", "sqlite"])
def store_pair(request, tmp_path: Path):
    """Two handles on one lock table: a shared memory store, or two SQLite connections to one file."""
    if request.param == "memory":
        store = MemoryLockStore()
        return store, store
    path = str(tmp_path / "locks.db")
    return SqliteLockStore(path), SqliteLockStore(path)


async def test_same_key_turns_run_in_submission_order(store_pair):
    first, second = store_pair
    gates = [_gate(first, poll_interval_seconds=0.05), _gate(second, poll_interval_seconds=0.05)]
    events = []

    def make_turn(i):
        async def _work():
            events.append(i)
            await asyncio.sleep(0.02)
            events.append(-i)
            return i

        return _work

    results = await asyncio.gather(
        *(gates[i % 2].run_exclusive("conv-1", make_turn(i)) for i in (1, 2, 3))
    )

    assert sorted(results) == [1, 2, 3]
    assert len(events) == 6
    # Each start is immediately followed by its own end
    for start, end in zip(events[::2], events[1::2]):
        assert end == -start
    assert events == [1, -1, 2, -2, 3, -3]
    assert first.get_turn_lock("conv-1") is None
    assert second.get_turn_lock("conv-1") is None


async def test_different_keys_run_concurrently():
    gate = _gate()
    a_started = asyncio.Event()
    b_started = asyncio.Event()

    async def turn_a():
        a_started.set()
        await asyncio.wait_for(b_started.wait(), timeout=1)
        return "a"

    async def turn_b():
        b_started.set()
        await asyncio.wait_for(a_started.wait(), timeout=1)
        return "b"

    results = await asyncio.gather(
        gate.run_exclusive("key-a", turn_a), gate.run_exclusive("key-b", turn_b)
    )
    assert results == ["a", "b"]


async def test_failure_still_releases_lock():
    store = MemoryLockStore()
    gate = _gate(store)

    async def boom():
        assert store.get_turn_lock("conv-err") is not None
        raise ValueError("handler exploded")

    with pytest.raises(ValueError, match="handler exploded"):
        await gate.run_exclusive("conv-err", boom)

    assert store.get_turn_lock("conv-err") is None

    async def ok():
        return "next"

    assert await gate.run_exclusive("conv-err", ok) == "next"


async def test_stale_lock_is_reclaimed(store_pair):
    crashed, live = store_pair
    crashed.create_turn_lock("conv-stale", started_at=utcnow() - timedelta(minutes=10))
    gate = _gate(live, wait_timeout_seconds=0.5)
    seen = []

    async def work():
        seen.append(crashed.get_turn_lock("conv-stale"))
        return "ran"

    assert await gate.run_exclusive("conv-stale", work) == "ran"
    # The reclaimed row was replaced by a fresh one while work ran
    assert not seen[0].is_stale(300)
    assert crashed.get_turn_lock("conv-stale") is None


async def test_timeout_raises_and_leaves_row(store_pair):
    holder, waiter = store_pair
    held = holder.create_turn_lock("conv-busy")
    gate = _gate(waiter, wait_timeout_seconds=0.05)
    ran = []

    async def work():
        ran.append(True)

    with pytest.raises(LockTimeoutError) as exc_info:
        await gate.run_exclusive("conv-busy", work)

    assert ran == []
    assert exc_info.value.status_code == 409
    assert exc_info.value.error_code == "lock_timeout"
    assert exc_info.value.key == "conv-busy"
    remaining = waiter.get_turn_lock("conv-busy")
    assert remaining is not None
    assert remaining.started_at == held.started_at


async def test_waiter_acquires_after_release():
    store = MemoryLockStore()
    store.create_turn_lock("conv-wait")
    gate = _gate(store)

    async def release_later():
        await asyncio.sleep(0.03)
        gate.release("conv-wait")

    async def work():
        return "after"

    releaser = asyncio.create_task(release_later())
    assert await gate.run_exclusive("conv-wait", work) == "after"
    await releaser


async def test_try_lock_then_already_locked_releases():
    store = MemoryLockStore()
    gate = _gate(store)

    assert gate.try_lock("conv-fast") is True
    assert gate.try_lock("conv-fast") is False

    async def work():
        assert store.get_turn_lock("conv-fast") is not None
        return "fast"

    assert await gate.run_exclusive("conv-fast", work, already_locked=True) == "fast"
    assert store.get_turn_lock("conv-fast") is None


async def test_already_locked_skips_acquisition():
    store = MemoryLockStore()
    store.create_turn_lock("conv-held")
    gate = _gate(store, wait_timeout_seconds=0.01)

    async def work():
        return "no wait"

    assert await gate.run_exclusive("conv-held", work, already_locked=True) == "no wait"
    assert store.get_turn_lock("conv-held") is None


async def test_heartbeat_renews_started_at():
    store = MemoryLockStore()
    gate = _gate(store, heartbeat_interval_seconds=0.01)
    observed = []

    async def slow():
        observed.append(store.get_turn_lock("conv-slow").started_at)
        await asyncio.sleep(0.08)
        observed.append(store.get_turn_lock("conv-slow").started_at)

    await gate.run_exclusive("conv-slow", slow)
    assert observed[1] > observed[0]
    assert store.get_turn_lock("conv-slow") is None


async def test_heartbeat_keeps_slow_turn_from_going_stale():
    store = MemoryLockStore()
    holder = _gate(store, heartbeat_interval_seconds=0.01, stale_after_seconds=0.05)
    waiter = _gate(store, stale_after_seconds=0.05, wait_timeout_seconds=0.15)
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.sleep(0.3)

    async def intruder():
        return "intruded"

    holder_task = asyncio.create_task(holder.run_exclusive("conv-live", slow))
    await started.wait()
    with pytest.raises(LockTimeoutError):
        await waiter.run_exclusive("conv-live", intruder)
    await holder_task


async def test_stale_reclaim_does_not_delete_fresh_row():
    store = MemoryLockStore()
    stale = store.create_turn_lock("conv-race", started_at=utcnow() - timedelta(minutes=10))
    # A peer already reclaimed and inserted its own row
    store.delete_turn_lock("conv-race")
    fresh = store.create_turn_lock("conv-race")

    assert store.delete_turn_lock("conv-race", started_at=stale.started_at) is False
    assert store.get_turn_lock("conv-race").started_at == fresh.started_at


async def test_heartbeat_leaves_reacquired_row_alone():
    store = MemoryLockStore()
    gate = _gate(store, heartbeat_interval_seconds=0.01)
    replacement = []

    async def slow():
        # Force release, then another turn takes the key
        gate.release("conv-forced")
        replacement.append(
            store.create_turn_lock("conv-forced", started_at=utcnow() - timedelta(minutes=1))
        )
        await asyncio.sleep(0.08)
        return store.get_turn_lock("conv-forced")

    current = await gate.run_exclusive("conv-forced", slow)

    assert current.started_at == replacement[0].started_at


class _WinnerReleasedStore(MemoryLockStore):
    """Insert loses once to a peer that is already gone on the re-read."""

    def __init__(self):
        super().__init__()
        self.lost_once = False

    def create_turn_lock(self, key, *, started_at=None):
        if not self.lost_once:
            self.lost_once = True
            raise ConstraintViolation("turn lock already held", {"key": key})
        return super().create_turn_lock(key, started_at=started_at)


async def test_lost_insert_retries_without_sleeping():
    store = _WinnerReleasedStore()
    gate = _gate(store, poll_interval_seconds=10, wait_timeout_seconds=30)

    lock = await asyncio.wait_for(gate.acquire("conv-race"), timeout=1)

    assert lock.key == "conv-race"
    assert store.lost_once is True
