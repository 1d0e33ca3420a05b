from datetime import timedelta
from pathlib import Path

import pytest

from turnflow.storage.errors import ConstraintViolation
from turnflow.storage.memory import MemoryLockStore
from turnflow.storage.models import TurnLock, utcnow
from turnflow.storage.sqlite import SqliteLockStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        return MemoryLockStore()
    return SqliteLockStore(str(tmp_path / "locks.db"))


def test_create_get_delete(store):
    assert store.get_turn_lock("conv-1") is None

    created = store.create_turn_lock("conv-1")
    fetched = store.get_turn_lock("conv-1")

    assert fetched is not None
    assert fetched.key == "conv-1"
    assert fetched.started_at == created.started_at
    assert store.delete_turn_lock("conv-1") is True
    assert store.delete_turn_lock("conv-1") is False
    assert store.get_turn_lock("conv-1") is None


def test_duplicate_insert_is_constraint_violation(store):
    store.create_turn_lock("conv-dup")

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_turn_lock("conv-dup")

    assert exc_info.value.detail["key"] == "conv-dup"


def test_conditional_delete_matches_started_at(store):
    old = store.create_turn_lock("conv-cas", started_at=utcnow() - timedelta(minutes=10))
    store.delete_turn_lock("conv-cas")
    store.create_turn_lock("conv-cas")

    assert store.delete_turn_lock("conv-cas", started_at=old.started_at) is False
    current = store.get_turn_lock("conv-cas")
    assert store.delete_turn_lock("conv-cas", started_at=current.started_at) is True


def test_touch_renews_started_at(store):
    created = store.create_turn_lock("conv-touch", started_at=utcnow() - timedelta(minutes=10))
    renewed_at = utcnow()

    assert store.touch_turn_lock("conv-touch", renewed_at) is True
    lock = store.get_turn_lock("conv-touch")
    assert lock.started_at > created.started_at
    assert not lock.is_stale(300, now=renewed_at)
    assert store.touch_turn_lock("missing", renewed_at) is False


def test_list_orders_by_started_at(store):
    now = utcnow()
    store.create_turn_lock("newer", started_at=now)
    store.create_turn_lock("older", started_at=now - timedelta(seconds=30))

    assert [lock.key for lock in store.list_turn_locks()] == ["older", "newer"]


def test_returned_locks_are_copies():
    store = MemoryLockStore()
    store.create_turn_lock("conv-copy")

    lock = store.get_turn_lock("conv-copy")
    lock.started_at = utcnow() - timedelta(days=1)

    assert store.get_turn_lock("conv-copy").started_at != lock.started_at


def test_memory_store_persists_to_fs_root(tmp_path: Path):
    first = MemoryLockStore(fs_root=str(tmp_path))
    created = first.create_turn_lock("conv-persist")

    restored = MemoryLockStore(fs_root=str(tmp_path)).get_turn_lock("conv-persist")

    assert restored is not None
    assert restored.started_at == created.started_at
    assert (tmp_path / "state" / "turn_locks.json").exists()


def test_sqlite_rows_are_shared_between_instances(tmp_path: Path):
    path = str(tmp_path / "shared.db")
    SqliteLockStore(path).create_turn_lock("conv-shared")

    with pytest.raises(ConstraintViolation):
        SqliteLockStore(path).create_turn_lock("conv-shared")


def test_turn_lock_staleness():
    now = utcnow()
    lock = TurnLock(key="k", started_at=now - timedelta(seconds=301), created_at=now)

    assert lock.is_stale(300, now=now)
    assert not lock.is_stale(302, now=now)
    assert TurnLock.from_dict(lock.to_dict()) == lock


def test_touch_with_created_at_skips_replaced_row(store):
    first = store.create_turn_lock("conv-re", started_at=utcnow() - timedelta(minutes=10))
    store.delete_turn_lock("conv-re")
    second = store.create_turn_lock("conv-re", started_at=utcnow() - timedelta(minutes=5))

    assert store.touch_turn_lock("conv-re", utcnow(), created_at=first.created_at) is False
    assert store.get_turn_lock("conv-re").started_at == second.started_at
    assert store.touch_turn_lock("conv-re", utcnow(), created_at=second.created_at) is True
