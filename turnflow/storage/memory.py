from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from turnflow.logging import get_logger
from turnflow.storage.common import duplicate_lock_detail
from turnflow.storage.errors import ConstraintViolation
from turnflow.storage.models import TurnLock, ensure_utc, utcnow


class MemoryLockStore:
    """In-process turn-lock table, optionally mirrored to a JSON file.

    Safe across threads of one process. With ``fs_root`` set, rows survive a
    restart of that process, which is enough for local development; use the
    SQLite, Postgres or Redis stores when several processes share keys.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.locks: Dict[str, TurnLock] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "turn_locks.json"

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    def get_turn_lock(self, key: str) -> Optional[TurnLock]:
        with self._data_lock:
            lock = self.locks.get(key)
            return replace(lock) if lock else None

    def create_turn_lock(
        self, key: str, *, started_at: Optional[datetime] = None
    ) -> TurnLock:
        now = ensure_utc(started_at) if started_at else utcnow()
        with self._data_lock:
            if key in self.locks:
                raise ConstraintViolation(
                    "turn lock already held", duplicate_lock_detail(key)
                )
            lock = TurnLock(key=key, started_at=now, created_at=now)
            self.locks[key] = lock
            self._persist_state()
        return replace(lock)

    def delete_turn_lock(
        self, key: str, *, started_at: Optional[datetime] = None
    ) -> bool:
        with self._data_lock:
            current = self.locks.get(key)
            if (
                current is not None
                and started_at is not None
                and ensure_utc(current.started_at) != ensure_utc(started_at)
            ):
                return False
            removed = self.locks.pop(key, None)
            if removed is not None:
                self._persist_state()
        return removed is not None

    def touch_turn_lock(
        self, key: str, started_at: datetime, *, created_at: Optional[datetime] = None
    ) -> bool:
        with self._data_lock:
            lock = self.locks.get(key)
            if lock is None:
                return False
            if created_at is not None and ensure_utc(lock.created_at) != ensure_utc(created_at):
                return False
            lock.started_at = ensure_utc(started_at)
            self._persist_state()
        return True

    def list_turn_locks(self) -> List[TurnLock]:
        with self._data_lock:
            return sorted(
                (replace(lock) for lock in self.locks.values()),
                key=lambda lock: lock.started_at,
            )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"turn_locks": [lock.to_dict() for lock in self.locks.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist turn locks: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.locks = {
            row["key"]: TurnLock.from_dict(row) for row in data.get("turn_locks", [])
        }
        if self.locks:
            self.logger.info("turn_locks_restored", count=len(self.locks))
        return True
