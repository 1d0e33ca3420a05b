from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, List, Optional

from turnflow.logging import get_logger
from turnflow.storage.common import duplicate_lock_detail
from turnflow.storage.errors import ConstraintViolation
from turnflow.storage.models import TurnLock, ensure_utc, utcnow

# Seconds SQLite waits on a locked database file before raising
_BUSY_TIMEOUT_SECONDS = 5.0


def _to_millis(value: datetime) -> int:
    return int(round(ensure_utc(value).timestamp() * 1000))


def _from_millis(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class SqliteLockStore:
    """Local-first turn-lock table in a SQLite file.

    The ``conversation_id`` primary key is the mutual-exclusion primitive:
    every process opening the same file sees one row per key.
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(
            str(self.path), timeout=_BUSY_TIMEOUT_SECONDS, isolation_level=None
        )
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversation_locks (
                    conversation_id TEXT PRIMARY KEY,
                    started_at INTEGER NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        return None

    @staticmethod
    def _row_to_lock(row: tuple) -> TurnLock:
        return TurnLock(
            key=row[0], started_at=_from_millis(row[1]), created_at=_from_millis(row[2])
        )

    def get_turn_lock(self, key: str) -> Optional[TurnLock]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT conversation_id, started_at, created_at FROM conversation_locks WHERE conversation_id = ?",
                (key,),
            ).fetchone()
        return self._row_to_lock(row) if row else None

    def create_turn_lock(
        self, key: str, *, started_at: Optional[datetime] = None
    ) -> TurnLock:
        now = ensure_utc(started_at) if started_at else utcnow()
        millis = _to_millis(now)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO conversation_locks (conversation_id, started_at, created_at) VALUES (?, ?, ?)",
                    (key, millis, millis),
                )
        except sqlite3.IntegrityError:
            raise ConstraintViolation("turn lock already held", duplicate_lock_detail(key))
        return TurnLock(key=key, started_at=_from_millis(millis), created_at=_from_millis(millis))

    def delete_turn_lock(
        self, key: str, *, started_at: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            if started_at is None:
                cursor = conn.execute(
                    "DELETE FROM conversation_locks WHERE conversation_id = ?", (key,)
                )
            else:
                cursor = conn.execute(
                    "DELETE FROM conversation_locks WHERE conversation_id = ? AND started_at = ?",
                    (key, _to_millis(started_at)),
                )
        return cursor.rowcount > 0

    def touch_turn_lock(
        self, key: str, started_at: datetime, *, created_at: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            if created_at is None:
                cursor = conn.execute(
                    "UPDATE conversation_locks SET started_at = ? WHERE conversation_id = ?",
                    (_to_millis(started_at), key),
                )
            else:
                cursor = conn.execute(
                    "UPDATE conversation_locks SET started_at = ? WHERE conversation_id = ? AND created_at = ?",
                    (_to_millis(started_at), key, _to_millis(created_at)),
                )
        return cursor.rowcount > 0

    def list_turn_locks(self) -> List[TurnLock]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT conversation_id, started_at, created_at FROM conversation_locks ORDER BY started_at"
            ).fetchall()
        return [self._row_to_lock(row) for row in rows]
