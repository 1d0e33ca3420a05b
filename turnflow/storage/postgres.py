from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from turnflow.logging import get_logger
from turnflow.storage.common import duplicate_lock_detail
from turnflow.storage.errors import ConstraintViolation
from turnflow.storage.models import TurnLock, ensure_utc, utcnow


class PostgresLockStore:
    """Turn-lock table in Postgres, shared by every process on the DSN."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_turn_lock_table()

    def _connect(self):
        return self.pool.connection()

    def _ensure_turn_lock_table(self) -> None:
        """Create the ``conversation_lock`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversation_lock (
                    conversation_id TEXT PRIMARY KEY,
                    started_at TIMESTAMPTZ NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_lock(row: dict) -> TurnLock:
        return TurnLock(
            key=row["conversation_id"],
            started_at=ensure_utc(row["started_at"]),
            created_at=ensure_utc(row["created_at"]),
        )

    def get_turn_lock(self, key: str) -> Optional[TurnLock]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT conversation_id, started_at, created_at FROM conversation_lock WHERE conversation_id = %s",
                (key,),
            ).fetchone()
        return self._row_to_lock(row) if row else None

    def create_turn_lock(
        self, key: str, *, started_at: Optional[datetime] = None
    ) -> TurnLock:
        now = ensure_utc(started_at) if started_at else utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO conversation_lock (conversation_id, started_at, created_at)
                    VALUES (%s, %s, %s)
                    """,
                    (key, now, now),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("turn lock already held", duplicate_lock_detail(key))
        return TurnLock(key=key, started_at=now, created_at=now)

    def delete_turn_lock(
        self, key: str, *, started_at: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            if started_at is None:
                cursor = conn.execute(
                    "DELETE FROM conversation_lock WHERE conversation_id = %s", (key,)
                )
            else:
                cursor = conn.execute(
                    "DELETE FROM conversation_lock WHERE conversation_id = %s AND started_at = %s",
                    (key, ensure_utc(started_at)),
                )
            deleted = cursor.rowcount
        return deleted > 0

    def touch_turn_lock(
        self, key: str, started_at: datetime, *, created_at: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            if created_at is None:
                cursor = conn.execute(
                    "UPDATE conversation_lock SET started_at = %s WHERE conversation_id = %s",
                    (ensure_utc(started_at), key),
                )
            else:
                cursor = conn.execute(
                    "UPDATE conversation_lock SET started_at = %s WHERE conversation_id = %s AND created_at = %s",
                    (ensure_utc(started_at), key, ensure_utc(created_at)),
                )
            updated = cursor.rowcount
        return updated > 0

    def list_turn_locks(self) -> List[TurnLock]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT conversation_id, started_at, created_at FROM conversation_lock ORDER BY started_at"
            ).fetchall()
        return [self._row_to_lock(row) for row in rows]
