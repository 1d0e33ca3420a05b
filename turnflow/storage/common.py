"""Storage contract shared by every turn-lock backend.

The gate only needs select-by-key, insert-with-uniqueness and
delete-by-key; ``touch`` backs heartbeat renewal and ``list`` backs the
queue inspection endpoint.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from turnflow.storage.models import TurnLock


class TurnLockStore(Protocol):
    def get_turn_lock(self, key: str) -> Optional[TurnLock]: ...

    def create_turn_lock(
        self, key: str, *, started_at: Optional[datetime] = None
    ) -> TurnLock:
        """Insert a lock row; raise ``ConstraintViolation`` if ``key`` exists."""
        ...

    def delete_turn_lock(
        self, key: str, *, started_at: Optional[datetime] = None
    ) -> bool:
        """Delete the row; with ``started_at``, only if the row still has it."""
        ...

    def touch_turn_lock(
        self, key: str, started_at: datetime, *, created_at: Optional[datetime] = None
    ) -> bool:
        """Renew ``started_at``; with ``created_at``, only on the row created then."""
        ...

    def list_turn_locks(self) -> List[TurnLock]: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


def duplicate_lock_detail(key: str) -> dict:
    return {"field": "key", "key": key}
