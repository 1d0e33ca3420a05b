from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (older rows, SQLite) to aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class TurnLock:
    """Active-turn mutex row: one per logical key (conversation or workflow run)."""

    key: str
    started_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        current = now or utcnow()
        return (ensure_utc(current) - ensure_utc(self.started_at)).total_seconds()

    def is_stale(self, stale_after_seconds: float, now: Optional[datetime] = None) -> bool:
        return self.age_seconds(now) > stale_after_seconds

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "started_at": ensure_utc(self.started_at).isoformat(),
            "created_at": ensure_utc(self.created_at).isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TurnLock":
        return cls(
            key=data["key"],
            started_at=ensure_utc(datetime.fromisoformat(data["started_at"])),
            created_at=ensure_utc(datetime.fromisoformat(data["created_at"])),
        )
