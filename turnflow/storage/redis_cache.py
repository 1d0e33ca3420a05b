from __future__ import annotations

import json
from datetime import datetime
from typing import List, Optional

from redis import Redis

from turnflow.logging import get_logger
from turnflow.storage.common import duplicate_lock_detail
from turnflow.storage.errors import ConstraintViolation
from turnflow.storage.models import TurnLock, ensure_utc, utcnow


class RedisLockStore:
    """Turn-lock table in Redis.

    Each lock is a JSON string at ``turnlock:key:<key>`` claimed with ``SET NX``;
    a set at ``turnlock:index`` tracks keys for listing. Keys carry no TTL:
    staleness is decided by the gate from ``started_at``, the same as the
    SQL backends.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    _INDEX_KEY = "turnlock:index"

    # Compare-and-delete: with a non-empty ARGV[1], only drop the row if its
    # started_at still matches (stale reclaim must not remove a fresh lock)
    _DELETE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  redis.call('SREM', KEYS[2], ARGV[2])
  return 0
end
if ARGV[1] ~= '' then
  local ok, row = pcall(cjson.decode, raw)
  if ok and row['started_at'] ~= ARGV[1] then
    return 0
  end
end
redis.call('DEL', KEYS[1])
redis.call('SREM', KEYS[2], ARGV[2])
return 1
"""

    # Renew started_at in place; with a non-empty ARGV[2], only on the row
    # whose created_at matches (a re-acquired key belongs to another turn)
    _TOUCH_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local ok, row = pcall(cjson.decode, raw)
if not ok then
  return 0
end
if ARGV[2] ~= '' and row['created_at'] ~= ARGV[2] then
  return 0
end
row['started_at'] = ARGV[1]
redis.call('SET', KEYS[1], cjson.encode(row))
return 1
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._delete_script = self.client.register_script(self._DELETE_SCRIPT)
        self._touch_script = self.client.register_script(self._TOUCH_SCRIPT)

    @staticmethod
    def _lock_key(key: str) -> str:
        return f"turnlock:key:{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving turns."""
        self.client.ping()

    def close(self) -> None:
        self.client.close()

    def _decode(self, raw: Optional[str]) -> Optional[TurnLock]:
        if not raw:
            return None
        try:
            return TurnLock.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            self.logger.warning("turn_lock_decode_failed", error=str(exc))
            return None

    def get_turn_lock(self, key: str) -> Optional[TurnLock]:
        return self._decode(self.client.get(self._lock_key(key)))

    def create_turn_lock(
        self, key: str, *, started_at: Optional[datetime] = None
    ) -> TurnLock:
        now = ensure_utc(started_at) if started_at else utcnow()
        lock = TurnLock(key=key, started_at=now, created_at=now)
        acquired = self.client.set(self._lock_key(key), json.dumps(lock.to_dict()), nx=True)
        if not acquired:
            raise ConstraintViolation("turn lock already held", duplicate_lock_detail(key))
        self.client.sadd(self._INDEX_KEY, key)
        return lock

    def delete_turn_lock(
        self, key: str, *, started_at: Optional[datetime] = None
    ) -> bool:
        expected = ensure_utc(started_at).isoformat() if started_at else ""
        deleted = self._delete_script(
            keys=[self._lock_key(key), self._INDEX_KEY], args=[expected, key]
        )
        return bool(deleted)

    def touch_turn_lock(
        self, key: str, started_at: datetime, *, created_at: Optional[datetime] = None
    ) -> bool:
        expected = ensure_utc(created_at).isoformat() if created_at else ""
        renewed = self._touch_script(
            keys=[self._lock_key(key)], args=[ensure_utc(started_at).isoformat(), expected]
        )
        return bool(renewed)

    def list_turn_locks(self) -> List[TurnLock]:
        keys = sorted(self.client.smembers(self._INDEX_KEY))
        if not keys:
            return []
        raw_values = self.client.mget([self._lock_key(k) for k in keys])
        locks: List[TurnLock] = []
        for key, raw in zip(keys, raw_values):
            lock = self._decode(raw)
            if lock is None:
                # Row was released between SMEMBERS and MGET
                self.client.srem(self._INDEX_KEY, key)
                continue
            locks.append(lock)
        return sorted(locks, key=lambda lock: lock.started_at)
