from __future__ import annotations

import asyncio
import contextlib
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from turnflow.config import (
    DEFAULT_LOCK_HEARTBEAT_INTERVAL_SECONDS,
    DEFAULT_LOCK_POLL_INTERVAL_MS,
    DEFAULT_LOCK_STALE_AFTER_SECONDS,
    DEFAULT_LOCK_WAIT_TIMEOUT_SECONDS,
    Settings,
)
from turnflow.logging import get_logger
from turnflow.service.errors import LockTimeoutError
from turnflow.storage.common import TurnLockStore
from turnflow.storage.errors import ConstraintViolation
from turnflow.storage.models import TurnLock, utcnow

T = TypeVar("T")


class TurnGate:
    """Serializes turns per logical key through a persisted mutex row.

    The store's uniqueness constraint is what guarantees mutual exclusion
    across processes; polling only decides how soon a waiter notices the
    row is gone. A row whose ``started_at`` is older than
    ``stale_after_seconds`` is presumed abandoned by a crashed holder and
    reclaimed. Live holders renew ``started_at`` every
    ``heartbeat_interval_seconds`` so a slow turn is never mistaken for a
    dead one.
    """

    def __init__(
        self,
        store: TurnLockStore,
        *,
        wait_timeout_seconds: float = DEFAULT_LOCK_WAIT_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_LOCK_POLL_INTERVAL_MS / 1000,
        stale_after_seconds: float = DEFAULT_LOCK_STALE_AFTER_SECONDS,
        heartbeat_interval_seconds: float = DEFAULT_LOCK_HEARTBEAT_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.wait_timeout_seconds = wait_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self._clock = clock
        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(cls, store: TurnLockStore, settings: Settings) -> "TurnGate":
        return cls(
            store,
            wait_timeout_seconds=settings.lock_wait_timeout_seconds,
            poll_interval_seconds=settings.lock_poll_interval_ms / 1000,
            stale_after_seconds=settings.lock_stale_after_seconds,
            heartbeat_interval_seconds=settings.lock_heartbeat_interval_seconds,
        )

    def try_lock(self, key: str) -> bool:
        """Single insert attempt; ``False`` when another turn holds ``key``.

        Callers that win can hand the turn to ``run_exclusive`` with
        ``already_locked=True`` to get release-on-exit without waiting.
        """
        try:
            self.store.create_turn_lock(key, started_at=self._clock())
        except ConstraintViolation:
            return False
        self.logger.debug("turn_lock_acquired", key=key, waited_ms=0)
        return True

    async def acquire(self, key: str) -> TurnLock:
        """Wait until ``key`` is free and claim it.

        Raises:
            LockTimeoutError: the key stayed busy past ``wait_timeout_seconds``.
                No row is deleted on timeout.
        """
        started = time.monotonic()
        deadline = started + self.wait_timeout_seconds
        while True:
            existing = self.store.get_turn_lock(key)
            if existing is None:
                try:
                    lock = self.store.create_turn_lock(key, started_at=self._clock())
                except ConstraintViolation:
                    # Another acquirer inserted between our read and write
                    existing = self.store.get_turn_lock(key)
                    if existing is None:
                        # ...and already released it
                        continue
                else:
                    self.logger.debug(
                        "turn_lock_acquired",
                        key=key,
                        waited_ms=int((time.monotonic() - started) * 1000),
                    )
                    return lock

            if existing is not None and existing.is_stale(
                self.stale_after_seconds, now=self._clock()
            ):
                self.logger.warning(
                    "turn_lock_reclaimed_stale",
                    key=key,
                    age_seconds=round(existing.age_seconds(self._clock()), 3),
                    stale_after=self.stale_after_seconds,
                )
                # Only delete the row we judged stale, not a fresh one a peer
                # inserted after reclaiming it first
                self.store.delete_turn_lock(key, started_at=existing.started_at)
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                waited = time.monotonic() - started
                self.logger.warning(
                    "turn_lock_timeout", key=key, waited_seconds=round(waited, 3)
                )
                raise LockTimeoutError(key, waited)
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

    def release(self, key: str) -> bool:
        """Delete the lock row for ``key`` regardless of who inserted it."""
        released = self.store.delete_turn_lock(key)
        self.logger.debug("turn_lock_released", key=key, existed=released)
        return released

    async def run_exclusive(
        self,
        key: str,
        work: Callable[[], Awaitable[T]],
        *,
        already_locked: bool = False,
    ) -> T:
        """Run ``work`` as the only turn for ``key`` and release afterwards.

        With ``already_locked=True`` the caller inserted the row itself (see
        ``try_lock``); acquisition is skipped but release still happens.
        Failures from ``work`` propagate after the row is deleted.
        """
        held: Optional[TurnLock] = None
        if not already_locked:
            held = await self.acquire(key)
        heartbeat: Optional[asyncio.Task] = None
        try:
            if already_locked:
                held = self.store.get_turn_lock(key)
            heartbeat = self._start_heartbeat(key, held.created_at if held else None)
            return await work()
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat
            try:
                self.release(key)
            except Exception as exc:
                # The row ages out through the stale rule; don't mask the turn's own outcome
                self.logger.error("turn_lock_release_failed", key=key, error=str(exc))

    def _start_heartbeat(
        self, key: str, created_at: Optional[datetime]
    ) -> Optional[asyncio.Task]:
        if not self.heartbeat_interval_seconds or self.heartbeat_interval_seconds <= 0:
            return None
        return asyncio.create_task(self._heartbeat(key, created_at))

    async def _heartbeat(self, key: str, created_at: Optional[datetime]) -> None:
        """Keep renewing the row this turn holds; stop once it is gone or replaced."""
        while True:
            await asyncio.sleep(self.heartbeat_interval_seconds)
            try:
                renewed = self.store.touch_turn_lock(
                    key, self._clock(), created_at=created_at
                )
            except Exception as exc:
                self.logger.warning("turn_lock_heartbeat_failed", key=key, error=str(exc))
                continue
            if not renewed:
                self.logger.warning("turn_lock_lost", key=key)
                return
