from __future__ import annotations

import asyncio
import contextlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from turnflow.config import DEFAULT_TURN_FALLBACK_DELAY_SECONDS
from turnflow.logging import get_logger
from turnflow.storage.models import utcnow

TurnJob = Callable[[], Awaitable[Any]]


@dataclass
class PendingTurn:
    turn_id: str
    key: str
    job: TurnJob
    created_at: datetime = field(default_factory=utcnow)


class TurnJobRegistry:
    """Turns accepted for background execution but not started yet.

    A client that posted a turn normally claims it with ``take`` and runs
    it while streaming the result. If nobody claims it within the fallback
    delay, the registry runs the job itself so the turn is never lost.
    ``take`` is one-shot: whichever side gets there first owns the job.
    """

    def __init__(
        self, *, fallback_delay_seconds: float = DEFAULT_TURN_FALLBACK_DELAY_SECONDS
    ) -> None:
        self.fallback_delay_seconds = fallback_delay_seconds
        self.logger = get_logger(__name__)
        self._pending: Dict[str, PendingTurn] = {}
        self._fallbacks: Dict[str, asyncio.Task] = {}

    def register(self, key: str, job: TurnJob, *, turn_id: Optional[str] = None) -> str:
        turn_id = turn_id or str(uuid.uuid4())
        if turn_id in self._pending:
            raise ValueError(f"turn {turn_id} is already pending")
        self._pending[turn_id] = PendingTurn(turn_id=turn_id, key=key, job=job)
        self.logger.info("turn_registered", turn_id=turn_id, key=key)
        return turn_id

    def take(self, turn_id: str) -> Optional[PendingTurn]:
        pending = self._pending.pop(turn_id, None)
        if pending is None:
            return None
        fallback = self._fallbacks.pop(turn_id, None)
        if fallback is not None and fallback is not asyncio.current_task():
            fallback.cancel()
        return pending

    def pending(self) -> List[PendingTurn]:
        return sorted(self._pending.values(), key=lambda turn: turn.created_at)

    def schedule_fallback(
        self, turn_id: str, delay_seconds: Optional[float] = None
    ) -> asyncio.Task:
        delay = self.fallback_delay_seconds if delay_seconds is None else delay_seconds
        task = asyncio.create_task(self._run_fallback(turn_id, delay))
        self._fallbacks[turn_id] = task
        return task

    async def _run_fallback(self, turn_id: str, delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds)
        pending = self.take(turn_id)
        if pending is None:
            return
        self.logger.info("turn_fallback_started", turn_id=turn_id, key=pending.key)
        try:
            await pending.job()
        except Exception as exc:
            # No caller is waiting on a fallback run; the failure only gets logged
            self.logger.error(
                "turn_fallback_failed",
                turn_id=turn_id,
                key=pending.key,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def close(self) -> None:
        tasks = list(self._fallbacks.values())
        self._fallbacks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._pending.clear()
