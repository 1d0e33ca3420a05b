from __future__ import annotations

import asyncio
import threading
from typing import Any, Mapping, Optional, Union
from urllib.parse import urlparse, urlunparse

from turnflow.config import LockBackend, Settings, get_settings, reset_settings_cache
from turnflow.logging import get_logger
from turnflow.service.handlers import HandlerRegistry, HandlerTable
from turnflow.service.turn_gate import TurnGate
from turnflow.service.turn_jobs import TurnJobRegistry
from turnflow.service.workflow import WorkflowEngine, WorkflowResult
from turnflow.service.workflow_schema import WorkflowDefinition
from turnflow.storage.common import TurnLockStore
from turnflow.storage.memory import MemoryLockStore
from turnflow.storage.sqlite import SqliteLockStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN or Redis URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except Exception:
        return "***url_parse_error***"


def build_lock_store(settings: Settings) -> TurnLockStore:
    """Instantiate the configured turn-lock backend.

    Postgres and Redis drivers are imported lazily so a local SQLite
    deployment does not need them connected.
    """
    backend = LockBackend(settings.lock_backend)
    if backend == LockBackend.MEMORY:
        return MemoryLockStore(
            fs_root=None if settings.test_mode else settings.shared_fs_root
        )
    if backend == LockBackend.SQLITE:
        return SqliteLockStore(settings.resolved_sqlite_path)
    if backend == LockBackend.POSTGRES:
        from turnflow.storage.postgres import PostgresLockStore

        return PostgresLockStore(settings.database_url)
    from turnflow.storage.redis_cache import RedisLockStore

    return RedisLockStore(settings.redis_url)


def _lock_backend_location(settings: Settings) -> Optional[str]:
    backend = LockBackend(settings.lock_backend)
    if backend == LockBackend.POSTGRES:
        return _mask_url_password(settings.database_url)
    if backend == LockBackend.REDIS:
        return _mask_url_password(settings.redis_url)
    if backend == LockBackend.SQLITE:
        return settings.resolved_sqlite_path
    return None


class Runtime:
    """Holds the lock store, turn gate, engine and registries for the app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[TurnLockStore] = None,
        handlers: Optional[HandlerRegistry] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            lock_backend=LockBackend(self.settings.lock_backend).value,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = store or build_lock_store(self.settings)
            self.store.verify_connection()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                lock_backend=LockBackend(self.settings.lock_backend).value,
                location=_lock_backend_location(self.settings),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.gate = TurnGate.from_settings(self.store, self.settings)
        self.engine = WorkflowEngine()
        self.handlers = handlers or HandlerRegistry()
        self.turn_jobs = TurnJobRegistry(
            fallback_delay_seconds=self.settings.turn_fallback_delay_seconds
        )

        logger.info(
            "runtime_initialized",
            lock_backend=LockBackend(self.settings.lock_backend).value,
            location=_lock_backend_location(self.settings),
            wait_timeout_seconds=self.settings.lock_wait_timeout_seconds,
            stale_after_seconds=self.settings.lock_stale_after_seconds,
            heartbeat_interval_seconds=self.settings.lock_heartbeat_interval_seconds,
        )

    async def run_workflow_turn(
        self,
        key: str,
        workflow: Union[WorkflowDefinition, Mapping[str, Any]],
        initial_context: Optional[Mapping[str, Any]] = None,
        *,
        handlers: Optional[HandlerTable] = None,
        already_locked: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> WorkflowResult:
        """Run one workflow as the single active turn for ``key``."""
        table = handlers if handlers is not None else self.handlers

        async def _turn() -> WorkflowResult:
            return await self.engine.run_workflow(
                workflow, table, initial_context, cancel_event=cancel_event
            )

        return await self.gate.run_exclusive(key, _turn, already_locked=already_locked)

    async def close(self) -> None:
        await self.turn_jobs.close()
        try:
            self.store.close()
        except Exception as exc:
            logger.warning("runtime_store_close_failed", error=str(exc))


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.store.close()
            except Exception as exc:
                logger.warning("runtime_reset_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
