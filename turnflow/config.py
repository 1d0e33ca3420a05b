from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from turnflow.logging import get_logger

logger = get_logger(__name__)

# Turn lock defaults: wait 60s, poll every 20ms, stale after 5 minutes
DEFAULT_LOCK_WAIT_TIMEOUT_SECONDS = 60.0
DEFAULT_LOCK_POLL_INTERVAL_MS = 20
DEFAULT_LOCK_STALE_AFTER_SECONDS = 5 * 60
DEFAULT_LOCK_HEARTBEAT_INTERVAL_SECONDS = 60.0
DEFAULT_TURN_FALLBACK_DELAY_SECONDS = 4.0


class LockBackend(str, Enum):
    """Persistence backends for turn locks."""

    MEMORY = "memory"
    SQLITE = "sqlite"
    POSTGRES = "postgres"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the turn gate, lock store and workflow engine."""

    lock_backend: LockBackend = env_field(LockBackend.SQLITE, "LOCK_BACKEND")
    database_url: str = env_field(
        "postgresql://localhost:5432/turnflow", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/turnflow", "SHARED_FS_ROOT")
    sqlite_path: str | None = env_field(
        None,
        "SQLITE_PATH",
        description="Lock database file; defaults to <SHARED_FS_ROOT>/state/turn_locks.db",
    )
    lock_wait_timeout_seconds: float = env_field(
        DEFAULT_LOCK_WAIT_TIMEOUT_SECONDS,
        "LOCK_WAIT_TIMEOUT_SECONDS",
        description="How long a turn waits for a busy key before failing",
    )
    lock_poll_interval_ms: int = env_field(
        DEFAULT_LOCK_POLL_INTERVAL_MS, "LOCK_POLL_INTERVAL_MS"
    )
    lock_stale_after_seconds: float = env_field(
        DEFAULT_LOCK_STALE_AFTER_SECONDS,
        "LOCK_STALE_AFTER_SECONDS",
        description="Age after which a lock row is presumed abandoned and reclaimed",
    )
    lock_heartbeat_interval_seconds: float = env_field(
        DEFAULT_LOCK_HEARTBEAT_INTERVAL_SECONDS,
        "LOCK_HEARTBEAT_INTERVAL_SECONDS",
        description="How often a running turn refreshes its lock; 0 disables renewal",
    )
    turn_fallback_delay_seconds: float = env_field(
        DEFAULT_TURN_FALLBACK_DELAY_SECONDS,
        "TURN_FALLBACK_DELAY_SECONDS",
        description="Background turns nobody starts are run by the server after this delay",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("lock_backend")
    @classmethod
    def _validate_lock_backend(cls, value: LockBackend) -> LockBackend:
        return LockBackend(value)

    @field_validator("lock_poll_interval_ms")
    @classmethod
    def _validate_poll_interval(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("lock_poll_interval_ms must be positive")
        return value

    @field_validator("lock_wait_timeout_seconds", "lock_stale_after_seconds")
    @classmethod
    def _validate_positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("lock timeouts must be positive")
        return value

    @field_validator("lock_heartbeat_interval_seconds", "turn_fallback_delay_seconds")
    @classmethod
    def _validate_non_negative_seconds(cls, value: float) -> float:
        if value < 0:
            raise ValueError("interval must not be negative")
        return value

    @property
    def resolved_sqlite_path(self) -> str:
        if self.sqlite_path:
            return self.sqlite_path
        return os.path.join(self.shared_fs_root, "state", "turn_locks.db")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        if (
            _settings_cache.lock_heartbeat_interval_seconds
            and _settings_cache.lock_heartbeat_interval_seconds
            >= _settings_cache.lock_stale_after_seconds
        ):
            logger.warning(
                "lock_heartbeat_slower_than_stale_threshold",
                heartbeat_interval=_settings_cache.lock_heartbeat_interval_seconds,
                stale_after=_settings_cache.lock_stale_after_seconds,
            )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
