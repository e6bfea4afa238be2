# src/state/store_factory.py — v1
"""Factory for state store instantiation."""

from __future__ import annotations

from deploygate.config.settings import Settings
from deploygate.state.base_state_store import BaseStateStore


def create_state_store(settings: Settings | None = None) -> BaseStateStore:
    """Instantiate the configured state backend.

    Args:
        settings: Application settings. Defaults to SQLite under ~/.deploygate.

    Returns:
        Configured BaseStateStore implementation.
    """
    backend = "sqlite" if settings is None else settings.state_backend

    if backend == "sqlite":
        from deploygate.state.sqlite_store import SqliteStateStore

        db_path = "~/.deploygate/state.db" if settings is None else settings.state_sqlite_path
        return SqliteStateStore(db_path=db_path)

    if backend == "redis":
        from deploygate.state.redis_store import RedisStateStore

        if settings is None or not settings.state_redis_url:
            raise ValueError(
                "STATE_REDIS_URL must be set when STATE_BACKEND=redis"
            )
        return RedisStateStore(
            redis_url=settings.state_redis_url,
            prefix=settings.state_redis_prefix,
        )

    raise ValueError(f"Unsupported state backend: {backend!r}")
