from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def _env_flag(key: str, default: bool) -> bool:
    raw = (os.getenv(key) or "").strip().lower()
    if not raw:
        return default
    return raw not in ("0", "false", "no", "off")


def _env_int(key: str, default: int, minimum: int = 0) -> int:
    raw = _env_or(key, str(default)).strip()
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer, got {raw!r}")
    if value < minimum:
        raise RuntimeError(f"{key} must be >= {minimum}, got {value}")
    return value


def _env_float(key: str, default: float, minimum: float = 0.0) -> float:
    raw = _env_or(key, str(default)).strip()
    try:
        value = float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a number, got {raw!r}")
    if value < minimum:
        raise RuntimeError(f"{key} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class SyncSettings:
    env: str = "dev"
    db_url: str = "sqlite+pysqlite:////tmp/pos.db"
    # Outbox database; the hybrid deployment keeps it local while db_url
    # points at the cloud primary.
    queue_db_url: str = "sqlite+pysqlite:////tmp/pos.db"
    db_schema: Optional[str] = None
    queue_db_schema: Optional[str] = None
    max_retries: int = 5
    conflict_window_seconds: int = 3600
    interval_seconds: float = 30.0
    batch_size: int = 0
    # A syncing claim older than this is taken back by the next drain.
    lease_seconds: int = 300
    # Cross-process drain lock, used with the redis change backend.
    lock_key: str = "pos:sync:drain"
    background: bool = True
    events_room: str = "pos"
    changes_backend: str = "local"
    changes_redis_url: str = ""
    changes_channel: str = "pos:order_updates"
    notifier_retry_seconds: float = 5.0
    notifier_setup_retry_seconds: float = 10.0


def load_settings() -> SyncSettings:
    """Read settings from the environment; invalid numbers fail fast."""
    env = _env_or("ENV", "dev").lower()
    db_url = _env_or("POS_DB_URL", _env_or("DB_URL", "sqlite+pysqlite:////tmp/pos.db"))
    queue_db_url = _env_or("POS_QUEUE_DB_URL", db_url)
    redis_url = _env_or("CHANGES_REDIS_URL", "")
    backend = _env_or("CHANGES_BACKEND", "redis" if redis_url else "local").strip().lower()
    if backend not in ("redis", "local"):
        raise RuntimeError(f"CHANGES_BACKEND must be 'redis' or 'local', got {backend!r}")
    if backend == "redis" and not redis_url:
        raise RuntimeError("CHANGES_REDIS_URL is required when CHANGES_BACKEND=redis")
    return SyncSettings(
        env=env,
        db_url=db_url,
        queue_db_url=queue_db_url,
        db_schema=os.getenv("DB_SCHEMA") if not db_url.startswith("sqlite") else None,
        queue_db_schema=os.getenv("DB_SCHEMA") if not queue_db_url.startswith("sqlite") else None,
        max_retries=_env_int("SYNC_MAX_RETRIES", 5, minimum=1),
        conflict_window_seconds=_env_int("SYNC_CONFLICT_WINDOW_SECONDS", 3600),
        interval_seconds=_env_float("SYNC_INTERVAL_SECONDS", 30.0, minimum=0.1),
        batch_size=_env_int("SYNC_BATCH_SIZE", 0),
        lease_seconds=_env_int("SYNC_LEASE_SECONDS", 300, minimum=1),
        lock_key=_env_or("SYNC_LOCK_KEY", "pos:sync:drain").strip() or "pos:sync:drain",
        background=_env_flag("SYNC_BACKGROUND", True),
        events_room=_env_or("SYNC_EVENTS_ROOM", "pos").strip() or "pos",
        changes_backend=backend,
        changes_redis_url=redis_url,
        changes_channel=_env_or("CHANGES_CHANNEL", "pos:order_updates"),
        notifier_retry_seconds=_env_float("NOTIFIER_RETRY_SECONDS", 5.0),
        notifier_setup_retry_seconds=_env_float("NOTIFIER_SETUP_RETRY_SECONDS", 10.0),
    )
