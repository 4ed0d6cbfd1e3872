from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Dict

from hybridpos_shared import setup_json_logging

from .changes import capture_changes, make_channel
from .config import load_settings
from .drain_lock import make_drain_lock
from .models import create_schema, make_engine, make_sessionmaker
from .sync_worker import SyncWorker

log = logging.getLogger("pos.sync")


def _log_event(event: str, data: Dict[str, Any]) -> None:
    # No websockets in this process; the API relays store changes via the change channel.
    log.info(event, extra={"event": data})


async def _run(worker: SyncWorker) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover
            pass
    await worker.run_periodic(stop)


def main() -> int:
    """
    Standalone drain loop, for deployments that keep the sync worker out of
    the API process (run the API with SYNC_BACKGROUND=off; both sides need
    CHANGES_BACKEND=redis so they share the drain lock).
    """
    setup_json_logging()
    try:
        settings = load_settings()
    except RuntimeError as e:
        log.error("invalid configuration: %s", e)
        return 1
    if settings.changes_backend != "redis":
        # The API drains on enqueue too; only a redis lock spans both processes.
        log.error("standalone sync worker requires CHANGES_BACKEND=redis (got %s)", settings.changes_backend)
        return 1

    store_engine = make_engine(settings.db_url)
    queue_engine = store_engine if settings.queue_db_url == settings.db_url else make_engine(settings.queue_db_url)
    create_schema(store_engine, queue_engine)
    store_sessions = make_sessionmaker(store_engine)
    channel = make_channel(settings.changes_backend, settings.changes_redis_url, settings.changes_channel)
    capture_changes(store_sessions, channel)
    worker = SyncWorker(
        make_sessionmaker(queue_engine),
        store_sessions,
        settings,
        publish=_log_event,
        lock=make_drain_lock(settings),
    )

    log.info("sync worker starting (changes=%s)", channel.name)
    try:
        asyncio.run(_run(worker))
    except KeyboardInterrupt:
        log.info("sync worker interrupted, shutting down")
    finally:
        channel.close()
        store_engine.dispose()
        if queue_engine is not store_engine:
            queue_engine.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
