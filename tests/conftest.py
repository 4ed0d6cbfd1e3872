import os
import tempfile
from dataclasses import replace
from typing import Any, Dict, List, Tuple

import pytest

_TMP = tempfile.mkdtemp(prefix="pos-tests-")

os.environ.setdefault("ENV", "test")
os.environ.setdefault("POS_DB_URL", f"sqlite+pysqlite:///{os.path.join(_TMP, 'app.db')}")
os.environ.setdefault("CHANGES_BACKEND", "local")
# Drains in tests are triggered explicitly or by request background tasks.
os.environ.setdefault("SYNC_BACKGROUND", "off")

from apps.pos.app import models  # noqa: E402
from apps.pos.app.config import SyncSettings  # noqa: E402
from apps.pos.app.sync_worker import SyncWorker  # noqa: E402


@pytest.fixture()
def engines(tmp_path):
    """
    Isolated SQLite files for authoritative storage and the outbox, so every
    test runs the split "local outbox / cloud primary" layout.
    """
    store = models.make_engine(f"sqlite+pysqlite:///{tmp_path / 'store.db'}")
    queue = models.make_engine(f"sqlite+pysqlite:///{tmp_path / 'queue.db'}")
    models.create_schema(store, queue)
    yield store, queue
    store.dispose()
    queue.dispose()


@pytest.fixture()
def store_sessions(engines):
    return models.make_sessionmaker(engines[0])


@pytest.fixture()
def queue_sessions(engines):
    return models.make_sessionmaker(engines[1])


@pytest.fixture()
def settings() -> SyncSettings:
    return replace(SyncSettings(), max_retries=5, conflict_window_seconds=3600)


@pytest.fixture()
def events() -> List[Tuple[str, Dict[str, Any]]]:
    return []


@pytest.fixture()
def worker(queue_sessions, store_sessions, settings, events) -> SyncWorker:
    return SyncWorker(queue_sessions, store_sessions, settings, publish=lambda ev, data: events.append((ev, data)))
