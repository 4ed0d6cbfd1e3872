import pytest

from apps.pos.app.config import load_settings


def test_defaults(monkeypatch):
    for key in ("SYNC_MAX_RETRIES", "SYNC_CONFLICT_WINDOW_SECONDS", "SYNC_INTERVAL_SECONDS", "CHANGES_REDIS_URL", "CHANGES_BACKEND", "POS_QUEUE_DB_URL"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("POS_DB_URL", "sqlite+pysqlite:////tmp/x.db")
    s = load_settings()
    assert s.max_retries == 5
    assert s.conflict_window_seconds == 3600
    assert s.interval_seconds == 30.0
    assert s.notifier_retry_seconds == 5.0
    assert s.notifier_setup_retry_seconds == 10.0
    assert s.changes_backend == "local"
    # Outbox shares the primary database unless told otherwise.
    assert s.queue_db_url == s.db_url


def test_redis_is_picked_when_url_is_set(monkeypatch):
    monkeypatch.delenv("CHANGES_BACKEND", raising=False)
    monkeypatch.setenv("CHANGES_REDIS_URL", "redis://cache:6379/2")
    assert load_settings().changes_backend == "redis"


@pytest.mark.parametrize(
    "key,value",
    [
        ("SYNC_MAX_RETRIES", "five"),
        ("SYNC_MAX_RETRIES", "0"),
        ("SYNC_INTERVAL_SECONDS", "-1"),
        ("CHANGES_BACKEND", "kafka"),
    ],
)
def test_invalid_values_fail_fast(monkeypatch, key, value):
    monkeypatch.setenv(key, value)
    with pytest.raises(RuntimeError):
        load_settings()


def test_redis_backend_requires_url(monkeypatch):
    monkeypatch.setenv("CHANGES_BACKEND", "redis")
    monkeypatch.delenv("CHANGES_REDIS_URL", raising=False)
    with pytest.raises(RuntimeError):
        load_settings()
