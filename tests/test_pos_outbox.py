from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from apps.pos.app import outbox
from apps.pos.app.models import (
    STATUS_CONFLICT,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SYNCED,
    STATUS_SYNCING,
    SyncQueueEntry,
    utcnow,
)


def _entry(queue_sessions, local_id):
    with queue_sessions() as s:
        return outbox.get_by_local_id(s, local_id)


def test_enqueue_generates_key_and_starts_pending(queue_sessions):
    with queue_sessions() as s:
        key = outbox.enqueue(s, "orders", "create", {"table_id": "t1", "items": []})
    assert key
    e = _entry(queue_sessions, key)
    assert e.status == STATUS_PENDING
    assert e.retry_count == 0
    assert e.synced_at is None
    assert outbox.payload_of(e) == {"table_id": "t1", "items": []}


def test_enqueue_same_local_id_twice_keeps_one_entry(queue_sessions):
    with queue_sessions() as s:
        k1 = outbox.enqueue(s, "orders", "create", {"note": "first"}, local_id="dev-1")
        k2 = outbox.enqueue(s, "orders", "create", {"note": "resent"}, local_id="dev-1")
        rows = s.execute(select(SyncQueueEntry).where(SyncQueueEntry.local_id == "dev-1")).scalars().all()
    assert k1 == k2 == "dev-1"
    assert len(rows) == 1
    # The first submission wins.
    assert outbox.payload_of(rows[0]) == {"note": "first"}


def test_enqueue_storage_failure_raises_queue_unavailable(queue_sessions, monkeypatch):
    with queue_sessions() as s:
        def _boom(*a, **kw):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(s, "commit", _boom)
        with pytest.raises(outbox.QueueUnavailable):
            outbox.enqueue(s, "orders", "create", {})
    with queue_sessions() as s:
        assert outbox.count_pending(s) == 0


def test_list_pending_is_oldest_first_and_respects_budget(queue_sessions):
    now = utcnow()
    with queue_sessions() as s:
        for i, (status, retries) in enumerate(
            [
                (STATUS_PENDING, 0),
                (STATUS_FAILED, 4),
                (STATUS_FAILED, 5),  # exhausted
                (STATUS_CONFLICT, 0),
                (STATUS_SYNCED, 0),
                (STATUS_PENDING, 0),
            ]
        ):
            s.add(
                SyncQueueEntry(
                    local_id=f"k{i}",
                    target_entity="orders",
                    operation="create",
                    payload_json="{}",
                    status=status,
                    retry_count=retries,
                    created_at=now - timedelta(minutes=10 - i),
                )
            )
        s.commit()
        picked = outbox.list_pending(s, (STATUS_PENDING, STATUS_FAILED), max_retries=5)
        assert [e.local_id for e in picked] == ["k0", "k1", "k5"]
        assert [e.local_id for e in outbox.list_pending(s, max_retries=5, limit=1)] == ["k0"]


def test_transitions_are_conditional(queue_sessions):
    with queue_sessions() as s:
        key = outbox.enqueue(s, "orders", "create", {})
        eid = outbox.get_by_local_id(s, key).id
        assert outbox.mark_syncing(s, eid, max_retries=5) is True
        # A second claim of the same entry loses.
        assert outbox.mark_syncing(s, eid, max_retries=5) is False
        assert outbox.mark_failed(s, eid, "timeout") is True
        # failed -> synced is not a legal transition from the default source state.
        assert outbox.mark_synced(s, eid) is False
    e = _entry(queue_sessions, key)
    assert e.status == STATUS_FAILED
    assert e.retry_count == 1
    assert e.error_message == "timeout"


def test_mark_syncing_refuses_exhausted_entry(queue_sessions):
    with queue_sessions() as s:
        key = outbox.enqueue(s, "orders", "create", {})
        eid = outbox.get_by_local_id(s, key).id
        for _ in range(2):
            assert outbox.mark_syncing(s, eid, max_retries=2)
            assert outbox.mark_failed(s, eid, "nope")
        assert outbox.mark_syncing(s, eid, max_retries=2) is False
        assert outbox.count_exhausted(s, 2) == 1


def test_conflict_sets_flagged_time_and_claim_can_be_reopened(queue_sessions):
    with queue_sessions() as s:
        key = outbox.enqueue(s, "orders", "create", {})
        eid = outbox.get_by_local_id(s, key).id
        outbox.mark_syncing(s, eid)
        assert outbox.mark_conflict(s, eid)
    e = _entry(queue_sessions, key)
    assert e.status == STATUS_CONFLICT
    assert e.synced_at is not None

    with queue_sessions() as s:
        assert outbox.mark_synced(s, eid, from_statuses=(STATUS_CONFLICT,), resolution="merge")
        assert outbox.reopen_conflict(s, eid, "keep_local") is False
        assert outbox.reopen_conflict(s, eid, "merge") is True
    e = _entry(queue_sessions, key)
    assert e.status == STATUS_CONFLICT
    assert e.resolution is None


def test_counts(queue_sessions):
    with queue_sessions() as s:
        keys = [outbox.enqueue(s, "orders", "create", {}) for _ in range(4)]
        ids = [outbox.get_by_local_id(s, k).id for k in keys]
        outbox.mark_syncing(s, ids[0])
        outbox.mark_synced(s, ids[0])
        outbox.mark_syncing(s, ids[1])
        outbox.mark_conflict(s, ids[1])
        outbox.mark_syncing(s, ids[2])
        outbox.mark_failed(s, ids[2], "x")
        counts = outbox.count_by_status(s)
        # Everything but the synced entry still needs attention.
        assert outbox.count_pending(s) == 3
    assert counts[STATUS_SYNCED] == 1
    assert counts[STATUS_CONFLICT] == 1
    assert counts[STATUS_FAILED] == 1
    assert counts[STATUS_PENDING] == 1
    assert counts[STATUS_SYNCING] == 0
