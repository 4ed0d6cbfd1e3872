from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from apps.pos.app import conflicts, orders, outbox
from apps.pos.app.models import STATUS_CONFLICT, STATUS_SYNCED, Order, utcnow
from apps.pos.app.mutations import CreateOrder


@pytest.fixture()
def conflicted(worker, queue_sessions, store_sessions):
    """A seated table with a live order and a queued order that conflicts with it."""
    with store_sessions() as s:
        t = orders.create_table(s, "Terrace 7", number=7)
        s.flush()
        orders.open_session(s, t.id)
        live = orders.create_order(
            s, CreateOrder(table_id=t.id, items=[{"name": "Kebab", "qty": 1, "price_cents": 1200}])
        )
        live.created_at = utcnow() - timedelta(minutes=3)
        s.commit()
        table_id, live_id = t.id, live.id
    with queue_sessions() as s:
        key = outbox.enqueue(
            s,
            "orders",
            "create",
            {"table_id": table_id, "note": "no onions", "items": [{"name": "Ayran", "qty": 2, "price_cents": 300}]},
            local_id="tablet-3-0001",
        )
        entry_id = outbox.get_by_local_id(s, key).id
    assert worker.drain().conflicts == 1
    return {"table_id": table_id, "live_id": live_id, "entry_id": entry_id, "local_id": key}


def _entry(queue_sessions, entry_id):
    with queue_sessions() as s:
        return outbox.get_entry(s, entry_id)


def _orders(store_sessions):
    with store_sessions() as s:
        return s.execute(select(Order).order_by(Order.created_at)).scalars().all()


def test_list_conflicts_shows_queued_and_live_side_by_side(conflicted, queue_sessions, store_sessions):
    with queue_sessions() as qs, store_sessions() as ss:
        [row] = conflicts.list_conflicts(qs, ss)
    assert row["queue_entry_id"] == conflicted["entry_id"]
    assert row["local_id"] == "tablet-3-0001"
    assert row["table_identifier"] == "7"
    assert row["queued_payload"]["note"] == "no onions"
    assert row["live_record"]["id"] == conflicted["live_id"]
    assert [it["name"] for it in row["live_record"]["items"]] == ["Kebab"]
    assert row["flagged_at"]


def test_keep_cloud_discards_queued_order(conflicted, queue_sessions, store_sessions):
    with queue_sessions() as qs, store_sessions() as ss:
        out = conflicts.resolve(qs, ss, conflicted["entry_id"], "keep_cloud")
    assert out["created_order"] is None
    e = _entry(queue_sessions, conflicted["entry_id"])
    assert e.status == STATUS_SYNCED
    assert e.resolution == "keep_cloud"
    assert [od.id for od in _orders(store_sessions)] == [conflicted["live_id"]]


def test_cancel_all_is_recorded_separately(conflicted, queue_sessions, store_sessions):
    with queue_sessions() as qs, store_sessions() as ss:
        conflicts.resolve(qs, ss, conflicted["entry_id"], "cancel_all")
    e = _entry(queue_sessions, conflicted["entry_id"])
    assert e.status == STATUS_SYNCED
    assert e.resolution == "cancel_all"
    assert len(_orders(store_sessions)) == 1


@pytest.mark.parametrize("decision", ["merge", "keep_local"])
def test_applying_decisions_create_a_distinct_order(conflicted, queue_sessions, store_sessions, decision):
    with queue_sessions() as qs, store_sessions() as ss:
        out = conflicts.resolve(qs, ss, conflicted["entry_id"], decision)
    created = out["created_order"]
    assert created["note"] == "Reconciled: no onions"
    assert created["source_local_id"] == "tablet-3-0001"
    assert created["total_cents"] == 600
    ods = _orders(store_sessions)
    assert len(ods) == 2
    assert conflicted["live_id"] in {od.id for od in ods}
    assert _entry(queue_sessions, conflicted["entry_id"]).resolution == decision


def test_resolving_twice_is_rejected(conflicted, queue_sessions, store_sessions):
    with queue_sessions() as qs, store_sessions() as ss:
        conflicts.resolve(qs, ss, conflicted["entry_id"], "merge")
    with queue_sessions() as qs, store_sessions() as ss:
        with pytest.raises(conflicts.AlreadyResolved):
            conflicts.resolve(qs, ss, conflicted["entry_id"], "merge")
    assert len(_orders(store_sessions)) == 2


def test_invalid_decision_changes_nothing(conflicted, queue_sessions, store_sessions):
    with queue_sessions() as qs, store_sessions() as ss:
        with pytest.raises(conflicts.InvalidDecision):
            conflicts.resolve(qs, ss, conflicted["entry_id"], "keep_both")
    assert _entry(queue_sessions, conflicted["entry_id"]).status == STATUS_CONFLICT


def test_unknown_entry(queue_sessions, store_sessions):
    with queue_sessions() as qs, store_sessions() as ss:
        with pytest.raises(conflicts.ConflictNotFound):
            conflicts.resolve(qs, ss, 9999, "keep_cloud")


def test_failed_apply_reopens_the_conflict(conflicted, queue_sessions, store_sessions, monkeypatch):
    def _broken(*a, **kw):
        raise RuntimeError("primary went away")

    monkeypatch.setattr(orders, "create_order", _broken)
    with queue_sessions() as qs, store_sessions() as ss:
        with pytest.raises(RuntimeError):
            conflicts.resolve(qs, ss, conflicted["entry_id"], "keep_local")
    e = _entry(queue_sessions, conflicted["entry_id"])
    assert e.status == STATUS_CONFLICT
    assert e.resolution is None


@pytest.mark.parametrize("decision", ["merge", "keep_local"])
def test_resolving_an_already_applied_entry_reuses_its_order(conflicted, queue_sessions, store_sessions, decision):
    # The queued order reached storage by another path after it was flagged.
    with store_sessions() as s:
        earlier = orders.create_order(
            s, CreateOrder(table_id=conflicted["table_id"], note="no onions"), source_local_id="tablet-3-0001"
        )
        s.commit()
        earlier_id = earlier.id

    with queue_sessions() as qs, store_sessions() as ss:
        out = conflicts.resolve(qs, ss, conflicted["entry_id"], decision)

    assert out["created_order"]["id"] == earlier_id
    assert out["created_order"]["source_local_id"] == "tablet-3-0001"
    assert len(_orders(store_sessions)) == 2
    e = _entry(queue_sessions, conflicted["entry_id"])
    assert e.status == STATUS_SYNCED
    assert e.resolution == decision
