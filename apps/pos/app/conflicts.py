from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import orders, outbox
from .models import STATUS_CONFLICT, DiningTable, SyncQueueEntry
from .mutations import CreateOrder, parse_mutation, table_id_of

_log = logging.getLogger("pos.conflicts")

DECISIONS = ("merge", "keep_local", "keep_cloud", "cancel_all")
# Decisions that turn the queued order into a new, separate order.
APPLYING_DECISIONS = ("merge", "keep_local")
RECONCILED_NOTE_PREFIX = "Reconciled: "


class ResolutionError(Exception):
    status_code = 400


class InvalidDecision(ResolutionError):
    status_code = 400


class ConflictNotFound(ResolutionError):
    status_code = 404


class AlreadyResolved(ResolutionError):
    status_code = 409


def _table_identifier(s: Session, table_id: Optional[str]) -> Optional[str]:
    if not table_id:
        return None
    t = s.get(DiningTable, table_id)
    if t is None:
        return table_id
    if t.number is not None:
        return f"{t.number}"
    return t.name


def list_conflicts(qs: Session, ss: Session) -> List[Dict[str, Any]]:
    """Conflicting entries, newest first, each next to the live order of its table."""
    entries = qs.execute(
        select(SyncQueueEntry)
        .where(SyncQueueEntry.status == STATUS_CONFLICT)
        .order_by(SyncQueueEntry.created_at.desc(), SyncQueueEntry.id.desc())
    ).scalars().all()
    out: List[Dict[str, Any]] = []
    for entry in entries:
        payload = outbox.payload_of(entry)
        table_id = payload.get("table_id") if isinstance(payload, dict) else None
        live = orders.latest_open_order(ss, table_id) if table_id else None
        out.append(
            {
                "queue_entry_id": entry.id,
                "local_id": entry.local_id,
                "table_id": table_id,
                "table_identifier": _table_identifier(ss, table_id),
                "queued_payload": payload,
                "live_record": orders.order_to_dict(ss, live) if live is not None else None,
                "flagged_at": entry.synced_at.isoformat() if entry.synced_at else None,
            }
        )
    return out


def resolve(qs: Session, ss: Session, entry_id: int, decision: str) -> Dict[str, Any]:
    """
    Apply an operator decision to a conflicting entry. The entry is claimed
    with a conditional conflict -> synced update before anything is written,
    so a second call (or a racing one) gets AlreadyResolved.
    """
    if decision not in DECISIONS:
        raise InvalidDecision(f"invalid decision {decision!r}; expected one of {', '.join(DECISIONS)}")
    entry = outbox.get_entry(qs, entry_id)
    if entry is None:
        raise ConflictNotFound("queue entry not found")
    if entry.status != STATUS_CONFLICT:
        raise AlreadyResolved(f"queue entry is {entry.status}, not in conflict")

    if not outbox.mark_synced(qs, entry_id, from_statuses=(STATUS_CONFLICT,), resolution=decision):
        raise AlreadyResolved("queue entry was resolved concurrently")

    created: Optional[Dict[str, Any]] = None
    if decision in APPLYING_DECISIONS:
        try:
            mutation = parse_mutation(entry.target_entity, entry.operation, outbox.payload_of(entry))
            if not isinstance(mutation, CreateOrder):
                raise InvalidDecision(f"{decision} is only supported for queued order creation")
            od = orders.find_by_source_local_id(ss, entry.local_id)
            if od is not None:
                _log.info("conflicts: entry %s already applied as order %s", entry_id, od.id)
            else:
                od = orders.create_order(
                    ss, mutation, source_local_id=entry.local_id, note_prefix=RECONCILED_NOTE_PREFIX
                )
                ss.commit()
            created = orders.order_to_dict(ss, od)
        except Exception:
            ss.rollback()
            outbox.reopen_conflict(qs, entry_id, decision)
            _log.exception("conflicts: %s failed for entry %s, back to conflict", decision, entry_id)
            raise
    _log.info(
        "conflicts: entry %s resolved with %s",
        entry_id,
        decision,
        extra={"local_id": entry.local_id, "table_id": table_id_of_entry(entry)},
    )
    return {
        "queue_entry_id": entry_id,
        "local_id": entry.local_id,
        "decision": decision,
        "created_order": created,
    }


def table_id_of_entry(entry: SyncQueueEntry) -> Optional[str]:
    try:
        return table_id_of(parse_mutation(entry.target_entity, entry.operation, outbox.payload_of(entry)))
    except ValueError:
        return None
