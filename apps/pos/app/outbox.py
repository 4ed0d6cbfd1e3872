"""
Outbox of deferred mutations.

Every status change is a single conditional UPDATE keyed by id; the return
value tells the caller whether it won the transition, so a manual resolution
racing the periodic drain cannot apply the same entry twice.
"""
from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

from datetime import datetime

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .models import (
    QUEUE_STATUSES,
    STATUS_CONFLICT,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SYNCED,
    STATUS_SYNCING,
    SyncQueueEntry,
    utcnow,
)

_log = logging.getLogger("pos.outbox")


class QueueUnavailable(Exception):
    """The outbox itself could not record the mutation."""


def get_entry(s: Session, entry_id: int) -> Optional[SyncQueueEntry]:
    return s.get(SyncQueueEntry, entry_id)


def get_by_local_id(s: Session, local_id: str) -> Optional[SyncQueueEntry]:
    return s.execute(select(SyncQueueEntry).where(SyncQueueEntry.local_id == local_id)).scalars().first()


def payload_of(entry: SyncQueueEntry) -> Any:
    try:
        return json.loads(entry.payload_json or "{}")
    except ValueError:
        return {}


def enqueue(
    s: Session,
    target_entity: str,
    operation: str,
    payload: Any,
    local_id: Optional[str] = None,
) -> str:
    """
    Persist a pending mutation and return its idempotency key.

    A ``local_id`` that is already queued is returned unchanged without a
    second row, so a client resending the same submission is harmless.
    """
    key = (local_id or "").strip() or uuid.uuid4().hex
    try:
        if local_id and get_by_local_id(s, key) is not None:
            _log.info("outbox: duplicate submission ignored", extra={"local_id": key})
            return key
        entry = SyncQueueEntry(
            local_id=key,
            target_entity=target_entity,
            operation=operation,
            payload_json=json.dumps(payload, default=str),
            status=STATUS_PENDING,
            retry_count=0,
            created_at=utcnow(),
        )
        s.add(entry)
        s.commit()
    except IntegrityError:
        # Lost an insert race against the same key.
        s.rollback()
        if get_by_local_id(s, key) is not None:
            return key
        raise QueueUnavailable("outbox insert rejected")
    except SQLAlchemyError as e:
        s.rollback()
        _log.error("outbox: failed to enqueue %s/%s: %s", target_entity, operation, e)
        raise QueueUnavailable(str(e)) from e
    _log.info(
        "outbox: queued %s/%s",
        target_entity,
        operation,
        extra={"local_id": key, "entry_id": entry.id},
    )
    return key


def _stale_claim(stale_before: datetime):
    return and_(
        SyncQueueEntry.status == STATUS_SYNCING,
        or_(SyncQueueEntry.claimed_at.is_(None), SyncQueueEntry.claimed_at < stale_before),
    )


def list_pending(
    s: Session,
    statuses: Iterable[str] = (STATUS_PENDING, STATUS_FAILED),
    max_retries: Optional[int] = None,
    limit: Optional[int] = None,
    stale_before: Optional[datetime] = None,
) -> List[SyncQueueEntry]:
    """
    Entries in ``statuses``, oldest first. With ``stale_before``, ``syncing``
    entries claimed before that time are included too: their worker died or
    lost the outbox between applying and recording the outcome.
    """
    selectable = SyncQueueEntry.status.in_(list(statuses))
    if stale_before is not None:
        selectable = or_(selectable, _stale_claim(stale_before))
    stmt = select(SyncQueueEntry).where(selectable)
    if max_retries is not None:
        stmt = stmt.where(SyncQueueEntry.retry_count < max_retries)
    stmt = stmt.order_by(SyncQueueEntry.created_at.asc(), SyncQueueEntry.id.asc())
    if limit:
        stmt = stmt.limit(limit)
    return list(s.execute(stmt).scalars().all())


def _transition(s: Session, entry_id: int, from_statuses: Iterable[str], values: Dict[str, Any], *extra_where, source=None) -> bool:
    if source is None:
        source = SyncQueueEntry.status.in_(list(from_statuses))
    stmt = (
        update(SyncQueueEntry)
        .where(SyncQueueEntry.id == entry_id, source, *extra_where)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    res = s.execute(stmt)
    s.commit()
    return res.rowcount == 1


def mark_syncing(
    s: Session,
    entry_id: int,
    max_retries: Optional[int] = None,
    stale_before: Optional[datetime] = None,
) -> bool:
    extra = (SyncQueueEntry.retry_count < max_retries,) if max_retries is not None else ()
    source = SyncQueueEntry.status.in_((STATUS_PENDING, STATUS_FAILED))
    if stale_before is not None:
        source = or_(source, _stale_claim(stale_before))
    return _transition(
        s,
        entry_id,
        (),
        {"status": STATUS_SYNCING, "claimed_at": utcnow()},
        *extra,
        source=source,
    )


def mark_synced(
    s: Session,
    entry_id: int,
    from_statuses: Iterable[str] = (STATUS_SYNCING,),
    resolution: Optional[str] = None,
) -> bool:
    values: Dict[str, Any] = {"status": STATUS_SYNCED, "synced_at": utcnow(), "error_message": None}
    if resolution is not None:
        values["resolution"] = resolution
    return _transition(s, entry_id, from_statuses, values)


def mark_failed(s: Session, entry_id: int, error: str) -> bool:
    return _transition(
        s,
        entry_id,
        (STATUS_SYNCING,),
        {
            "status": STATUS_FAILED,
            "retry_count": SyncQueueEntry.retry_count + 1,
            "error_message": (error or "unknown error")[:1000],
        },
    )


def mark_conflict(s: Session, entry_id: int) -> bool:
    # synced_at doubles as "flagged at" for conflicts.
    return _transition(s, entry_id, (STATUS_SYNCING,), {"status": STATUS_CONFLICT, "synced_at": utcnow()})


def reopen_conflict(s: Session, entry_id: int, resolution: str) -> bool:
    """Undo a resolution claim whose apply step failed."""
    return _transition(
        s,
        entry_id,
        (STATUS_SYNCED,),
        {"status": STATUS_CONFLICT, "resolution": None},
        SyncQueueEntry.resolution == resolution,
    )


def count_pending(s: Session) -> int:
    """Entries not yet in a terminal state, exhausted and conflicting ones included."""
    stmt = select(func.count()).select_from(SyncQueueEntry).where(SyncQueueEntry.status != STATUS_SYNCED)
    return int(s.execute(stmt).scalar_one())


def count_by_status(s: Session) -> Dict[str, int]:
    rows = s.execute(
        select(SyncQueueEntry.status, func.count()).group_by(SyncQueueEntry.status)
    ).all()
    out = {st: 0 for st in QUEUE_STATUSES}
    for status, n in rows:
        out[status] = int(n)
    return out


def count_exhausted(s: Session, max_retries: int) -> int:
    stmt = (
        select(func.count())
        .select_from(SyncQueueEntry)
        .where(SyncQueueEntry.status == STATUS_FAILED, SyncQueueEntry.retry_count >= max_retries)
    )
    return int(s.execute(stmt).scalar_one())


def list_entries(s: Session, status: str = "", limit: int = 100) -> List[SyncQueueEntry]:
    stmt = select(SyncQueueEntry)
    if status:
        stmt = stmt.where(SyncQueueEntry.status == status)
    stmt = stmt.order_by(SyncQueueEntry.created_at.desc(), SyncQueueEntry.id.desc()).limit(max(1, min(limit, 500)))
    return list(s.execute(stmt).scalars().all())


def entry_to_dict(entry: SyncQueueEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "local_id": entry.local_id,
        "target_entity": entry.target_entity,
        "operation": entry.operation,
        "payload": payload_of(entry),
        "status": entry.status,
        "retry_count": entry.retry_count,
        "error_message": entry.error_message,
        "resolution": entry.resolution,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
        "claimed_at": entry.claimed_at.isoformat() if entry.claimed_at else None,
        "synced_at": entry.synced_at.isoformat() if entry.synced_at else None,
    }
