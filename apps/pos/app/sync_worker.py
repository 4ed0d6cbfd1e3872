"""
Drains the outbox into authoritative storage.

One drain cycle at a time: ``drain`` try-acquires a ``DrainLock`` (shared
through redis when the API and a standalone worker run side by side) and
returns ``None`` when another cycle is already running. Entries are handled
strictly one after another, oldest first, so the conflict check for an entry
sees everything applied earlier in the same cycle.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from . import orders, outbox
from .config import SyncSettings
from .drain_lock import DrainLock
from .models import STATUS_FAILED, STATUS_PENDING, Order, SyncQueueEntry, utcnow
from .mutations import CreateOrder, Mutation, is_known, parse_mutation

_log = logging.getLogger("pos.sync")

# (event, data) -> None; wired to the realtime hub by the app.
Publisher = Callable[[str, Dict[str, Any]], None]


@dataclass
class DrainReport:
    selected: int = 0
    synced: int = 0
    conflicts: int = 0
    failed: int = 0
    exhausted: int = 0
    skipped: int = 0
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["started_at"] = self.started_at.isoformat()
        out["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return out


class SyncWorker:
    def __init__(
        self,
        queue_sessions: sessionmaker,
        store_sessions: sessionmaker,
        settings: SyncSettings,
        publish: Optional[Publisher] = None,
        lock: Optional[DrainLock] = None,
    ) -> None:
        self.queue_sessions = queue_sessions
        self.store_sessions = store_sessions
        self.settings = settings
        self._publish = publish
        self._lock = lock if lock is not None else DrainLock()
        self.cycles = 0
        self.last_report: Optional[DrainReport] = None

    @property
    def running(self) -> bool:
        return self._lock.held

    def _emit(self, event: str, data: Dict[str, Any]) -> None:
        if self._publish is None:
            return
        try:
            self._publish(event, data)
        except Exception as e:
            _log.warning("sync: event %s not delivered: %s", event, e)

    # --- conflict detection ---
    def find_conflict(self, s: Session, mutation: Mutation, now: datetime) -> Optional[Order]:
        """
        A queued order for a table conflicts with an open order of the same
        table, under an active session, created within the conflict window.
        """
        if not isinstance(mutation, CreateOrder) or not mutation.table_id:
            return None
        since = now - timedelta(seconds=self.settings.conflict_window_seconds)
        existing = orders.recent_open_orders(s, mutation.table_id, since)
        return existing[0] if existing else None

    def _apply(self, s: Session, mutation: Mutation, entry: SyncQueueEntry) -> Any:
        return orders.apply_mutation(s, mutation, entry.local_id)

    # --- cycle ---
    def drain(self) -> Optional[DrainReport]:
        if not self._lock.acquire():
            _log.debug("sync: drain already running, skipped")
            return None
        try:
            return self._drain()
        finally:
            self._lock.release()

    def stale_before(self) -> datetime:
        """Syncing claims taken before this instant belong to a dead cycle."""
        return utcnow() - timedelta(seconds=self.settings.lease_seconds)

    def _drain(self) -> DrainReport:
        report = DrainReport()
        max_retries = self.settings.max_retries
        with self.queue_sessions() as qs:
            entries = outbox.list_pending(
                qs,
                (STATUS_PENDING, STATUS_FAILED),
                max_retries=max_retries,
                limit=self.settings.batch_size or None,
                stale_before=self.stale_before(),
            )
        report.selected = len(entries)
        if entries:
            _log.info("sync: draining %d queued entries", len(entries))
        for entry in entries:
            self._lock.refresh()
            try:
                outcome = self.process_entry(entry)
            except Exception as e:
                # The queue store failed mid-entry; take the entry out of syncing.
                _log.exception("sync: entry %s could not be processed", entry.id)
                outcome = self._release_claim(entry, e)
            if outcome == "synced":
                report.synced += 1
            elif outcome == "conflict":
                report.conflicts += 1
            elif outcome == "failed":
                report.failed += 1
            elif outcome == "exhausted":
                report.failed += 1
                report.exhausted += 1
            else:
                report.skipped += 1
        report.finished_at = utcnow()
        self.cycles += 1
        self.last_report = report
        if entries:
            _log.info("sync: drain finished", extra={"report": report.as_dict()})
        return report

    def _release_claim(self, entry: SyncQueueEntry, error: Exception) -> str:
        try:
            with self.queue_sessions() as qs:
                if outbox.mark_failed(qs, entry.id, str(error) or type(error).__name__):
                    return "failed"
        except SQLAlchemyError as e:
            # Reclaimed after the lease instead.
            _log.warning("sync: entry %s left syncing: %s", entry.id, e)
        return "skipped"

    def process_entry(self, entry: SyncQueueEntry) -> str:
        """Run one entry through syncing -> synced/conflict/failed and return the outcome."""
        if not is_known(entry.target_entity, entry.operation):
            _log.debug("sync: no handler for %s/%s, left pending", entry.target_entity, entry.operation)
            return "skipped"

        with self.queue_sessions() as qs:
            if not outbox.mark_syncing(qs, entry.id, self.settings.max_retries, self.stale_before()):
                return "skipped"

        base = {"queue_entry_id": entry.id, "local_id": entry.local_id, "target_entity": entry.target_entity}
        try:
            try:
                mutation = parse_mutation(entry.target_entity, entry.operation, outbox.payload_of(entry))
            except ValidationError as e:
                raise ValueError(f"invalid payload: {e.error_count()} error(s), first: {e.errors()[0]['msg']}") from e
            with self.store_sessions() as ss:
                if isinstance(mutation, CreateOrder):
                    previous = orders.find_by_source_local_id(ss, entry.local_id)
                    if previous is not None:
                        # Applied by an earlier attempt that never got marked.
                        _log.info("sync: entry %s already applied as order %s", entry.id, previous.id)
                        with self.queue_sessions() as qs:
                            outbox.mark_synced(qs, entry.id)
                        self._emit("sync:synced", {**base, "record_id": previous.id})
                        return "synced"
                conflict = self.find_conflict(ss, mutation, utcnow())
                if conflict is not None:
                    _log.warning(
                        "sync: conflict for table %s (entry %s vs order %s)",
                        getattr(mutation, "table_id", None),
                        entry.id,
                        conflict.id,
                    )
                    with self.queue_sessions() as qs:
                        outbox.mark_conflict(qs, entry.id)
                    self._emit(
                        "sync:conflict",
                        {**base, "table_id": getattr(mutation, "table_id", None), "live_record_id": conflict.id},
                    )
                    return "conflict"
                record = self._apply(ss, mutation, entry)
                ss.commit()
                record_id = getattr(record, "id", None)
        except Exception as e:
            _log.warning("sync: entry %s failed: %s", entry.id, e)
            with self.queue_sessions() as qs:
                outbox.mark_failed(qs, entry.id, str(e) or type(e).__name__)
            attempts = entry.retry_count + 1
            if attempts >= self.settings.max_retries:
                _log.warning(
                    "sync: entry %s exhausted after %d attempts",
                    entry.id,
                    attempts,
                    extra={"local_id": entry.local_id, "error": str(e)},
                )
                self._emit("sync:exhausted", {**base, "retry_count": attempts, "error": str(e)})
                return "exhausted"
            self._emit("sync:failed", {**base, "retry_count": attempts, "error": str(e)})
            return "failed"

        with self.queue_sessions() as qs:
            outbox.mark_synced(qs, entry.id)
        self._emit("sync:synced", {**base, "record_id": record_id})
        return "synced"

    # --- triggers ---
    async def run_periodic(self, stop: asyncio.Event) -> None:
        """Drain every ``interval_seconds`` until ``stop`` is set."""
        interval = self.settings.interval_seconds
        _log.info("sync: periodic drain every %ss", interval)
        while not stop.is_set():
            try:
                await asyncio.to_thread(self.drain)
            except asyncio.CancelledError:
                raise
            except Exception:
                _log.exception("sync: drain cycle crashed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def state(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "cycles": self.cycles,
            "last_report": self.last_report.as_dict() if self.last_report else None,
        }
