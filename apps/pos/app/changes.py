"""
Change feed of committed writes to authoritative storage.

``capture_changes`` hooks a sessionmaker so that every commit publishes one
``{"entity", "action", "id"}`` descriptor per touched row. Descriptors are
published only after the commit succeeded; a rollback drops them. Delivery
is fire-and-forget; the rows themselves are the durable record.
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, AsyncIterator, Dict, Optional, Set, Tuple

import redis
import redis.asyncio as aioredis
from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker

from .models import DiningTable, Order, OrderItem, TableSession

_log = logging.getLogger("pos.changes")

TRACKED = {
    Order: "orders",
    OrderItem: "order_items",
    DiningTable: "tables",
    TableSession: "table_sessions",
}

_PENDING_KEY = "pos_pending_changes"


class ChangeSubscription:
    """An established subscription; iterate it for raw JSON payloads."""

    def __aiter__(self) -> AsyncIterator[str]:
        return self.messages()

    def messages(self) -> AsyncIterator[str]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class ChangeChannel:
    name = "base"

    def publish(self, change: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def subscribe(self) -> ChangeSubscription:
        raise NotImplementedError

    def close(self) -> None:
        return None


# --- redis ---
class _RedisSubscription(ChangeSubscription):
    def __init__(self, client, pubsub) -> None:
        self._client = client
        self._pubsub = pubsub

    async def messages(self) -> AsyncIterator[str]:
        async for msg in self._pubsub.listen():
            if not msg or msg.get("type") != "message":
                continue
            raw = msg.get("data")
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", "replace")
            yield raw

    async def close(self) -> None:
        try:
            await self._pubsub.aclose()
        finally:
            await self._client.aclose()


class RedisChangeChannel(ChangeChannel):
    """Redis Pub/Sub; works across API and worker processes."""

    name = "redis"

    def __init__(self, url: str, channel: str = "pos:order_updates") -> None:
        self._url = url
        self._channel = channel
        self._client = redis.from_url(url)

    def publish(self, change: Dict[str, Any]) -> None:
        try:
            self._client.publish(self._channel, json.dumps(change))
        except redis.RedisError as e:
            _log.warning("changes: redis publish failed, change dropped: %s", e, extra={"change": change})

    async def subscribe(self) -> ChangeSubscription:
        client = aioredis.from_url(self._url)
        pubsub = client.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(self._channel)
        except Exception:
            await client.aclose()
            raise
        _log.info("changes: subscribed to redis channel %s", self._channel)
        return _RedisSubscription(client, pubsub)

    def close(self) -> None:
        self._client.close()


# --- in-process ---
class _LocalSubscription(ChangeSubscription):
    def __init__(self, owner: "LocalChangeChannel", loop: asyncio.AbstractEventLoop) -> None:
        self._owner = owner
        self._loop = loop
        self.queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

    def deliver(self, raw: Optional[str]) -> None:
        try:
            self._loop.call_soon_threadsafe(self.queue.put_nowait, raw)
        except RuntimeError:
            # Loop already closed.
            self._owner.discard(self)

    async def messages(self) -> AsyncIterator[str]:
        while True:
            raw = await self.queue.get()
            if raw is None:
                return
            yield raw

    async def close(self) -> None:
        self._owner.discard(self)


class LocalChangeChannel(ChangeChannel):
    """Fan-out inside one process; publishers may run on any thread."""

    name = "local"

    def __init__(self) -> None:
        self._subs: Set[_LocalSubscription] = set()
        self._lock = threading.Lock()

    def publish(self, change: Dict[str, Any]) -> None:
        self.publish_raw(json.dumps(change))

    def publish_raw(self, raw: str) -> None:
        with self._lock:
            subs = list(self._subs)
        for sub in subs:
            sub.deliver(raw)

    async def subscribe(self) -> ChangeSubscription:
        sub = _LocalSubscription(self, asyncio.get_running_loop())
        with self._lock:
            self._subs.add(sub)
        return sub

    def discard(self, sub: _LocalSubscription) -> None:
        with self._lock:
            self._subs.discard(sub)

    def close(self) -> None:
        with self._lock:
            subs = list(self._subs)
            self._subs.clear()
        for sub in subs:
            sub.deliver(None)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)


def make_channel(backend: str, redis_url: str = "", channel: str = "pos:order_updates") -> ChangeChannel:
    if backend == "redis":
        return RedisChangeChannel(redis_url, channel)
    return LocalChangeChannel()


# --- capture ---
def _primary_key(obj: Any) -> Any:
    return getattr(obj, "id", None)


def capture_changes(factory: sessionmaker, channel: ChangeChannel) -> None:
    """Publish descriptors for tracked rows after each successful commit of ``factory`` sessions."""

    @event.listens_for(factory, "after_flush")
    def _collect(session: Session, flush_context) -> None:
        pending: Dict[Tuple[str, Any], Dict[str, Any]] = session.info.setdefault(_PENDING_KEY, {})
        for action, objs in (("create", session.new), ("update", session.dirty), ("delete", session.deleted)):
            for obj in objs:
                entity = TRACKED.get(type(obj))
                if entity is None:
                    continue
                if action == "update" and not session.is_modified(obj, include_collections=False):
                    continue
                key = (entity, _primary_key(obj))
                # A row created and then updated in one transaction is reported as created.
                pending.setdefault(key, {"entity": entity, "action": action, "id": key[1]})

    @event.listens_for(factory, "after_commit")
    def _publish(session: Session) -> None:
        pending = session.info.pop(_PENDING_KEY, None)
        if not pending:
            return
        for change in list(pending.values()):
            try:
                channel.publish(change)
            except Exception as e:
                _log.warning("changes: publish failed: %s", e, extra={"change": change})

    @event.listens_for(factory, "after_soft_rollback")
    def _discard(session: Session, previous_transaction) -> None:
        session.info.pop(_PENDING_KEY, None)

