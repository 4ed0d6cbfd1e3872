"""
Guards that keep drain cycles from overlapping.

``DrainLock`` covers one process. ``RedisDrainLock`` additionally takes a
``SET NX PX`` key on the redis server shared by the API and the standalone
worker, so at most one cycle runs across all of them. The key expires after
the syncing lease, which is also when a dead holder's claims become
reclaimable.
"""
from __future__ import annotations

import logging
import threading
import uuid
from typing import Optional

import redis

from .config import SyncSettings

_log = logging.getLogger("pos.sync")

# Only the holder may extend or drop the key.
_REFRESH = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""
_RELEASE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
end
return 0
"""


class DrainLock:
    name = "local"

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def held(self) -> bool:
        return self._lock.locked()

    def acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def refresh(self) -> None:
        return None

    def release(self) -> None:
        self._lock.release()


class RedisDrainLock(DrainLock):
    name = "redis"

    def __init__(self, url: str = "", key: str = "pos:sync:drain", ttl_seconds: float = 300, client=None) -> None:
        super().__init__()
        self._client = client if client is not None else redis.from_url(url)
        self.key = key
        self._ttl_ms = int(ttl_seconds * 1000)
        self._token: Optional[str] = None
        self._refresh = self._client.register_script(_REFRESH)
        self._release = self._client.register_script(_RELEASE)

    def acquire(self) -> bool:
        if not super().acquire():
            return False
        token = uuid.uuid4().hex
        try:
            won = self._client.set(self.key, token, nx=True, px=self._ttl_ms)
        except redis.RedisError as e:
            super().release()
            _log.warning("sync: drain lock unavailable, cycle skipped: %s", e)
            return False
        if not won:
            super().release()
            _log.debug("sync: drain running in another process, skipped")
            return False
        self._token = token
        return True

    def refresh(self) -> None:
        if not self._token:
            return
        try:
            self._refresh(keys=[self.key], args=[self._token, self._ttl_ms])
        except redis.RedisError as e:
            _log.warning("sync: drain lock not extended: %s", e)

    def release(self) -> None:
        token, self._token = self._token, None
        try:
            if token:
                self._release(keys=[self.key], args=[token])
        except redis.RedisError as e:
            # The key still expires after the lease.
            _log.warning("sync: drain lock not released: %s", e)
        finally:
            super().release()


def make_drain_lock(settings: SyncSettings) -> DrainLock:
    if settings.changes_backend == "redis":
        return RedisDrainLock(settings.changes_redis_url, settings.lock_key, settings.lease_seconds)
    return DrainLock()
