"""
Rebroadcast committed storage changes to staff websockets.

The notifier is a supervised loop: subscribe, relay, and when the
subscription cannot be set up or breaks, wait and start over. Changes
published while it is disconnected are lost; clients see them on their
next fetch.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .changes import ChangeChannel
from .realtime import RealtimeHub

_log = logging.getLogger("pos.notifier")

CHANGE_EVENT = "hybrid:order_updated"


@dataclass
class ReconnectPolicy:
    error_delay: float = 5.0
    setup_delay: float = 10.0
    failures: int = 0
    last_error: Optional[str] = None

    def on_setup_failure(self, exc: BaseException) -> float:
        self.failures += 1
        self.last_error = str(exc) or type(exc).__name__
        return self.setup_delay

    def on_stream_failure(self, exc: Optional[BaseException]) -> float:
        self.failures += 1
        self.last_error = (str(exc) or type(exc).__name__) if exc else "subscription closed"
        return self.error_delay

    def on_connected(self) -> None:
        self.last_error = None


def parse_change(raw: Any) -> Dict[str, Any]:
    """Decode a change descriptor; raises ValueError when it is not one."""
    data = json.loads(raw) if isinstance(raw, (str, bytes, bytearray)) else raw
    if not isinstance(data, dict):
        raise ValueError("change descriptor must be an object")
    entity = data.get("entity") or data.get("table_name")
    if not entity:
        raise ValueError("change descriptor has no entity")
    return {"entity": str(entity), "action": str(data.get("action") or "update"), "id": data.get("id")}


class ChangeNotifier:
    def __init__(
        self,
        channel: ChangeChannel,
        hub: RealtimeHub,
        room: str = "pos",
        policy: Optional[ReconnectPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.channel = channel
        self.hub = hub
        self.room = room
        self.policy = policy or ReconnectPolicy()
        self._sleep = sleep
        self._stopped = asyncio.Event()
        self.connected = False
        self.reconnects = 0
        self.relayed = 0

    def stop(self) -> None:
        self._stopped.set()

    def reset(self) -> None:
        self._stopped.clear()
        self.connected = False

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    async def handle(self, raw: Any) -> bool:
        try:
            change = parse_change(raw)
        except ValueError as e:
            _log.error("notifier: bad change payload: %s", e, extra={"raw": str(raw)[:200]})
            return False
        _log.info("notifier: %s %s %s", change["entity"], change["action"], change["id"])
        await self.hub.broadcast(self.room, CHANGE_EVENT, change)
        self.relayed += 1
        return True

    async def _wait(self, delay: float) -> None:
        if delay > 0 and not self.stopped:
            await self._sleep(delay)

    async def run(self) -> None:
        _log.info("notifier: starting on %s channel", self.channel.name)
        first = True
        while not self.stopped:
            if not first:
                self.reconnects += 1
            first = False
            try:
                sub = await self.channel.subscribe()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                delay = self.policy.on_setup_failure(e)
                _log.error("notifier: failed to subscribe, retrying in %ss: %s", delay, e)
                await self._wait(delay)
                continue
            self.connected = True
            self.policy.on_connected()
            error: Optional[BaseException] = None
            try:
                async for raw in sub:
                    if self.stopped:
                        break
                    await self.handle(raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e
            finally:
                self.connected = False
                try:
                    await sub.close()
                except Exception as e:
                    _log.debug("notifier: close failed: %s", e)
            if self.stopped:
                break
            delay = self.policy.on_stream_failure(error)
            _log.error("notifier: listener stopped (%s), reconnecting in %ss", self.policy.last_error, delay)
            await self._wait(delay)
        _log.info("notifier: stopped")

    def state(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.name,
            "connected": self.connected,
            "reconnects": self.reconnects,
            "relayed": self.relayed,
            "last_error": self.policy.last_error,
        }
