from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

_log = logging.getLogger("pos.realtime")

STAFF_ROOMS = ("pos", "kitchen", "boss")


def table_room(session_token: str) -> str:
    return f"table-{session_token}"


def is_valid_room(room: str) -> bool:
    if room in STAFF_ROOMS:
        return True
    return room.startswith("table-") and len(room) > len("table-")


class RealtimeHub:
    """
    Websockets grouped by room. Delivery is best effort: a socket that fails
    a send is dropped from every room, events for empty rooms are discarded.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[WebSocket]] = {}
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        self._loop = loop

    def join(self, ws: WebSocket, room: str) -> None:
        with self._lock:
            self._rooms.setdefault(room, set()).add(ws)

    def leave(self, ws: WebSocket, room: Optional[str] = None) -> None:
        with self._lock:
            rooms = [room] if room else list(self._rooms)
            for r in rooms:
                members = self._rooms.get(r)
                if not members:
                    continue
                members.discard(ws)
                if not members:
                    self._rooms.pop(r, None)

    def members(self, room: str) -> int:
        with self._lock:
            return len(self._rooms.get(room, ()))

    async def broadcast(self, room: str, event: str, data: Any) -> int:
        with self._lock:
            targets = list(self._rooms.get(room, ()))
        sent = 0
        for ws in targets:
            try:
                await ws.send_json({"event": event, "data": data})
                sent += 1
            except Exception as e:
                _log.info("realtime: dropping socket from %s: %s", room, e)
                self.leave(ws)
        return sent

    def publish_threadsafe(self, room: str, event: str, data: Any) -> None:
        """Schedule a broadcast from any thread; dropped when no loop is bound."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            asyncio.run_coroutine_threadsafe(self.broadcast(room, event, data), loop)
        except RuntimeError:
            # loop shutting down
            pass
