from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket

_LOGGER = logging.getLogger("homelink.realtime")


def encode_event(event_type: str, data: Any) -> str:
    return json.dumps({"type": event_type, "data": data}, ensure_ascii=False, default=str)


class RealtimeHub:
    """Fans session events out to every connected websocket client."""

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: set[asyncio.Task] = set()

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, ws: WebSocket, snapshot: dict[str, Any] | None = None) -> None:
        await ws.accept()
        if snapshot is not None:
            await ws.send_text(encode_event("snapshot", snapshot))
        async with self._lock:
            self._clients.add(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(ws)

    async def broadcast(self, event_type: str, data: Any) -> int:
        msg = encode_event(event_type, data)
        async with self._lock:
            clients = list(self._clients)
        if not clients:
            return 0

        dead: list[WebSocket] = []
        for ws in clients:
            try:
                await ws.send_text(msg)
            except Exception as e:
                _LOGGER.debug("Dropping websocket client: %s", e)
                dead.append(ws)
        if dead:
            async with self._lock:
                for ws in dead:
                    self._clients.discard(ws)
        return len(clients) - len(dead)

    def publish(self, event_type: str, data: Any) -> None:
        """Schedule a broadcast from synchronous code running on the loop."""
        if self._loop is None or self._loop.is_closed():
            return
        task = self._loop.create_task(self.broadcast(event_type, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def close_all(self) -> None:
        async with self._lock:
            clients = list(self._clients)
            self._clients.clear()
        for task in list(self._pending):
            task.cancel()
        for ws in clients:
            try:
                await ws.close()
            except Exception as e:
                _LOGGER.debug("Websocket close failed: %s", e)
