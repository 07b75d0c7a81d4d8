# ws_manager.py
import asyncio
from typing import Dict, Iterable, Set

from fastapi import WebSocket

from .config import get_logger
from . import metrics

logger = get_logger("fulfillment-service.ws")


class ConnectionManager:
    """WebSocket clients grouped by room (operations, user-<id>, driver-<id>)."""

    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = {}
        self.lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, rooms: Iterable[str]):
        await websocket.accept()
        async with self.lock:
            for room in rooms:
                self.rooms.setdefault(room, set()).add(websocket)
        metrics.WS_CONNECTIONS.inc()
        logger.info(f"[WS CONNECT] Client joined {sorted(rooms)}")

    async def disconnect(self, websocket: WebSocket):
        async with self.lock:
            found = self._discard(websocket)
        if found:
            metrics.WS_CONNECTIONS.dec()
            logger.info("[WS DISCONNECT] Client left")

    def _discard(self, websocket: WebSocket) -> bool:
        found = False
        for room in list(self.rooms):
            members = self.rooms[room]
            if websocket in members:
                members.discard(websocket)
                found = True
            if not members:
                del self.rooms[room]
        return found

    async def broadcast(self, message: dict, rooms: Iterable[str]) -> int:
        """Send to every socket in any of `rooms` once; dead sockets are dropped."""
        async with self.lock:
            targets: Set[WebSocket] = set()
            for room in rooms:
                targets |= self.rooms.get(room, set())

        dead = []
        for ws in targets:
            try:
                await ws.send_json(message)
            except Exception as e:
                logger.warning(f"[WS BROADCAST ERROR] Removing client: {e}")
                dead.append(ws)

        for ws in dead:
            await self.disconnect(ws)
        return len(targets) - len(dead)


manager = ConnectionManager()
