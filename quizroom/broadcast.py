"""Fan-out of game events to connected clients.

Every frame is a JSON text message ``{"type": <event>, ...payload}``. Delivery
is fire-and-forget: a socket that fails to send is dropped and the game keeps
going.
"""
from __future__ import annotations

import json
from typing import Dict, Optional, Protocol

from .common import logger


class TextSocket(Protocol):
    async def send_text(self, data: str) -> None:
        ...


class ConnectionHub:
    """Live connections for the single game room."""

    def __init__(self) -> None:
        self.connections: Dict[str, TextSocket] = {}   # connection_id -> ws
        self.participants: Dict[str, str] = {}         # connection_id -> user_id

    def connect(self, connection_id: str, ws: TextSocket, user_id: Optional[str] = None) -> None:
        self.connections[connection_id] = ws
        if user_id:
            self.participants[connection_id] = str(user_id)

    def identify(self, connection_id: str, user_id: str) -> None:
        """Remember which user speaks on a connection (first submit or join)."""
        if connection_id in self.connections and user_id:
            self.participants[connection_id] = str(user_id)

    def disconnect(self, connection_id: str) -> None:
        self.connections.pop(connection_id, None)
        self.participants.pop(connection_id, None)

    def participant_count(self) -> int:
        return len(set(self.participants.values()))

    async def emit_to_one(self, connection_id: str, event: str, payload: dict) -> bool:
        ws = self.connections.get(connection_id)
        if ws is None:
            return False
        try:
            await ws.send_text(json.dumps({"type": event, **payload}))
            return True
        except Exception as e:
            logger.debug(f"[hub] dropping connection={connection_id} after send failure: {e}")
            self.disconnect(connection_id)
            return False

    async def emit_to_all(self, event: str, payload: dict) -> None:
        """Broadcast message to all connections."""
        message = json.dumps({"type": event, **payload})
        dead = []
        for cid, ws in list(self.connections.items()):
            try:
                await ws.send_text(message)
            except Exception as e:
                logger.debug(f"[hub] send to connection={cid} failed: {e}")
                dead.append(cid)

        for cid in dead:
            self.disconnect(cid)
