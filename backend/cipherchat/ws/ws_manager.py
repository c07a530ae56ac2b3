from typing import Dict, Iterable, Optional, Set
from fastapi import WebSocket
import json
import logging
import uuid

from .presence import InMemoryPresenceRegistry, PresenceRegistry

logger = logging.getLogger(__name__)


def group_room(group_id: int) -> str:
    return f"group:{group_id}"


class ConnectionManager:
    def __init__(self, registry: Optional[PresenceRegistry] = None):
        self.registry = registry or InMemoryPresenceRegistry()
        # Sockets owned by this process, keyed by connection id
        self.connections: Dict[str, WebSocket] = {}
        # Room membership maps
        self.room_connections: Dict[str, Set[str]] = {}
        self.connection_rooms: Dict[str, Set[str]] = {}

    def register(self, user_id: int, websocket: WebSocket) -> str:
        connection_id = uuid.uuid4().hex
        self.connections[connection_id] = websocket
        self.connection_rooms[connection_id] = set()
        self.registry.register(connection_id, user_id)
        logger.info(f"WS connect user_id={user_id} sockets={len(self.registry.lookup(user_id))}")
        return connection_id

    def unregister(self, connection_id: str) -> Optional[int]:
        """Drop a connection and its rooms; returns the owning user id."""
        self.connections.pop(connection_id, None)
        for room in self.connection_rooms.pop(connection_id, set()):
            members = self.room_connections.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self.room_connections[room]
        user_id = self.registry.unregister(connection_id)
        logger.info(f"WS disconnect user_id={user_id}")
        return user_id

    def join_room(self, connection_id: str, room: str) -> None:
        self.room_connections.setdefault(room, set()).add(connection_id)
        self.connection_rooms.setdefault(connection_id, set()).add(room)

    def leave_room(self, connection_id: str, room: str) -> None:
        members = self.room_connections.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self.room_connections[room]
        rooms = self.connection_rooms.get(connection_id)
        if rooms is not None:
            rooms.discard(room)

    def join_user_to_room(self, user_id: int, room: str) -> None:
        for connection_id in self.registry.lookup(user_id):
            if connection_id in self.connections:
                self.join_room(connection_id, room)

    def remove_user_from_room(self, user_id: int, room: str) -> None:
        for connection_id in self.registry.lookup(user_id):
            self.leave_room(connection_id, room)

    def is_online(self, user_id: int) -> bool:
        return self.registry.is_online(user_id)

    def online_user_ids(self) -> Set[int]:
        return self.registry.online_user_ids()

    async def send_to_user(self, user_id: int, event: dict) -> int:
        return await self._send(self.registry.lookup(user_id), event)

    async def broadcast_room(self, room: str, event: dict, exclude: Optional[str] = None) -> int:
        targets = [c for c in self.room_connections.get(room, set()) if c != exclude]
        sent = await self._send(targets, event)
        logger.debug(f"Broadcast room={room} sent_to={sent}")
        return sent

    async def broadcast_group(self, group_id: int, event: dict) -> int:
        return await self.broadcast_room(group_room(group_id), event)

    async def _send(self, connection_ids: Iterable[str], event: dict) -> int:
        message = json.dumps(event, default=str)
        sent = 0
        for connection_id in list(connection_ids):
            ws = self.connections.get(connection_id)
            if ws is None:
                continue
            try:
                await ws.send_text(message)
                sent += 1
            except Exception:
                # drop broken socket and continue
                logger.warning(f"Dropping broken socket connection_id={connection_id}")
                self.unregister(connection_id)
        return sent


manager = ConnectionManager()
