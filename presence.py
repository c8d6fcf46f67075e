"""
Ephemeral presence: which connections are in which room.

One RoomManager is created per application and dropped on shutdown; nothing
here survives a restart. Mutations happen on the event loop thread, and the
per-room locks handed out by ``lock()`` serialize every room-scoped operation
(presence changes, persistence followed by broadcast) without holding up other
rooms.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from fastapi import WebSocket

from schemas import Identity

logger = logging.getLogger(__name__)


class Connection:
    """A verified WebSocket plus the rooms it has joined."""

    def __init__(self, websocket: WebSocket, identity: Identity):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.identity = identity
        self.rooms: Set[str] = set()

    async def send(self, payload: Dict[str, Any]) -> bool:
        try:
            await self.websocket.send_json(payload)
            return True
        except Exception as e:
            # The receive loop sees the disconnect and runs the normal cleanup.
            logger.debug("Failed to send to connection %s: %s", self.id, e)
            return False

    def __repr__(self) -> str:
        return f"<Connection {self.id} user={self.identity.user_id}>"


class RoomManager:
    def __init__(self) -> None:
        # room_id -> {connection_id -> Connection}
        self._rooms: Dict[str, Dict[str, Connection]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # room_id -> number of tasks holding or waiting on that room's lock
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, room_id: str) -> AsyncIterator[None]:
        """Hold ``room_id``'s lock. The lock is dropped once the room is empty and nobody needs it."""
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        self._lock_users[room_id] = self._lock_users.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users.get(room_id, 1) - 1
            if remaining:
                self._lock_users[room_id] = remaining
            else:
                self._lock_users.pop(room_id, None)
            self._prune(room_id)

    def _prune(self, room_id: str) -> None:
        if room_id not in self._rooms and room_id not in self._lock_users:
            self._locks.pop(room_id, None)

    def lock_count(self) -> int:
        return len(self._locks)

    def join(self, room_id: str, connection: Connection) -> bool:
        """Register ``connection`` in ``room_id``. Returns False if it was already there."""
        members = self._rooms.setdefault(room_id, {})
        if connection.id in members:
            return False
        members[connection.id] = connection
        connection.rooms.add(room_id)
        return True

    def leave(self, room_id: str, connection: Connection) -> bool:
        """Remove ``connection`` from ``room_id``. Removing an absent connection is a no-op."""
        connection.rooms.discard(room_id)
        members = self._rooms.get(room_id)
        if not members or connection.id not in members:
            return False
        del members[connection.id]
        if not members:
            del self._rooms[room_id]
            self._prune(room_id)
        return True

    def count(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, {}))

    def members(self, room_id: str) -> List[Connection]:
        return list(self._rooms.get(room_id, {}).values())

    def is_member(self, room_id: str, connection: Connection) -> bool:
        return connection.id in self._rooms.get(room_id, {})

    def snapshot(self) -> Dict[str, int]:
        return {room_id: len(members) for room_id, members in self._rooms.items()}

    async def broadcast(self, room_id: str, payload: Dict[str, Any],
                        exclude: Optional[Connection] = None) -> None:
        targets = [conn for conn in self.members(room_id) if conn is not exclude]
        if not targets:
            return
        await asyncio.gather(*[conn.send(payload) for conn in targets])

    def clear(self) -> None:
        for members in self._rooms.values():
            for connection in members.values():
                connection.rooms.clear()
        self._rooms.clear()
        self._locks.clear()
        self._lock_users.clear()
