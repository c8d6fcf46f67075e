"""
WebSocket channel gateway.

Each inbound frame is parsed into one of the tagged commands in
``schemas.Command`` and dispatched to a handler. Handlers that touch a room's
shared state run under that room's lock: persistence happens first, then the
broadcast, so every participant sees messages in the order they were stored,
and nobody sees a message that failed to persist. Errors go back to the
originating connection only.
"""
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

import events
from attachments import AttachmentStore
from auth import IdentityVerifier, RoomDirectory, bearer_token
from database import run_db
from errors import BadRequest, ChatError, Forbidden
from moderation import ModerationEngine
from presence import Connection, RoomManager
from schemas import (
    ChatMessageOut, DeleteCommand, EditCommand, Identity, JoinCommand, LeaveCommand,
    ReportCommand, ReportOut, SendCommand, StopTypingCommand, TogglePinCommand,
    TypingCommand, command_adapter,
)
from store import MessageStore

logger = logging.getLogger(__name__)

# Close code for a credential that fails verification (RFC 6455 "policy violation").
WS_POLICY_VIOLATION = 1008


class ChannelGateway:
    def __init__(self, rooms: RoomManager, messages: MessageStore, moderation: ModerationEngine,
                 attachments: AttachmentStore, verifier: IdentityVerifier, directory: RoomDirectory,
                 pin_policy: str = "member", history_limit: int = 100, timeout: Optional[float] = None):
        self.rooms = rooms
        self.messages = messages
        self.moderation = moderation
        self.attachments = attachments
        self.verifier = verifier
        self.directory = directory
        self.pin_policy = pin_policy
        self.history_limit = history_limit
        self.timeout = timeout
        self._handlers: Dict[str, Callable[[Connection, Any], Awaitable[None]]] = {
            "join": self._join,
            "leave": self._leave,
            "send": self._send,
            "typing": self._typing,
            "stopTyping": self._stop_typing,
            "togglePin": self._toggle_pin,
            "edit": self._edit,
            "delete": self._delete,
            "report": self._report,
        }

    async def _db(self, func: Callable, *args, **kwargs) -> Any:
        return await run_db(func, *args, timeout=self.timeout, **kwargs)

    # -------------------- connection lifecycle --------------------

    async def authenticate(self, websocket: WebSocket) -> Optional[Identity]:
        token = websocket.query_params.get("token") or bearer_token(websocket.headers.get("authorization"))
        try:
            return await self._db(self.verifier.verify, token)
        except ChatError as e:
            logger.info("Rejected channel connection: %s", e.message)
            return None

    async def serve(self, websocket: WebSocket) -> None:
        identity = await self.authenticate(websocket)
        if identity is None:
            await websocket.close(code=WS_POLICY_VIOLATION)
            return
        await websocket.accept()
        connection = Connection(websocket, identity)
        logger.info("Connection %s opened for user %s", connection.id, identity.user_id)
        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                raw = frame.get("text")
                if raw is None:
                    await connection.send(BadRequest("Text frames only").to_dict())
                    continue
                await self.handle(connection, raw)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("Connection %s failed", connection.id)
            await websocket.close(code=1011)
        finally:
            await self.disconnect(connection)
            logger.info("Connection %s closed", connection.id)

    async def disconnect(self, connection: Connection) -> None:
        for room_id in list(connection.rooms):
            await self._remove(room_id, connection)

    # -------------------- dispatch --------------------

    async def handle(self, connection: Connection, raw: str) -> None:
        try:
            data = json.loads(raw)
            command = command_adapter.validate_python(data)
        except (ValueError, ValidationError) as e:
            await connection.send(BadRequest(_describe(e)).to_dict())
            return
        await self.dispatch(connection, command)

    async def dispatch(self, connection: Connection, command: Any) -> None:
        handler = self._handlers[command.type]
        try:
            await handler(connection, command)
        except ChatError as e:
            logger.info("%s from %s rejected: %s %s", command.type, connection.identity.user_id, e.code, e.message)
            await connection.send(e.to_dict())

    def _require_member(self, room_id: str, connection: Connection) -> None:
        if not self.rooms.is_member(room_id, connection):
            raise Forbidden("Join the room first")

    # -------------------- presence --------------------

    async def _join(self, connection: Connection, command: JoinCommand) -> None:
        room_id = command.room_id
        if not self.rooms.is_member(room_id, connection):
            await self._db(self.directory.require, room_id)
        async with self.rooms.lock(room_id):
            history = await self._db(self.messages.history, room_id, self.history_limit)
            added = self.rooms.join(room_id, connection)
            count = self.rooms.count(room_id)
            await connection.send(events.joined(room_id, count, history))
            if not added:
                return
            logger.info("User %s joined room %s (%d online)", connection.identity.user_id, room_id, count)
            await self.rooms.broadcast(room_id, events.presence_count(room_id, count))
            await self.rooms.broadcast(room_id, events.participant_joined(room_id, connection.identity),
                                       exclude=connection)

    async def _leave(self, connection: Connection, command: LeaveCommand) -> None:
        await self._remove(command.room_id, connection)
        await connection.send(events.left(command.room_id))

    async def _remove(self, room_id: str, connection: Connection) -> None:
        """The single removal path shared by explicit leave and transport disconnect."""
        async with self.rooms.lock(room_id):
            if not self.rooms.leave(room_id, connection):
                return
            count = self.rooms.count(room_id)
            logger.info("User %s left room %s (%d online)", connection.identity.user_id, room_id, count)
            await self.rooms.broadcast(room_id, events.presence_count(room_id, count))
            await self.rooms.broadcast(room_id, events.participant_left(room_id, connection.identity))

    async def _typing(self, connection: Connection, command: TypingCommand) -> None:
        self._require_member(command.room_id, connection)
        await self.rooms.broadcast(command.room_id, events.typing(command.room_id, connection.identity),
                                   exclude=connection)

    async def _stop_typing(self, connection: Connection, command: StopTypingCommand) -> None:
        self._require_member(command.room_id, connection)
        await self.rooms.broadcast(command.room_id, events.stop_typing(command.room_id, connection.identity),
                                   exclude=connection)

    # -------------------- messages --------------------

    async def _send(self, connection: Connection, command: SendCommand) -> None:
        room_id = command.room_id
        self._require_member(room_id, connection)
        # Re-read the user so a block issued after connect applies to the next send.
        sender = await self._db(self.verifier.load, connection.identity.user_id)
        if sender.blocked:
            raise Forbidden("You are blocked from sending messages")
        attachment = None
        if command.kind == "file":
            attachment = await self._db(self.attachments.require, command.attachment)
        body = command.body or (attachment.name if attachment else "")
        async with self.rooms.lock(room_id):
            doc = await self._db(self.messages.create, room_id, sender, body, command.kind, attachment)
            message = await self._db(self.messages.present_one, doc)
            await self.rooms.broadcast(room_id, events.message(message))

    async def _toggle_pin(self, connection: Connection, command: TogglePinCommand) -> None:
        await self.toggle_pin(connection.identity, command.message_id, command.pinned, connection=connection)

    async def toggle_pin(self, identity: Identity, message_id: str, pinned: bool,
                         connection: Optional[Connection] = None) -> ChatMessageOut:
        doc = await self._db(self.messages.get, message_id)
        room_id = doc["room_id"]
        if connection is not None:
            self._require_member(room_id, connection)
        if self.pin_policy == "owner" and doc["sender_id"] != identity.user_id and not identity.is_admin:
            raise Forbidden("Not authorized")
        async with self.rooms.lock(room_id):
            doc = await self._db(self.messages.set_pinned, message_id, pinned)
            message = await self._db(self.messages.present_one, doc)
            if message.blocked:
                frame = events.message_hidden(room_id, message.id)
            else:
                frame = events.message_pinned(message)
            await self.rooms.broadcast(room_id, frame)
        return message

    async def _edit(self, connection: Connection, command: EditCommand) -> None:
        await self.edit_message(connection.identity, command.message_id, command.body)

    async def edit_message(self, identity: Identity, message_id: str, body: str) -> ChatMessageOut:
        doc = await self._db(self.messages.get, message_id)
        room_id = doc["room_id"]
        async with self.rooms.lock(room_id):
            doc = await self._db(self.messages.edit_own, message_id, identity, body)
            message = await self._db(self.messages.present_one, doc)
            await self.rooms.broadcast(room_id, events.message_changed(message))
        return message

    async def _delete(self, connection: Connection, command: DeleteCommand) -> None:
        await self.delete_message(connection.identity, command.message_id)

    async def delete_message(self, identity: Identity, message_id: str) -> None:
        doc = await self._db(self.messages.get, message_id)
        room_id = doc["room_id"]
        async with self.rooms.lock(room_id):
            await self._db(self.messages.delete_own, message_id, identity)
            await self.rooms.broadcast(room_id, events.message_deleted(room_id, message_id))
        logger.info("User %s deleted message %s", identity.user_id, message_id)

    async def _report(self, connection: Connection, command: ReportCommand) -> None:
        message, report = await self.report_message(
            connection.identity, command.message_id, command.reason, command.description)
        await connection.send(events.reported(message, report))

    async def report_message(self, identity: Identity, message_id: str, reason: str,
                             description: Optional[str] = None) -> Tuple[ChatMessageOut, ReportOut]:
        return await self.moderation.report(message_id, identity, reason, description)


def _describe(error: Exception) -> str:
    if isinstance(error, ValidationError):
        first = error.errors()[0] if error.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        return f"Invalid command: {location} {first.get('msg', '')}".strip()
    return "Invalid JSON"
