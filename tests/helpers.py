"""Shared fixtures for the chat backend tests."""
import json
import tempfile
from typing import Any, Dict, List

import jwt
import mongomock
from bson import ObjectId

from database import ensure_indexes
from main import create_app
from presence import Connection
from schemas import Identity
from settings import Settings

SECRET = "test-secret"


def make_db():
    db = mongomock.MongoClient()["filmcollab_test"]
    ensure_indexes(db)
    return db


def add_user(db, name: str, admin: bool = False, blocked: bool = False) -> str:
    doc = {"name": name, "roles": ["admin"] if admin else ["writer"], "is_blocked": blocked}
    return str(db["user"].insert_one(doc).inserted_id)


def add_project(db, title: str = "Night Shoot") -> str:
    return str(db["script"].insert_one({"title": title}).inserted_id)


def token_for(user_id: str, secret: str = SECRET) -> str:
    return jwt.encode({"id": user_id}, secret, algorithm="HS256")


def auth_header(user_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token_for(user_id)}"}


def make_settings(upload_dir: str, **overrides: Any) -> Settings:
    return Settings(jwt_secret=SECRET, upload_dir=upload_dir, **overrides)


class FakeSocket:
    """Stands in for a Starlette WebSocket; records every frame sent to it."""

    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, payload: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(payload)

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [frame for frame in self.sent if frame["type"] == event_type]


class ChatTestMixin:
    """Builds a fresh app, in-memory store and upload dir for every test."""

    settings_overrides: Dict[str, Any] = {}

    def build(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.upload_dir = self._tmp.name
        self.db = make_db()
        self.settings = make_settings(self.upload_dir, **self.settings_overrides)
        self.app = create_app(self.settings, self.db)
        self.gateway = self.app.state.gateway
        self.moderation = self.app.state.moderation
        self.rooms = self.app.state.rooms
        self.messages = self.gateway.messages
        self.reports = self.moderation.reports
        self.room = add_project(self.db)
        self.alice_id = add_user(self.db, "Alice")
        self.bob_id = add_user(self.db, "Bob")
        self.admin_id = add_user(self.db, "Dana", admin=True)

    def identity(self, user_id: str) -> Identity:
        return self.gateway.verifier.load(user_id)

    def connect(self, user_id: str, fail: bool = False) -> Connection:
        return Connection(FakeSocket(fail=fail), self.identity(user_id))

    async def command(self, connection: Connection, **frame: Any) -> None:
        await self.gateway.handle(connection, json.dumps(frame))

    async def join(self, connection: Connection, room_id: str = None) -> None:
        await self.command(connection, type="join", roomId=room_id or self.room)

    async def say(self, connection: Connection, body: str, room_id: str = None) -> Dict[str, Any]:
        await self.command(connection, type="send", roomId=room_id or self.room, body=body)
        return connection.websocket.of_type("message")[-1]["message"]


def new_object_id() -> str:
    return str(ObjectId())
