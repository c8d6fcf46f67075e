"""
Identity verification and room lookup.

Credentials are issued elsewhere; a token is a signed JWT whose ``id`` claim
names a document in the ``user`` collection. Rooms are project ids living in
the script/project collections.
"""
import logging
from typing import Any, Dict, Iterable, Optional

import jwt
from pymongo.database import Database

from database import USERS, storage_call, to_object_id
from errors import NotFound, Unauthorized
from schemas import Identity

logger = logging.getLogger(__name__)


def bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def identity_from_user(doc: Dict[str, Any]) -> Identity:
    roles = doc.get("roles") or []
    is_admin = doc.get("role") == "admin" or "admin" in roles
    return Identity(
        user_id=str(doc["_id"]),
        name=doc.get("name") or "",
        role="administrator" if is_admin else "participant",
        blocked=bool(doc.get("is_blocked", False)),
    )


class IdentityVerifier:
    def __init__(self, db: Database, secret: str, algorithms: Iterable[str] = ("HS256",)):
        self.users = db[USERS]
        self.secret = secret
        self.algorithms = list(algorithms)

    def decode(self, token: Optional[str]) -> str:
        if not token:
            raise Unauthorized("No token")
        if not self.secret:
            logger.error("JWT_SECRET is not configured; rejecting every credential")
            raise Unauthorized("Invalid token")
        try:
            claims = jwt.decode(token, self.secret, algorithms=self.algorithms)
        except jwt.PyJWTError as exc:
            logger.info("Rejected credential: %s", exc)
            raise Unauthorized("Invalid token")
        user_id = claims.get("id") or claims.get("sub")
        if not user_id:
            raise Unauthorized("Token carries no identity")
        return str(user_id)

    @storage_call
    def load(self, user_id: str) -> Identity:
        try:
            oid = to_object_id(user_id, "User")
        except NotFound:
            raise Unauthorized("Unknown user")
        doc = self.users.find_one({"_id": oid})
        if doc is None:
            raise Unauthorized("Unknown user")
        return identity_from_user(doc)

    def verify(self, token: Optional[str]) -> Identity:
        return self.load(self.decode(token))


class RoomDirectory:
    """Read-only view over the project collections that define which rooms exist."""

    def __init__(self, db: Database, collections: Iterable[str]):
        self.db = db
        self.collections = list(collections)

    @storage_call
    def exists(self, room_id: str) -> bool:
        try:
            oid = to_object_id(room_id, "Room")
        except NotFound:
            return False
        return any(
            self.db[name].find_one({"_id": oid}, {"_id": 1}) is not None
            for name in self.collections
        )

    def require(self, room_id: str) -> None:
        if not self.exists(room_id):
            raise NotFound("Project not found")
