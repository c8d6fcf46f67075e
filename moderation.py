"""
Moderation engine: report lifecycle and administrator overrides.

Administrator requests arrive over HTTP, not over the live channel, but every
action that changes what a room shows runs under that room's lock and is
broadcast to whoever is connected, the same way the gateway handles
participant actions.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database

import events
from audit import AuditLog
from auth import identity_from_user
from database import USERS, isoformat, run_db, storage_call, to_object_id
from errors import Forbidden, NotFound
from presence import RoomManager
from schemas import (
    Analytics, AuditEntry, ChatMessageOut, Identity, ReportOut, RoomCleared, RoomOverview,
    TranscriptRecord,
)
from store import MessageStore, ReportStore, render_report

logger = logging.getLogger(__name__)


def require_admin(identity: Identity) -> None:
    if not identity.is_admin:
        raise Forbidden("Administrator access required")


class ModerationEngine:
    def __init__(self, db: Database, messages: MessageStore, reports: ReportStore,
                 rooms: RoomManager, audit: AuditLog, timeout: Optional[float] = None):
        self.users = db[USERS]
        self.messages = messages
        self.reports = reports
        self.rooms = rooms
        self.audit = audit
        self.timeout = timeout

    async def _db(self, func: Callable, *args, **kwargs) -> Any:
        return await run_db(func, *args, timeout=self.timeout, **kwargs)

    async def _room_of(self, message_id: str) -> str:
        doc = await self._db(self.messages.get, message_id)
        return doc["room_id"]

    # -------------------- report submission --------------------

    def _submit(self, message_id: str, reporter: Identity, reason: str,
                description: Optional[str]) -> Tuple[ChatMessageOut, ReportOut]:
        message = self.messages.get(message_id)
        report = self.reports.create(message, reporter, reason, description)
        updated = self.messages.mark_reported(message["_id"])
        logger.info("User %s reported message %s (%s)", reporter.user_id, message_id, reason)
        return self.messages.present_one(updated), render_report(report, reporter_name=reporter.name)

    async def report(self, message_id: str, reporter: Identity, reason: str,
                     description: Optional[str] = None) -> Tuple[ChatMessageOut, ReportOut]:
        room_id = await self._room_of(message_id)
        async with self.rooms.lock(room_id):
            return await self._db(self._submit, message_id, reporter, reason, description)

    # -------------------- report review --------------------

    @storage_call
    def _review(self, report_id: str, status: str, admin: Identity) -> Dict[str, Any]:
        report = self.reports.get(report_id)
        if not self.messages.existing_ids([report["message_id"]]):
            logger.warning("Sweeping report %s whose message no longer exists", report_id)
            self.reports.delete_ids([report["_id"]])
            raise NotFound("Reported message no longer exists")
        return self.reports.transition(report_id, status, admin)

    async def review_report(self, report_id: str, status: str, admin: Identity) -> ReportOut:
        require_admin(admin)
        doc = await self._db(self._review, report_id, status, admin)
        await self._db(self.audit.append, "report_review", admin,
                       report_id=report_id, message_id=str(doc["message_id"]), status=status)
        logger.info("Admin %s moved report %s to %s", admin.user_id, report_id, status)
        return render_report(doc)

    @storage_call
    def _list_reports(self, status: Optional[str], message_id: Optional[str],
                      room_id: Optional[str]) -> List[ReportOut]:
        docs = self.reports.find(status=status, message_id=message_id, room_id=room_id)
        if not docs:
            return []
        live = self.messages.existing_ids({doc["message_id"] for doc in docs})
        orphans = [doc["_id"] for doc in docs if doc["message_id"] not in live]
        if orphans:
            logger.warning("Sweeping %d report(s) whose message no longer exists", len(orphans))
            self.reports.delete_ids(orphans)
        docs = [doc for doc in docs if doc["message_id"] in live]
        if not docs:
            return []
        rendered = {
            msg.id: msg
            for msg in self.messages.present(self.messages.find_ids(live))
        }
        names = self.messages.user_names({doc["reporter_id"] for doc in docs})
        return [
            render_report(doc, message=rendered.get(str(doc["message_id"])),
                          reporter_name=names.get(doc["reporter_id"]))
            for doc in docs
        ]

    async def list_reports(self, admin: Identity, status: Optional[str] = None,
                           message_id: Optional[str] = None, room_id: Optional[str] = None) -> List[ReportOut]:
        require_admin(admin)
        return await self._db(self._list_reports, status, message_id, room_id)

    @storage_call
    def _sweep(self) -> int:
        docs = self.reports.message_refs()
        live = self.messages.existing_ids({doc["message_id"] for doc in docs})
        return self.reports.delete_ids(doc["_id"] for doc in docs if doc["message_id"] not in live)

    async def sweep_orphan_reports(self) -> int:
        removed = await self._db(self._sweep)
        if removed:
            logger.warning("Removed %d orphaned report(s)", removed)
        return removed

    # -------------------- global overrides --------------------

    async def global_edit(self, message_id: str, body: str, admin: Identity) -> ChatMessageOut:
        require_admin(admin)
        room_id = await self._room_of(message_id)
        async with self.rooms.lock(room_id):
            doc = await self._db(self.messages.set_body, message_id, body)
            message = await self._db(self.messages.present_one, doc)
            await self.rooms.broadcast(room_id, events.message_changed(message))
        await self._db(self.audit.append, "message_global_edit", admin, message_id=message_id, room_id=room_id)
        logger.info("Admin %s edited message %s", admin.user_id, message_id)
        return message

    async def global_delete(self, message_id: str, admin: Identity) -> None:
        require_admin(admin)
        room_id = await self._room_of(message_id)
        async with self.rooms.lock(room_id):
            await self._db(self.messages.delete, message_id)
            await self.rooms.broadcast(room_id, events.message_deleted(room_id, message_id))
        await self._db(self.audit.append, "message_global_delete", admin, message_id=message_id, room_id=room_id)
        logger.info("Admin %s deleted message %s globally", admin.user_id, message_id)

    async def hide_message(self, message_id: str, blocked: bool, admin: Identity) -> ChatMessageOut:
        require_admin(admin)
        room_id = await self._room_of(message_id)
        async with self.rooms.lock(room_id):
            doc = await self._db(self.messages.set_blocked, message_id, blocked)
            message = await self._db(self.messages.present_one, doc)
            await self.rooms.broadcast(room_id, events.message_changed(message))
        await self._db(self.audit.append, "message_visibility", admin,
                       message_id=message_id, room_id=room_id, blocked=blocked)
        return message

    @storage_call
    def _set_user_blocked(self, user_id: str, blocked: bool) -> Identity:
        doc = self.users.find_one_and_update(
            {"_id": to_object_id(user_id, "User")},
            {"$set": {"is_blocked": blocked}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFound("User not found")
        return identity_from_user(doc)

    async def block_user(self, user_id: str, blocked: bool, admin: Identity) -> Identity:
        """Forward-looking only: stops future sends, leaves existing messages visible."""
        require_admin(admin)
        identity = await self._db(self._set_user_blocked, user_id, blocked)
        await self._db(self.audit.append, "user_block", admin, user_id=user_id, blocked=blocked)
        logger.info("Admin %s set blocked=%s for user %s", admin.user_id, blocked, user_id)
        return identity

    async def clear_room(self, room_id: str, admin: Identity) -> RoomCleared:
        require_admin(admin)
        async with self.rooms.lock(room_id):
            ids = await self._db(self.messages.delete_room, room_id)
            message_ids = [str(oid) for oid in ids]
            await self.rooms.broadcast(room_id, events.room_cleared(room_id, message_ids))
        await self._db(self.audit.append, "room_clear", admin, room_id=room_id, deleted=len(ids))
        logger.info("Admin %s cleared room %s (%d messages)", admin.user_id, room_id, len(ids))
        return RoomCleared(room_id=room_id, deleted_messages=len(ids), message_ids=message_ids)

    # -------------------- views --------------------

    async def export_transcript(self, room_id: str, admin: Identity) -> List[TranscriptRecord]:
        require_admin(admin)
        return await self._db(self.messages.export, room_id)

    async def list_rooms(self, admin: Identity) -> List[RoomOverview]:
        require_admin(admin)
        rows = await self._db(self.messages.room_overview)
        return [
            RoomOverview(
                room_id=row["_id"],
                message_count=row["message_count"],
                last_message=row.get("last_message"),
                last_message_time=isoformat(row.get("last_message_time")),
                participant_count=len(row.get("participants") or []),
                reported_count=row["reported_count"],
                online=self.rooms.count(row["_id"]),
            )
            for row in rows
        ]

    @storage_call
    def _counters(self) -> Dict[str, int]:
        return {
            "total_messages": self.messages.count(),
            "total_reports": self.reports.count(),
            "pending_reports": self.reports.count("pending"),
            "active_chatrooms": self.messages.active_rooms(),
            "blocked_users": self.users.count_documents({"is_blocked": True}),
        }

    async def analytics(self, admin: Identity) -> Analytics:
        require_admin(admin)
        counters = await self._db(self._counters)
        online = self.rooms.snapshot()
        return Analytics(online_participants=sum(online.values()), online_by_room=online, **counters)

    async def audit_log(self, admin: Identity, limit: int = 100) -> List[AuditEntry]:
        require_admin(admin)
        return await self._db(self.audit.recent, limit)
