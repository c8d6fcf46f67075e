"""
Durable chat state: the per-room message log and the report records.

All methods here are blocking pymongo calls. Callers on the event loop go
through ``database.run_db`` while holding the room lock, which is what keeps
``created_at`` non-decreasing and broadcast order equal to persisted order.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import (
    MESSAGES, REPORTS, USERS, as_utc, create_document, isoformat, now_utc,
    storage_call, to_object_id,
)
from errors import Conflict, Forbidden, InternalError, InvalidTransition, NotFound
from schemas import (
    AttachmentRef, ChatMessageOut, Identity, Message, Report, ReportOut,
    TranscriptRecord,
)

logger = logging.getLogger(__name__)

ORDER = [("created_at", ASCENDING), ("_id", ASCENDING)]

REPORT_TRANSITIONS = {
    "pending": {"reviewed", "resolved"},
    "reviewed": {"resolved"},
    "resolved": set(),
}


class ReportStore:
    def __init__(self, db: Database):
        self.collection = db[REPORTS]

    @storage_call
    def create(self, message: Dict[str, Any], reporter: Identity, reason: str,
               description: Optional[str] = None) -> Dict[str, Any]:
        report = Report(
            message_id=message["_id"],
            room_id=message["room_id"],
            reporter_id=reporter.user_id,
            reason=reason,
            description=description,
            created_at=now_utc(),
        )
        doc = report.model_dump()
        try:
            result = self.collection.insert_one(doc)
        except DuplicateKeyError:
            raise Conflict("Already reported")
        doc["_id"] = result.inserted_id
        return doc

    @storage_call
    def get(self, report_id: str) -> Dict[str, Any]:
        doc = self.collection.find_one({"_id": to_object_id(report_id, "Report")})
        if doc is None:
            raise NotFound("Report not found")
        return doc

    @storage_call
    def find(self, status: Optional[str] = None, message_id: Optional[str] = None,
             room_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if message_id:
            query["message_id"] = to_object_id(message_id, "Message")
        if room_id:
            query["room_id"] = room_id
        return list(self.collection.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]))

    @storage_call
    def transition(self, report_id: str, new_status: str, reviewer: Identity) -> Dict[str, Any]:
        report = self.get(report_id)
        current = report["status"]
        if new_status not in REPORT_TRANSITIONS.get(current, set()):
            raise InvalidTransition(f"Cannot move report from {current} to {new_status}")
        # Conditional on the status we validated against, so two reviewers cannot both win.
        updated = self.collection.find_one_and_update(
            {"_id": report["_id"], "status": current},
            {"$set": {"status": new_status, "reviewed_by": reviewer.user_id, "reviewed_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise Conflict("Report was updated concurrently")
        return updated

    @storage_call
    def delete_for(self, message_ids: Iterable[ObjectId]) -> int:
        ids = list(message_ids)
        if not ids:
            return 0
        return self.collection.delete_many({"message_id": {"$in": ids}}).deleted_count

    @storage_call
    def delete_ids(self, report_ids: Iterable[ObjectId]) -> int:
        ids = list(report_ids)
        if not ids:
            return 0
        return self.collection.delete_many({"_id": {"$in": ids}}).deleted_count

    @storage_call
    def counts_for(self, message_ids: Iterable[ObjectId]) -> Dict[ObjectId, int]:
        ids = list(message_ids)
        if not ids:
            return {}
        rows = self.collection.aggregate([
            {"$match": {"message_id": {"$in": ids}}},
            {"$group": {"_id": "$message_id", "count": {"$sum": 1}}},
        ])
        return {row["_id"]: row["count"] for row in rows}

    @storage_call
    def message_refs(self) -> List[Dict[str, Any]]:
        return list(self.collection.find({}, {"message_id": 1}))

    @storage_call
    def count(self, status: Optional[str] = None) -> int:
        return self.collection.count_documents({"status": status} if status else {})


class MessageStore:
    def __init__(self, db: Database, reports: ReportStore):
        self.db = db
        self.collection = db[MESSAGES]
        self.users = db[USERS]
        self.reports = reports

    # -------------------- reads --------------------

    @storage_call
    def get(self, message_id: str) -> Dict[str, Any]:
        doc = self.collection.find_one({"_id": to_object_id(message_id, "Message")})
        if doc is None:
            raise NotFound("Message not found")
        return doc

    @storage_call
    def existing_ids(self, message_ids: Iterable[ObjectId]) -> set:
        ids = list(message_ids)
        if not ids:
            return set()
        return {doc["_id"] for doc in self.collection.find({"_id": {"$in": ids}}, {"_id": 1})}

    @storage_call
    def find_room(self, room_id: str, include_blocked: bool = False,
                  limit: Optional[int] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"room_id": room_id}
        if not include_blocked:
            query["blocked"] = {"$ne": True}
        if limit:
            # Latest ``limit`` messages, returned oldest first.
            docs = list(self.collection.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).limit(limit))
            docs.reverse()
            return docs
        return list(self.collection.find(query).sort(ORDER))

    def history(self, room_id: str, limit: Optional[int] = None) -> List[ChatMessageOut]:
        return self.present(self.find_room(room_id, limit=limit))

    @storage_call
    def present(self, docs: List[Dict[str, Any]]) -> List[ChatMessageOut]:
        """Render stored messages with live sender names and recomputed report counts."""
        if not docs:
            return []
        counts = self.reports.counts_for(doc["_id"] for doc in docs)
        names = self.user_names({doc["sender_id"] for doc in docs})
        return [self._render(doc, names, counts) for doc in docs]

    def present_one(self, doc: Dict[str, Any]) -> ChatMessageOut:
        return self.present([doc])[0]

    @storage_call
    def find_ids(self, message_ids: Iterable[ObjectId]) -> List[Dict[str, Any]]:
        ids = list(message_ids)
        if not ids:
            return []
        return list(self.collection.find({"_id": {"$in": ids}}))

    def user_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
        oids = []
        for user_id in user_ids:
            try:
                oids.append(to_object_id(user_id, "User"))
            except NotFound:
                continue
        if not oids:
            return {}
        return {str(u["_id"]): u.get("name", "") for u in self.users.find({"_id": {"$in": oids}}, {"name": 1})}

    def _render(self, doc: Dict[str, Any], names: Dict[str, str], counts: Dict[ObjectId, int]) -> ChatMessageOut:
        attachment = doc.get("attachment")
        return ChatMessageOut(
            id=str(doc["_id"]),
            room_id=doc["room_id"],
            sender_id=doc["sender_id"],
            sender_name=names.get(doc["sender_id"]) or doc.get("sender_name", ""),
            body=doc["body"],
            kind=doc.get("kind", "text"),
            attachment=AttachmentRef(**attachment) if attachment else None,
            role=doc.get("role", "participant"),
            edited=doc.get("edited", False),
            blocked=doc.get("blocked", False),
            pinned=doc.get("pinned", False),
            reported=doc.get("reported", False),
            report_count=counts.get(doc["_id"], 0),
            created_at=isoformat(doc["created_at"]),
        )

    # -------------------- writes --------------------

    @storage_call
    def create(self, room_id: str, sender: Identity, body: str, kind: str = "text",
               attachment: Optional[AttachmentRef] = None) -> Dict[str, Any]:
        created_at = now_utc()
        latest = self.collection.find_one({"room_id": room_id}, sort=[("created_at", DESCENDING)])
        if latest is not None:
            created_at = max(created_at, as_utc(latest["created_at"]))
        message = Message(
            room_id=room_id,
            sender_id=sender.user_id,
            sender_name=sender.name,
            body=body,
            kind=kind,
            attachment=attachment.model_dump() if attachment else None,
            role=sender.role,
            created_at=created_at,
        )
        doc = message.model_dump()
        doc["_id"] = to_object_id(create_document(self.db, MESSAGES, doc))
        return doc

    def _authorize(self, doc: Dict[str, Any], identity: Identity) -> None:
        if doc["sender_id"] != identity.user_id and not identity.is_admin:
            raise Forbidden("Not authorized")

    @storage_call
    def set_body(self, message_id: str, body: str) -> Dict[str, Any]:
        return self._update(message_id, {"body": body, "edited": True})

    def edit_own(self, message_id: str, editor: Identity, body: str) -> Dict[str, Any]:
        self._authorize(self.get(message_id), editor)
        return self.set_body(message_id, body)

    @storage_call
    def set_pinned(self, message_id: str, pinned: bool) -> Dict[str, Any]:
        return self._update(message_id, {"pinned": pinned})

    @storage_call
    def set_blocked(self, message_id: str, blocked: bool) -> Dict[str, Any]:
        return self._update(message_id, {"blocked": blocked})

    @storage_call
    def mark_reported(self, message_id: ObjectId) -> Dict[str, Any]:
        return self._update(message_id, {"reported": True})

    def _update(self, message_id: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        doc = self.collection.find_one_and_update(
            {"_id": to_object_id(message_id, "Message")},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFound("Message not found")
        return doc

    @storage_call
    def delete(self, message_id: str) -> Dict[str, Any]:
        """Remove a message, then its reports. Report cleanup is best effort."""
        doc = self.collection.find_one_and_delete({"_id": to_object_id(message_id, "Message")})
        if doc is None:
            raise NotFound("Message not found")
        self._cascade([doc["_id"]])
        return doc

    def delete_own(self, message_id: str, requester: Identity) -> Dict[str, Any]:
        self._authorize(self.get(message_id), requester)
        return self.delete(message_id)

    @storage_call
    def delete_room(self, room_id: str) -> List[ObjectId]:
        ids = [doc["_id"] for doc in self.collection.find({"room_id": room_id}, {"_id": 1})]
        if ids:
            self.collection.delete_many({"_id": {"$in": ids}})
            self._cascade(ids)
        return ids

    def _cascade(self, message_ids: List[ObjectId]) -> None:
        try:
            removed = self.reports.delete_for(message_ids)
        except InternalError as exc:
            # The orphan sweep in report listing finishes the job later.
            logger.warning("Report cascade failed for %d message(s): %s", len(message_ids), exc)
            return
        if removed:
            logger.info("Cascaded deletion of %d report(s)", removed)

    # -------------------- admin views --------------------

    @storage_call
    def export(self, room_id: str) -> List[TranscriptRecord]:
        docs = self.find_room(room_id, include_blocked=True)
        names = self.user_names({doc["sender_id"] for doc in docs})
        return [
            TranscriptRecord(
                timestamp=isoformat(doc["created_at"]),
                sender=names.get(doc["sender_id"]) or doc.get("sender_name", ""),
                sender_id=doc["sender_id"],
                role=doc.get("role", "participant"),
                body=doc["body"],
                type=doc.get("kind", "text"),
                edited=doc.get("edited", False),
                reported=doc.get("reported", False),
                blocked=doc.get("blocked", False),
            )
            for doc in docs
        ]

    @storage_call
    def count(self) -> int:
        return self.collection.count_documents({})

    @storage_call
    def active_rooms(self) -> int:
        return len(self.collection.distinct("room_id"))

    @storage_call
    def room_overview(self) -> List[Dict[str, Any]]:
        """Per-room counters, most recently active room first."""
        return list(self.collection.aggregate([
            {"$sort": {"created_at": ASCENDING, "_id": ASCENDING}},
            {"$group": {
                "_id": "$room_id",
                "message_count": {"$sum": 1},
                "last_message": {"$last": "$body"},
                "last_message_time": {"$last": "$created_at"},
                "participants": {"$addToSet": "$sender_id"},
                "reported_count": {"$sum": {"$cond": [{"$eq": ["$reported", True]}, 1, 0]}},
            }},
            {"$sort": {"last_message_time": DESCENDING}},
        ]))


def render_report(doc: Dict[str, Any], message: Optional[ChatMessageOut] = None,
                  reporter_name: Optional[str] = None) -> ReportOut:
    return ReportOut(
        id=str(doc["_id"]),
        message_id=str(doc["message_id"]),
        room_id=doc["room_id"],
        reporter_id=doc["reporter_id"],
        reporter_name=reporter_name,
        reason=doc["reason"],
        description=doc.get("description"),
        status=doc["status"],
        reviewed_by=doc.get("reviewed_by"),
        reviewed_at=isoformat(doc.get("reviewed_at")),
        created_at=isoformat(doc.get("created_at")),
        message=message,
    )
