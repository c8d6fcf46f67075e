import hashlib
import json
import threading
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from database import AUDIT, create_document, get_documents, isoformat, now_utc, storage_call
from schemas import AuditEntry, AuditLedger, Identity


def sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def canonical_json(record: Dict[str, Any]) -> str:
    return json.dumps(record, separators=(",", ":"), sort_keys=True, default=str)


class AuditLog:
    """Append-only, hash-chained log of administrator actions."""

    def __init__(self, db: Database):
        self.db = db
        self.collection = db[AUDIT]
        # Appends run on worker threads; the chain needs prev-hash read and insert to be atomic.
        self._lock = threading.Lock()

    def _prev_hash(self) -> Optional[str]:
        last = self.collection.find_one(sort=[("created_at", DESCENDING), ("_id", DESCENDING)])
        return last.get("record_hash") if last else None

    @storage_call
    def append(self, event_type: str, actor: Identity, **details: Any) -> str:
        record = {
            "event_type": event_type,
            "actor_id": actor.user_id,
            "actor_name": actor.name,
            "timestamp": now_utc().isoformat(),
            **details,
        }
        with self._lock:
            prev_hash = self._prev_hash() or ""
            entry = AuditLedger(
                record_json=record,
                record_hash=sha256_hex(prev_hash + canonical_json(record)),
                prev_hash=prev_hash or None,
                created_at=now_utc(),
            )
            return create_document(self.db, AUDIT, entry)

    @storage_call
    def recent(self, limit: int = 100) -> List[AuditEntry]:
        docs = get_documents(self.db, AUDIT, limit=limit, sort=[("created_at", DESCENDING), ("_id", DESCENDING)])
        return [
            AuditEntry(
                record=doc["record_json"],
                record_hash=doc["record_hash"],
                prev_hash=doc.get("prev_hash"),
                created_at=isoformat(doc.get("created_at")),
            )
            for doc in docs
        ]

    @storage_call
    def verify_chain(self) -> bool:
        prev_hash = ""
        for doc in self.collection.find().sort([("created_at", 1), ("_id", 1)]):
            if (doc.get("prev_hash") or "") != prev_hash:
                return False
            if sha256_hex(prev_hash + canonical_json(doc["record_json"])) != doc["record_hash"]:
                return False
            prev_hash = doc["record_hash"]
        return True
