"""
MongoDB access helpers.

Collections are named after the lowercased schema class (``chatmessage``,
``report``, ``attachment``, ``auditledger``). ``user`` plus the project
collections (``script``, ``project``) belong to the CRUD layer and are only read
here, except for the ``is_blocked`` flag on users.
"""
import asyncio
import functools
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from errors import ChatError, InternalError, NotFound
from settings import Settings

logger = logging.getLogger(__name__)

MESSAGES = "chatmessage"
REPORTS = "report"
USERS = "user"
ATTACHMENTS = "attachment"
AUDIT = "auditledger"


def now_utc() -> datetime:
    # Mongo keeps millisecond precision; truncate so in-memory and stored values agree.
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat().replace("+00:00", "Z") if value else None


def to_object_id(value: Any, what: str = "Document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def get_database(settings: Settings) -> Database:
    client = MongoClient(settings.database_url, tz_aware=True, connect=False)
    return client[settings.database_name]


def ensure_indexes(db: Database) -> None:
    db[MESSAGES].create_index([("room_id", ASCENDING), ("created_at", ASCENDING), ("_id", ASCENDING)])
    db[REPORTS].create_index([("message_id", ASCENDING), ("reporter_id", ASCENDING)], unique=True)
    db[REPORTS].create_index([("created_at", DESCENDING)])
    db[ATTACHMENTS].create_index("url", unique=True)
    db[AUDIT].create_index([("created_at", DESCENDING)])


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    doc.setdefault("created_at", now_utc())
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[List] = None,
) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def storage_call(func: Callable) -> Callable:
    """Translate driver failures into InternalError at the store boundary."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ChatError:
            raise
        except PyMongoError as exc:
            logger.exception("Storage failure in %s", func.__qualname__)
            raise InternalError("Storage failure") from exc

    return wrapper


async def run_db(func: Callable, *args, timeout: Optional[float] = None, **kwargs) -> Any:
    """Run a blocking store call in the worker pool so other rooms keep moving."""
    call = run_in_threadpool(func, *args, **kwargs)
    if not timeout:
        return await call
    try:
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError as exc:
        logger.error("Storage call %s timed out after %ss", getattr(func, "__qualname__", func), timeout)
        raise InternalError("Storage call timed out") from exc
