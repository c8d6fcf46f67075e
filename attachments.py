"""
Attachment upload validation and local blob storage.

Uploads are written to disk first and validated afterwards; anything rejected
is removed again before the error is raised, so a failed upload never leaves a
blob behind. Only accepted uploads get an ``attachment`` record, and a ``file``
chat message may only reference a recorded attachment.
"""
import logging
import os
import time
import uuid
from pathlib import Path
from typing import BinaryIO, Optional

from pymongo.database import Database

from database import ATTACHMENTS, create_document, now_utc, storage_call
from errors import InternalError, NotFound, PayloadTooLarge, UnsupportedMediaType
from schemas import Attachment, AttachmentRef, UploadResult

logger = logging.getLogger(__name__)

ALLOWED_MEDIA_TYPES = frozenset([
    "image/jpeg", "image/png", "image/gif", "image/webp",
    "audio/mpeg", "audio/wav", "audio/ogg",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
])

MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
CHUNK_SIZE = 64 * 1024


def normalize_media_type(media_type: Optional[str]) -> str:
    return (media_type or "").split(";", 1)[0].strip().lower()


def validate_media_type(media_type: Optional[str]) -> str:
    normalized = normalize_media_type(media_type)
    if normalized not in ALLOWED_MEDIA_TYPES:
        raise UnsupportedMediaType(
            "File type not allowed. Allowed types: images, audio, PDF, DOC, DOCX, TXT"
        )
    return normalized


def validate_attachment(media_type: Optional[str], size: int, max_bytes: int = MAX_ATTACHMENT_BYTES) -> str:
    """Check declared metadata; returns the normalized media type."""
    normalized = validate_media_type(media_type)
    if size > max_bytes:
        raise PayloadTooLarge(f"File size too large. Maximum size: {max_bytes // (1024 * 1024)}MB")
    return normalized


class AttachmentStore:
    def __init__(self, db: Database, upload_dir: str, url_prefix: str = "/uploads",
                 max_bytes: int = MAX_ATTACHMENT_BYTES):
        self.db = db
        self.collection = db[ATTACHMENTS]
        self.upload_dir = Path(upload_dir)
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.url_prefix = url_prefix.rstrip("/")
        self.max_bytes = max_bytes

    def _blob_name(self, filename: str) -> str:
        ext = Path(filename or "").suffix.lower()
        return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}{ext}"

    def _write(self, stream: BinaryIO, path: Path) -> int:
        written = 0
        with open(path, "wb") as out:
            while True:
                chunk = stream.read(CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > self.max_bytes:
                    # Over the ceiling; save() rejects and purges the partial blob.
                    break
                out.write(chunk)
        return written

    def purge(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    @storage_call
    def save(self, stream: BinaryIO, filename: str, media_type: Optional[str],
             uploader_id: Optional[str] = None) -> UploadResult:
        blob = self._blob_name(filename)
        path = self.upload_dir / blob
        try:
            size = self._write(stream, path)
            normalized = validate_attachment(media_type, size, self.max_bytes)
            attachment = Attachment(
                url=f"{self.url_prefix}/{blob}",
                name=os.path.basename(filename or blob),
                media_type=normalized,
                size=size,
                path=str(path),
                uploader_id=uploader_id,
                created_at=now_utc(),
            )
            create_document(self.db, ATTACHMENTS, attachment)
        except OSError as exc:
            self.purge(path)
            logger.exception("Could not write attachment %s", blob)
            raise InternalError("Could not store attachment") from exc
        except Exception:
            self.purge(path)
            raise
        logger.info("Stored attachment %s (%s, %d bytes) for user %s",
                    attachment.url, normalized, size, uploader_id)
        return UploadResult(url=attachment.url, name=attachment.name,
                            media_type=attachment.media_type, size=attachment.size)

    @storage_call
    def require(self, ref: AttachmentRef) -> AttachmentRef:
        """Resolve a client-supplied descriptor to an accepted upload."""
        validate_media_type(ref.media_type)
        doc = self.collection.find_one({"url": ref.url})
        if doc is None:
            raise NotFound("Attachment not found")
        return AttachmentRef(url=doc["url"], name=ref.name or doc["name"], media_type=doc["media_type"])
