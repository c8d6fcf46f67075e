import io
import os
import tempfile
import unittest
from unittest import mock

from attachments import ALLOWED_MEDIA_TYPES, AttachmentStore, validate_attachment
from errors import InternalError, NotFound, PayloadTooLarge, UnsupportedMediaType
from schemas import AttachmentRef
from tests.helpers import make_db

MIB = 1024 * 1024


class TestValidateAttachment(unittest.TestCase):
    def test_zip_is_rejected(self):
        with self.assertRaises(UnsupportedMediaType):
            validate_attachment("application/zip", 1 * MIB)

    def test_oversized_allowed_type_is_rejected(self):
        with self.assertRaises(PayloadTooLarge):
            validate_attachment("application/pdf", 11 * MIB)

    def test_exactly_at_ceiling_is_accepted(self):
        self.assertEqual(validate_attachment("application/pdf", 10 * MIB), "application/pdf")

    def test_media_type_parameters_are_ignored(self):
        self.assertEqual(validate_attachment("Text/Plain; charset=utf-8", 10), "text/plain")

    def test_allow_list_covers_documents_and_media(self):
        for media_type in ("image/png", "audio/mpeg", "application/msword", "text/plain"):
            self.assertIn(media_type, ALLOWED_MEDIA_TYPES)


class TestAttachmentStore(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.db = make_db()
        self.store = AttachmentStore(self.db, self._tmp.name)

    def stored_files(self):
        return os.listdir(self._tmp.name)

    def test_accepted_upload_is_recorded(self):
        result = self.store.save(io.BytesIO(b"%PDF-1.4 call sheet"), "callsheet.pdf", "application/pdf", "u1")
        self.assertTrue(result.url.startswith("/uploads/"))
        self.assertTrue(result.url.endswith(".pdf"))
        self.assertEqual(result.name, "callsheet.pdf")
        self.assertEqual(result.size, len(b"%PDF-1.4 call sheet"))
        self.assertEqual(len(self.stored_files()), 1)
        self.assertEqual(self.db["attachment"].count_documents({"url": result.url}), 1)

    def test_rejected_type_leaves_no_blob(self):
        with self.assertRaises(UnsupportedMediaType):
            self.store.save(io.BytesIO(b"x" * MIB), "footage.zip", "application/zip")
        self.assertEqual(self.stored_files(), [])
        self.assertEqual(self.db["attachment"].count_documents({}), 0)

    def test_oversized_upload_leaves_no_blob(self):
        with self.assertRaises(PayloadTooLarge):
            self.store.save(io.BytesIO(b"x" * (11 * MIB)), "draft.pdf", "application/pdf")
        self.assertEqual(self.stored_files(), [])
        self.assertEqual(self.db["attachment"].count_documents({}), 0)

    def test_disk_failure_is_internal_and_purged(self):
        def fail_midway(stream, path):
            path.write_bytes(b"partial")
            raise OSError("No space left on device")

        with mock.patch.object(self.store, "_write", side_effect=fail_midway):
            with self.assertRaises(InternalError):
                self.store.save(io.BytesIO(b"x" * 1024), "notes.txt", "text/plain")
        self.assertEqual(self.stored_files(), [])
        self.assertEqual(self.db["attachment"].count_documents({}), 0)

    def test_require_resolves_recorded_upload(self):
        result = self.store.save(io.BytesIO(b"hello"), "notes.txt", "text/plain")
        ref = self.store.require(AttachmentRef(url=result.url, name="notes.txt", media_type="text/plain"))
        self.assertEqual(ref.url, result.url)
        self.assertEqual(ref.media_type, "text/plain")

    def test_require_rejects_unknown_reference(self):
        with self.assertRaises(NotFound):
            self.store.require(AttachmentRef(url="/uploads/nope.txt", name="nope.txt", media_type="text/plain"))

    def test_require_rejects_disallowed_type(self):
        with self.assertRaises(UnsupportedMediaType):
            self.store.require(AttachmentRef(url="/uploads/x.zip", name="x.zip", media_type="application/zip"))


if __name__ == "__main__":
    unittest.main()
