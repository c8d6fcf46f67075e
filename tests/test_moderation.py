import asyncio
import json
import unittest

from errors import Conflict, Forbidden, InvalidTransition, NotFound
from tests.helpers import ChatTestMixin, new_object_id


class ModerationTestCase(ChatTestMixin, unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.build()
        self.admin = self.identity(self.admin_id)
        self.bob = self.identity(self.bob_id)
        self.alice_conn = self.connect(self.alice_id)
        self.bob_conn = self.connect(self.bob_id)
        await self.join(self.alice_conn)
        await self.join(self.bob_conn)
        self.message = await self.say(self.alice_conn, "hello")

    async def report(self, reporter=None, reason="spam"):
        _, report = await self.moderation.report(self.message["id"], reporter or self.bob, reason)
        return report


class TestReportReview(ModerationTestCase):
    async def test_review_then_resolve(self):
        report = await self.report()
        reviewed = await self.moderation.review_report(report.id, "reviewed", self.admin)
        self.assertEqual(reviewed.status, "reviewed")
        self.assertEqual(reviewed.reviewed_by, self.admin_id)
        resolved = await self.moderation.review_report(report.id, "resolved", self.admin)
        self.assertEqual(resolved.status, "resolved")
        with self.assertRaises(InvalidTransition):
            await self.moderation.review_report(report.id, "pending", self.admin)

    async def test_list_reports_nests_message_and_filters(self):
        first = await self.report()
        await self.report(reporter=self.identity(self.alice_id), reason="offensive")
        await self.moderation.review_report(first.id, "resolved", self.admin)

        everything = await self.moderation.list_reports(self.admin)
        self.assertEqual(len(everything), 2)
        self.assertEqual(everything[0].message.id, self.message["id"])
        self.assertEqual(everything[0].message.report_count, 2)

        pending = await self.moderation.list_reports(self.admin, status="pending")
        self.assertEqual([r.reason for r in pending], ["offensive"])
        self.assertEqual(pending[0].reporter_name, "Alice")

        by_room = await self.moderation.list_reports(self.admin, room_id="elsewhere")
        self.assertEqual(by_room, [])

    async def test_participants_cannot_moderate(self):
        report = await self.report()
        with self.assertRaises(Forbidden):
            await self.moderation.review_report(report.id, "resolved", self.bob)
        with self.assertRaises(Forbidden):
            await self.moderation.list_reports(self.bob)
        with self.assertRaises(Forbidden):
            await self.moderation.global_delete(self.message["id"], self.bob)
        with self.assertRaises(Forbidden):
            await self.moderation.analytics(self.bob)
        self.assertEqual(self.bob_conn.websocket.of_type("message-deleted"), [])

    async def test_orphaned_reports_are_swept(self):
        await self.report()
        self.db["chatmessage"].delete_many({})
        self.assertEqual(await self.moderation.list_reports(self.admin), [])
        self.assertEqual(self.reports.count(), 0)

    async def test_startup_sweep(self):
        await self.report()
        self.db["chatmessage"].delete_many({})
        self.assertEqual(await self.moderation.sweep_orphan_reports(), 1)
        self.assertEqual(await self.moderation.sweep_orphan_reports(), 0)

    async def test_review_of_deleted_message_is_refused(self):
        report = await self.report()
        self.db["chatmessage"].delete_many({})
        with self.assertRaises(NotFound):
            await self.moderation.review_report(report.id, "resolved", self.admin)
        self.assertEqual(self.reports.count(), 0)
        self.assertEqual(await self.moderation.audit_log(self.admin), [])

    async def test_simultaneous_reports_count_once(self):
        results = await asyncio.gather(
            *[self.moderation.report(self.message["id"], self.bob, "spam") for _ in range(5)],
            return_exceptions=True,
        )
        accepted = [r for r in results if isinstance(r, tuple)]
        conflicts = [r for r in results if isinstance(r, Conflict)]
        self.assertEqual((len(accepted), len(conflicts)), (1, 4))
        self.assertEqual(self.messages.present_one(self.messages.get(self.message["id"])).report_count, 1)

    async def test_simultaneous_reports_from_different_people(self):
        reporters = [self.bob, self.identity(self.alice_id), self.admin]
        await asyncio.gather(*[self.moderation.report(self.message["id"], who, "spam") for who in reporters])
        self.assertEqual(self.messages.present_one(self.messages.get(self.message["id"])).report_count, 3)


class TestGlobalOverrides(ModerationTestCase):
    async def test_global_delete_broadcasts_and_cascades(self):
        await self.report()
        await self.moderation.global_delete(self.message["id"], self.admin)
        for connection in (self.alice_conn, self.bob_conn):
            frame = connection.websocket.of_type("message-deleted")[0]
            self.assertEqual(frame["messageId"], self.message["id"])
        self.assertEqual(await self.moderation.list_reports(self.admin), [])
        with self.assertRaises(NotFound):
            await self.moderation.global_delete(self.message["id"], self.admin)

    async def test_global_edit_broadcasts(self):
        edited = await self.moderation.global_edit(self.message["id"], "[removed by moderator]", self.admin)
        self.assertTrue(edited.edited)
        frame = self.bob_conn.websocket.of_type("message-updated")[0]
        self.assertEqual(frame["message"]["body"], "[removed by moderator]")

    async def test_hidden_message_leaves_history_but_not_export(self):
        hidden = await self.moderation.hide_message(self.message["id"], True, self.admin)
        self.assertTrue(hidden.blocked)
        self.assertEqual(self.messages.history(self.room), [])
        transcript = await self.moderation.export_transcript(self.room, self.admin)
        self.assertEqual(len(transcript), 1)
        self.assertTrue(transcript[0].blocked)

        await self.moderation.hide_message(self.message["id"], False, self.admin)
        self.assertEqual(len(self.messages.history(self.room)), 1)

    async def test_hiding_retracts_without_resending_the_body(self):
        secret = await self.say(self.alice_conn, "secret slur")
        await self.moderation.hide_message(secret["id"], True, self.admin)
        frame = self.bob_conn.websocket.sent[-1]
        self.assertEqual(frame, {"type": "message-hidden", "room": self.room, "messageId": secret["id"]})
        self.assertEqual(self.bob_conn.websocket.of_type("message-updated"), [])

        await self.moderation.global_edit(secret["id"], "still secret", self.admin)
        frame = self.bob_conn.websocket.sent[-1]
        self.assertEqual(frame["type"], "message-hidden")
        self.assertNotIn("secret", json.dumps(frame))

        await self.moderation.hide_message(secret["id"], False, self.admin)
        restored = self.bob_conn.websocket.sent[-1]
        self.assertEqual(restored["type"], "message-updated")
        self.assertEqual(restored["message"]["body"], "still secret")

    async def test_block_user_stops_future_sends_only(self):
        identity = await self.moderation.block_user(self.alice_id, True, self.admin)
        self.assertTrue(identity.blocked)
        await self.command(self.alice_conn, type="send", roomId=self.room, body="still here?")
        self.assertEqual(self.alice_conn.websocket.of_type("error")[0]["code"], "forbidden")
        self.assertEqual([m.body for m in self.messages.history(self.room)], ["hello"])

        await self.moderation.block_user(self.alice_id, False, self.admin)
        await self.say(self.alice_conn, "back again")
        self.assertEqual(len(self.messages.history(self.room)), 2)

    async def test_block_unknown_user(self):
        with self.assertRaises(NotFound):
            await self.moderation.block_user(new_object_id(), True, self.admin)

    async def test_clear_room(self):
        await self.say(self.bob_conn, "second")
        await self.report()
        cleared = await self.moderation.clear_room(self.room, self.admin)
        self.assertEqual(cleared.deleted_messages, 2)
        frame = self.alice_conn.websocket.of_type("room-cleared")[0]
        self.assertEqual(sorted(frame["messageIds"]), sorted(cleared.message_ids))
        self.assertEqual(self.messages.history(self.room), [])
        self.assertEqual(self.reports.count(), 0)


class TestAdminViews(ModerationTestCase):
    async def test_room_overview(self):
        await self.say(self.bob_conn, "call time 6am")
        await self.report()
        pickups = str(self.db["project"].insert_one({"title": "Pickups"}).inserted_id)
        await self.join(self.bob_conn, room_id=pickups)
        await self.say(self.bob_conn, "wrap", room_id=pickups)

        rooms = {row.room_id: row for row in await self.moderation.list_rooms(self.admin)}
        self.assertEqual(set(rooms), {self.room, pickups})
        main = rooms[self.room]
        self.assertEqual((main.message_count, main.participant_count, main.reported_count), (2, 2, 1))
        self.assertEqual(main.last_message, "call time 6am")
        self.assertTrue(main.last_message_time.endswith("Z"))
        self.assertEqual(main.online, 2)
        self.assertEqual((rooms[pickups].message_count, rooms[pickups].online), (1, 1))
        with self.assertRaises(Forbidden):
            await self.moderation.list_rooms(self.bob)

    async def test_analytics(self):
        await self.report()
        self.db["user"].update_one({"name": "Bob"}, {"$set": {"is_blocked": True}})
        stats = await self.moderation.analytics(self.admin)
        self.assertEqual(stats.total_messages, 1)
        self.assertEqual(stats.total_reports, 1)
        self.assertEqual(stats.pending_reports, 1)
        self.assertEqual(stats.active_chatrooms, 1)
        self.assertEqual(stats.blocked_users, 1)
        self.assertEqual(stats.online_participants, 2)
        self.assertEqual(stats.online_by_room, {self.room: 2})

    async def test_admin_actions_form_a_verified_chain(self):
        report = await self.report()
        await self.moderation.review_report(report.id, "resolved", self.admin)
        await self.moderation.hide_message(self.message["id"], True, self.admin)
        await self.moderation.block_user(self.bob_id, True, self.admin)

        entries = await self.moderation.audit_log(self.admin)
        self.assertEqual([e.record["event_type"] for e in entries],
                         ["user_block", "message_visibility", "report_review"])
        self.assertIsNone(entries[-1].prev_hash)
        self.assertEqual(entries[0].prev_hash, entries[1].record_hash)
        self.assertTrue(self.moderation.audit.verify_chain())

        self.db["auditledger"].update_one({"record_hash": entries[1].record_hash},
                                          {"$set": {"record_json.blocked": False}})
        self.assertFalse(self.moderation.audit.verify_chain())


if __name__ == "__main__":
    unittest.main()
