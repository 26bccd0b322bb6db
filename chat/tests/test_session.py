import asyncio
import unittest

from chat_test_util import FakeClock, RecordingStore, settle

from retriva_chat.blocking import BlockNotPermitted, SendBlocked
from retriva_chat.config import ChatConfig
from retriva_chat.models import Viewer
from retriva_chat.presence import LAST_SEEN, ONLINE
from retriva_chat.session import ChatSession, SendFailed
from retriva_chat.store import StoreError
from retriva_chat.upload import UploadFailed


class FakeUploader:
    def __init__(self, url: str = "https://cdn.example/lamp.png") -> None:
        self.url = url
        self.error: Exception | None = None
        self.calls = []

    async def upload(self, filename, payload, content_type):
        self.calls.append((filename, payload, content_type))
        if self.error is not None:
            raise self.error
        return self.url


class ChatSessionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.store = RecordingStore()
        self.uploader = FakeUploader()
        config = ChatConfig(typing_idle_ms=50)
        self.alice = ChatSession(
            self.store,
            Viewer("alice", "Alice"),
            config=config,
            uploader=self.uploader,
            now_func=self.clock.now,
        )
        self.bob = ChatSession(self.store, Viewer("bob", "Bob"), config=config, now_func=self.clock.now)
        self.alice_events = []
        self.alice.add_listener(lambda kind, body: self.alice_events.append((kind, body)))
        await self.alice.start()
        await self.bob.start()
        await settle()

    async def asyncTearDown(self):
        await self.alice.close()
        await self.bob.close()

    async def _direct(self, counterpart: str = "bob", title: str = "Desk Lamp") -> str:
        self.clock.advance(1)
        conv_id = await self.alice.start_direct(counterpart, title=title, item_id=f"item-{title}")
        await settle()
        return conv_id

    async def _message_count(self, conv_id: str) -> int:
        return len(await self.store.query(f"chats/{conv_id}/messages"))

    async def test_message_reaches_counterpart_and_is_marked_read(self):
        conv_id = await self._direct()
        self.clock.advance(1)
        msg_id = await self.alice.send_message(conv_id, "Is it still available?")
        await settle()

        bob_rows = {row.conversation_id: row for row in self.bob.conversations()}
        self.assertEqual(bob_rows[conv_id].badge, 1)
        self.assertEqual(bob_rows[conv_id].preview, "Is it still available?")
        self.assertEqual(self.bob.total_unread, 1)
        alice_rows = {row.conversation_id: row for row in self.alice.conversations()}
        self.assertEqual(alice_rows[conv_id].badge, 0)

        self.bob.open_conversation(conv_id)
        await settle()
        await self.bob.drain()
        await settle()

        self.assertEqual([m.id for m in self.bob.timeline], [msg_id])
        stored = await self.store.get(f"chats/{conv_id}/messages/{msg_id}")
        self.assertEqual(stored.get("status"), "read")
        self.assertEqual(stored.get("sender_name"), "Alice")
        self.assertEqual((await self.store.get(f"chats/{conv_id}")).get("unread_count"), 0)
        self.assertTrue(self.alice.timeline[-1].is_read)
        self.assertEqual(self.bob.total_unread, 0)

    async def test_summary_update_is_targeted(self):
        conv_id = await self._direct()
        self.store.batches.clear()
        self.clock.advance(1)
        await self.alice.send_message(conv_id, "hi")

        summary = self.store.writes_to(f"chats/{conv_id}")[-1]
        self.assertEqual(
            sorted(summary),
            ["deleted_ids", "last_message", "last_message_time", "last_sender_id", "unread_count"],
        )
        self.assertEqual([op for batch in self.store.batches for op, _, _ in batch], ["set", "update"])

    async def test_stale_snapshot_is_dropped_when_switching(self):
        lamp = await self._direct()
        bike = await self._direct("carol", "Bike")
        self.alice.open_conversation(lamp)
        await settle()

        await self.store.add(
            f"chats/{lamp}/messages",
            {"sender_id": "bob", "text": "late", "timestamp": self.clock.now(), "status": "sent"},
        )
        self.alice.open_conversation(bike)
        await settle()
        await self.alice.drain()

        self.assertEqual(self.alice.active_id, bike)
        self.assertEqual(self.alice.timeline, ())
        for kind, body in self.alice_events:
            if kind == "conv.timeline":
                self.assertNotIn("late", [m["text"] for m in body["messages"]])
        late = (await self.store.query(f"chats/{lamp}/messages"))[0]
        self.assertEqual(late.get("status"), "sent")

    async def test_blocked_party_is_refused_without_store_calls(self):
        conv_id = await self._direct()
        self.bob.open_conversation(conv_id)
        await settle()

        state = await self.alice.toggle_block(conv_id)
        await settle()
        self.assertTrue(state.blocked_by_me)
        self.assertEqual(self.alice.affordance, "unblock")
        self.assertIsNone(self.bob.affordance)
        self.assertTrue(self.bob.block_state.blocked_by_other)

        before = len(self.store.batches)
        with self.assertRaises(SendBlocked):
            await self.bob.send_message(conv_id, "hello?")
        with self.assertRaises(SendBlocked):
            await self.bob.send_attachment(conv_id, "x.png", b"x", "image/png")
        with self.assertRaises(SendBlocked):
            self.bob.keystroke(conv_id)
        with self.assertRaises(BlockNotPermitted):
            await self.bob.toggle_block(conv_id)
        self.assertEqual(len(self.store.batches), before)

    async def test_blocker_must_unblock_before_sending(self):
        conv_id = await self._direct()
        self.bob.open_conversation(conv_id)
        await self.alice.toggle_block(conv_id)
        await settle()
        self.assertFalse(self.alice.state()["can_compose"])

        before = len(self.store.batches)
        with self.assertRaisesRegex(SendBlocked, "unblock to send"):
            await self.alice.send_message(conv_id, "still talking to you")
        with self.assertRaises(SendBlocked):
            await self.alice.send_attachment(conv_id, "x.png", b"x", "image/png")
        with self.assertRaises(SendBlocked):
            self.alice.keystroke(conv_id)
        await settle()

        self.assertEqual(len(self.store.batches), before)
        self.assertEqual(self.uploader.calls, [])
        self.assertEqual(await self._message_count(conv_id), 0)
        bob_rows = {row.conversation_id: row for row in self.bob.conversations()}
        self.assertEqual(bob_rows[conv_id].badge, 0)

        await self.alice.toggle_block(conv_id)
        await settle()
        self.assertTrue(self.alice.state()["can_compose"])

    async def test_toggling_twice_unblocks(self):
        conv_id = await self._direct()
        self.bob.open_conversation(conv_id)
        await self.alice.toggle_block(conv_id)
        await settle()
        await self.alice.toggle_block(conv_id)
        await settle()

        self.assertFalse(self.bob.block_state.is_blocked)
        self.assertEqual(self.bob.affordance, "block")
        self.assertEqual(self.alice.affordance, "block")
        await self.bob.send_message(conv_id, "thanks")
        self.assertEqual(await self._message_count(conv_id), 1)

    async def test_invalid_sends_touch_nothing(self):
        conv_id = await self._direct()
        before = len(self.store.batches)

        with self.assertRaises(ValueError):
            await self.alice.send_message("nope", "hello")
        with self.assertRaises(ValueError):
            await self.alice.send_message(conv_id, "   ")
        self.assertEqual(len(self.store.batches), before)

    async def test_store_failure_surfaces_as_send_failed(self):
        conv_id = await self._direct()
        self.store.fail_with = StoreError("unavailable")
        try:
            with self.assertLogs("retriva_chat.session", level="WARNING"):
                with self.assertRaises(SendFailed):
                    await self.alice.send_message(conv_id, "hello")
        finally:
            self.store.fail_with = None
        self.assertEqual(await self._message_count(conv_id), 0)

    async def test_delete_hides_for_viewer_until_next_message(self):
        conv_id = await self._direct()
        await self.alice.delete_conversation(conv_id)
        await settle()

        self.assertIsNone(self.alice.active_id)
        self.assertNotIn(conv_id, [row.conversation_id for row in self.alice.conversations()])
        self.assertIn(conv_id, [row.conversation_id for row in self.bob.conversations()])

        await self.bob.send_message(conv_id, "still interested?")
        await settle()
        rows = {row.conversation_id: row for row in self.alice.conversations()}
        self.assertEqual(rows[conv_id].badge, 1)

        with self.assertRaises(ValueError):
            await self.alice.delete_conversation("global")

    async def test_presence_of_counterpart(self):
        conv_id = await self._direct()
        self.assertEqual(self.alice.presence.status, ONLINE)
        presence_events = [body for kind, body in self.alice_events if kind == "conv.presence"]
        self.assertEqual(presence_events[-1]["user_id"], "bob")
        self.assertEqual(presence_events[-1]["conv_id"], conv_id)

        await self.bob.close()
        await settle()
        self.assertEqual(self.alice.presence.status, LAST_SEEN)
        self.assertEqual(self.alice.presence.label, "just now")

    async def test_broadcast_conversation(self):
        rows = self.alice.conversations()
        self.assertEqual(rows[0].conversation_id, "global")

        self.alice.open_conversation("global")
        await settle()
        self.assertIsNone(self.alice.presence)
        self.assertIsNone(self.alice.affordance)

        await self.alice.send_message("global", "Anyone selling a bike?")
        await settle()
        self.assertEqual(self.bob.conversations()[0].badge, 1)
        self.assertEqual(self.bob.conversations()[0].preview, "Anyone selling a bike?")

    async def test_typing_flag_reaches_counterpart(self):
        conv_id = await self._direct()
        self.bob.open_conversation(conv_id)
        await settle()

        self.alice.keystroke(conv_id)
        await settle()
        self.assertEqual(self.bob.state()["typing"], ["alice"])
        self.assertEqual(self.alice.state()["typing"], [])

        await asyncio.sleep(0.12)
        await settle()
        self.assertEqual(self.bob.state()["typing"], [])

        with self.assertRaises(ValueError):
            self.alice.keystroke("global")

    async def test_attachments(self):
        conv_id = await self._direct()
        await self.alice.send_attachment(conv_id, "lamp.png", b"png-bytes", "image/png")
        await settle()

        self.assertEqual(self.uploader.calls, [("lamp.png", b"png-bytes", "image/png")])
        last = self.alice.timeline[-1]
        self.assertEqual((last.attachment.kind, last.attachment.url), ("image", "https://cdn.example/lamp.png"))
        self.assertEqual((await self.store.get(f"chats/{conv_id}")).get("last_message"), "Sent a photo")

        await self.alice.send_attachment(conv_id, "receipt.pdf", b"%PDF", "application/pdf")
        self.assertEqual((await self.store.get(f"chats/{conv_id}")).get("last_message"), "Sent a file")

    async def test_upload_failures_abort_the_send(self):
        conv_id = await self._direct()
        self.uploader.error = UploadFailed("upload timed out")
        with self.assertRaises(UploadFailed):
            await self.alice.send_attachment(conv_id, "lamp.png", b"x", "image/png")

        await settle()
        self.bob.open_conversation(conv_id)
        with self.assertRaises(UploadFailed):
            await self.bob.send_attachment(conv_id, "lamp.png", b"x", "image/png")
        self.assertEqual(await self._message_count(conv_id), 0)

    async def test_legacy_inline_messages_are_merged(self):
        await self.store.set(
            "chats/old",
            {
                "type": "direct",
                "title": "Old chat",
                "participants": ["alice", "bob"],
                "messages": [{"sender_id": "bob", "text": "legacy hello", "timestamp": 5}],
                "last_message_time": 5,
            },
        )
        await settle()
        self.clock.advance(1)
        await self.bob.send_message("old", "new hello")
        self.alice.open_conversation("old")
        await settle()
        await self.alice.drain()

        self.assertEqual([m.text for m in self.alice.timeline], ["legacy hello", "new hello"])
        self.assertEqual([m.origin for m in self.alice.timeline], ["inline", "store"])
        docs = await self.store.query("chats/old/messages")
        self.assertEqual([doc.get("status") for doc in docs], ["read"])

    async def test_filter_and_list_events(self):
        lamp = await self._direct()
        await self._direct("carol", "Bike")
        self.alice.set_filter("LAMP")

        kind, body = self.alice_events[-1]
        self.assertEqual(kind, "conv.list")
        self.assertEqual([row["conv_id"] for row in body["conversations"]], [lamp])
        self.assertEqual(body["total_unread"], 0)

    async def test_start_direct_reuses_existing_conversation(self):
        first = await self._direct()
        self.alice.open_conversation(None)
        again = await self.alice.start_direct("bob", title="Desk Lamp", item_id="item-Desk Lamp")
        self.assertEqual(again, first)
        self.assertEqual(self.alice.active_id, first)


if __name__ == "__main__":
    unittest.main()
