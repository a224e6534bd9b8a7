import unittest

from chatsync.conversation_store import ConversationStore
from chatsync.events import MessageInserted
from chatsync.memory_backend import InMemoryBackend
from chatsync.message_store import MessageStore
from chatsync.models import Conversation, Message
from chatsync.unread import ReadTracker, last_message_is_read, last_sender_for_display, unread_count

from tests.sync_util import conv_row, msg_row


def build(backend: InMemoryBackend, viewer: str, conv: dict, rows: list):
    backend.seed("conversations", [conv])
    backend.seed("messages", rows)
    conversations = ConversationStore(viewer)
    conversations.load([Conversation.from_row(conv)])
    messages = MessageStore()
    messages.load(conv["id"], [Message.from_row(row) for row in rows], conversations.boundary(conv["id"]))
    return conversations, messages


class UnreadTests(unittest.IsolatedAsyncioTestCase):
    async def test_mark_read_clears_unread_and_is_repeatable(self):
        backend = InMemoryBackend()
        conversations, messages = build(
            backend,
            "alice",
            conv_row("c1", "alice", "bob", last_message_at=200, last_message_user_id="alice"),
            [msg_row("t1", "c1", "bob", 100), msg_row("t2", "c1", "alice", 200)],
        )
        refreshed = []
        tracker = ReadTracker("alice", backend, conversations, messages, on_refresh=refreshed.append)

        self.assertEqual(unread_count(conversations, messages, "c1", "alice"), 1)

        self.assertTrue(await tracker.mark_read("c1"))
        self.assertEqual(unread_count(conversations, messages, "c1", "alice"), 0)
        self.assertTrue(await tracker.mark_read("c1"))
        self.assertEqual(unread_count(conversations, messages, "c1", "alice"), 0)

        self.assertTrue(backend.row("messages", "t1")["is_read"])
        self.assertFalse(backend.row("messages", "t2")["is_read"])
        self.assertEqual(len(backend.writes("update", "messages")), 2)
        self.assertEqual(refreshed, ["c1", "c1"])

    async def test_boundary_hides_older_messages_from_unread(self):
        backend = InMemoryBackend()
        conversations, messages = build(
            backend,
            "alice",
            conv_row("c1", "alice", "bob", user1_deleted_at=200, last_message_at=300, last_message_user_id="bob"),
            [msg_row("t1", "c1", "bob", 100), msg_row("t3", "c1", "bob", 300)],
        )

        self.assertEqual([m.msg_id for m in messages.messages("c1")], ["t3"])
        self.assertEqual(unread_count(conversations, messages, "c1", "alice"), 1)
        self.assertEqual(last_sender_for_display(conversations, "c1", "alice"), "bob")

    async def test_deleted_conversation_forces_zero_and_hides_sender(self):
        backend = InMemoryBackend()
        conversations, messages = build(
            backend,
            "alice",
            conv_row("c1", "alice", "bob", user1_deleted_at=500, last_message_at=400, last_message_user_id="bob"),
            [],
        )
        # A late event for a message before the boundary must not count either.
        messages.apply(MessageInserted(Message.from_row(msg_row("late", "c1", "bob", 450))))

        self.assertEqual(unread_count(conversations, messages, "c1", "alice"), 0)
        self.assertIsNone(last_sender_for_display(conversations, "c1", "alice"))
        self.assertTrue(last_message_is_read(conversations, messages, "c1"))

    async def test_own_messages_never_count(self):
        backend = InMemoryBackend()
        conversations, messages = build(
            backend,
            "alice",
            conv_row("c1", "alice", "bob"),
            [msg_row(f"m{i}", "c1", "alice", 100 + i) for i in range(3)],
        )

        self.assertEqual(unread_count(conversations, messages, "c1", "alice"), 0)
        self.assertFalse(last_message_is_read(conversations, messages, "c1"))

    async def test_failed_mark_read_keeps_local_flags(self):
        backend = InMemoryBackend()
        conversations, messages = build(backend, "alice", conv_row("c1"), [msg_row("t1", "c1", "bob", 100)])
        tracker = ReadTracker("alice", backend, conversations, messages)
        backend.fail_next("update", "messages")

        with self.assertLogs("chatsync.unread", level="WARNING"):
            self.assertFalse(await tracker.mark_read("c1"))

        self.assertEqual(unread_count(conversations, messages, "c1", "alice"), 1)

    async def test_peer_insert_in_active_conversation_triggers_receipt(self):
        backend = InMemoryBackend()
        conversations, messages = build(backend, "alice", conv_row("c1"), [])
        tracker = ReadTracker("alice", backend, conversations, messages)
        await tracker.activate("c1")
        incoming = Message.from_row(msg_row("m1", "c1", "bob", 100))
        backend.seed("messages", [incoming.to_row()])
        messages.apply(MessageInserted(incoming))

        await tracker.on_event(MessageInserted(incoming))
        await tracker.on_event(MessageInserted(Message.from_row(msg_row("m2", "c1", "alice", 110))))

        self.assertTrue(messages.get("m1").is_read)
        self.assertEqual(len(backend.writes("update", "messages")), 2)

        tracker.deactivate("c1")
        self.assertFalse(tracker.wants_receipt(MessageInserted(incoming)))


if __name__ == "__main__":
    unittest.main()
