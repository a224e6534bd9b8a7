import unittest

from chatsync.conversation_store import ConversationStore
from chatsync.inbox import InboxBuilder
from chatsync.message_store import MessageStore
from chatsync.models import Profile
from chatsync.presence import PresenceAggregator
from chatsync.profiles import ProfileDirectory
from chatsync.visibility import PLACEHOLDER_TEXT, VIEW_ARCHIVED

from tests.sync_util import FakeClock, conversation, message, profile_row


class InboxBuilderTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.conversations = ConversationStore("alice")
        self.messages = MessageStore()
        self.profiles = ProfileDirectory()
        self.presence = PresenceAggregator("alice", now_func=self.clock.now)
        for row in (
            profile_row("bob", "Bob Stone", last_seen=self.clock.now() - 5 * 60_000),
            profile_row("carol", "Carol King", avatar_url="https://cdn/carol.png"),
            profile_row("dave", None),
        ):
            self.profiles.upsert(Profile.from_row(row))
        self.inbox = InboxBuilder(
            "alice",
            self.conversations,
            self.messages,
            profiles=self.profiles,
            presence=self.presence,
            now_func=self.clock.now,
        )

    def add(self, conv, *messages):
        self.conversations.upsert(conv)
        self.messages.load(conv.conv_id, messages, self.conversations.boundary(conv.conv_id))

    def test_rows_sorted_by_activity_with_unread_counts(self):
        self.add(
            conversation("c1", "alice", "bob", last_message_text="yo", last_message_at=100, last_message_user_id="bob"),
            message("m1", "c1", "bob", 90),
            message("m2", "c1", "bob", 100),
        )
        self.add(
            conversation("c2", "carol", "alice", last_message_text="hey", last_message_at=200, last_message_user_id="alice"),
            message("m3", "c2", "alice", 200, is_read=True),
        )
        self.add(conversation("c3", "alice", "dave"))

        rows = self.inbox.summaries()

        self.assertEqual([row.conv_id for row in rows], ["c3", "c2", "c1"])
        by_id = {row.conv_id: row for row in rows}
        self.assertEqual(by_id["c1"].unread, 2)
        self.assertFalse(by_id["c1"].last_is_read)
        self.assertFalse(by_id["c1"].sent_by_viewer)
        self.assertTrue(by_id["c2"].sent_by_viewer)
        self.assertEqual(by_id["c2"].avatar_url, "https://cdn/carol.png")
        self.assertEqual(by_id["c3"].text, PLACEHOLDER_TEXT)
        self.assertEqual(by_id["c3"].name, "dave@example.com")
        self.assertEqual(self.inbox.total_unread(), 2)

    def test_status_label_uses_presence_then_last_seen(self):
        self.add(conversation("c1", "alice", "bob"))
        self.add(conversation("c2", "alice", "carol"))

        rows = {row.conv_id: row for row in self.inbox.summaries()}
        self.assertEqual(rows["c1"].status_label, "5m ago")
        self.assertEqual(rows["c2"].status_label, "offline")

        self.presence.on_sync({"bob": [{"user_id": "bob", "online_at": self.clock.now()}]})

        rows = {row.conv_id: row for row in self.inbox.summaries()}
        self.assertTrue(rows["c1"].online)
        self.assertEqual(rows["c1"].status_label, "online")

    def test_search_matches_peer_name(self):
        self.add(conversation("c1", "alice", "bob"))
        self.add(conversation("c2", "alice", "carol"))

        self.assertEqual([row.conv_id for row in self.inbox.summaries(search_term="KING")], ["c2"])
        self.assertEqual(self.inbox.summaries(search_term="zed"), [])

    def test_peer_without_profile_is_found_by_id(self):
        self.add(conversation("c1", "alice", "user-7f3a"))
        self.add(conversation("c2", "alice", "bob"))

        [row] = self.inbox.summaries(search_term="7F3")

        self.assertEqual(row.conv_id, "c1")
        self.assertEqual(row.name, "user-7f3a")

    def test_deleted_conversation_hidden_unless_open(self):
        self.add(
            conversation("c1", "alice", "bob", user1_deleted_at=500, last_message_text="old", last_message_at=400),
            message("m1", "c1", "bob", 400),
        )

        self.assertEqual(self.inbox.summaries(), [])
        [row] = self.inbox.summaries(open_conv_id="c1")
        self.assertTrue(row.is_deleted)
        self.assertEqual(row.text, PLACEHOLDER_TEXT)
        self.assertEqual(row.unread, 0)
        self.assertIsNone(row.last_sender_id)
        self.assertIsNone(row.last_is_read)

    def test_new_message_after_deletion_brings_conversation_back(self):
        self.add(
            conversation("c1", "alice", "bob", user1_deleted_at=500, last_message_text="new", last_message_at=600),
            message("m1", "c1", "bob", 400),
            message("m2", "c1", "bob", 600),
        )

        [row] = self.inbox.summaries()
        self.assertEqual(row.text, "new")
        self.assertEqual(row.unread, 1)

    def test_archived_view_and_count(self):
        self.add(conversation("c1", "alice", "bob", user1_archived=True))
        self.add(conversation("c2", "alice", "carol", user2_archived=True))

        self.assertEqual([row.conv_id for row in self.inbox.summaries(VIEW_ARCHIVED)], ["c1"])
        self.assertEqual([row.conv_id for row in self.inbox.summaries()], ["c2"])
        self.assertEqual(self.inbox.archived_count(), 1)


if __name__ == "__main__":
    unittest.main()
