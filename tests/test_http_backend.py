import asyncio
import unittest

from aiohttp.test_utils import TestServer

from chatsync.backend import BackendError, Filter, NotFoundError, TransientNetworkError
from chatsync.http_backend import HttpBackend
from chatsync.memory_backend import InMemoryBackend
from chatsync.session import ChatSession

from tests.sync_util import FakeClock, conv_row, msg_row, profile_row
from tests.table_server import TOKEN, create_app, disconnect_all


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class HttpBackendTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = InMemoryBackend()
        self.store.seed("conversations", [conv_row("c1", "alice", "bob")])
        self.store.seed("messages", [msg_row("m1", "c1", "bob", 20), msg_row("m2", "c1", "alice", 10)])
        self.store.seed("profiles", [profile_row("alice", "Alice"), profile_row("bob", "Bob")])
        self.app = create_app(self.store)
        self.server = TestServer(self.app)
        await self.server.start_server()
        # Cleanups run last-in first-out, so clients close before the server.
        self.addAsyncCleanup(self.server.close)
        self.backend = self.connect()

    def connect(self, token=TOKEN) -> HttpBackend:
        backend = HttpBackend(str(self.server.make_url("/")), token, timeout_s=2)
        self.addAsyncCleanup(backend.close)
        return backend


class TableTests(HttpBackendTestCase):
    async def test_query_with_filter_and_order(self):
        rows = await self.backend.query("messages", Filter().eq("conversation_id", "c1"), order_by="created_at")

        self.assertEqual([row["id"] for row in rows], ["m2", "m1"])

        rows = await self.backend.query("messages", Filter().gt("created_at", 15))
        self.assertEqual([row["id"] for row in rows], ["m1"])

    async def test_insert_update_delete(self):
        row = await self.backend.insert("messages", msg_row("m3", "c1", "alice", 30, "hi"))
        self.assertEqual(row["text"], "hi")

        updated = await self.backend.update("messages", "m3", {"text": "edited"})
        self.assertEqual(updated[0]["text"], "edited")

        marked = await self.backend.update(
            "messages", Filter().eq("conversation_id", "c1").neq("user_id", "alice"), {"is_read": True}
        )
        self.assertEqual([row["id"] for row in marked], ["m1"])
        self.assertTrue(self.store.row("messages", "m1")["is_read"])

        removed = await self.backend.delete("messages", "m3")
        self.assertEqual([row["id"] for row in removed], ["m3"])
        self.assertIsNone(self.store.row("messages", "m3"))

        removed = await self.backend.delete("messages", Filter().eq("user_id", "nobody"))
        self.assertEqual(removed, [])

    async def test_error_mapping(self):
        with self.assertRaises(NotFoundError):
            await self.backend.update("messages", "missing", {"text": "x"})

        self.store.fail_next("insert", "messages")
        with self.assertRaises(TransientNetworkError):
            await self.backend.insert("messages", msg_row("m4", "c1", "alice", 40))

        with self.assertRaises(BackendError) as ctx:
            await self.backend.insert("messages", msg_row("m1", "c1", "alice", 40))
        self.assertNotIsInstance(ctx.exception, TransientNetworkError)

        intruder = self.connect(token="wrong")
        with self.assertRaises(BackendError):
            await intruder.query("messages")

    async def test_unreachable_server_is_transient(self):
        backend = HttpBackend("http://127.0.0.1:1", TOKEN, timeout_s=1)
        self.addAsyncCleanup(backend.close)

        with self.assertRaises(TransientNetworkError):
            await backend.query("messages")

    async def test_upload(self):
        url = await self.backend.upload("chat-attachments/c1/1_cat.png", b"png")

        self.assertEqual(url, "memory://storage/chat-attachments/c1/1_cat.png")
        self.assertEqual(self.store.blobs["chat-attachments/c1/1_cat.png"], b"png")


class RealtimeTests(HttpBackendTestCase):
    async def test_feed_delivers_matching_events(self):
        received = []
        statuses = []
        feed = await self.backend.subscribe(
            "chat_messages_c1", ["messages"], received.append, statuses.append, Filter().eq("conversation_id", "c1")
        )
        self.assertEqual(statuses, ["subscribed"])

        await self.store.insert("messages", msg_row("m9", "c2", "bob", 5))
        await self.store.insert("messages", msg_row("m3", "c1", "bob", 30))
        await wait_until(lambda: received)

        self.assertEqual([(event.op, event.payload["id"]) for event in received], [("insert", "m3")])

        await feed.close()
        await wait_until(lambda: not self.store.subscriptions("chat_messages_c1"))

    async def test_presence_sync_between_clients(self):
        snapshots = []
        alice = self.backend.presence_channel("online-status", "alice")
        await alice.subscribe(snapshots.append)
        await alice.track({"user_id": "alice", "online_at": 1})

        bob_backend = self.connect()
        bob = bob_backend.presence_channel("online-status", "bob")
        await bob.subscribe(lambda state: None)
        await bob.track({"user_id": "bob", "online_at": 2})

        await wait_until(lambda: snapshots and "bob" in snapshots[-1])
        self.assertEqual(set(alice.presence_state()), {"alice", "bob"})

        await bob.untrack()
        await bob.unsubscribe()
        await wait_until(lambda: "bob" not in snapshots[-1])

    async def test_connection_loss_closes_feeds_and_channels(self):
        feed_status = []
        presence_status = []
        await self.backend.subscribe("global-sync", ["messages"], lambda event: None, feed_status.append)
        channel = self.backend.presence_channel("online-status", "alice")
        await channel.subscribe(lambda state: None, presence_status.append)

        await disconnect_all(self.app)
        await wait_until(lambda: feed_status[-1:] == ["closed"] and presence_status[-1:] == ["closed"])

        # The next subscribe reconnects.
        await self.backend.subscribe("global-sync", ["messages"], lambda event: None)
        await wait_until(lambda: len(self.store.subscriptions("global-sync")) == 1)


class SessionOverHttpTests(HttpBackendTestCase):
    async def test_session_receives_remote_changes(self):
        clock = FakeClock()
        async with ChatSession("alice", self.backend, now_func=clock.now) as session:
            [row] = session.conversation_list()
            self.assertEqual(row.unread, 1)
            self.assertEqual(row.name, "Bob")

            bob = self.connect()
            await bob.insert("messages", msg_row("m3", "c1", "bob", 30, "ping"))
            await bob.update(
                "conversations",
                "c1",
                {"last_message_text": "ping", "last_message_at": 30, "last_message_user_id": "bob"},
            )

            await wait_until(lambda: session.conversation_list()[0].text == "ping")
            self.assertEqual(session.conversation_list()[0].unread, 2)
            self.assertIn("alice", self.store.presence_room("online-status").state)

        await wait_until(lambda: not self.store.subscriptions("global-sync"))
        self.assertEqual(self.store.presence_room("online-status").state, {})


if __name__ == "__main__":
    unittest.main()
