import unittest

from rideway_chat.presence import PresenceController
from rideway_chat.store import ChatStore

from tests.chat_fakes import FakeChannel, make_conversation


class PresenceControllerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.channel = FakeChannel()
        self.store = ChatStore("me")
        self.presence = PresenceController(self.channel, self.store)

    async def test_query_records_only_queried_users(self):
        self.channel.online = ["u2", "stranger"]

        online = await self.presence.query(["u1", "u2", "u2"])

        self.assertEqual(online, {"u2"})
        self.assertEqual(self.store.online_users, frozenset({"u2"}))
        self.assertEqual(self.channel.calls, [("get_online_users", ("u1", "u2"))])

    async def test_empty_query_does_not_hit_the_channel(self):
        self.assertEqual(await self.presence.query([]), set())
        self.assertEqual(self.channel.calls, [])

    async def test_query_without_connection_returns_nobody(self):
        self.channel.connected = False

        self.assertEqual(await self.presence.query(["u1"]), set())
        self.assertEqual(self.channel.calls, [])

    async def test_failed_query_keeps_cached_presence(self):
        self.store.set_online_users({"u1"})
        self.channel.fail_online = True

        self.assertEqual(await self.presence.query(["u1", "u2"]), set())

        self.assertTrue(self.store.is_user_online("u1"))
        self.assertFalse(self.store.presence_stale)

    async def test_failed_query_leaves_stale_presence_stale(self):
        self.store.set_online_users({"u1"})
        self.presence.on_disconnect()
        self.channel.fail_online = True

        await self.presence.query(["u1"])

        self.assertTrue(self.store.presence_stale)

    async def test_refresh_conversation_peers(self):
        self.store.set_conversations(
            [make_conversation("c1", participant_id="u1"), make_conversation("c2", participant_id="u2")]
        )
        self.channel.online = ["u1"]

        await self.presence.refresh_conversation_peers()

        self.assertTrue(self.store.is_user_online("u1"))
        self.assertFalse(self.store.is_user_online("u2"))

    async def test_disconnect_marks_presence_stale(self):
        self.store.set_online_users({"u1"})

        self.presence.on_disconnect({"reason": "transport closed"})

        self.assertTrue(self.store.presence_stale)
        self.assertFalse(self.store.is_user_online("u1"))

    async def test_online_and_offline_pushes(self):
        self.presence.on_user_online({"userId": "u3"})
        self.assertTrue(self.store.is_user_online("u3"))

        self.presence.on_user_offline({"userId": "u3"})
        self.assertFalse(self.store.is_user_online("u3"))

    async def test_malformed_push_is_ignored(self):
        self.presence.on_user_online({"userId": None})

        self.assertEqual(self.store.online_users, frozenset())
