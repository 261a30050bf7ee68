import importlib.util
import unittest
from unittest import mock

_aiohttp_spec = importlib.util.find_spec("aiohttp")
if _aiohttp_spec is None:
    raise RuntimeError("aiohttp must be installed for gateway tests")

from aiohttp.test_utils import TestClient, TestServer

from channelsync.client import ChatClient
from channelsync.errors import LoadError, PersistenceError, SubscriptionError
from channelsync.models import CHANNELS, EVENTS_INSERT, MESSAGES, SESSIONS
from channelsync.remote import RemoteFeed, RemoteStore
from channelsync.retention import RetentionPolicy
from channelsync.store import InMemoryStore, seed_channels
from channelsync.ws_transport import create_app

from tests.fakes import FAST_CONFIG, wait_until


class GatewayTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = InMemoryStore()
        await seed_channels(self.store)
        self.channel_ids = {c.name: c.id for c in await self.store.query(CHANNELS)}
        self.app = create_app(
            ping_interval_s=3600,
            store=self.store,
            retention=RetentionPolicy(),
            start_retention_sweeper=False,
        )
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    @property
    def base_url(self) -> str:
        return str(self.server.make_url(""))


class WsTransportTests(GatewayTestCase):
    async def _subscribe(self, ws, sub_id: str, kind: str = MESSAGES, events: str = "insert", filter=None):
        await ws.send_json(
            {
                "v": 1,
                "t": "feed.subscribe",
                "id": f"req-{sub_id}",
                "body": {"sub_id": sub_id, "kind": kind, "events": events, "filter": filter or {}},
            }
        )
        return await ws.receive_json()

    async def test_health(self):
        resp = await self.client.get("/healthz")
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "ok")

    async def test_query_rejects_malformed_requests(self):
        resp = await self.client.post("/v1/query", data="not json")
        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["code"], "invalid_request")

        resp = await self.client.post("/v1/query", json={"kind": "widgets"})
        self.assertEqual(resp.status, 400)

        resp = await self.client.post("/v1/query", json={"kind": CHANNELS, "order": {"field": "colour"}})
        self.assertEqual(resp.status, 400)

    async def test_query_with_order_and_limit(self):
        resp = await self.client.post(
            "/v1/query",
            json={"kind": CHANNELS, "order": {"field": "name", "descending": True}, "limit": 2},
        )
        self.assertEqual(resp.status, 200)
        self.assertEqual(resp.headers["Cache-Control"], "no-store")
        records = (await resp.json())["records"]
        self.assertEqual([r["name"] for r in records], ["operations", "intel-reports"])

    async def test_insert_and_update(self):
        resp = await self.client.post(
            "/v1/insert",
            json={"kind": SESSIONS, "fields": {"display_name": "Agent_1", "channel_id": self.channel_ids["general"]}},
        )
        self.assertEqual(resp.status, 200)
        session = (await resp.json())["record"]
        self.assertTrue(session["is_online"])

        resp = await self.client.post(
            "/v1/update", json={"kind": SESSIONS, "id": session["id"], "fields": {"is_online": False}}
        )
        self.assertEqual(resp.status, 200)
        self.assertFalse((await resp.json())["record"]["is_online"])

    async def test_persistence_errors_are_reported(self):
        resp = await self.client.post(
            "/v1/insert",
            json={"kind": MESSAGES, "fields": {"channel_id": "ch_missing", "author": "a", "content": "x"}},
        )
        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["code"], "persistence_error")

    async def test_subscribed_socket_receives_matching_inserts(self):
        general = self.channel_ids["general"]
        ws = await self.client.ws_connect("/v1/ws")
        ack = await self._subscribe(ws, "s1", filter={"channel_id": general})
        self.assertEqual(ack["t"], "feed.subscribed")
        self.assertEqual(ack["id"], "req-s1")

        await self.store.insert(MESSAGES, {"channel_id": self.channel_ids["operations"], "author": "a", "content": "no"})
        await self.store.insert(MESSAGES, {"channel_id": general, "author": "a", "content": "yes"})
        frame = await ws.receive_json()
        await ws.close()

        self.assertEqual(frame["t"], "feed.event")
        self.assertEqual(frame["body"]["sub_id"], "s1")
        self.assertEqual(frame["body"]["type"], "insert")
        self.assertEqual(frame["body"]["record"]["content"], "yes")

    async def test_unsubscribed_socket_stops_receiving(self):
        general = self.channel_ids["general"]
        ws = await self.client.ws_connect("/v1/ws")
        await self._subscribe(ws, "s1")
        await ws.send_json({"v": 1, "t": "feed.unsubscribe", "id": "u1", "body": {"sub_id": "s1"}})
        ack = await ws.receive_json()
        self.assertEqual(ack["t"], "feed.unsubscribed")

        await self.store.insert(MESSAGES, {"channel_id": general, "author": "a", "content": "unseen"})
        await ws.send_json({"v": 1, "t": "ping", "id": "p1"})
        frame = await ws.receive_json()
        await ws.close()

        self.assertEqual(frame, {"v": 1, "t": "pong", "id": "p1"})
        self.assertEqual(self.store.feed.subscription_count(), 0)

    async def test_invalid_frames_get_error_replies(self):
        ws = await self.client.ws_connect("/v1/ws")
        bad_kind = await self._subscribe(ws, "s1", kind="widgets")
        await self._subscribe(ws, "s2")
        duplicate = await self._subscribe(ws, "s2")
        await ws.send_json({"v": 2, "t": "ping", "id": "old"})
        bad_version = await ws.receive_json()
        await ws.send_json({"v": 1, "t": "conv.send", "id": "x"})
        unknown = await ws.receive_json()
        await ws.close()

        for frame in (bad_kind, duplicate, bad_version, unknown):
            self.assertEqual(frame["t"], "error")
            self.assertEqual(frame["body"]["code"], "invalid_request")
        self.assertEqual(duplicate["id"], "req-s2")

    async def test_closing_socket_releases_subscriptions(self):
        ws = await self.client.ws_connect("/v1/ws")
        await self._subscribe(ws, "s1")
        self.assertEqual(self.store.feed.subscription_count(), 1)

        await ws.close()

        await wait_until(lambda: self.store.feed.subscription_count() == 0)


class RemoteClientTests(GatewayTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.remote_store = RemoteStore(self.base_url, timeout_s=2.0)
        self.remote_feed = RemoteFeed(self.base_url, timeout_s=2.0)
        self.chat = ChatClient(self.remote_store, self.remote_feed, FAST_CONFIG)

    async def asyncTearDown(self):
        await self.chat.close()
        await self.remote_feed.close()
        await self.remote_store.close()
        await super().asyncTearDown()

    def _contents(self):
        return [m.content for m in self.chat.render().messages]

    async def test_join_and_send_round_trip(self):
        await self.chat.join_with_codename("Agent_1")

        sent = await self.chat.send_message("over the wire")
        await wait_until(lambda: self._contents() == ["over the wire"])

        self.assertEqual(sent.author, "Agent_1")
        self.assertTrue(self.remote_feed.connected)
        self.assertEqual(self.store.feed.subscription_count(), 2)

    async def test_other_participants_show_up_live(self):
        await self.chat.join_with_codename("Agent_1")
        channel_id = self.chat.render().selected_channel_id

        await self.store.insert(MESSAGES, {"channel_id": channel_id, "author": "Viper", "content": "hello"})
        await self.store.insert(SESSIONS, {"display_name": "Viper", "channel_id": channel_id})

        await wait_until(lambda: self._contents() == ["hello"])
        await wait_until(lambda: [s.display_name for s in self.chat.render().online] == ["Agent_1", "Viper"])

    async def test_dropped_socket_resubscribes(self):
        await self.chat.join_with_codename("Agent_1")
        channel_id = self.chat.render().selected_channel_id

        await self.remote_feed.disconnect()
        await self.store.insert(MESSAGES, {"channel_id": channel_id, "author": "Viper", "content": "missed"})

        await wait_until(lambda: self.chat.stream.subscribed and not self.chat.render().messages_stale)
        await wait_until(lambda: not self.chat.render().roster_stale)
        self.assertEqual(self._contents(), ["missed"])

        await self.store.insert(MESSAGES, {"channel_id": channel_id, "author": "Viper", "content": "live again"})
        await wait_until(lambda: self._contents() == ["missed", "live again"])

    async def test_subscribe_without_ack_releases_server_side(self):
        original = self.remote_feed._request
        open_on_server = []

        async def ack_lost(ws, frame_type, body):
            await original(ws, frame_type, body)
            open_on_server.append(self.store.feed.subscription_count())
            raise SubscriptionError("ack lost")

        with mock.patch.object(self.remote_feed, "_request", ack_lost):
            with self.assertRaises(SubscriptionError):
                await self.remote_feed.subscribe(MESSAGES, EVENTS_INSERT, {}, lambda event: None)

        self.assertEqual(open_on_server, [1])
        await wait_until(lambda: self.store.feed.subscription_count() == 0)
        self.assertTrue(self.remote_feed.connected)

    async def test_gateway_errors_map_to_client_errors(self):
        with self.assertRaises(PersistenceError):
            await self.remote_store.insert(MESSAGES, {"channel_id": "ch_missing", "author": "a", "content": "x"})

        await self.server.close()

        with self.assertRaises(LoadError):
            await self.remote_store.query(CHANNELS)


if __name__ == "__main__":
    unittest.main()
