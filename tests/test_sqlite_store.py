import asyncio
import os
import sqlite3
import tempfile
import unittest
from unittest import mock

from channelsync.errors import PersistenceError
from channelsync.models import CHANNELS, EVENT_DELETE, EVENTS_ALL, MESSAGES, SESSIONS
from channelsync.retention import RetentionPolicy, RetentionSweeper, load_retention_policy_from_env
from channelsync.sqlite_backend import SCHEMA_VERSION, SQLiteBackend
from channelsync.sqlite_store import SQLiteStore
from channelsync.store import InMemoryStore, Order, seed_channels

from tests.fakes import FakeClock

DAY_MS = 24 * 60 * 60 * 1000


class SQLiteStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "nested", "channelsync.db")
        self.clock = FakeClock(step_ms=1000)
        self.backend = SQLiteBackend(self.db_path)
        self.store = SQLiteStore(self.backend, now_func=self.clock.now)
        await seed_channels(self.store)
        self.channel_ids = {c.name: c.id for c in await self.store.query(CHANNELS)}
        self.general = self.channel_ids["general"]

    async def asyncTearDown(self) -> None:
        self.backend.close()
        self.tmpdir.cleanup()

    async def _post(self, content: str, channel_id: str | None = None):
        return await self.store.insert(
            MESSAGES, {"channel_id": channel_id or self.general, "author": "Agent_1", "content": content}
        )

    async def test_schema_version_is_recorded(self):
        version = self.backend.connection.execute("PRAGMA user_version").fetchone()[0]
        self.assertEqual(version, SCHEMA_VERSION)

    async def test_rows_survive_reopen(self):
        message = await self._post("persisted")
        self.backend.close()

        self.backend = SQLiteBackend(self.db_path)
        store = SQLiteStore(self.backend)

        self.assertEqual(await store.query(MESSAGES), [message])
        self.assertEqual(len(await store.query(CHANNELS)), 4)

    async def test_unsupported_schema_version_is_rejected(self):
        path = os.path.join(self.tmpdir.name, "future.db")
        conn = sqlite3.connect(path)
        conn.execute("PRAGMA user_version = 99")
        conn.close()

        with self.assertRaisesRegex(ValueError, "Unsupported schema version"):
            SQLiteBackend(path)

    async def test_query_orders_and_limits_like_the_memory_store(self):
        for i in range(4):
            await self._post(f"m{i}")

        newest = await self.store.query(MESSAGES, {"channel_id": self.general}, Order("created_at_ms", True), 2)

        self.assertEqual([m.content for m in newest], ["m3", "m2"])

    async def test_unknown_filter_field_matches_nothing(self):
        await self._post("hello")
        self.assertEqual(await self.store.query(MESSAGES, {"colour": "red"}), [])

    async def test_boolean_filter(self):
        session = await self.store.insert(SESSIONS, {"display_name": "Agent_1", "channel_id": self.general})
        await self.store.update(SESSIONS, session.id, {"is_online": False})
        await self.store.insert(SESSIONS, {"display_name": "Viper", "channel_id": self.general})

        online = await self.store.query(SESSIONS, {"is_online": True})

        self.assertEqual([s.display_name for s in online], ["Viper"])
        self.assertIs(online[0].is_online, True)

    async def test_constraint_violations_raise_persistence_error(self):
        with self.assertRaises(PersistenceError):
            await self._post("orphan", channel_id="ch_missing")
        with self.assertRaises(PersistenceError):
            await self.store.insert(CHANNELS, {"name": "general"})
        with self.assertRaises(PersistenceError):
            await self.store.update(SESSIONS, "ses_missing", {"is_online": False})

    async def test_update_publishes_old_row(self):
        session = await self.store.insert(SESSIONS, {"display_name": "Agent_1", "channel_id": self.general})
        events = []
        await self.store.feed.subscribe(SESSIONS, EVENTS_ALL, {"channel_id": self.general}, events.append)

        await self.store.update(SESSIONS, session.id, {"is_online": False})

        self.assertTrue(events[0].old_record.is_online)
        self.assertFalse(events[0].record.is_online)

    async def test_rejected_update_leaves_row_unchanged(self):
        message = await self._post("immutable")

        with self.assertRaises(PersistenceError):
            await self.store.update(MESSAGES, message.id, {"content": "edited"})

        self.assertEqual(await self.store.query(MESSAGES), [message])
        self.assertFalse(self.backend.connection.in_transaction)


class RetentionTests(unittest.IsolatedAsyncioTestCase):
    async def test_sweep_removes_messages_older_than_a_day(self):
        clock = FakeClock()
        store = InMemoryStore(now_func=clock.now)
        await seed_channels(store)
        general = (await store.query(CHANNELS, {"name": "general"}))[0].id
        await store.insert(MESSAGES, {"channel_id": general, "author": "a", "content": "old"})
        clock.advance(12 * 60 * 60)
        await store.insert(MESSAGES, {"channel_id": general, "author": "a", "content": "recent"})
        deletes = []
        await store.feed.subscribe(MESSAGES, EVENTS_ALL, None, deletes.append)
        clock.advance(13 * 60 * 60)

        removed = await RetentionSweeper(store, RetentionPolicy(), now_func=clock.now).sweep_once()

        self.assertEqual(removed, 1)
        self.assertEqual([m.content for m in await store.query(MESSAGES)], ["recent"])
        self.assertEqual([e.type for e in deletes], [EVENT_DELETE])

    async def test_sqlite_sweep(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            clock = FakeClock()
            backend = SQLiteBackend(os.path.join(tmpdir, "retention.db"))
            try:
                store = SQLiteStore(backend, now_func=clock.now)
                await seed_channels(store)
                general = (await store.query(CHANNELS, {"name": "general"}))[0].id
                await store.insert(MESSAGES, {"channel_id": general, "author": "a", "content": "old"})
                clock.set(clock.now_ms + DAY_MS + 1)

                removed = await RetentionSweeper(store, RetentionPolicy(), now_func=clock.now).sweep_once()

                self.assertEqual(removed, 1)
                self.assertEqual(await store.query(MESSAGES), [])
            finally:
                backend.close()

    async def test_disabled_policy_never_sweeps(self):
        store = mock.AsyncMock()
        sweeper = RetentionSweeper(store, RetentionPolicy(message_max_age_s=0))

        self.assertEqual(await sweeper.sweep_once(), 0)
        sweeper.start()
        await sweeper.stop()
        store.delete_messages_before.assert_not_called()

    async def test_background_sweeper_survives_failures(self):
        store = mock.AsyncMock()
        store.delete_messages_before.side_effect = [RuntimeError("locked"), 3, 0, 0, 0, 0]
        sweeper = RetentionSweeper(store, RetentionPolicy(sweep_interval_s=0))

        with self.assertLogs("channelsync.retention", level="ERROR"):
            sweeper.start()
            while store.delete_messages_before.await_count < 2:
                await asyncio.sleep(0)
            await sweeper.stop()

    def test_policy_from_env(self):
        with mock.patch.dict(
            os.environ,
            {"CHANNELSYNC_RETENTION_MAX_AGE_S": "3600", "CHANNELSYNC_RETENTION_SWEEP_INTERVAL_S": "0"},
        ):
            policy = load_retention_policy_from_env()
        self.assertEqual(policy.message_max_age_s, 3600)
        self.assertEqual(policy.sweep_interval_s, 1)

        with mock.patch.dict(os.environ, {"CHANNELSYNC_RETENTION_MAX_AGE_S": "-5"}):
            with self.assertRaises(ValueError):
                load_retention_policy_from_env()


if __name__ == "__main__":
    unittest.main()
