"""Tests for the SQLite persistence layer."""

from __future__ import annotations

import aiosqlite
import pytest

from wabot.state import (
    SqliteCredentialStore,
    atomic_write,
    delete_session,
    get_all_sessions,
    get_document,
    get_session,
    load_bot_settings,
    purge_session,
    save_bot_settings,
    set_document,
    upsert_session,
)
from wabot.state.schema import _SESSION_COLUMN_MIGRATIONS, _ensure_columns, create_schema
from wabot.types import CloseReason, SessionRecord, SessionStats, SessionStatus


def _record(id: str = "s1", **overrides) -> SessionRecord:
    defaults = {
        "id": id,
        "name": "Sales",
        "phone_number": "+15550001111",
        "status": SessionStatus.CONNECTED,
        "stats": SessionStats(received=3, sent=2, errors=1),
        "last_active": "2026-03-02T12:00:00+00:00",
    }
    defaults.update(overrides)
    return SessionRecord(**defaults)


class TestSessions:
    async def test_upsert_and_get(self):
        await upsert_session(_record())
        stored = await get_session("s1")
        assert stored.name == "Sales"
        assert stored.phone_number == "+15550001111"
        assert stored.stats == SessionStats(received=3, sent=2, errors=1)
        assert stored.last_active == "2026-03-02T12:00:00+00:00"

    async def test_live_statuses_load_as_idle(self):
        await upsert_session(_record(status=SessionStatus.CONNECTED))
        assert (await get_session("s1")).status is SessionStatus.IDLE

    async def test_closed_status_and_reason_survive(self):
        await upsert_session(
            _record(status=SessionStatus.CLOSED, close_reason=CloseReason.QR_EXPIRED)
        )
        stored = await get_session("s1")
        assert stored.status is SessionStatus.CLOSED
        assert stored.close_reason is CloseReason.QR_EXPIRED

    async def test_upsert_overwrites(self):
        await upsert_session(_record())
        await upsert_session(_record(name="Support"))
        assert [r.name for r in await get_all_sessions()] == ["Support"]

    async def test_get_missing(self):
        assert await get_session("ghost") is None

    async def test_all_sessions_in_creation_order(self):
        await upsert_session(_record("b", created_at="2026-01-02T00:00:00+00:00"))
        await upsert_session(_record("a", created_at="2026-01-01T00:00:00+00:00"))
        assert [r.id for r in await get_all_sessions()] == ["a", "b"]

    async def test_delete(self):
        await upsert_session(_record())
        await delete_session("s1")
        assert await get_session("s1") is None

    async def test_purge_removes_credentials_too(self):
        store = SqliteCredentialStore()
        await upsert_session(_record())
        await store.save("s1", {"auth_db": "x"})
        await purge_session("s1")
        assert await get_session("s1") is None
        assert await store.load("s1") is None


class TestCredentials:
    async def test_round_trip_json(self):
        store = SqliteCredentialStore()
        await store.save("s1", {"auth_db": "/data/auth/s1.db", "jid": "1555@s.whatsapp.net"})
        assert await store.load("s1") == {
            "auth_db": "/data/auth/s1.db",
            "jid": "1555@s.whatsapp.net",
        }

    async def test_round_trip_bytes(self):
        store = SqliteCredentialStore()
        await store.save("s1", b"\x00\x01noise")
        assert await store.load("s1") == b"\x00\x01noise"

    async def test_invalidate(self):
        store = SqliteCredentialStore()
        await store.save("s1", {"k": 1})
        await store.invalidate("s1")
        assert await store.load("s1") is None

    async def test_missing_is_none(self):
        assert await SqliteCredentialStore().load("nope") is None

    def test_satisfies_protocol(self):
        from wabot.types import CredentialStore

        assert isinstance(SqliteCredentialStore(), CredentialStore)


class TestDocuments:
    async def test_set_and_get(self):
        await set_document("k", {"a": 1})
        assert await get_document("k") == {"a": 1}

    async def test_bot_settings_slot(self):
        assert await load_bot_settings() is None
        await save_bot_settings({"autoRead": True})
        assert await load_bot_settings() == {"autoRead": True}


class TestAtomicWrite:
    async def test_rolls_back_on_error(self):
        with pytest.raises(RuntimeError):
            async with atomic_write() as db:
                await db.execute(
                    "INSERT INTO kv (key, value) VALUES (?, ?)", ("partial", "{}")
                )
                raise RuntimeError("abort")
        assert await get_document("partial") is None


class TestSchemaMigration:
    async def test_adds_missing_session_columns(self):
        async with aiosqlite.connect(":memory:") as db:
            await db.execute(
                "CREATE TABLE sessions (id TEXT PRIMARY KEY, phone_number TEXT, "
                "status TEXT NOT NULL DEFAULT 'disconnected')"
            )
            await db.execute("INSERT INTO sessions (id) VALUES ('old')")
            await _ensure_columns(db)
            cursor = await db.execute("PRAGMA table_info(sessions)")
            names = {row[1] for row in await cursor.fetchall()}
            cursor = await db.execute("SELECT auto_reconnect, created_at FROM sessions")
            row = await cursor.fetchone()
        assert {column for column, _ in _SESSION_COLUMN_MIGRATIONS} <= names
        assert tuple(row) == (1, "")

    async def test_current_schema_needs_no_migration(self):
        async with aiosqlite.connect(":memory:") as db:
            await create_schema(db)
            await _ensure_columns(db)
            cursor = await db.execute("PRAGMA table_info(sessions)")
            count = len(await cursor.fetchall())
        assert count == 11
