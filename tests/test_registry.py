"""End-to-end tests for the SessionRegistry with an in-memory transport."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import UTC, datetime

import pytest
from conftest import FAST_LIFECYCLE, make_message, wait_until

from wabot.bot_settings import (
    AutoReplyConfig,
    BotSettings,
    ResponseDelayConfig,
    WorkingHoursConfig,
)
from wabot.errors import (
    AlreadyConnectedError,
    InvalidPhoneNumberError,
    NotConnectedError,
    PersistenceError,
    SessionNotFoundError,
)
from wabot.registry import SessionRegistry
from wabot.settings_broadcaster import SettingsBroadcaster
from wabot.state import SqliteCredentialStore, get_all_sessions, get_session
from wabot.types import CloseReason, SessionStatus

pytestmark = pytest.mark.usefixtures("fast_qr")


def _bot_settings(**overrides) -> BotSettings:
    defaults = {
        "auto_reply": AutoReplyConfig(enabled=True, message="Thanks!"),
        "response_delay": ResponseDelayConfig(min=0, max=10),
    }
    defaults.update(overrides)
    return BotSettings(**defaults)


@pytest.fixture
def broadcaster() -> SettingsBroadcaster:
    return SettingsBroadcaster(_bot_settings())


@pytest.fixture
async def registry(transport, broadcaster):
    reg = SessionRegistry(
        transport=transport,
        credentials=SqliteCredentialStore(),
        settings=broadcaster,
        config=FAST_LIFECYCLE,
    )
    yield reg
    await reg.stop_all()


async def _connect(registry, transport, sid: str = "s1"):
    await registry.start_session(sid)
    handle = await transport.attached(sid)
    handle.emit_qr()
    handle.emit_open()
    await wait_until(lambda: registry.get_session(sid).status is SessionStatus.CONNECTED)
    return handle


class TestScenarios:
    async def test_qr_then_open(self, registry, transport):
        await registry.start_session("s1")
        handle = await transport.attached("s1")
        assert registry.get_qr_code("s1") is None

        handle.emit_qr("payload")
        await wait_until(lambda: registry.get_qr_code("s1") is not None)
        assert registry.get_qr_code("s1").startswith("data:image/png;base64,")

        handle.emit_open()
        await wait_until(lambda: registry.get_session("s1").status is SessionStatus.CONNECTED)
        assert registry.get_qr_code("s1") is None
        assert registry.get_session("s1").last_active is not None

    async def test_template_reply_case_insensitive(self, registry, transport, broadcaster):
        await broadcaster.update_settings(
            {"messageTemplates": [{"trigger": "!help", "content": "H"}]}
        )
        handle = await _connect(registry, transport)
        handle.emit_message(make_message("!HELP"))
        await wait_until(lambda: handle.sent)
        assert handle.sent == [("15550001111@s.whatsapp.net", "H")]

    async def test_absence_message_outside_hours(self, registry, transport, broadcaster):
        await broadcaster.update_settings(
            {
                "workingHours": {"enabled": True, "start": "03:00", "end": "03:01"},
                "absenceMessage": "Away",
                "messageTemplates": [{"trigger": "!help", "content": "H"}],
            }
        )
        handle = await _connect(registry, transport)
        handle.emit_message(
            make_message("!help", timestamp=datetime(2026, 3, 2, 12, 0, tzinfo=UTC))
        )
        await wait_until(lambda: handle.sent)
        await asyncio.sleep(0.05)
        assert handle.sent == [("15550001111@s.whatsapp.net", "Away")]

    async def test_stop_cancels_pending_reply(self, registry, transport, broadcaster):
        await broadcaster.update_settings({"responseDelay": {"min": 400, "max": 400}})
        handle = await _connect(registry, transport)
        handle.emit_message(make_message())
        await wait_until(lambda: registry.pipeline.scheduler.pending_count("s1") == 1)
        await asyncio.sleep(0.05)

        await registry.stop_session("s1")
        assert registry.pipeline.scheduler.pending_count("s1") == 0
        assert handle.listener_count() == 0
        await asyncio.sleep(0.45)
        assert handle.sent == []

    async def test_logged_out_then_fresh_pairing(self, registry, transport):
        handle = await _connect(registry, transport)
        handle.emit_credentials({"auth_db": "/tmp/s1.db"})
        await asyncio.sleep(0.02)
        handle.emit_close(CloseReason.LOGGED_OUT)
        await wait_until(lambda: registry.get_session("s1").status is SessionStatus.CLOSED)

        record = registry.get_session("s1")
        assert record.close_reason is CloseReason.LOGGED_OUT
        assert not registry.is_live("s1")
        assert await SqliteCredentialStore().load("s1") is None

        await registry.start_session("s1")
        fresh = await transport.attached("s1", count=2)
        assert fresh.credential is None
        fresh.emit_qr()
        await wait_until(lambda: registry.get_session("s1").status is SessionStatus.PAIRING)


class TestStartStop:
    async def test_start_twice_while_pairing_is_idempotent(self, registry, transport):
        await registry.start_session("s1")
        await transport.attached("s1")
        await registry.start_session("s1")
        assert len(transport.handles_for("s1")) == 1

    async def test_start_when_connected_fails(self, registry, transport):
        await _connect(registry, transport)
        with pytest.raises(AlreadyConnectedError):
            await registry.start_session("s1")
        assert len(transport.handles_for("s1")) == 1

    async def test_start_records_name_and_phone(self, registry, transport):
        record = await registry.start_session("s1", name="Sales", phone_number="+15550001111")
        assert record.name == "Sales"
        assert record.phone_number == "+15550001111"

    async def test_stop_unknown_session(self, registry):
        with pytest.raises(SessionNotFoundError):
            await registry.stop_session("nope")

    async def test_stop_not_live_session(self, registry, transport):
        await _connect(registry, transport)
        await registry.stop_session("s1")
        with pytest.raises(NotConnectedError):
            await registry.stop_session("s1")

    async def test_stop_marks_closed_and_persists(self, registry, transport):
        handle = await _connect(registry, transport)
        record = await registry.stop_session("s1")
        assert record.status is SessionStatus.CLOSED
        assert record.close_reason is CloseReason.STOPPED
        assert handle.closed
        stored = await get_session("s1")
        assert stored.status is SessionStatus.CLOSED
        assert stored.auto_reconnect is False

    async def test_restart_after_stop(self, registry, transport):
        await _connect(registry, transport)
        await registry.stop_session("s1")
        await registry.start_session("s1")
        await transport.attached("s1", count=2)
        assert registry.is_live("s1")

    async def test_late_close_does_not_clobber_restarted_session(self, registry, transport):
        handle = await _connect(registry, transport)

        # Keep the record busy so the logged-out lifecycle's final update waits
        lock = registry._session_locks["s1"]
        await lock.acquire()
        handle.emit_close(CloseReason.LOGGED_OUT)
        await wait_until(lambda: not registry.is_live("s1"))

        restart = asyncio.create_task(registry.start_session("s1"))
        await wait_until(lambda: registry.is_live("s1"))
        lock.release()
        await restart
        await transport.attached("s1", count=2)

        record = registry.get_session("s1")
        assert record.status is not SessionStatus.CLOSED
        assert record.close_reason is None
        assert record.auto_reconnect is True
        stored = await get_session("s1")
        assert stored.close_reason is None
        assert stored.auto_reconnect is True


@pytest.fixture
def failing_store(monkeypatch):
    """Make every session-record write fail (both the try and the retry)."""

    async def _fail(record):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr("wabot.utils.PERSIST_RETRY_DELAY", 0)
    return lambda: monkeypatch.setattr("wabot.registry.upsert_session", _fail)


class TestPersistenceFailures:
    async def test_stop_surfaces_persistence_error(self, registry, transport, failing_store):
        handle = await _connect(registry, transport)
        failing_store()
        with pytest.raises(PersistenceError):
            await registry.stop_session("s1")
        assert registry.get_session("s1").status is SessionStatus.CLOSED
        assert not registry.is_live("s1")
        assert handle.closed

    async def test_start_surfaces_persistence_error(self, registry, transport, failing_store):
        failing_store()
        with pytest.raises(PersistenceError):
            await registry.start_session("s1")
        assert not registry.is_live("s1")
        await asyncio.sleep(0.02)
        assert transport.handles == []

    async def test_lifecycle_updates_survive_store_failure(
        self, registry, transport, failing_store
    ):
        handle = await _connect(registry, transport)
        failing_store()
        handle.emit_close()
        await wait_until(
            lambda: registry.get_session("s1").status is SessionStatus.RECONNECTING
        )
        assert registry.is_live("s1")


class TestPhonePairing:
    @pytest.mark.parametrize(
        "number",
        ["15550001111", "+0123456", "+1", "+1234567890123456", "+1 555 000 1111"],
    )
    async def test_malformed_number_rejected(self, registry, transport, number):
        with pytest.raises(InvalidPhoneNumberError):
            await registry.start_session("s1", phone_number=number)
        assert registry.list_sessions() == []
        assert transport.handles == []

    async def test_pairing_code_flow(self, registry, transport):
        await registry.start_session("s1", phone_number="+15550001111")
        handle = await transport.attached("s1")
        assert handle.phone_number == "+15550001111"

        handle.emit_pairing_code("ABCD-EFGH")
        await wait_until(lambda: registry.get_pairing_code("s1") is not None)
        assert registry.get_pairing_code("s1") == "ABCD-EFGH"
        assert registry.get_qr_code("s1") is None

        handle.emit_open()
        await wait_until(lambda: registry.get_session("s1").status is SessionStatus.CONNECTED)
        assert registry.get_pairing_code("s1") is None
        assert registry.get_session("s1").phone_number == "+15550001111"

    async def test_qr_pairing_without_number(self, registry, transport):
        await registry.start_session("s1")
        handle = await transport.attached("s1")
        assert handle.phone_number is None


class TestQrCache:
    async def test_qr_only_while_pairing(self, registry, transport):
        await registry.start_session("s1")
        handle = await transport.attached("s1")
        handle.emit_qr()
        await wait_until(lambda: registry.get_qr_code("s1") is not None)

        handle.emit_close()
        await wait_until(
            lambda: registry.get_session("s1").status is SessionStatus.RECONNECTING
        )
        assert registry.get_qr_code("s1") is None

    async def test_qr_expiry_clears_cache(self, registry, transport):
        await registry.start_session("s1")
        handle = await transport.attached("s1")
        handle.emit_qr()
        await wait_until(lambda: registry.get_session("s1").status is SessionStatus.CLOSED)
        assert registry.get_session("s1").close_reason is CloseReason.QR_EXPIRED
        assert registry.get_qr_code("s1") is None

    async def test_unknown_session(self, registry):
        with pytest.raises(SessionNotFoundError):
            registry.get_qr_code("ghost")


class TestProperties:
    async def test_one_handle_with_listeners_after_flapping(self, registry, transport):
        handle = await _connect(registry, transport)
        for n in range(2, 6):
            handle.emit_close()
            handle = await transport.attached("s1", count=n)
            handle.emit_open()
            await wait_until(lambda: registry.get_session("s1").status is SessionStatus.CONNECTED)

        handles = transport.handles_for("s1")
        assert [h.closed for h in handles] == [True, True, True, True, False]
        assert [h.listener_count() for h in handles[:-1]] == [0, 0, 0, 0]
        assert handles[-1].listener_count() == 6

    async def test_exhausted_after_max_attempts(self, registry, transport):
        handle = await _connect(registry, transport)
        transport.fail_opens = 100
        handle.emit_close()
        await wait_until(lambda: registry.get_session("s1").status is SessionStatus.CLOSED)
        assert registry.get_session("s1").close_reason is CloseReason.RECONNECT_EXHAUSTED
        assert len(transport.handles_for("s1")) == 1

    async def test_send_failure_keeps_session_connected(self, registry, transport):
        handle = await _connect(registry, transport)
        handle.fail_send = True
        handle.emit_message(make_message())
        await wait_until(lambda: registry.get_session("s1").stats.errors == 1)
        record = registry.get_session("s1")
        assert record.status is SessionStatus.CONNECTED
        assert record.stats.received == 1
        assert record.stats.sent == 0

    async def test_settings_patch_leaves_other_sections(self, broadcaster):
        before = broadcaster.current
        await broadcaster.update_settings({"autoReply": {"enabled": False}})
        after = broadcaster.current
        assert after.working_hours == before.working_hours
        assert after.message_templates == before.message_templates

    async def test_sessions_are_independent(self, registry, transport):
        a = await _connect(registry, transport, "a")
        b = await _connect(registry, transport, "b")
        a.emit_close(CloseReason.LOGGED_OUT)
        await wait_until(lambda: registry.get_session("a").status is SessionStatus.CLOSED)

        b.emit_message(make_message())
        await wait_until(lambda: b.sent)
        assert registry.get_session("b").status is SessionStatus.CONNECTED
        assert registry.get_session("b").stats.sent == 1


class TestRecords:
    async def test_list_sessions_returns_snapshots(self, registry, transport):
        await _connect(registry, transport)
        [snapshot] = registry.list_sessions()
        snapshot.stats.received = 99
        snapshot.name = "mutated"
        assert registry.get_session("s1").stats.received == 0
        assert registry.get_session("s1").name == "s1"

    async def test_external_record_shape(self, registry, transport):
        await registry.start_session("s1", name="Support", phone_number="+1555")
        [record] = registry.list_records()
        assert record == {
            "id": "s1",
            "phoneNumber": "+1555",
            "name": "Support",
            "status": "disconnected",
            "stats": {"received": 0, "sent": 0, "errors": 0},
            "lastActive": None,
        }

    async def test_stats_persisted(self, registry, transport):
        handle = await _connect(registry, transport)
        handle.emit_message(make_message())
        await wait_until(lambda: handle.sent)
        await asyncio.sleep(0.02)
        stored = await get_session("s1")
        assert stored.stats.received == 1
        assert stored.stats.sent == 1

    async def test_rename(self, registry, transport):
        await registry.start_session("s1")
        record = await registry.rename_session("s1", "Front desk")
        assert record.name == "Front desk"
        assert (await get_session("s1")).name == "Front desk"

    async def test_remove_session(self, registry, transport):
        handle = await _connect(registry, transport)
        handle.emit_credentials({"auth_db": "x"})
        await asyncio.sleep(0.02)
        await registry.remove_session("s1")
        assert handle.closed
        assert registry.list_sessions() == []
        assert await get_session("s1") is None
        assert await SqliteCredentialStore().load("s1") is None
        with pytest.raises(SessionNotFoundError):
            registry.get_session("s1")

    async def test_stats_summary(self, registry, transport):
        await _connect(registry, transport, "a")
        await registry.start_session("b")
        summary = registry.stats_summary()
        assert summary.total_sessions == 2
        assert summary.active_sessions == 1


class TestRestore:
    async def test_restore_reconnects_flagged_sessions(self, transport, broadcaster):
        first = SessionRegistry(
            transport=transport,
            credentials=SqliteCredentialStore(),
            settings=broadcaster,
            config=FAST_LIFECYCLE,
        )
        await _connect(first, transport, "keep")
        await _connect(first, transport, "stopped")
        await first.stop_session("stopped")
        await first.stop_all()

        second = SessionRegistry(
            transport=transport,
            credentials=SqliteCredentialStore(),
            settings=broadcaster,
            config=FAST_LIFECYCLE,
        )
        try:
            started = await second.restore_sessions()
            assert started == ["keep"]
            assert {r.id for r in second.list_sessions()} == {"keep", "stopped"}
            await transport.attached("keep", count=2)
        finally:
            await second.stop_all()

    async def test_restore_skips_logged_out(self, transport, broadcaster):
        first = SessionRegistry(
            transport=transport,
            credentials=SqliteCredentialStore(),
            settings=broadcaster,
            config=FAST_LIFECYCLE,
        )
        handle = await _connect(first, transport)
        handle.emit_close(CloseReason.LOGGED_OUT)
        await wait_until(lambda: first.get_session("s1").status is SessionStatus.CLOSED)

        second = SessionRegistry(
            transport=transport,
            credentials=SqliteCredentialStore(),
            settings=broadcaster,
            config=FAST_LIFECYCLE,
        )
        assert await second.restore_sessions() == []
        assert (await get_all_sessions())[0].close_reason is CloseReason.LOGGED_OUT
