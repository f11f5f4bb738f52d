"""Shared test fixtures for wabot."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import pytest

from wabot.config import LifecycleConfig
from wabot.errors import AuthError, TransportConnectionError
from wabot.transport.base import Listener, ListenerSet
from wabot.types import CloseReason, InboundMessage, SessionStats

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"project_root", "data_dir", "auth_dir", "db_path"})

# Short timers so reconnect and QR expiry tests run in milliseconds.
FAST_LIFECYCLE = LifecycleConfig(
    qr_timeout_seconds=0.3,
    reconnect_base_delay_seconds=0.01,
    reconnect_multiplier=2.0,
    max_reconnect_attempts=3,
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (lifecycle, storage, logging) and cached
    property overrides (data_dir, auth_dir, db_path).

    Usage::

        s = make_settings(data_dir=tmp_path)
        s = make_settings(lifecycle=LifecycleConfig(max_reconnect_attempts=1))
    """
    from wabot.config import LoggingConfig, Settings, StorageConfig

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "lifecycle": LifecycleConfig(),
        "storage": StorageConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def make_message(
    text: str = "hello",
    *,
    chat: str = "15550001111@s.whatsapp.net",
    id: str = "MSG1",
    is_from_me: bool = False,
    timestamp: datetime | None = None,
) -> InboundMessage:
    return InboundMessage(
        id=id,
        chat=chat,
        sender=chat,
        text=text,
        timestamp=timestamp or datetime.now(UTC),
        is_from_me=is_from_me,
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


def stop_test_database() -> None:
    """Stop the module-level aiosqlite connection without touching the event loop."""
    import wabot.state.connection as db_conn

    if db_conn._db is not None:
        db_conn._db.stop()
        if db_conn._db._thread is not None and db_conn._db._thread.is_alive():
            db_conn._db._thread.join(timeout=2)
        db_conn._db = None


class FakeHandle:
    """In-memory TransportHandle. Tests drive it with the ``emit_*`` helpers."""

    def __init__(
        self, session_id: str, credential: Any | None, phone_number: str | None = None
    ) -> None:
        self.session_id = session_id
        self.credential = credential
        self.phone_number = phone_number
        self._listeners = ListenerSet()
        self.sent: list[tuple[str, str]] = []
        self.read: list[str] = []
        self.closed = False
        self.fail_send = False
        self.fail_mark_read = False

    def on(self, event: str, callback: Listener) -> None:
        self._listeners.on(event, callback)

    def remove_all_listeners(self) -> None:
        self._listeners.remove_all_listeners()

    def listener_count(self) -> int:
        return self._listeners.listener_count()

    async def send(self, target: str, content: str) -> None:
        if self.closed or self.fail_send:
            raise TransportConnectionError("send failed")
        self.sent.append((target, content))

    async def mark_read(self, message: InboundMessage) -> None:
        if self.fail_mark_read:
            raise TransportConnectionError("receipt failed")
        self.read.append(message.id)

    async def close(self) -> None:
        self.closed = True

    # --- driving helpers ---

    def emit_qr(self, payload: str = "qr-payload-1") -> None:
        self._listeners.emit("qr", payload)

    def emit_pairing_code(self, code: str = "ABCD-EFGH") -> None:
        self._listeners.emit("pairing_code", code)

    def emit_open(self) -> None:
        self._listeners.emit("open")

    def emit_close(self, reason: CloseReason = CloseReason.CONNECTION_LOST) -> None:
        self._listeners.emit("close", reason)

    def emit_message(self, message: InboundMessage) -> None:
        self._listeners.emit("message", message)

    def emit_credentials(self, blob: Any) -> None:
        self._listeners.emit("credentials", blob)


class RecordingStats:
    """StatsRecorder that keeps per-session counters in memory."""

    def __init__(self) -> None:
        self.by_session: defaultdict[str, SessionStats] = defaultdict(SessionStats)

    async def record_stats(self, session_id, *, received=0, sent=0, errors=0):
        stats = self.by_session[session_id]
        stats.received += received
        stats.sent += sent
        stats.errors += errors


class FakeTransport:
    """Records every handle it opens.

    ``fail_opens`` makes the next N opens raise TransportConnectionError;
    ``reject_credentials`` makes opens with a stored credential raise AuthError.
    """

    def __init__(self) -> None:
        self.handles: list[FakeHandle] = []
        self.fail_opens = 0
        self.reject_credentials = False

    async def open(
        self, session_id: str, credential: Any | None, *, phone_number: str | None = None
    ) -> FakeHandle:
        if self.fail_opens:
            self.fail_opens -= 1
            raise TransportConnectionError("connection refused")
        if credential is not None and self.reject_credentials:
            raise AuthError("device removed")
        handle = FakeHandle(session_id, credential, phone_number)
        self.handles.append(handle)
        return handle

    def handles_for(self, session_id: str) -> list[FakeHandle]:
        return [h for h in self.handles if h.session_id == session_id]

    def latest(self, session_id: str) -> FakeHandle:
        return self.handles_for(session_id)[-1]

    async def attached(self, session_id: str, count: int = 1) -> FakeHandle:
        """Wait until the *count*-th handle for *session_id* has listeners attached."""

        def _ready() -> bool:
            handles = self.handles_for(session_id)
            return len(handles) >= count and handles[count - 1].listener_count() > 0

        await wait_until(_ready)
        return self.handles_for(session_id)[count - 1]


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults: no config.toml,
    no .env, no file I/O.
    """
    safe = make_settings(lifecycle=FAST_LIFECYCLE)
    monkeypatch.setattr("wabot.config._settings", safe)


@pytest.fixture(autouse=True)
async def _setup_db():
    from wabot.state import _init_test_database

    await _init_test_database()


@pytest.fixture(autouse=True, scope="session")
def _close_test_database():
    """Close the aiosqlite connection after all tests complete.

    Uses ``stop()`` + thread join rather than ``await close()`` because
    the connection was created on a function-scoped event loop.
    """
    yield
    stop_test_database()


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fast_qr(monkeypatch):
    """Skip PNG rendering in lifecycle tests; the data URL embeds the raw payload."""

    async def _encode(payload: str) -> str:
        return f"data:image/png;base64,{payload}"

    monkeypatch.setattr("wabot.lifecycle.encode_data_url", _encode)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
