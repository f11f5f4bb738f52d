"""WhatsApp transport using neonize (whatsmeow Python bindings).

Each connection attempt gets its own ``NewAClient``. Auth state lives in a
per-session SQLite file managed by neonize; the credential blob we hand to
the CredentialStore only records where that file is and who it paired as.
Unpaired handles opened with a phone number answer the first QR event by
requesting a pairing code and emit that instead of QR payloads.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from neonize.aioze import client as neonize_client
from neonize.aioze import events as neonize_events
from neonize.aioze.client import NewAClient
from neonize.events import (
    ConnectedEv,
    ConnectFailureEv,
    DisconnectedEv,
    LoggedOutEv,
    MessageEv,
    PairStatusEv,
)
from neonize.proto.Neonize_pb2 import JID
from neonize.utils.jid import Jid2String, build_jid

from wabot.config import get_settings
from wabot.errors import AuthError, TransportConnectionError
from wabot.logger import logger
from wabot.transport.base import Listener, ListenerSet
from wabot.types import CloseReason, InboundMessage


class NeonizeHandle:
    """One live neonize client. Discarded after it closes; never reused."""

    def __init__(self, session_id: str, auth_db: Path, phone_number: str | None = None) -> None:
        self.session_id = session_id
        self._auth_db = auth_db
        self._phone_number = phone_number
        self._pairing_code_requested = False
        self._listeners = ListenerSet()
        self._closed = False
        self._idle_task: asyncio.Task[None] | None = None
        # Events neonize fires during connect(), before the lifecycle attaches
        self._backlog: list[tuple[str, tuple[Any, ...]]] = []
        self._flush_scheduled = False
        self._client = NewAClient(str(auth_db))
        self._register_events()

    # --- listener API ---

    def on(self, event: str, callback: Listener) -> None:
        self._listeners.on(event, callback)
        if self._backlog and not self._flush_scheduled:
            self._flush_scheduled = True
            asyncio.get_running_loop().call_soon(self._flush_backlog)

    def remove_all_listeners(self) -> None:
        self._listeners.remove_all_listeners()

    def listener_count(self) -> int:
        return self._listeners.listener_count()

    def _emit(self, event: str, *args: Any) -> None:
        if self._closed:
            return
        if self._listeners.listener_count() == 0:
            self._backlog.append((event, args))
            return
        self._listeners.emit(event, *args)

    def _flush_backlog(self) -> None:
        backlog, self._backlog = self._backlog, []
        for event, args in backlog:
            self._emit(event, *args)

    # --- neonize wiring ---

    def _register_events(self) -> None:
        @self._client.event.qr
        async def on_qr(_client: NewAClient, qr_data: bytes) -> None:
            if self._phone_number:
                await self._request_pairing_code()
                return
            payload = qr_data.decode() if isinstance(qr_data, bytes) else str(qr_data)
            self._emit("qr", payload)

        @self._client.event(ConnectedEv)
        async def on_connected(_client: NewAClient, _ev: ConnectedEv) -> None:
            logger.info("Connected to WhatsApp", session_id=self.session_id)
            self._emit("open")

        @self._client.event(PairStatusEv)
        async def on_pair_status(_client: NewAClient, ev: PairStatusEv) -> None:
            logger.info("WhatsApp paired", session_id=self.session_id, user=ev.ID.User)
            self._emit("credentials", {"auth_db": str(self._auth_db), "jid": ev.ID.User})

        @self._client.event(DisconnectedEv)
        async def on_disconnected(_client: NewAClient, _ev: DisconnectedEv) -> None:
            self._emit("close", CloseReason.CONNECTION_LOST)

        @self._client.event(LoggedOutEv)
        async def on_logged_out(_client: NewAClient, _ev: LoggedOutEv) -> None:
            self._emit("close", CloseReason.LOGGED_OUT)

        @self._client.event(ConnectFailureEv)
        async def on_connect_failure(_client: NewAClient, _ev: ConnectFailureEv) -> None:
            self._emit("close", CloseReason.CONNECT_FAILED)

        @self._client.event(MessageEv)
        async def on_message(_client: NewAClient, message: MessageEv) -> None:
            try:
                inbound = self._to_inbound(message)
            except Exception:
                logger.exception(
                    "Failed to decode inbound message",
                    session_id=self.session_id,
                    message_id=getattr(getattr(message, "Info", None), "ID", "unknown"),
                )
                return
            if inbound is not None:
                self._emit("message", inbound)

    async def _request_pairing_code(self) -> None:
        # whatsmeow accepts PairPhone only once the first QR event has arrived
        if self._pairing_code_requested:
            return
        self._pairing_code_requested = True
        digits = self._phone_number.lstrip("+")
        try:
            code = await self._client.PairPhone(digits, show_push_notification=True)
        except Exception as exc:
            logger.warning("Pairing code request failed", session_id=self.session_id, err=str(exc))
            self._emit("close", CloseReason.CONNECT_FAILED)
            return
        self._emit("pairing_code", code)

    @staticmethod
    def _to_inbound(message: MessageEv) -> InboundMessage | None:
        info = message.Info
        source = info.MessageSource
        chat = Jid2String(source.Chat)
        if not chat or chat == "status@broadcast":
            return None

        ts = info.Timestamp
        if ts > 1e10:  # milliseconds → seconds
            ts = ts / 1000

        msg = message.Message
        text = (
            msg.conversation
            or msg.extendedTextMessage.text
            or msg.imageMessage.caption
            or msg.videoMessage.caption
            or ""
        )
        return InboundMessage(
            id=info.ID,
            chat=chat,
            sender=Jid2String(source.Sender),
            text=text,
            timestamp=datetime.fromtimestamp(ts, tz=UTC),
            is_from_me=bool(source.IsFromMe),
            push_name=info.Pushname or "",
        )

    # --- connection ---

    async def connect(self) -> None:
        try:
            await self._client.connect()
        except Exception as err:
            raise TransportConnectionError(str(err)) from err
        self._idle_task = asyncio.ensure_future(self._client.idle())

    async def send(self, target: str, content: str) -> None:
        if self._closed:
            raise TransportConnectionError("handle is closed")
        await self._client.send_message(_parse_jid(target), content)

    async def mark_read(self, message: InboundMessage) -> None:
        from neonize.utils.enum import ReceiptType

        await self._client.mark_read(
            message.id,
            chat=_parse_jid(message.chat),
            sender=_parse_jid(message.sender),
            receipt=ReceiptType.READ,
        )

    async def close(self) -> None:
        self._closed = True
        self._listeners.remove_all_listeners()
        if self._idle_task:
            self._idle_task.cancel()
        with contextlib.suppress(Exception):
            await self._client.disconnect()


class NeonizeTransport:
    """Opens neonize clients keyed by session id under ``auth_dir``."""

    def __init__(self, auth_dir: Path | None = None) -> None:
        self._auth_dir = auth_dir or get_settings().auth_dir

    async def open(
        self, session_id: str, credential: Any | None, *, phone_number: str | None = None
    ) -> NeonizeHandle:
        # Neonize creates its own event loop at import time. Patch both modules
        # so events and tasks land on our running loop.
        loop = asyncio.get_running_loop()
        neonize_events.event_global_loop = loop
        neonize_client.event_global_loop = loop

        self._auth_dir.mkdir(parents=True, exist_ok=True)
        if isinstance(credential, dict) and credential.get("auth_db"):
            auth_db = Path(credential["auth_db"])
            if not auth_db.exists():
                raise AuthError(f"auth database for {session_id} is gone: {auth_db}")
            phone_number = None
        else:
            # No stored credential: drop stale auth state so neonize pairs afresh
            auth_db = self._auth_dir / f"{session_id}.db"
            auth_db.unlink(missing_ok=True)

        handle = NeonizeHandle(session_id, auth_db, phone_number)
        await handle.connect()
        return handle


def _parse_jid(jid_str: str) -> JID:
    """Parse a string JID into a neonize JID protobuf object."""
    if "@" not in jid_str:
        return build_jid(jid_str)
    user, server = jid_str.split("@", 1)
    return build_jid(user, server)
