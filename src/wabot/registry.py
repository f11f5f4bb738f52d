"""Session registry: the single owner of session records and live connections.

The in-memory records are authoritative; every mutation is written through
to the ``sessions`` table. ``_map_lock`` serializes adding/removing
sessions and live lifecycles; each session additionally has its own lock
so stats and status updates for one session are applied and flushed one at
a time, without holding up other sessions. Reads take no lock.

Live ``ConnectionLifecycle`` objects (and through them the transport
handles) never leave this module: callers get ``SessionRecord`` snapshots.
"""

from __future__ import annotations

import asyncio
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from wabot.config import LifecycleConfig, get_settings
from wabot.errors import (
    AlreadyConnectedError,
    InvalidPhoneNumberError,
    NotConnectedError,
    PersistenceError,
    SessionNotFoundError,
)
from wabot.lifecycle import ConnectionLifecycle
from wabot.logger import logger
from wabot.pipeline import MessagePipeline
from wabot.settings_broadcaster import SettingsBroadcaster
from wabot.state import get_all_sessions, purge_session, upsert_session
from wabot.transport.base import Transport
from wabot.types import CloseReason, CredentialStore, SessionRecord, SessionStatus, now_iso
from wabot.utils import persist_with_retry

_IDEMPOTENT_START_STATES = (SessionStatus.IDLE, SessionStatus.PAIRING)
# E.164: leading +, no leading zero, at most 15 digits
_PHONE_NUMBER = re.compile(r"\+[1-9]\d{1,14}")


@dataclass(frozen=True)
class RegistrySummary:
    total_sessions: int
    active_sessions: int
    pairing_sessions: int
    received: int
    sent: int
    errors: int


class SessionRegistry:
    def __init__(
        self,
        *,
        transport: Transport,
        credentials: CredentialStore,
        settings: SettingsBroadcaster,
        config: LifecycleConfig | None = None,
        pipeline: MessagePipeline | None = None,
    ) -> None:
        self._transport = transport
        self._credentials = credentials
        self._config = config or get_settings().lifecycle
        self._pipeline = pipeline or MessagePipeline(settings, self)
        self._records: dict[str, SessionRecord] = {}
        self._live: dict[str, ConnectionLifecycle] = {}
        self._map_lock = asyncio.Lock()
        self._session_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def pipeline(self) -> MessagePipeline:
        return self._pipeline

    # --- startup / shutdown ---

    async def load(self) -> int:
        """Load stored session records into memory. Returns the number loaded."""
        records = await get_all_sessions()
        async with self._map_lock:
            for record in records:
                self._records.setdefault(record.id, record)
        return len(records)

    async def restore_sessions(self) -> list[str]:
        """Reconnect every stored session flagged ``auto_reconnect``.

        Sessions that ended terminally (logged out, QR expired, stopped by
        hand) have the flag cleared and stay down until started explicitly.
        """
        await self.load()
        started: list[str] = []
        for record in list(self._records.values()):
            if not record.auto_reconnect:
                continue
            try:
                await self.start_session(record.id)
            except AlreadyConnectedError:
                continue
            started.append(record.id)
        logger.info("Sessions restored", count=len(started))
        return started

    async def stop_all(self) -> None:
        """Stop every live session (service shutdown). Records keep auto_reconnect."""
        live_ids = list(self._live)
        results = await asyncio.gather(
            *(
                self._stop_live(sid, CloseReason.STOPPED, keep_auto_reconnect=True)
                for sid in live_ids
            ),
            return_exceptions=True,
        )
        for sid, result in zip(live_ids, results, strict=True):
            if isinstance(result, Exception):
                logger.error("Failed to stop session cleanly", session_id=sid, err=str(result))
        logger.info("All sessions stopped", count=len(live_ids))

    # --- operations ---

    async def start_session(
        self,
        session_id: str,
        *,
        name: str | None = None,
        phone_number: str | None = None,
    ) -> SessionRecord:
        """Start (or restart) a session and begin pairing.

        With *phone_number* (international format, ``+1234567890``) and no
        stored credential the session links by pairing code instead of QR;
        see :meth:`get_pairing_code`.

        Raises InvalidPhoneNumberError for a malformed number,
        AlreadyConnectedError if the session is connected or reconnecting,
        and PersistenceError if the record cannot be stored (the session is
        then not started). Repeated calls while it is still pairing return
        the current record.
        """
        if phone_number is not None and not _PHONE_NUMBER.fullmatch(phone_number):
            raise InvalidPhoneNumberError(phone_number)

        async with self._map_lock:
            lifecycle = self._live.get(session_id)
            if lifecycle is not None and lifecycle.state is not SessionStatus.CLOSED:
                if lifecycle.state in _IDEMPOTENT_START_STATES:
                    return self._records[session_id].snapshot()
                raise AlreadyConnectedError(session_id)

            record = self._records.get(session_id)
            if record is None:
                record = SessionRecord(id=session_id, name=name or "", phone_number=phone_number)
                self._records[session_id] = record
            else:
                if name:
                    record.name = name
                if phone_number:
                    record.phone_number = phone_number
            record.status = SessionStatus.IDLE
            record.close_reason = None
            record.qr_image = None
            record.qr_payload = None
            record.pairing_code = None
            record.auto_reconnect = True

            lifecycle = ConnectionLifecycle(
                session_id,
                transport=self._transport,
                credentials=self._credentials,
                pipeline=self._pipeline,
                observer=self,
                config=self._config,
                phone_number=phone_number,
            )
            self._live[session_id] = lifecycle

        try:
            async with self._session_locks[session_id]:
                await self._flush_locked(record, surface=True)
        except PersistenceError:
            async with self._map_lock:
                if self._live.get(session_id) is lifecycle:
                    del self._live[session_id]
            raise
        await lifecycle.start()
        logger.info("Connection initiated", session_id=session_id)
        return self._records[session_id].snapshot()

    async def stop_session(self, session_id: str) -> SessionRecord:
        """Disconnect a live session.

        Raises SessionNotFoundError for unknown ids and NotConnectedError if
        nothing is live. On return no further sends happen for the session;
        that holds even when PersistenceError is raised because the CLOSED
        record could not be stored.
        """
        if session_id not in self._records:
            raise SessionNotFoundError(session_id)
        if session_id not in self._live:
            raise NotConnectedError(session_id)
        await self._stop_live(session_id, CloseReason.STOPPED, keep_auto_reconnect=False)
        return self._records[session_id].snapshot()

    async def remove_session(self, session_id: str) -> None:
        """Disconnect if needed, then delete the record and its credentials."""
        if session_id not in self._records:
            raise SessionNotFoundError(session_id)
        if session_id in self._live:
            await self._stop_live(session_id, CloseReason.STOPPED, keep_auto_reconnect=False)
        await self._credentials.invalidate(session_id)
        await persist_with_retry(purge_session, session_id, what="session removal")
        async with self._map_lock:
            self._records.pop(session_id, None)
            self._session_locks.pop(session_id, None)
        logger.info("Session removed", session_id=session_id)

    async def rename_session(self, session_id: str, name: str) -> SessionRecord:
        if not name:
            raise ValueError("name must not be empty")
        record = self._require(session_id)
        async with self._session_locks[session_id]:
            record.name = name
            await persist_with_retry(upsert_session, record.snapshot(), what="session record")
        return record.snapshot()

    def get_qr_code(self, session_id: str) -> str | None:
        """Cached QR data URL while the session is pairing, else None."""
        record = self._require(session_id)
        if record.status is not SessionStatus.PAIRING:
            return None
        return record.qr_image

    def get_pairing_code(self, session_id: str) -> str | None:
        """Phone-link code while the session is pairing by phone number, else None."""
        record = self._require(session_id)
        if record.status is not SessionStatus.PAIRING:
            return None
        return record.pairing_code

    def get_session(self, session_id: str) -> SessionRecord:
        return self._require(session_id).snapshot()

    def list_sessions(self) -> list[SessionRecord]:
        return [record.snapshot() for record in self._records.values()]

    def list_records(self) -> list[dict[str, Any]]:
        """Sessions in their persisted/external shape."""
        return [record.to_record() for record in self._records.values()]

    def is_live(self, session_id: str) -> bool:
        return session_id in self._live

    def stats_summary(self) -> RegistrySummary:
        records = list(self._records.values())
        return RegistrySummary(
            total_sessions=len(records),
            active_sessions=sum(1 for r in records if r.status is SessionStatus.CONNECTED),
            pairing_sessions=sum(1 for r in records if r.status is SessionStatus.PAIRING),
            received=sum(r.stats.received for r in records),
            sent=sum(r.stats.sent for r in records),
            errors=sum(r.stats.errors for r in records),
        )

    # --- LifecycleObserver ---

    async def set_status(
        self,
        session_id: str,
        status: SessionStatus,
        *,
        reason: CloseReason | None = None,
        qr_image: str | None = None,
        qr_payload: str | None = None,
        pairing_code: str | None = None,
        lifecycle: ConnectionLifecycle | None = None,
    ) -> None:
        record = self._records.get(session_id)
        if record is None:
            return
        async with self._session_locks[session_id]:
            # A lifecycle that finished while waiting for the lock must not
            # overwrite the record of the one that replaced it.
            current = self._live.get(session_id)
            if lifecycle is not None and current is not None and current is not lifecycle:
                logger.debug(
                    "Dropped status from replaced lifecycle",
                    session_id=session_id,
                    status=status.value,
                )
                return
            record.status = status
            pairing = status is SessionStatus.PAIRING
            record.qr_image = qr_image if pairing else None
            record.qr_payload = qr_payload if pairing else None
            record.pairing_code = pairing_code if pairing else None
            if status is SessionStatus.CONNECTED:
                record.last_active = now_iso()
                record.close_reason = None
            elif reason is not None:
                record.close_reason = reason
            if status is SessionStatus.CLOSED:
                record.auto_reconnect = False
            await self._flush_locked(record)

    def lifecycle_ended(self, session_id: str, lifecycle: ConnectionLifecycle) -> None:
        # Called from the lifecycle's own worker; only drop it if it is still the live one.
        if self._live.get(session_id) is lifecycle:
            del self._live[session_id]
            self._pipeline.cancel_session(session_id)
            logger.info(
                "Session closed",
                session_id=session_id,
                reason=lifecycle.close_reason.value if lifecycle.close_reason else None,
            )

    # --- StatsRecorder ---

    async def record_stats(
        self, session_id: str, *, received: int = 0, sent: int = 0, errors: int = 0
    ) -> None:
        record = self._records.get(session_id)
        if record is None:
            return
        async with self._session_locks[session_id]:
            record.stats.received += received
            record.stats.sent += sent
            record.stats.errors += errors
            record.last_active = now_iso()
            await self._flush_locked(record)

    # --- internals ---

    def _require(self, session_id: str) -> SessionRecord:
        record = self._records.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    async def _stop_live(
        self, session_id: str, reason: CloseReason, *, keep_auto_reconnect: bool
    ) -> None:
        async with self._map_lock:
            lifecycle = self._live.pop(session_id, None)
        if lifecycle is None:
            return
        self._pipeline.cancel_session(session_id)
        await lifecycle.stop(reason)
        record = self._records[session_id]
        async with self._session_locks[session_id]:
            record.status = SessionStatus.CLOSED
            record.close_reason = reason
            record.qr_image = None
            record.qr_payload = None
            record.pairing_code = None
            record.last_active = now_iso()
            if not keep_auto_reconnect:
                record.auto_reconnect = False
            await self._flush_locked(record, surface=True)
        logger.info("Client disconnected", session_id=session_id)

    async def _flush_locked(self, record: SessionRecord, *, surface: bool = False) -> None:
        """Write *record* through to storage. Memory stays authoritative either way.

        Caller-initiated mutations pass ``surface=True`` and get the
        PersistenceError; lifecycle and stats updates only log it.
        """
        try:
            await persist_with_retry(upsert_session, record.snapshot(), what="session record")
        except Exception as exc:
            if surface:
                raise
            logger.error("Session record not persisted", session_id=record.id, err=str(exc))
