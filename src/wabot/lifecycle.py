"""Per-session connection state machine.

    IDLE → PAIRING → CONNECTED → (RECONNECTING ⇄ CONNECTED) → CLOSED

One ``ConnectionLifecycle`` per session. Transport callbacks never run
logic themselves: they enqueue an event tagged with the generation of the
handle that produced it, and a single worker task per session applies
events in arrival order through ``_transitions``. Events from an older
generation (a handle that has since been replaced) are dropped.

Reconnects are driven by a timer task that enqueues ``ReconnectDue``; the
worker then builds a fresh handle, after the previous one has been closed
and stripped of its listeners.

Every status report names the lifecycle it came from, so the registry can
ignore one that finished after a newer lifecycle took over the session.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from wabot.config import LifecycleConfig
from wabot.errors import AuthError, NotConnectedError
from wabot.logger import logger
from wabot.pipeline import MessagePipeline
from wabot.qr import encode_data_url
from wabot.transport.base import Transport, TransportHandle
from wabot.types import CloseReason, CredentialStore, InboundMessage, SessionStatus
from wabot.utils import create_background_task

# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectRequested:
    pass


@dataclass(frozen=True)
class QrPresented:
    generation: int
    payload: str


@dataclass(frozen=True)
class PairingCodePresented:
    generation: int
    code: str


@dataclass(frozen=True)
class Opened:
    generation: int


@dataclass(frozen=True)
class Closed:
    generation: int
    reason: CloseReason


@dataclass(frozen=True)
class CredentialsUpdated:
    generation: int
    blob: Any


@dataclass(frozen=True)
class MessageReceived:
    generation: int
    message: InboundMessage


@dataclass(frozen=True)
class QrExpired:
    cycle: int


@dataclass(frozen=True)
class ReconnectDue:
    attempt: int


type LifecycleEvent = (
    ConnectRequested
    | QrPresented
    | PairingCodePresented
    | Opened
    | Closed
    | CredentialsUpdated
    | MessageReceived
    | QrExpired
    | ReconnectDue
)

_TRANSPORT_EVENTS = (
    QrPresented,
    PairingCodePresented,
    Opened,
    Closed,
    CredentialsUpdated,
    MessageReceived,
)


class LifecycleObserver(Protocol):
    """Implemented by the SessionRegistry."""

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
    ) -> None: ...

    def lifecycle_ended(self, session_id: str, lifecycle: ConnectionLifecycle) -> None: ...


def _coerce_reason(reason: Any) -> CloseReason:
    try:
        return CloseReason(reason)
    except ValueError:
        return CloseReason.CONNECTION_LOST


# ---------------------------------------------------------------------------
# Outbound side handed to the pipeline
# ---------------------------------------------------------------------------


class _SessionOutbox:
    """Sends through whatever handle is live right now; refuses when not connected."""

    def __init__(self, lifecycle: ConnectionLifecycle) -> None:
        self._lifecycle = lifecycle

    async def send(self, target: str, content: str) -> None:
        handle = self._lifecycle._live_handle()
        await handle.send(target, content)

    async def mark_read(self, message: InboundMessage) -> None:
        handle = self._lifecycle._live_handle()
        await handle.mark_read(message)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ConnectionLifecycle:
    def __init__(
        self,
        session_id: str,
        *,
        transport: Transport,
        credentials: CredentialStore,
        pipeline: MessagePipeline,
        observer: LifecycleObserver,
        config: LifecycleConfig,
        phone_number: str | None = None,
    ) -> None:
        self.session_id = session_id
        # Link by pairing code instead of QR while no credential is stored
        self.phone_number = phone_number
        self.state = SessionStatus.IDLE
        self.close_reason: CloseReason | None = None
        self._transport = transport
        self._credentials = credentials
        self._pipeline = pipeline
        self._observer = observer
        self._config = config

        self._queue: asyncio.Queue[LifecycleEvent] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._handle: TransportHandle | None = None
        self._generation = 0
        self._attempts = 0  # consecutive failed connections since the last open
        self._reconnects_made = 0
        self._qr_cycle = 0
        self._qr_timer: asyncio.Task[None] | None = None
        self._reconnect_timer: asyncio.Task[None] | None = None
        self._stopped = False
        self._outbox = _SessionOutbox(self)

        S = SessionStatus
        live = (S.IDLE, S.PAIRING, S.CONNECTED, S.RECONNECTING)
        self._transitions: dict[
            tuple[SessionStatus, type], Callable[[Any], Awaitable[None]]
        ] = {
            (S.IDLE, ConnectRequested): self._on_connect_requested,
            (S.RECONNECTING, ReconnectDue): self._on_reconnect_due,
            (S.PAIRING, QrExpired): self._on_qr_expired,
            (S.CONNECTED, MessageReceived): self._on_message,
        }
        for state in (S.IDLE, S.PAIRING, S.RECONNECTING):
            self._transitions[(state, QrPresented)] = self._on_qr
            self._transitions[(state, PairingCodePresented)] = self._on_pairing_code
            self._transitions[(state, Opened)] = self._on_opened
        for state in live:
            self._transitions[(state, Closed)] = self._on_closed
            self._transitions[(state, CredentialsUpdated)] = self._on_credentials

    # --- public API (used by the registry) ---

    @property
    def reconnects_made(self) -> int:
        return self._reconnects_made

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        """Start the worker and request the first connection."""
        if self._worker is not None:
            return
        self._worker = create_background_task(self._run(), name=f"lifecycle:{self.session_id}")
        self._post(ConnectRequested())

    async def stop(self, reason: CloseReason = CloseReason.STOPPED) -> None:
        """Tear down from outside the worker.

        When this returns no PendingReply can fire, the handle is closed with
        no listeners left, and the worker has exited.
        """
        if self._stopped:
            return
        self._stopped = True
        self._pipeline.cancel_session(self.session_id)
        self._cancel_timers()
        worker = self._worker
        if worker is not None and worker is not asyncio.current_task() and not worker.done():
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        await self._detach_handle()
        self.state = SessionStatus.CLOSED
        self.close_reason = reason
        logger.info("Session stopped", session_id=self.session_id, reason=reason.value)

    # --- worker ---

    def _post(self, event: LifecycleEvent) -> None:
        if self._stopped:
            return
        self._queue.put_nowait(event)

    async def _run(self) -> None:
        while self.state is not SessionStatus.CLOSED:
            event = await self._queue.get()
            if isinstance(event, _TRANSPORT_EVENTS) and event.generation != self._generation:
                logger.debug(
                    "Dropped event from stale handle",
                    session_id=self.session_id,
                    event=type(event).__name__,
                )
                continue
            handler = self._transitions.get((self.state, type(event)))
            if handler is None:
                logger.debug(
                    "Event ignored in state",
                    session_id=self.session_id,
                    state=self.state.value,
                    event=type(event).__name__,
                )
                continue
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "Lifecycle transition failed",
                    session_id=self.session_id,
                    state=self.state.value,
                    event=type(event).__name__,
                )

    # --- transitions ---

    async def _on_connect_requested(self, _event: ConnectRequested) -> None:
        await self._open_fresh_handle()

    async def _on_reconnect_due(self, event: ReconnectDue) -> None:
        if event.attempt != self._attempts:
            return
        self._reconnects_made += 1
        logger.info(
            "Reconnecting",
            session_id=self.session_id,
            attempt=event.attempt,
            max_attempts=self._config.max_reconnect_attempts,
        )
        await self._open_fresh_handle()

    async def _on_qr(self, event: QrPresented) -> None:
        try:
            image = await encode_data_url(event.payload)
        except Exception:
            logger.exception("Error generating QR code", session_id=self.session_id)
            return
        self._enter_pairing()
        await self._report(SessionStatus.PAIRING, qr_image=image, qr_payload=event.payload)
        logger.info("QR code generated", session_id=self.session_id)

    async def _on_pairing_code(self, event: PairingCodePresented) -> None:
        self._enter_pairing()
        await self._report(SessionStatus.PAIRING, pairing_code=event.code)
        logger.info("Pairing code issued", session_id=self.session_id)

    async def _on_opened(self, _event: Opened) -> None:
        self._cancel_qr_timer()
        self.state = SessionStatus.CONNECTED
        self.close_reason = None
        self._attempts = 0
        await self._report(SessionStatus.CONNECTED)
        logger.info("Client ready", session_id=self.session_id)

    async def _on_closed(self, event: Closed) -> None:
        reason = event.reason
        logger.info("Client disconnected", session_id=self.session_id, reason=reason.value)
        self._pipeline.cancel_session(self.session_id)
        self._cancel_qr_timer()
        await self._detach_handle()

        if reason is CloseReason.LOGGED_OUT:
            await self._logged_out()
            return

        self._attempts += 1
        if self._attempts > self._config.max_reconnect_attempts:
            logger.warning(
                "Reconnect attempts exhausted",
                session_id=self.session_id,
                attempts=self._attempts - 1,
            )
            await self._terminate(CloseReason.RECONNECT_EXHAUSTED)
            return

        delay = self._config.backoff_delay(self._attempts)
        self.state = SessionStatus.RECONNECTING
        await self._report(SessionStatus.RECONNECTING, reason=reason)
        self._reconnect_timer = create_background_task(
            self._reconnect_after(delay, self._attempts),
            name=f"reconnect:{self.session_id}",
        )
        logger.info(
            "Reconnect scheduled",
            session_id=self.session_id,
            attempt=self._attempts,
            delay_seconds=delay,
        )

    async def _on_credentials(self, event: CredentialsUpdated) -> None:
        try:
            await self._credentials.save(self.session_id, event.blob)
        except Exception:
            logger.exception("Failed to persist credentials", session_id=self.session_id)

    async def _on_message(self, event: MessageReceived) -> None:
        await self._pipeline.process(self.session_id, event.message, self._outbox)

    async def _on_qr_expired(self, event: QrExpired) -> None:
        if event.cycle != self._qr_cycle:
            return
        logger.info("QR code expired before pairing", session_id=self.session_id)
        self._pipeline.cancel_session(self.session_id)
        await self._detach_handle()
        await self._terminate(CloseReason.QR_EXPIRED)

    # --- helpers ---

    async def _open_fresh_handle(self) -> None:
        await self._detach_handle()
        self._generation += 1
        generation = self._generation
        try:
            credential = await self._credentials.load(self.session_id)
            handle = await self._transport.open(
                self.session_id,
                credential,
                phone_number=self.phone_number if credential is None else None,
            )
        except AuthError as exc:
            logger.warning("Stored credentials rejected", session_id=self.session_id, err=str(exc))
            await self._logged_out()
            return
        except Exception as exc:
            logger.warning(
                "Connection attempt failed",
                session_id=self.session_id,
                err=str(exc),
            )
            await self._on_closed(Closed(generation, CloseReason.CONNECT_FAILED))
            return
        self._handle = handle
        self._attach(handle, generation)

    def _attach(self, handle: TransportHandle, generation: int) -> None:
        post = self._post
        handle.on("qr", lambda payload: post(QrPresented(generation, payload)))
        handle.on("pairing_code", lambda code: post(PairingCodePresented(generation, code)))
        handle.on("open", lambda: post(Opened(generation)))
        handle.on("close", lambda reason: post(Closed(generation, _coerce_reason(reason))))
        handle.on("credentials", lambda blob: post(CredentialsUpdated(generation, blob)))
        handle.on("message", lambda message: post(MessageReceived(generation, message)))

    async def _detach_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        handle.remove_all_listeners()
        try:
            await handle.close()
        except Exception as exc:
            logger.warning(
                "Error closing transport handle", session_id=self.session_id, err=str(exc)
            )

    def _live_handle(self) -> TransportHandle:
        if self.state is not SessionStatus.CONNECTED or self._handle is None or self._stopped:
            raise NotConnectedError(self.session_id)
        return self._handle

    async def _terminate(self, reason: CloseReason) -> None:
        """Move to CLOSED from inside the worker. The worker exits afterwards."""
        self._cancel_timers()
        self.state = SessionStatus.CLOSED
        self.close_reason = reason
        self._observer.lifecycle_ended(self.session_id, self)
        await self._report(SessionStatus.CLOSED, reason=reason)

    async def _logged_out(self) -> None:
        try:
            await self._credentials.invalidate(self.session_id)
        except Exception:
            logger.exception("Failed to invalidate credentials", session_id=self.session_id)
        await self._terminate(CloseReason.LOGGED_OUT)

    async def _report(self, status: SessionStatus, **fields: Any) -> None:
        await self._observer.set_status(self.session_id, status, lifecycle=self, **fields)

    def _enter_pairing(self) -> None:
        # Only the first QR/code of a pairing attempt starts the validity window
        if self.state is not SessionStatus.PAIRING:
            self._qr_cycle += 1
            self._arm_qr_timer(self._qr_cycle)
        self.state = SessionStatus.PAIRING

    def _arm_qr_timer(self, cycle: int) -> None:
        self._cancel_qr_timer()
        self._qr_timer = create_background_task(
            self._qr_timeout(cycle), name=f"qr-timeout:{self.session_id}"
        )

    async def _qr_timeout(self, cycle: int) -> None:
        await asyncio.sleep(self._config.qr_timeout_seconds)
        self._post(QrExpired(cycle))

    async def _reconnect_after(self, delay: float, attempt: int) -> None:
        await asyncio.sleep(delay)
        self._post(ReconnectDue(attempt))

    def _cancel_qr_timer(self) -> None:
        if self._qr_timer is not None and self._qr_timer is not asyncio.current_task():
            self._qr_timer.cancel()
        self._qr_timer = None

    def _cancel_timers(self) -> None:
        self._cancel_qr_timer()
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
