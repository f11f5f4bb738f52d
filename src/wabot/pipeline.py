"""Inbound message pipeline: auto-read, working hours, templates, delayed replies.

The lifecycle calls :meth:`MessagePipeline.process` once per inbound message,
in arrival order, from the session's worker. Replies are not sent inline:
they become ``PendingReply`` objects scheduled after a random delay, and are
cancelled wholesale when the session disconnects.

Nothing in here raises into the connection layer. Failures are logged and
counted in the session's ``errors`` stat.
"""

from __future__ import annotations

import asyncio
import random
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

from wabot.bot_settings import BotSettings
from wabot.errors import PipelineError
from wabot.logger import logger
from wabot.settings_broadcaster import SettingsBroadcaster
from wabot.types import InboundMessage
from wabot.utils import create_background_task


class ReplySender(Protocol):
    """Outbound side of one session, bound by the lifecycle to its live handle."""

    async def send(self, target: str, content: str) -> None: ...

    async def mark_read(self, message: InboundMessage) -> None: ...


class StatsRecorder(Protocol):
    async def record_stats(
        self, session_id: str, *, received: int = 0, sent: int = 0, errors: int = 0
    ) -> None: ...


# ---------------------------------------------------------------------------
# Pending replies
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class PendingReply:
    session_id: str
    target_address: str
    message_text: str
    delay_ms: float
    scheduled_fire_time: float  # event loop clock
    content: str | None = None  # resolved when the reply fires
    task: asyncio.Task[None] | None = field(default=None, repr=False)
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()


class ReplyScheduler:
    """Owns every PendingReply, grouped by session so a disconnect can cancel them."""

    def __init__(self) -> None:
        self._pending: defaultdict[str, set[PendingReply]] = defaultdict(set)

    def schedule(
        self,
        session_id: str,
        target: str,
        message_text: str,
        delay_ms: float,
        fire: Callable[[PendingReply], Awaitable[None]],
    ) -> PendingReply:
        loop = asyncio.get_running_loop()
        reply = PendingReply(
            session_id=session_id,
            target_address=target,
            message_text=message_text,
            delay_ms=delay_ms,
            scheduled_fire_time=loop.time() + delay_ms / 1000,
        )
        self._pending[session_id].add(reply)
        reply.task = create_background_task(
            self._run(reply, fire), name=f"reply:{session_id}"
        )
        return reply

    async def _run(
        self, reply: PendingReply, fire: Callable[[PendingReply], Awaitable[None]]
    ) -> None:
        try:
            await asyncio.sleep(reply.delay_ms / 1000)
            if reply.cancelled:
                return
            await fire(reply)
        finally:
            self._discard(reply)

    def _discard(self, reply: PendingReply) -> None:
        pending = self._pending.get(reply.session_id)
        if pending is None:
            return
        pending.discard(reply)
        if not pending:
            del self._pending[reply.session_id]

    def cancel_session(self, session_id: str) -> int:
        """Cancel every pending reply of *session_id*. Takes effect immediately."""
        pending = self._pending.pop(session_id, set())
        for reply in pending:
            reply.cancel()
        if pending:
            logger.info("Cancelled pending replies", session_id=session_id, count=len(pending))
        return len(pending)

    def pending_count(self, session_id: str) -> int:
        return len(self._pending.get(session_id, ()))


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class MessagePipeline:
    def __init__(
        self,
        settings: SettingsBroadcaster,
        stats: StatsRecorder,
        *,
        scheduler: ReplyScheduler | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings.current
        self._stats = stats
        self._scheduler = scheduler or ReplyScheduler()
        self._rng = rng or random.Random()
        self._senders: dict[str, ReplySender] = {}
        self._receipts: defaultdict[str, set[asyncio.Task[None]]] = defaultdict(set)
        settings.subscribe(self._on_settings)

    @property
    def settings(self) -> BotSettings:
        return self._settings

    @property
    def scheduler(self) -> ReplyScheduler:
        return self._scheduler

    def _on_settings(self, new: BotSettings) -> None:
        self._settings = new

    def cancel_session(self, session_id: str) -> None:
        """Drop all outstanding work for a session (pending replies, read receipts)."""
        self._scheduler.cancel_session(session_id)
        for task in self._receipts.pop(session_id, set()):
            task.cancel()
        self._senders.pop(session_id, None)

    async def process(
        self, session_id: str, message: InboundMessage, sender: ReplySender
    ) -> None:
        """Handle one inbound message. Never raises (except on cancellation)."""
        if message.is_from_me:
            return
        settings = self._settings
        try:
            await self._stats.record_stats(session_id, received=1)

            if settings.auto_read:
                self._mark_read_later(session_id, message, sender)

            if not settings.auto_reply.enabled:
                return

            hours = settings.working_hours
            if hours.enabled and not hours.contains(message.timestamp):
                logger.debug(
                    "Outside working hours",
                    session_id=session_id,
                    chat=message.chat,
                )
                if settings.absence_message:
                    await self._send(session_id, sender, message.chat, settings.absence_message)
                return

            delay_ms = self._rng.uniform(settings.response_delay.min, settings.response_delay.max)
            self._senders[session_id] = sender
            self._scheduler.schedule(
                session_id,
                message.chat,
                message.text,
                delay_ms,
                self._fire,
            )
            logger.debug(
                "Reply scheduled",
                session_id=session_id,
                chat=message.chat,
                delay_ms=round(delay_ms),
            )
        except PipelineError as exc:
            await self._count_error(session_id, exc)
        except Exception as exc:
            logger.exception("Message pipeline failed", session_id=session_id)
            await self._count_error(session_id, exc)

    async def _fire(self, reply: PendingReply) -> None:
        settings = self._settings  # re-read: settings may have changed during the delay
        session_id = reply.session_id
        sender = self._senders.get(session_id)
        try:
            if not settings.auto_reply.enabled or sender is None:
                return
            template = settings.match_template(reply.message_text)
            if template is not None:
                reply.content = template.content
            elif settings.auto_reply.message:
                reply.content = settings.auto_reply.message
            else:
                return
            await self._send(session_id, sender, reply.target_address, reply.content)
            logger.info(
                "Auto-reply sent",
                session_id=session_id,
                chat=reply.target_address,
                template=template.id if template else None,
            )
        except PipelineError as exc:
            await self._count_error(session_id, exc)
        except Exception as exc:
            logger.exception("Delayed reply failed", session_id=session_id)
            await self._count_error(session_id, exc)

    async def _send(self, session_id: str, sender: ReplySender, target: str, content: str) -> None:
        try:
            await sender.send(target, content)
        except Exception as exc:
            raise PipelineError(f"send to {target} failed: {exc}") from exc
        await self._stats.record_stats(session_id, sent=1)

    def _mark_read_later(
        self, session_id: str, message: InboundMessage, sender: ReplySender
    ) -> None:
        receipts = self._receipts[session_id]
        task = create_background_task(
            self._mark_read(session_id, message, sender), name=f"read:{session_id}"
        )
        receipts.add(task)
        task.add_done_callback(receipts.discard)

    async def _mark_read(
        self, session_id: str, message: InboundMessage, sender: ReplySender
    ) -> None:
        try:
            await sender.mark_read(message)
        except Exception as exc:
            logger.warning(
                "Failed to mark message as read",
                session_id=session_id,
                message_id=message.id,
                err=str(exc),
            )
            await self._stats.record_stats(session_id, errors=1)

    async def _count_error(self, session_id: str, exc: BaseException) -> None:
        logger.warning("Pipeline error", session_id=session_id, err=str(exc))
        try:
            await self._stats.record_stats(session_id, errors=1)
        except Exception:
            logger.exception("Failed to record pipeline error", session_id=session_id)
