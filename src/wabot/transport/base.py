"""Transport protocol: the capability that actually talks to WhatsApp.

A ``Transport`` opens one ``TransportHandle`` per connection attempt. The
handle emits events to callbacks registered with :meth:`on`:

    ``"qr"``           ``callback(payload: str)``   QR pairing string to render
    ``"pairing_code"`` ``callback(code: str)``      phone-link code to type in
    ``"open"``         ``callback()``               connection is usable
    ``"close"``        ``callback(reason: CloseReason)``
    ``"message"``      ``callback(message: InboundMessage)``
    ``"credentials"``  ``callback(blob)``           credentials to persist

Callbacks are plain functions and must not block; the lifecycle only
enqueues them.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from wabot.logger import logger
from wabot.types import InboundMessage

EVENT_NAMES = frozenset({"qr", "pairing_code", "open", "close", "message", "credentials"})

type Listener = Callable[..., None]


@runtime_checkable
class TransportHandle(Protocol):
    def on(self, event: str, callback: Listener) -> None: ...

    def remove_all_listeners(self) -> None: ...

    def listener_count(self) -> int: ...

    async def send(self, target: str, content: str) -> None: ...

    async def mark_read(self, message: InboundMessage) -> None: ...

    async def close(self) -> None: ...


@runtime_checkable
class Transport(Protocol):
    async def open(
        self, session_id: str, credential: Any | None, *, phone_number: str | None = None
    ) -> TransportHandle:
        """Open a fresh connection.

        With no *credential* the handle pairs by QR, or by pairing code sent
        to *phone_number* when one is given. Raises AuthError when a stored
        credential can no longer be used and TransportConnectionError on any
        other failure.
        """
        ...


class ListenerSet:
    """Event-name to callbacks map shared by transport handle implementations."""

    def __init__(self) -> None:
        self._listeners: defaultdict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, callback: Listener) -> None:
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown transport event: {event}")
        self._listeners[event].append(callback)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    def listener_count(self) -> int:
        return sum(len(cbs) for cbs in self._listeners.values())

    def emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(*args)
            except Exception:
                logger.exception("Transport listener failed", event=event)
