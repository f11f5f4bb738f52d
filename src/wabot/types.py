"""Data models for wabot."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable


class SessionStatus(StrEnum):
    IDLE = "idle"
    PAIRING = "pairing"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"

    @property
    def persisted(self) -> str:
        """Status as written to the session record."""
        return _PERSISTED_STATUS[self]

    @classmethod
    def from_persisted(cls, value: str) -> SessionStatus:
        # A stored "connected"/"pairing" is stale after a restart: nothing is live yet.
        if value == "closed":
            return cls.CLOSED
        return cls.IDLE


_PERSISTED_STATUS: dict[SessionStatus, str] = {
    SessionStatus.IDLE: "disconnected",
    SessionStatus.PAIRING: "pairing",
    SessionStatus.CONNECTED: "connected",
    SessionStatus.RECONNECTING: "disconnected",
    SessionStatus.CLOSED: "closed",
}


class CloseReason(StrEnum):
    """Why a transport connection (or a whole session) ended."""

    CONNECTION_LOST = "connection_lost"
    CONNECT_FAILED = "connect_failed"
    LOGGED_OUT = "logged_out"
    QR_EXPIRED = "qr_expired"
    RECONNECT_EXHAUSTED = "reconnect_exhausted"
    STOPPED = "stopped"


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class SessionStats:
    received: int = 0
    sent: int = 0
    errors: int = 0


@dataclass
class SessionRecord:
    """One WhatsApp number managed by the registry.

    ``credential_ref`` is the key into the CredentialStore; the registry
    never looks inside the credential itself.
    """

    id: str
    status: SessionStatus = SessionStatus.IDLE
    name: str = ""
    phone_number: str | None = None
    credential_ref: str = ""
    qr_image: str | None = None  # data URL, only while PAIRING
    qr_payload: str | None = None  # raw pairing string behind qr_image
    pairing_code: str | None = None  # phone-link code, only while PAIRING
    last_active: str | None = None
    stats: SessionStats = field(default_factory=SessionStats)
    close_reason: CloseReason | None = None
    auto_reconnect: bool = True
    created_at: str = field(default_factory=now_iso)

    def __post_init__(self) -> None:
        if not self.credential_ref:
            self.credential_ref = self.id
        if not self.name:
            self.name = self.id

    def snapshot(self) -> SessionRecord:
        return copy.deepcopy(self)

    def to_record(self) -> dict[str, Any]:
        """The persisted/external shape of a session."""
        return {
            "id": self.id,
            "phoneNumber": self.phone_number,
            "name": self.name,
            "status": self.status.persisted,
            "stats": {
                "received": self.stats.received,
                "sent": self.stats.sent,
                "errors": self.stats.errors,
            },
            "lastActive": self.last_active,
        }


@dataclass(frozen=True)
class InboundMessage:
    id: str
    chat: str  # reply target address
    sender: str
    text: str
    timestamp: datetime  # timezone-aware
    is_from_me: bool = False
    push_name: str = ""


# ---------------------------------------------------------------------------
# Credential store protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class CredentialStore(Protocol):
    """Persists per-session pairing credentials. Blobs are opaque."""

    async def load(self, session_id: str) -> Any | None: ...

    async def save(self, session_id: str, credential: Any) -> None: ...

    async def invalidate(self, session_id: str) -> None: ...
