"""Exception hierarchy.

Caller-misuse errors (``AlreadyConnectedError``, ``NotConnectedError``,
``SessionNotFoundError``, ``InvalidPhoneNumberError``) are raised
synchronously and leave state untouched. Transport and pipeline failures
are handled inside the lifecycle and pipeline; only persistence and
validation failures reach callers of mutating operations.
"""

from __future__ import annotations


class WabotError(Exception):
    """Base class for all wabot errors."""


class SessionNotFoundError(WabotError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Unknown session: {session_id}")
        self.session_id = session_id


class AlreadyConnectedError(WabotError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} is already connected")
        self.session_id = session_id


class NotConnectedError(WabotError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} is not connected")
        self.session_id = session_id


class TransportConnectionError(WabotError):
    """Transport-level failure. Non-terminal: feeds the reconnect policy."""


class AuthError(WabotError):
    """Stored credentials were rejected or lost (logged out). Terminal; re-pair from scratch."""


class InvalidPhoneNumberError(WabotError, ValueError):
    def __init__(self, phone_number: str) -> None:
        super().__init__(
            f"Invalid phone number {phone_number!r}: use international format, e.g. +1234567890"
        )
        self.phone_number = phone_number


class PipelineError(WabotError):
    """A send or match inside the message pipeline failed."""


class PersistenceError(WabotError):
    """Writing to the store failed after a retry."""


class SettingsValidationError(WabotError, ValueError):
    """A settings patch or import was rejected. Nothing was changed."""
