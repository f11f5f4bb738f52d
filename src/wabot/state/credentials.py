"""SQLite-backed CredentialStore.

Blobs are opaque to the rest of wabot. Anything JSON-serializable is stored
as-is; ``bytes`` are wrapped as base64.
"""

from __future__ import annotations

import base64
import json
from typing import Any

from wabot.state.connection import _get_db
from wabot.types import now_iso

_BYTES_TAG = "__bytes__"


def _encode(credential: Any) -> str:
    if isinstance(credential, bytes):
        credential = {_BYTES_TAG: base64.b64encode(credential).decode("ascii")}
    return json.dumps(credential)


def _decode(raw: str) -> Any:
    value = json.loads(raw)
    if isinstance(value, dict) and set(value) == {_BYTES_TAG}:
        return base64.b64decode(value[_BYTES_TAG])
    return value


class SqliteCredentialStore:
    async def load(self, session_id: str) -> Any | None:
        db = _get_db()
        cursor = await db.execute(
            "SELECT blob FROM credentials WHERE session_id = ?", (session_id,)
        )
        row = await cursor.fetchone()
        return _decode(row["blob"]) if row else None

    async def save(self, session_id: str, credential: Any) -> None:
        db = _get_db()
        await db.execute(
            "INSERT OR REPLACE INTO credentials (session_id, blob, updated_at) VALUES (?, ?, ?)",
            (session_id, _encode(credential), now_iso()),
        )
        await db.commit()

    async def invalidate(self, session_id: str) -> None:
        db = _get_db()
        await db.execute("DELETE FROM credentials WHERE session_id = ?", (session_id,))
        await db.commit()
