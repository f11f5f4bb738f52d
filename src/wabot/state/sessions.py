"""Session records (one row per WhatsApp number)."""

from __future__ import annotations

import aiosqlite

from wabot.state.connection import _get_db, atomic_write
from wabot.types import CloseReason, SessionRecord, SessionStats, SessionStatus


async def upsert_session(record: SessionRecord) -> None:
    """Insert or fully overwrite the row for *record*."""
    db = _get_db()
    await db.execute(
        """
        INSERT OR REPLACE INTO sessions
            (id, name, phone_number, status, close_reason, received, sent, errors,
             last_active, auto_reconnect, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            record.id,
            record.name,
            record.phone_number,
            record.status.persisted,
            record.close_reason.value if record.close_reason else None,
            record.stats.received,
            record.stats.sent,
            record.stats.errors,
            record.last_active,
            1 if record.auto_reconnect else 0,
            record.created_at,
        ),
    )
    await db.commit()


async def get_session(session_id: str) -> SessionRecord | None:
    db = _get_db()
    cursor = await db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,))
    row = await cursor.fetchone()
    return _row_to_record(row) if row else None


async def get_all_sessions() -> list[SessionRecord]:
    db = _get_db()
    cursor = await db.execute("SELECT * FROM sessions ORDER BY created_at")
    rows = await cursor.fetchall()
    return [_row_to_record(row) for row in rows]


async def delete_session(session_id: str) -> None:
    db = _get_db()
    await db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
    await db.commit()


async def purge_session(session_id: str) -> None:
    """Delete the session row and its stored credentials together."""
    async with atomic_write() as db:
        await db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        await db.execute("DELETE FROM credentials WHERE session_id = ?", (session_id,))


def _row_to_record(row: aiosqlite.Row) -> SessionRecord:
    reason = row["close_reason"]
    return SessionRecord(
        id=row["id"],
        name=row["name"],
        phone_number=row["phone_number"],
        status=SessionStatus.from_persisted(row["status"]),
        close_reason=CloseReason(reason) if reason else None,
        stats=SessionStats(
            received=row["received"],
            sent=row["sent"],
            errors=row["errors"],
        ),
        last_active=row["last_active"],
        auto_reconnect=bool(row["auto_reconnect"]),
        created_at=row["created_at"],
    )
