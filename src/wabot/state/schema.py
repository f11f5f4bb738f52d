"""Database schema definition and migrations.

``_SCHEMA`` holds the current table definitions. Older databases whose
``sessions`` table predates a column get it through ``_ensure_columns``.
"""

from __future__ import annotations

import aiosqlite

from wabot.logger import logger

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    phone_number TEXT,
    status TEXT NOT NULL DEFAULT 'disconnected',
    close_reason TEXT,
    received INTEGER NOT NULL DEFAULT 0,
    sent INTEGER NOT NULL DEFAULT 0,
    errors INTEGER NOT NULL DEFAULT 0,
    last_active TEXT,
    auto_reconnect INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT ''
);
CREATE TABLE IF NOT EXISTS credentials (
    session_id TEXT PRIMARY KEY,
    blob TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

# Columns that joined ``sessions`` after its first layout. Databases created
# before then get them added in place; new ones already have them from _SCHEMA.
_SESSION_COLUMN_MIGRATIONS: tuple[tuple[str, str], ...] = (
    ("name", "TEXT NOT NULL DEFAULT ''"),
    ("close_reason", "TEXT"),
    ("auto_reconnect", "INTEGER NOT NULL DEFAULT 1"),
    ("created_at", "TEXT NOT NULL DEFAULT ''"),
)


async def _ensure_columns(database: aiosqlite.Connection) -> None:
    cursor = await database.execute("PRAGMA table_info(sessions)")
    existing = {row[1] for row in await cursor.fetchall()}
    for column, ddl in _SESSION_COLUMN_MIGRATIONS:
        if column not in existing:
            await database.execute(f"ALTER TABLE sessions ADD COLUMN {column} {ddl}")
            logger.info("Added missing column", table="sessions", column=column)
    await database.commit()


async def create_schema(database: aiosqlite.Connection) -> None:
    """Apply schema DDL and run migrations."""
    await database.executescript(_SCHEMA)
    await _ensure_columns(database)
