"""Database connection and write utilities.

Single module-level connection, initialized by init_database().
Schema definition and migrations live in :mod:`schema`.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from wabot.config import get_settings
from wabot.state.schema import create_schema

_db: aiosqlite.Connection | None = None

# One aiosqlite connection is shared by every session worker. sqlite3 opens
# implicit transactions per connection, not per coroutine, so any write that
# spans several statements must hold this lock (see atomic_write()).
_write_lock: asyncio.Lock | None = None


@asynccontextmanager
async def atomic_write() -> AsyncIterator[aiosqlite.Connection]:
    """Context manager for multi-statement DB writes.

    Acquires the write lock, yields the connection, and commits on
    success or rolls back on failure.
    """
    global _write_lock
    if _write_lock is None:
        _write_lock = asyncio.Lock()

    db = _get_db()
    async with _write_lock:
        try:
            yield db
            await db.commit()
        except Exception:
            await db.rollback()
            raise


def _get_db() -> aiosqlite.Connection:
    if _db is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _db


async def init_database(db_path: Path | None = None) -> None:
    """Initialize the database connection and schema."""
    global _db
    path = db_path or get_settings().db_path
    path.parent.mkdir(parents=True, exist_ok=True)

    _db = await aiosqlite.connect(str(path))
    _db.row_factory = aiosqlite.Row
    await create_schema(_db)


async def close_database() -> None:
    global _db, _write_lock
    if _db is not None:
        await _db.close()
    _db = None
    _write_lock = None


async def _init_test_database() -> None:
    """Create an in-memory database for tests.

    Uses ``stop()`` + thread join instead of ``await close()`` because
    pytest-asyncio creates a new event loop per test function. The previous
    connection's worker thread targets its original (now-dead) loop, so
    ``await close()`` would hang.
    """
    global _db, _write_lock
    if _db is not None:
        _db.stop()
        if _db._thread is not None and _db._thread.is_alive():
            _db._thread.join(timeout=2)
    _write_lock = None
    _db = await aiosqlite.connect(":memory:")
    _db.row_factory = aiosqlite.Row
    await create_schema(_db)
