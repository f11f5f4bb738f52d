"""Keyed JSON documents (bot settings and other singletons)."""

from __future__ import annotations

import json
from typing import Any

from wabot.state.connection import _get_db

BOT_SETTINGS_KEY = "bot_settings"


async def get_document(key: str) -> dict[str, Any] | None:
    db = _get_db()
    cursor = await db.execute("SELECT value FROM kv WHERE key = ?", (key,))
    row = await cursor.fetchone()
    return json.loads(row["value"]) if row else None


async def set_document(key: str, value: dict[str, Any]) -> None:
    db = _get_db()
    await db.execute(
        "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
        (key, json.dumps(value)),
    )
    await db.commit()


async def load_bot_settings() -> dict[str, Any] | None:
    return await get_document(BOT_SETTINGS_KEY)


async def save_bot_settings(document: dict[str, Any]) -> None:
    await set_document(BOT_SETTINGS_KEY, document)
