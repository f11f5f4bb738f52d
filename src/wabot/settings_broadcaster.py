"""Holds the live BotSettings snapshot and publishes updates.

Every session's pipeline reads the same snapshot. Updates build a new
frozen ``BotSettings``, persist it, then swap the reference and notify
subscribers, so readers see either the old or the new settings, never a
half-applied mix.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from wabot.bot_settings import BotSettings, merge_patch, parse_settings
from wabot.errors import SettingsValidationError
from wabot.logger import logger
from wabot.state import load_bot_settings, save_bot_settings
from wabot.types import now_iso
from wabot.utils import persist_with_retry

type SettingsListener = Callable[[BotSettings], None]
type SaveFn = Callable[[dict[str, Any]], Awaitable[None]]


class SettingsBroadcaster:
    def __init__(
        self,
        initial: BotSettings | None = None,
        *,
        save: SaveFn = save_bot_settings,
    ) -> None:
        self._current = initial or BotSettings()
        self._save = save
        self._lock = asyncio.Lock()  # serializes writers; readers never wait
        self._listeners: list[SettingsListener] = []

    @property
    def current(self) -> BotSettings:
        return self._current

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        """Call *listener* with every new snapshot. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    async def load(self) -> BotSettings:
        """Load persisted settings at startup, seeding defaults when absent."""
        document = await load_bot_settings()
        if document is None:
            await persist_with_retry(self._save, self._current.to_document(), what="bot settings")
            logger.info("Bot settings initialized with defaults")
            return self._current
        try:
            loaded = parse_settings(document)
        except SettingsValidationError as exc:
            logger.warning("Stored bot settings invalid, using defaults", err=str(exc))
            return self._current
        self._swap(loaded)
        return loaded

    async def update_settings(self, patch: Mapping[str, Any]) -> BotSettings:
        """Merge *patch* over the current settings, persist, and publish.

        Raises SettingsValidationError (nothing changed) or PersistenceError
        (after one retry; in-memory settings unchanged).
        """
        async with self._lock:
            merged = merge_patch(self._current, patch)
            merged = merged.model_copy(update={"updated_at": now_iso()})
            await self._commit(merged)
        logger.info("Settings updated", changed=sorted(patch))
        return merged

    async def reset_settings(self) -> BotSettings:
        async with self._lock:
            defaults = BotSettings(updated_at=now_iso())
            await self._commit(defaults)
        logger.info("Settings reset to defaults")
        return defaults

    def export_settings(self) -> dict[str, Any]:
        return self._current.to_document()

    async def import_settings(self, document: Mapping[str, Any]) -> BotSettings:
        """Replace all settings with *document* (validated as a whole)."""
        async with self._lock:
            imported = parse_settings(document).model_copy(update={"updated_at": now_iso()})
            await self._commit(imported)
        logger.info("Settings imported")
        return imported

    async def _commit(self, new: BotSettings) -> None:
        await persist_with_retry(self._save, new.to_document(), what="bot settings")
        self._swap(new)

    def _swap(self, new: BotSettings) -> None:
        self._current = new
        for listener in list(self._listeners):
            try:
                listener(new)
            except Exception as exc:
                logger.warning("Settings listener error", err=str(exc))
