"""Shared utility functions."""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from wabot.errors import PersistenceError
from wabot.logger import logger

PERSIST_RETRY_DELAY = 0.05  # seconds between the first try and the retry


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them.

    Used for fire-and-forget work (mark-as-read receipts, timers) where we
    don't await the result but still want failures to appear in logs.
    """
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Callback attached to background tasks: logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # logger.exception() won't work here: we're in a done-callback,
        # not an except handler.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )


async def persist_with_retry(
    fn: Callable[..., Awaitable[None]],
    *args: Any,
    what: str,
) -> None:
    """Run a store write, retrying once. Raises PersistenceError on the second failure."""
    try:
        await fn(*args)
        return
    except (sqlite3.Error, OSError, RuntimeError) as exc:
        logger.warning("Persist failed, retrying", what=what, err=str(exc))
    await asyncio.sleep(PERSIST_RETRY_DELAY)
    try:
        await fn(*args)
    except (sqlite3.Error, OSError, RuntimeError) as exc:
        logger.error("Persist failed after retry", what=what, err=str(exc))
        raise PersistenceError(f"Could not persist {what}: {exc}") from exc
