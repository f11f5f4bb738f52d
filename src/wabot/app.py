"""Service wiring: storage, settings, transport, registry, signal handling.

Startup runs in three phases (see :meth:`WabotApp.run`):
1. Core initialization (logging level, database, bot settings)
2. Registry setup (transport, credential store, pipeline)
3. Session restore, then wait for a shutdown signal
"""

from __future__ import annotations

import asyncio
import os
import signal
import threading

from wabot.config import get_settings
from wabot.logger import configure as configure_logging
from wabot.logger import logger
from wabot.registry import SessionRegistry
from wabot.settings_broadcaster import SettingsBroadcaster
from wabot.state import SqliteCredentialStore, close_database, init_database
from wabot.transport.base import Transport

_SHUTDOWN_WATCHDOG_SECONDS = 12


class WabotApp:
    def __init__(self, transport: Transport | None = None) -> None:
        self._transport = transport
        self.settings = SettingsBroadcaster()
        self.registry: SessionRegistry | None = None
        self._shutdown = asyncio.Event()
        self._shutting_down = False

    async def start(self) -> SessionRegistry:
        """Phases 1 and 2. Returns the ready (but empty) registry."""
        s = get_settings()
        configure_logging(s.logging.level, s.logging.format)

        await init_database()
        logger.info("Database initialized", path=str(s.db_path))

        settings = await self.settings.load()
        logger.info(
            "Bot settings loaded",
            auto_reply=settings.auto_reply.enabled,
            auto_read=settings.auto_read,
            templates=len(settings.message_templates),
        )

        transport = self._transport
        if transport is None:
            from wabot.transport.neonize import NeonizeTransport

            transport = NeonizeTransport(s.auth_dir)

        self.registry = SessionRegistry(
            transport=transport,
            credentials=SqliteCredentialStore(),
            settings=self.settings,
            config=s.lifecycle,
        )
        return self.registry

    async def stop(self) -> None:
        if self.registry is not None:
            await self.registry.stop_all()
        await close_database()
        logger.info("Shutdown complete")

    def request_shutdown(self, sig_name: str) -> None:
        """Signal handler. A second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)

        watchdog = threading.Timer(_SHUTDOWN_WATCHDOG_SECONDS, lambda: os._exit(1))
        watchdog.daemon = True
        watchdog.start()
        self._shutdown.set()

    async def run(self) -> None:
        registry = await self.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self.request_shutdown(s.name))

        try:
            restored = await registry.restore_sessions()
            logger.info("wabot running", sessions=len(registry.list_sessions()), live=len(restored))
            await self._shutdown.wait()
        finally:
            await self.stop()
