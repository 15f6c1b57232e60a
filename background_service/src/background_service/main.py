"""
Wiring for the background context.

The host (a browser runtime, or a test) supplies the popup launcher and tab
messenger; everything else is built from Settings.
"""

from __future__ import annotations

import sys

from loguru import logger
from pepecore.protocol import PopupLauncher, Result, Sender, TabMessenger
from pepewallet.backends.mypepe import MyPepeBackend

from background_service.config import Settings, get_settings
from background_service.dispatcher import Dispatcher, SendResponse
from background_service.session import Session
from background_service.storage import JsonFileStore, MemoryStore


def setup_logging(level: str) -> None:
    logger.remove()

    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>",
        level=level.upper(),
        colorize=True,
    )


class BackgroundService:
    def __init__(
        self,
        popup: PopupLauncher,
        tabs: TabMessenger,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()

        self.local = JsonFileStore(self.settings.local_store_path)
        # Session data lives only as long as this process
        self.session_store = MemoryStore()
        self.backend = MyPepeBackend(
            base_url=self.settings.indexer_url, timeout=self.settings.indexer_timeout
        )
        self.dispatcher = Dispatcher(
            Session(self.local, self.session_store),
            self.backend,
            popup,
            tabs,
            self.settings,
        )

    def start(self) -> None:
        setup_logging(self.settings.log_level)
        logger.info("Starting wallet background service")
        logger.info(f"Network: {self.settings.network}")
        logger.info(f"Indexer: {self.settings.indexer_url}")
        logger.info(f"Local store: {self.local.path}")

    async def handle(
        self, envelope: object, sender: Sender, send_response: SendResponse
    ) -> Result:
        return await self.dispatcher.handle(envelope, sender, send_response)

    async def stop(self) -> None:
        await self.backend.close()
        logger.info("Wallet background service stopped")
