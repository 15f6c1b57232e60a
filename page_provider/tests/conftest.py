"""
Test configuration for page_provider tests.
"""

from __future__ import annotations

from typing import Any

import pytest
from pepecore.models import UTXO
from pepecore.protocol import MessageType, PopupLauncher
from pepewallet.backends.base import AddressTransactionsPage, IndexerBackend

from background_service.config import Settings
from background_service.dispatcher import Dispatcher
from background_service.session import Session
from background_service.storage import MemoryStore
from page_provider.channel import WindowChannel
from page_provider.relay import ContentRelay, RelayTabMessenger
from page_provider.request_queue import PepeProvider, ProviderConfig

DAPP_ORIGIN = "https://dapp.example"
DAPP_TAB = 7


class RecordingPopup(PopupLauncher):
    def __init__(self) -> None:
        self.calls: list[tuple[MessageType, dict[str, Any]]] = []

    async def open_popup(
        self, message_type: MessageType, origin: str, tab_id: int, params: dict[str, Any]
    ) -> bool:
        self.calls.append((message_type, params))
        return True


class StaticBackend(IndexerBackend):
    """Answers every address with the same balance and no history."""

    def __init__(self, balance: int = 0):
        self.balance = balance

    async def get_utxos(self, address: str) -> list[UTXO]:
        return []

    async def get_address_balance(self, address: str) -> int:
        return self.balance

    async def get_address_transactions(
        self, address: str, page: int = 1, page_size: int = 10
    ) -> AddressTransactionsPage:
        return AddressTransactionsPage([], page, 0)

    async def get_transaction(self, txid: str) -> dict[str, Any] | None:
        return {"txid": txid, "confirmations": 1}

    async def broadcast_transaction(self, tx_hex: str) -> str:
        return "f" * 64

    async def get_price(self, currency: str = "usd") -> dict[str, Any]:
        return {currency: 0.0}


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def channel() -> WindowChannel:
    return WindowChannel(DAPP_ORIGIN)


@pytest.fixture
def provider(channel: WindowChannel) -> PepeProvider:
    return PepeProvider(channel, ProviderConfig(origin=DAPP_ORIGIN, settle_delay=0.01))


@pytest.fixture
def popup() -> RecordingPopup:
    return RecordingPopup()


@pytest.fixture
def dispatcher(popup: RecordingPopup) -> Dispatcher:
    tabs = RelayTabMessenger()
    session = Session(MemoryStore(), MemoryStore())
    return Dispatcher(session, StaticBackend(balance=42), popup, tabs, Settings(_env_file=None))


@pytest.fixture
def relay(channel: WindowChannel, dispatcher: Dispatcher) -> ContentRelay:
    relay = ContentRelay(channel, dispatcher.dispatch, tab_id=DAPP_TAB)
    relay.start()
    dispatcher.tabs.register(relay)
    return relay
