"""
Test configuration for background_service tests.
"""

from __future__ import annotations

from typing import Any

import pytest
from pepecore.models import UTXO
from pepecore.protocol import MessageType, PopupLauncher, Sender, TabMessenger
from pepewallet.backends.base import AddressTransactionsPage, IndexerBackend

from background_service.config import Settings
from background_service.dispatcher import Dispatcher
from background_service.session import Session
from background_service.storage import MemoryStore

DAPP_ORIGIN = "https://dapp.example"
DAPP_TAB = 7


class FakePopup(PopupLauncher):
    def __init__(self, opens: bool = True):
        self.opens = opens
        self.calls: list[tuple[MessageType, str, int, dict[str, Any]]] = []

    async def open_popup(
        self, message_type: MessageType, origin: str, tab_id: int, params: dict[str, Any]
    ) -> bool:
        self.calls.append((message_type, origin, tab_id, params))
        return self.opens


class FakeTabs(TabMessenger):
    def __init__(self) -> None:
        self.sent: list[tuple[int, dict[str, Any]]] = []

    async def send_to_tab(self, tab_id: int, message: dict[str, Any]) -> None:
        self.sent.append((tab_id, message))


class FakeBackend(IndexerBackend):
    def __init__(self) -> None:
        self.utxos: dict[str, list[UTXO]] = {}
        self.balances: dict[str, int] = {}
        self.history: dict[str, list[str]] = {}
        self.transactions: dict[str, dict[str, Any]] = {}
        self.broadcasts: list[str] = []
        self.error: Exception | None = None

    def _check(self) -> None:
        if self.error is not None:
            raise self.error

    async def get_utxos(self, address: str) -> list[UTXO]:
        self._check()
        return list(self.utxos.get(address, []))

    async def get_address_balance(self, address: str) -> int:
        self._check()
        return self.balances.get(address, 0)

    async def get_address_transactions(
        self, address: str, page: int = 1, page_size: int = 10
    ) -> AddressTransactionsPage:
        self._check()
        txids = self.history.get(address, [])
        total_pages = (len(txids) + page_size - 1) // page_size
        start = (page - 1) * page_size
        return AddressTransactionsPage(txids[start : start + page_size], page, total_pages)

    async def get_transaction(self, txid: str) -> dict[str, Any] | None:
        self._check()
        return self.transactions.get(txid)

    async def broadcast_transaction(self, tx_hex: str) -> str:
        self._check()
        self.broadcasts.append(tx_hex)
        return "f" * 64

    async def get_price(self, currency: str = "usd") -> dict[str, Any]:
        self._check()
        return {currency: 0.0001}


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def settings() -> Settings:
    # 15000 fee for one input, 24000 for two
    return Settings(_env_file=None, fee_rate=50, output_size=55)


@pytest.fixture
def local_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def session_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def session(local_store: MemoryStore, session_store: MemoryStore) -> Session:
    return Session(local_store, session_store)


@pytest.fixture
def popup() -> FakePopup:
    return FakePopup()


@pytest.fixture
def tabs() -> FakeTabs:
    return FakeTabs()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def dispatcher(
    session: Session,
    backend: FakeBackend,
    popup: FakePopup,
    tabs: FakeTabs,
    settings: Settings,
) -> Dispatcher:
    return Dispatcher(session, backend, popup, tabs, settings)


@pytest.fixture
def ui() -> Sender:
    """Sender for the extension's own pages."""
    return Sender()


@pytest.fixture
def dapp() -> Sender:
    return Sender(origin=DAPP_ORIGIN, tab_id=DAPP_TAB)
