"""
Base indexer backend interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pepecore.models import UTXO


@dataclass
class AddressTransactionsPage:
    txids: list[str]
    page: int
    total_pages: int


class IndexerBackend(ABC):
    """
    Abstract chain data source.

    The wallet runs no node; balances, UTXOs and broadcast all go through a
    remote indexing service. Amounts are integers in smallest units.
    """

    @abstractmethod
    async def get_utxos(self, address: str) -> list[UTXO]:
        """Get confirmed UTXOs for an address"""

    @abstractmethod
    async def get_address_balance(self, address: str) -> int:
        """Get balance for an address"""

    @abstractmethod
    async def get_address_transactions(
        self, address: str, page: int = 1, page_size: int = 10
    ) -> AddressTransactionsPage:
        """Get one page of transaction ids touching an address"""

    @abstractmethod
    async def get_transaction(self, txid: str) -> dict[str, Any] | None:
        """Get transaction details by txid, None if unknown"""

    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> str:
        """Broadcast a signed transaction, returns txid"""

    @abstractmethod
    async def get_price(self, currency: str = "usd") -> dict[str, Any]:
        """Get exchange rates for the coin"""

    async def close(self) -> None:
        """Release network resources"""
        return None
