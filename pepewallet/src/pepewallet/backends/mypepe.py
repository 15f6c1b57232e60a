"""
HTTP backend for the MyPepe indexing service.

Endpoints used:
- GET  /utxo/{address}?confirmed=true
- GET  /address/{address}[?page=&pageSize=]
- GET  /tx/{txid}
- GET  /tickers/?currency=
- POST /wallet/rpc  (JSON-RPC sendrawtransaction)
"""

from __future__ import annotations

import time
from typing import Any

import httpx
from loguru import logger
from pepecore.models import UTXO
from pydantic import ValidationError

from pepewallet.backends.base import AddressTransactionsPage, IndexerBackend

DEFAULT_INDEXER_URL = "https://mypepecoin.org/api/v2"

DEFAULT_TIMEOUT = 10.0


class IndexerError(Exception):
    """The indexing service answered with something unusable."""


class MyPepeBackend(IndexerBackend):
    def __init__(
        self,
        base_url: str = DEFAULT_INDEXER_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        try:
            response = await self.client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            logger.error(f"Indexer request timed out: GET {path} - {e}")
            raise
        except httpx.HTTPError as e:
            logger.error(f"Indexer request failed: GET {path} - {e}")
            raise

    async def get_utxos(self, address: str) -> list[UTXO]:
        data = await self._get(f"/utxo/{address}", params={"confirmed": "true"})

        # Some deployments return a txid-keyed object instead of a list
        entries = data.values() if isinstance(data, dict) else data
        try:
            utxos = [UTXO.model_validate(entry) for entry in entries]
        except ValidationError as e:
            raise IndexerError(f"Malformed UTXO data for {address}") from e

        logger.debug(f"Fetched {len(utxos)} UTXOs for {address}")
        return utxos

    async def get_address_balance(self, address: str) -> int:
        data = await self._get(f"/address/{address}")
        try:
            return int(data["balance"])
        except (KeyError, TypeError, ValueError) as e:
            raise IndexerError(f"Malformed balance for {address}") from e

    async def get_address_transactions(
        self, address: str, page: int = 1, page_size: int = 10
    ) -> AddressTransactionsPage:
        data = await self._get(
            f"/address/{address}", params={"page": page, "pageSize": page_size}
        )
        return AddressTransactionsPage(
            txids=list(data.get("txids") or []),
            page=int(data.get("page", page)),
            total_pages=int(data.get("totalPages", 0)),
        )

    async def get_transaction(self, txid: str) -> dict[str, Any] | None:
        try:
            return await self._get(f"/tx/{txid}")
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise

    async def broadcast_transaction(self, tx_hex: str) -> str:
        payload = {
            "jsonrpc": "2.0",
            "id": f"send_{int(time.time() * 1000)}",
            "method": "sendrawtransaction",
            "params": [tx_hex],
        }

        try:
            response = await self.client.post("/wallet/rpc", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Broadcast failed: {e}")
            raise

        if data.get("error"):
            error_info = data["error"]
            message = (
                error_info.get("message", str(error_info))
                if isinstance(error_info, dict)
                else str(error_info)
            )
            raise IndexerError(f"Broadcast rejected: {message}")

        txid = data.get("result")
        if not txid:
            raise IndexerError("Broadcast returned no txid")

        logger.info(f"Broadcast transaction {txid}")
        return txid

    async def get_price(self, currency: str = "usd") -> dict[str, Any]:
        data = await self._get("/tickers/", params={"currency": currency})
        return data.get("rates", {})

    async def close(self) -> None:
        await self.client.aclose()
