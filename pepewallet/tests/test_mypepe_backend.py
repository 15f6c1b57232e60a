"""
Tests for the MyPepe indexer backend using a mock HTTP transport.
"""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from pepewallet.backends.mypepe import IndexerError, MyPepeBackend

TXID = "ab" * 32


def make_backend(handler: Callable[[httpx.Request], httpx.Response]) -> MyPepeBackend:
    return MyPepeBackend(
        base_url="https://indexer.test/api/v2/", transport=httpx.MockTransport(handler)
    )


class TestMyPepeBackend:
    """Tests for MyPepeBackend requests and response parsing."""

    @pytest.mark.asyncio
    async def test_get_utxos(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json=[
                    {"txid": TXID, "vout": 0, "value": "150000", "confirmations": 3},
                    {"txid": TXID, "vout": 1, "value": "42"},
                ],
            )

        backend = make_backend(handler)
        try:
            utxos = await backend.get_utxos("Paddr")
        finally:
            await backend.close()

        assert [u.value for u in utxos] == [150000, 42]
        assert seen[0].url.path == "/api/v2/utxo/Paddr"
        assert seen[0].url.params["confirmed"] == "true"

    @pytest.mark.asyncio
    async def test_get_utxos_keyed_object(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"x": {"txid": TXID, "vout": 2, "value": "7"}})

        backend = make_backend(handler)
        try:
            utxos = await backend.get_utxos("Paddr")
        finally:
            await backend.close()

        assert utxos[0].vout == 2

    @pytest.mark.asyncio
    async def test_malformed_utxos(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[{"txid": "short", "vout": 0, "value": "1"}])

        backend = make_backend(handler)
        try:
            with pytest.raises(IndexerError):
                await backend.get_utxos("Paddr")
        finally:
            await backend.close()

    @pytest.mark.asyncio
    async def test_balance(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"address": "Paddr", "balance": "123456789"})

        backend = make_backend(handler)
        try:
            assert await backend.get_address_balance("Paddr") == 123456789
        finally:
            await backend.close()

    @pytest.mark.asyncio
    async def test_balance_missing(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"address": "Paddr"})

        backend = make_backend(handler)
        try:
            with pytest.raises(IndexerError):
                await backend.get_address_balance("Paddr")
        finally:
            await backend.close()

    @pytest.mark.asyncio
    async def test_address_transactions(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["page"] == "2"
            assert request.url.params["pageSize"] == "10"
            return httpx.Response(200, json={"txids": [TXID], "page": 2, "totalPages": 5})

        backend = make_backend(handler)
        try:
            page = await backend.get_address_transactions("Paddr", page=2, page_size=10)
        finally:
            await backend.close()

        assert page.txids == [TXID]
        assert page.page == 2
        assert page.total_pages == 5

    @pytest.mark.asyncio
    async def test_transaction_not_found(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"error": "not found"})

        backend = make_backend(handler)
        try:
            assert await backend.get_transaction(TXID) is None
        finally:
            await backend.close()

    @pytest.mark.asyncio
    async def test_server_error_propagates(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        backend = make_backend(handler)
        try:
            with pytest.raises(httpx.HTTPStatusError):
                await backend.get_transaction(TXID)
        finally:
            await backend.close()

    @pytest.mark.asyncio
    async def test_broadcast(self) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/api/v2/wallet/rpc"
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"result": TXID, "error": None})

        backend = make_backend(handler)
        try:
            assert await backend.broadcast_transaction("0100") == TXID
        finally:
            await backend.close()

        assert bodies[0]["method"] == "sendrawtransaction"
        assert bodies[0]["params"] == ["0100"]
        assert bodies[0]["jsonrpc"] == "2.0"

    @pytest.mark.asyncio
    async def test_broadcast_rejected(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"result": None, "error": {"code": -26, "message": "min relay fee"}}
            )

        backend = make_backend(handler)
        try:
            with pytest.raises(IndexerError, match="min relay fee"):
                await backend.broadcast_transaction("0100")
        finally:
            await backend.close()

    @pytest.mark.asyncio
    async def test_price(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["currency"] == "usd"
            return httpx.Response(200, json={"ts": 1, "rates": {"usd": 0.0001}})

        backend = make_backend(handler)
        try:
            assert await backend.get_price("usd") == {"usd": 0.0001}
        finally:
            await backend.close()
