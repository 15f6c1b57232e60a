"""
Tests for the content relay, end to end with the background dispatcher.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest
from pepecore.protocol import MessageType, Result, Sender

from background_service.dispatcher import CONNECTION_REJECTION, Dispatcher
from page_provider.channel import MessageEvent, WindowChannel
from page_provider.relay import ContentRelay, RelayTabMessenger
from page_provider.request_queue import PepeProvider, ProviderError

UI = Sender()


async def eventually(predicate: Callable[[], Any]) -> None:
    for _ in range(100):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


async def onboard(dispatcher: Dispatcher, mnemonic: str) -> str:
    result = await dispatcher.dispatch(
        {
            "message": MessageType.CREATE_WALLET.value,
            "data": {"password": "pw", "seedPhrase": mnemonic},
        },
        UI,
    )
    return result.payload["wallet"]["addresses"][0]


async def answer_popup(dispatcher: Dispatcher, popup: Any, data: dict[str, Any]) -> Result:
    """Answer the latest approval popup as the user would."""
    await eventually(lambda: popup.calls)
    request_type, params = popup.calls[-1]
    response_type = {
        MessageType.CLIENT_REQUEST_CONNECTION: MessageType.CLIENT_REQUEST_CONNECTION_RESPONSE,
        MessageType.CLIENT_REQUEST_SIGNED_MESSAGE: (
            MessageType.CLIENT_REQUEST_SIGNED_MESSAGE_RESPONSE
        ),
    }[request_type]
    return await dispatcher.dispatch(
        {
            "message": response_type.value,
            "data": {"requestId": params["requestId"], **data},
        },
        UI,
    )


async def connect(
    dispatcher: Dispatcher, popup: Any, provider: PepeProvider, address: str
) -> dict[str, Any]:
    future = provider.connect()
    await answer_popup(
        dispatcher,
        popup,
        {"approved": True, "address": address, "selectedAddressIndex": 0, "balance": 0},
    )
    return await asyncio.wait_for(future, 1)


class TestPopupRequests:
    """Tests for popup-backed requests through the relay."""

    @pytest.mark.asyncio
    async def test_connect(
        self,
        relay: ContentRelay,
        dispatcher: Dispatcher,
        popup: Any,
        provider: PepeProvider,
        sample_mnemonic: str,
    ) -> None:
        address = await onboard(dispatcher, sample_mnemonic)

        data = await connect(dispatcher, popup, provider, address)

        assert data["approved"] is True
        assert data["address"] == address
        assert len(data["publicKey"]) == 66

        client = await dispatcher.session.get_client(relay.origin)
        assert client.address == address
        assert client.origin_tab_id == relay.sender.tab_id

    @pytest.mark.asyncio
    async def test_connect_rejected(
        self,
        relay: ContentRelay,
        dispatcher: Dispatcher,
        popup: Any,
        provider: PepeProvider,
        sample_mnemonic: str,
    ) -> None:
        await onboard(dispatcher, sample_mnemonic)

        future = provider.connect()
        await answer_popup(dispatcher, popup, {"approved": False})

        with pytest.raises(ProviderError, match=CONNECTION_REJECTION):
            await asyncio.wait_for(future, 1)
        assert await dispatcher.session.get_connected_clients() == {}

    @pytest.mark.asyncio
    async def test_unconnected_request_fails_fast(
        self,
        relay: ContentRelay,
        dispatcher: Dispatcher,
        popup: Any,
        provider: PepeProvider,
        sample_mnemonic: str,
    ) -> None:
        await onboard(dispatcher, sample_mnemonic)

        future = provider.request_signed_message({"message": "hi"})

        with pytest.raises(ProviderError, match="Origin is not connected"):
            await asyncio.wait_for(future, 1)
        assert popup.calls == []

    @pytest.mark.asyncio
    async def test_signed_message_after_connect(
        self,
        relay: ContentRelay,
        dispatcher: Dispatcher,
        popup: Any,
        provider: PepeProvider,
        sample_mnemonic: str,
    ) -> None:
        address = await onboard(dispatcher, sample_mnemonic)
        await connect(dispatcher, popup, provider, address)

        future = provider.request_signed_message({"message": "gm"})
        await eventually(lambda: len(popup.calls) == 2)
        assert popup.calls[-1][1]["message"] == "gm"

        await answer_popup(dispatcher, popup, {"signedMessage": "c2ln"})
        assert await asyncio.wait_for(future, 1) == {"signedMessage": "c2ln"}


class TestDirectRequests:
    """Tests for relay-answered requests."""

    @pytest.mark.asyncio
    async def test_status_balance_and_disconnect(
        self,
        relay: ContentRelay,
        dispatcher: Dispatcher,
        popup: Any,
        provider: PepeProvider,
        sample_mnemonic: str,
    ) -> None:
        address = await onboard(dispatcher, sample_mnemonic)

        status = await asyncio.wait_for(provider.get_connection_status(), 1)
        assert status == {"connected": False, "address": None, "selectedWalletAddress": None}

        await connect(dispatcher, popup, provider, address)

        status = await asyncio.wait_for(provider.get_connection_status(), 1)
        assert status == {"connected": True, "address": address, "selectedWalletAddress": address}

        balance = await asyncio.wait_for(provider.get_balance(), 1)
        assert balance == {"address": address, "balance": 42}

        assert await asyncio.wait_for(provider.disconnect(), 1) == {"disconnected": True}
        assert await dispatcher.session.get_client(relay.origin) is None

    @pytest.mark.asyncio
    async def test_balance_when_not_connected(
        self, relay: ContentRelay, provider: PepeProvider
    ) -> None:
        with pytest.raises(ProviderError, match="Not connected"):
            await asyncio.wait_for(provider.get_balance(), 1)

    @pytest.mark.asyncio
    async def test_transaction_status(self, relay: ContentRelay, provider: PepeProvider) -> None:
        txid = "cd" * 32
        status = await asyncio.wait_for(provider.get_transaction_status({"txId": txid}), 1)
        assert status == {"txid": txid, "confirmations": 1}


class TestDelivery:
    """Tests for tab message routing."""

    @pytest.mark.asyncio
    async def test_drops_message_for_other_origin(
        self, channel: WindowChannel, relay: ContentRelay
    ) -> None:
        received: list[MessageEvent] = []
        channel.add_listener(received.append)

        relay.deliver({"type": "anything", "data": {"x": 1}, "origin": "https://evil.example"})
        await asyncio.sleep(0)

        assert received == []

    @pytest.mark.asyncio
    async def test_messenger_routes_by_tab(self, channel: WindowChannel) -> None:
        async def never_called(envelope: dict[str, Any], sender: Sender) -> Result:
            raise AssertionError("relay should not call the background")

        relay = ContentRelay(channel, never_called, tab_id=3)
        messenger = RelayTabMessenger()
        messenger.register(relay)
        received: list[MessageEvent] = []
        channel.add_listener(received.append)

        await messenger.send_to_tab(3, {"type": "t", "data": {"ok": 1}, "origin": channel.origin})
        await messenger.send_to_tab(4, {"type": "t", "origin": channel.origin})
        messenger.unregister(3)
        await messenger.send_to_tab(3, {"type": "t", "origin": channel.origin})
        await asyncio.sleep(0)

        assert [event.data for event in received] == [
            {"type": "t", "data": {"ok": 1}, "error": None}
        ]

    @pytest.mark.asyncio
    async def test_ignores_foreign_page_messages(
        self, channel: WindowChannel, relay: ContentRelay, popup: Any
    ) -> None:
        channel.post_message(
            {"type": MessageType.CLIENT_REQUEST_CONNECTION.value},
            source_origin="https://evil.example",
        )
        await asyncio.sleep(0.05)

        assert popup.calls == []
