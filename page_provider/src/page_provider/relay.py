"""
Content relay between a page and the background dispatcher.

The relay runs with the page's origin and tab id, which become the sender of
everything it forwards. It never trusts page data; the background validates
again.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from loguru import logger
from pepecore.protocol import (
    CLIENT_DIRECT_MESSAGE_PAIRS,
    CLIENT_POPUP_MESSAGE_PAIRS,
    ClientMessageType,
    Err,
    MessageType,
    Result,
    Sender,
    TabMessenger,
)

from page_provider.channel import MessageEvent, WindowChannel

RuntimeSend = Callable[[dict[str, Any], Sender], Awaitable[Result]]

POPUP_REQUESTS = {message_type.value: message_type for message_type in CLIENT_POPUP_MESSAGE_PAIRS}


class ContentRelay:
    def __init__(self, channel: WindowChannel, send_message: RuntimeSend, tab_id: int):
        self.channel = channel
        self.send_message = send_message
        self.sender = Sender(origin=channel.origin, tab_id=tab_id)
        self._direct_handlers: dict[
            str, Callable[[dict[str, Any]], Coroutine[Any, Any, None]]
        ] = {
            ClientMessageType.CLIENT_GET_BALANCE.value: self._get_balance,
            ClientMessageType.CLIENT_DISCONNECT.value: self._disconnect,
            ClientMessageType.CLIENT_CONNECTION_STATUS.value: self._connection_status,
            ClientMessageType.CLIENT_TRANSACTION_STATUS.value: self._transaction_status,
        }
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def origin(self) -> str:
        return self.channel.origin

    def start(self) -> None:
        self.channel.add_listener(self._on_message)

    def stop(self) -> None:
        self.channel.remove_listener(self._on_message)

    def deliver(self, message: dict[str, Any]) -> None:
        """Post a tab message from the background into the page."""
        if message.get("origin") != self.origin:
            logger.warning(f"Dropping tab message addressed to {message.get('origin')}")
            return
        self._post(message.get("type", ""), message.get("data"), message.get("error"))

    def _on_message(self, event: MessageEvent) -> None:
        message = event.data
        if event.origin != self.origin or not isinstance(message, dict):
            return

        message_type = message.get("type")
        data = message.get("data") or {}
        if not isinstance(data, dict):
            data = {}

        if message_type in POPUP_REQUESTS:
            self._spawn(self._forward_popup_request(POPUP_REQUESTS[message_type], data))
        elif message_type in self._direct_handlers:
            self._spawn(self._direct_handlers[message_type](data))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _post(self, message_type: str, data: Any = None, error: str | None = None) -> None:
        self.channel.post_message(
            {"type": message_type, "data": data, "error": error}, target_origin=self.origin
        )

    async def _runtime(self, message_type: MessageType, data: dict[str, Any]) -> Result:
        return await self.send_message({"message": message_type.value, "data": data}, self.sender)

    async def _forward_popup_request(self, message_type: MessageType, data: dict[str, Any]) -> None:
        result = await self._runtime(message_type, data)
        if isinstance(result, Err):
            # No popup will answer; fail the page request now
            logger.debug(f"{message_type.value} refused: {result.message}")
            self._post(CLIENT_POPUP_MESSAGE_PAIRS[message_type].value, error=result.message)

    async def _connected_client(self) -> dict[str, Any] | None:
        result = await self._runtime(MessageType.GET_CONNECTED_CLIENTS, {})
        if isinstance(result, Err):
            return None
        return (result.payload or {}).get(self.origin)

    async def _get_balance(self, data: dict[str, Any]) -> None:
        response_type = CLIENT_DIRECT_MESSAGE_PAIRS[ClientMessageType.CLIENT_GET_BALANCE].value
        client = await self._connected_client()
        if client is None:
            self._post(response_type, error="Not connected")
            return

        result = await self._runtime(
            MessageType.GET_ADDRESS_BALANCE, {"address": client["address"]}
        )
        if isinstance(result, Err):
            self._post(response_type, error=result.message)
            return
        self._post(response_type, {"address": client["address"], "balance": result.payload})

    async def _disconnect(self, data: dict[str, Any]) -> None:
        response_type = CLIENT_DIRECT_MESSAGE_PAIRS[ClientMessageType.CLIENT_DISCONNECT].value
        result = await self._runtime(MessageType.CLIENT_DISCONNECT, {})
        if isinstance(result, Err):
            self._post(response_type, error=result.message)
            return
        self._post(response_type, {"disconnected": True})

    async def _connection_status(self, data: dict[str, Any]) -> None:
        response_type = CLIENT_DIRECT_MESSAGE_PAIRS[
            ClientMessageType.CLIENT_CONNECTION_STATUS
        ].value
        client = await self._connected_client()
        address = client["address"] if client else None
        self._post(
            response_type,
            {"connected": client is not None, "address": address, "selectedWalletAddress": address},
        )

    async def _transaction_status(self, data: dict[str, Any]) -> None:
        response_type = CLIENT_DIRECT_MESSAGE_PAIRS[
            ClientMessageType.CLIENT_TRANSACTION_STATUS
        ].value
        result = await self._runtime(
            MessageType.GET_TRANSACTION_DETAILS, {"txId": data.get("txId")}
        )
        if isinstance(result, Err):
            self._post(response_type, error=result.message)
            return
        self._post(response_type, result.payload)


class RelayTabMessenger(TabMessenger):
    """Routes background tab messages to the relay registered for each tab."""

    def __init__(self) -> None:
        self._relays: dict[int, ContentRelay] = {}

    def register(self, relay: ContentRelay) -> None:
        if relay.sender.tab_id is None:
            raise ValueError("Relay has no tab id")
        self._relays[relay.sender.tab_id] = relay

    def unregister(self, tab_id: int) -> None:
        self._relays.pop(tab_id, None)

    async def send_to_tab(self, tab_id: int, message: dict[str, Any]) -> None:
        relay = self._relays.get(tab_id)
        if relay is None:
            logger.warning(f"No relay for tab {tab_id}, dropping {message.get('type')}")
            return
        relay.deliver(message)
