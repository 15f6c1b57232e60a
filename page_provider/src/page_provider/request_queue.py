"""
Page-facing wallet provider.

Popup-backed requests (connect, payments, PSBT and message signing,
decryption) go through a strict FIFO queue with one request in flight:

    IDLE --enqueue--> DISPATCHED --response--> (settle_delay) --> next or IDLE

A response is matched by its type and must come from the page's own origin.
After it settles the provider waits ``settle_delay`` seconds, letting the
approval popup close, before posting the next request.

Direct requests (balance, disconnect, connection and transaction status)
bypass the queue and wait for their own response type.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger
from pepecore.constants import PROVIDER_SETTLE_DELAY
from pepecore.payloads import (
    ClientPayload,
    MessageRequestPayload,
    PsbtRequestPayload,
    TransactionRequestPayload,
    TransactionStatusPayload,
)
from pepecore.protocol import (
    CLIENT_DIRECT_MESSAGE_PAIRS,
    CLIENT_POPUP_MESSAGE_PAIRS,
    ClientMessageType,
    MessageType,
)
from pydantic import BaseModel, Field, ValidationError

from page_provider.channel import MessageEvent, WindowChannel

SuccessCallback = Callable[[Any], None]
ErrorCallback = Callable[["ProviderError"], None]


class ProviderError(Exception):
    pass


class ProviderConfig(BaseModel):
    origin: str = Field(..., min_length=1)
    settle_delay: float = Field(default=PROVIDER_SETTLE_DELAY, ge=0)


class QueueState(str, Enum):
    IDLE = "idle"
    DISPATCHED = "dispatched"


@dataclass
class PendingRequest:
    request_type: MessageType
    response_type: MessageType
    data: dict[str, Any] | None
    future: asyncio.Future[Any]
    on_success: SuccessCallback | None = None
    on_error: ErrorCallback | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


def _run_callback(callback: Callable[[Any], None] | None, value: Any) -> None:
    if callback is None:
        return
    try:
        callback(value)
    except Exception as e:
        logger.error(f"Provider callback raised: {e}")


def _settle(
    future: asyncio.Future[Any],
    message: dict[str, Any],
    on_success: SuccessCallback | None,
    on_error: ErrorCallback | None,
) -> None:
    """Resolve or reject ``future`` from a ``{type, data, error}`` message."""
    if future.done():
        return

    error = message.get("error")
    data = message.get("data")
    if error:
        exc = ProviderError(str(error))
        _run_callback(on_error, exc)
        future.set_exception(exc)
    elif data is not None and data != {}:
        _run_callback(on_success, data)
        future.set_result(data)
    else:
        exc = ProviderError("Empty response")
        _run_callback(on_error, exc)
        future.set_exception(exc)


class PepeProvider:
    def __init__(self, channel: WindowChannel, config: ProviderConfig | None = None):
        self.channel = channel
        self.config = config or ProviderConfig(origin=channel.origin)
        self.state = QueueState.IDLE
        self._queue: deque[PendingRequest] = deque()
        self._in_flight: str | None = None

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def in_flight(self) -> str | None:
        """request_id of the dispatched request, None when idle"""
        return self._in_flight

    # Popup-backed requests

    def connect(
        self,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> asyncio.Future[Any]:
        return self._enqueue(MessageType.CLIENT_REQUEST_CONNECTION, None, on_success, on_error)

    def request_transaction(
        self,
        data: Any,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> asyncio.Future[Any]:
        return self._enqueue_validated(
            MessageType.CLIENT_REQUEST_TRANSACTION,
            TransactionRequestPayload,
            data,
            on_success,
            on_error,
        )

    def request_psbt(
        self,
        data: Any,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> asyncio.Future[Any]:
        return self._enqueue_validated(
            MessageType.CLIENT_REQUEST_PSBT, PsbtRequestPayload, data, on_success, on_error
        )

    def request_signed_message(
        self,
        data: Any,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> asyncio.Future[Any]:
        return self._enqueue_validated(
            MessageType.CLIENT_REQUEST_SIGNED_MESSAGE,
            MessageRequestPayload,
            data,
            on_success,
            on_error,
        )

    def request_decrypted_message(
        self,
        data: Any,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> asyncio.Future[Any]:
        return self._enqueue_validated(
            MessageType.CLIENT_REQUEST_DECRYPTED_MESSAGE,
            MessageRequestPayload,
            data,
            on_success,
            on_error,
        )

    # Direct requests

    def get_balance(
        self,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> asyncio.Future[Any]:
        return self._request_direct(
            ClientMessageType.CLIENT_GET_BALANCE, None, on_success, on_error
        )

    def disconnect(
        self,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> asyncio.Future[Any]:
        return self._request_direct(ClientMessageType.CLIENT_DISCONNECT, None, on_success, on_error)

    def get_connection_status(
        self,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> asyncio.Future[Any]:
        return self._request_direct(
            ClientMessageType.CLIENT_CONNECTION_STATUS, None, on_success, on_error
        )

    def get_transaction_status(
        self,
        data: Any,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> asyncio.Future[Any]:
        payload = self._validate(TransactionStatusPayload, data)
        if payload is None:
            return self._rejected(on_error)
        return self._request_direct(
            ClientMessageType.CLIENT_TRANSACTION_STATUS, payload, on_success, on_error
        )

    # Internals

    def _validate(
        self, model: type[ClientPayload], data: Any
    ) -> dict[str, Any] | None:
        try:
            return model.model_validate(data).model_dump(by_alias=True)
        except ValidationError as e:
            logger.debug(f"Rejected {model.__name__}: {e.error_count()} validation errors")
            return None

    def _rejected(self, on_error: ErrorCallback | None) -> asyncio.Future[Any]:
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        exc = ProviderError("Invalid data")
        _run_callback(on_error, exc)
        future.set_exception(exc)
        return future

    def _enqueue_validated(
        self,
        request_type: MessageType,
        model: type[ClientPayload],
        data: Any,
        on_success: SuccessCallback | None,
        on_error: ErrorCallback | None,
    ) -> asyncio.Future[Any]:
        payload = self._validate(model, data)
        if payload is None:
            return self._rejected(on_error)
        return self._enqueue(request_type, payload, on_success, on_error)

    def _enqueue(
        self,
        request_type: MessageType,
        data: dict[str, Any] | None,
        on_success: SuccessCallback | None,
        on_error: ErrorCallback | None,
    ) -> asyncio.Future[Any]:
        request = PendingRequest(
            request_type=request_type,
            response_type=CLIENT_POPUP_MESSAGE_PAIRS[request_type],
            data=data,
            future=asyncio.get_running_loop().create_future(),
            on_success=on_success,
            on_error=on_error,
        )
        self._queue.append(request)
        logger.debug(f"Queued {request_type.value} ({len(self._queue)} pending)")

        if self.state is QueueState.IDLE:
            self._dispatch_next()
        return request.future

    def _dispatch_next(self) -> None:
        if not self._queue:
            self.state = QueueState.IDLE
            self._in_flight = None
            return

        request = self._queue[0]
        self.state = QueueState.DISPATCHED
        self._in_flight = request.request_id

        def listener(event: MessageEvent) -> None:
            message = event.data
            if event.origin != self.config.origin or not isinstance(message, dict):
                return
            if message.get("type") != request.response_type.value:
                return

            self.channel.remove_listener(listener)
            _settle(request.future, message, request.on_success, request.on_error)
            asyncio.get_running_loop().call_later(self.config.settle_delay, self._advance)

        self.channel.add_listener(listener)
        self.channel.post_message(
            {"type": request.request_type.value, "data": request.data}, self.config.origin
        )

    def _advance(self) -> None:
        if self._queue:
            self._queue.popleft()
        self._dispatch_next()

    def _request_direct(
        self,
        request_type: ClientMessageType,
        data: dict[str, Any] | None,
        on_success: SuccessCallback | None,
        on_error: ErrorCallback | None,
    ) -> asyncio.Future[Any]:
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        response_type = CLIENT_DIRECT_MESSAGE_PAIRS[request_type]

        def listener(event: MessageEvent) -> None:
            message = event.data
            if event.origin != self.config.origin or not isinstance(message, dict):
                return
            if message.get("type") != response_type.value:
                return

            self.channel.remove_listener(listener)
            _settle(future, message, on_success, on_error)

        self.channel.add_listener(listener)
        self.channel.post_message({"type": request_type.value, "data": data}, self.config.origin)
        return future
