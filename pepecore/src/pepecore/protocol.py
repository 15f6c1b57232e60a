"""
Cross-context message protocol.

Message Families
================
- Background messages (MessageType): sent by the extension UI, the approval
  popup and the content relay to the background dispatcher as
  ``{"message": <MessageType>, "data": {...}}``.
- Page messages (ClientMessageType): posted between the injected provider and
  the content relay as ``{"type": ..., "data": ..., "error": ...}``.

Popup-backed client requests come in request/response pairs
(CLIENT_POPUP_MESSAGE_PAIRS). The request travels page -> relay -> background,
the background opens an approval popup, and the popup's decision comes back as
the paired ``*_RESPONSE`` message which the background relays to the
originating tab only.

Results
=======
Every background handler answers with exactly one Result: ``Ok(payload)`` or
``Err(kind, message)``. ``Err.message`` is short and human readable; internal
details never cross the boundary.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class MessageType(str, Enum):
    # Wallet lifecycle
    CREATE_WALLET = "createWallet"
    RESET_WALLET = "resetWallet"
    AUTHENTICATE = "authenticate"
    IS_ONBOARDING_COMPLETE = "isOnboardingComplete"
    IS_SESSION_AUTHENTICATED = "isSessionAuthenticated"
    SIGN_OUT = "signOut"
    DELETE_WALLET = "deleteWallet"
    GENERATE_ADDRESS = "generateAddress"
    DELETE_ADDRESS = "deleteAddress"
    UPDATE_ADDRESS_NICKNAME = "updateAddressNickname"
    SELECT_ADDRESS = "selectAddress"

    # Chain data
    GET_PRICE = "getPepecoinPrice"
    GET_ADDRESS_BALANCE = "getAddressBalance"
    GET_TRANSACTIONS = "getTransactions"
    GET_TRANSACTION_DETAILS = "getTransactionDetails"

    # Money movement
    CREATE_TRANSACTION = "createTransaction"
    SEND_TRANSACTION = "sendTransaction"
    SIGN_PSBT = "signPsbt"
    SEND_PSBT = "sendPsbt"
    SIGN_MESSAGE = "signMessage"
    DECRYPT_MESSAGE = "decryptMessage"

    # Client (web page) protocol
    CLIENT_REQUEST_CONNECTION = "clientRequestConnection"
    CLIENT_REQUEST_CONNECTION_RESPONSE = "clientRequestConnectionResponse"
    CLIENT_REQUEST_TRANSACTION = "clientRequestTransaction"
    CLIENT_REQUEST_TRANSACTION_RESPONSE = "clientRequestTransactionResponse"
    CLIENT_REQUEST_PSBT = "clientRequestPsbt"
    CLIENT_REQUEST_PSBT_RESPONSE = "clientRequestPsbtResponse"
    CLIENT_REQUEST_SIGNED_MESSAGE = "clientRequestSignedMessage"
    CLIENT_REQUEST_SIGNED_MESSAGE_RESPONSE = "clientRequestSignedMessageResponse"
    CLIENT_REQUEST_DECRYPTED_MESSAGE = "clientRequestDecryptedMessage"
    CLIENT_REQUEST_DECRYPTED_MESSAGE_RESPONSE = "clientRequestDecryptedMessageResponse"
    GET_CONNECTED_CLIENTS = "getConnectedClients"
    CLIENT_DISCONNECT = "clientDisconnect"


class ClientMessageType(str, Enum):
    """Page <-> relay messages that do not involve an approval popup."""

    CLIENT_GET_BALANCE = "clientRequestBalance"
    CLIENT_GET_BALANCE_RESPONSE = "clientGetBalanceResponse"
    CLIENT_DISCONNECT = "clientDisconnect"
    CLIENT_DISCONNECT_RESPONSE = "clientDisconnectResponse"
    CLIENT_CONNECTION_STATUS = "clientConnectionStatus"
    CLIENT_CONNECTION_STATUS_RESPONSE = "clientConnectionStatusResponse"
    CLIENT_TRANSACTION_STATUS = "clientTransactionStatus"
    CLIENT_TRANSACTION_STATUS_RESPONSE = "clientTransactionStatusResponse"


# request -> response
CLIENT_POPUP_MESSAGE_PAIRS: dict[MessageType, MessageType] = {
    MessageType.CLIENT_REQUEST_CONNECTION: MessageType.CLIENT_REQUEST_CONNECTION_RESPONSE,
    MessageType.CLIENT_REQUEST_TRANSACTION: MessageType.CLIENT_REQUEST_TRANSACTION_RESPONSE,
    MessageType.CLIENT_REQUEST_PSBT: MessageType.CLIENT_REQUEST_PSBT_RESPONSE,
    MessageType.CLIENT_REQUEST_SIGNED_MESSAGE: MessageType.CLIENT_REQUEST_SIGNED_MESSAGE_RESPONSE,
    MessageType.CLIENT_REQUEST_DECRYPTED_MESSAGE: (
        MessageType.CLIENT_REQUEST_DECRYPTED_MESSAGE_RESPONSE
    ),
}

CLIENT_DIRECT_MESSAGE_PAIRS: dict[ClientMessageType, ClientMessageType] = {
    ClientMessageType.CLIENT_GET_BALANCE: ClientMessageType.CLIENT_GET_BALANCE_RESPONSE,
    ClientMessageType.CLIENT_DISCONNECT: ClientMessageType.CLIENT_DISCONNECT_RESPONSE,
    ClientMessageType.CLIENT_CONNECTION_STATUS: (
        ClientMessageType.CLIENT_CONNECTION_STATUS_RESPONSE
    ),
    ClientMessageType.CLIENT_TRANSACTION_STATUS: (
        ClientMessageType.CLIENT_TRANSACTION_STATUS_RESPONSE
    ),
}


class ClientRequestState(str, Enum):
    RECEIVED = "received"
    POPUP_OPENED = "popup_opened"
    AWAITING_USER_DECISION = "awaiting_user_decision"
    APPROVED = "approved"
    EXECUTED = "executed"
    REJECTED = "rejected"


# Allowed transitions of the per-request approval state machine
CLIENT_REQUEST_TRANSITIONS: dict[ClientRequestState, frozenset[ClientRequestState]] = {
    ClientRequestState.RECEIVED: frozenset({ClientRequestState.POPUP_OPENED}),
    ClientRequestState.POPUP_OPENED: frozenset({ClientRequestState.AWAITING_USER_DECISION}),
    ClientRequestState.AWAITING_USER_DECISION: frozenset(
        {ClientRequestState.APPROVED, ClientRequestState.REJECTED}
    ),
    ClientRequestState.APPROVED: frozenset({ClientRequestState.EXECUTED}),
    ClientRequestState.EXECUTED: frozenset(),
    ClientRequestState.REJECTED: frozenset(),
}


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTH_FAILURE = "auth_failure"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    REJECTED_BY_USER = "rejected_by_user"
    NETWORK_FAILURE = "network_failure"
    POLICY_VIOLATION = "policy_violation"
    NOT_CONNECTED = "not_connected"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Ok:
    payload: Any = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str

    @property
    def ok(self) -> bool:
        return False


Result = Ok | Err


class Sender(BaseModel):
    """Identity of the context that sent a background message."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    origin: str | None = None
    tab_id: int | None = Field(default=None, alias="tabId")

    @property
    def is_tab(self) -> bool:
        return self.origin is not None and self.tab_id is not None


class RuntimeMessage(BaseModel):
    """Envelope for messages sent to the background context."""

    message: MessageType
    data: dict[str, Any] = Field(default_factory=dict)


class TabMessage(BaseModel):
    """Envelope for messages delivered to a page (via its content relay)."""

    type: str
    data: dict[str, Any] | None = None
    error: str | None = None
    origin: str

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class PopupLauncher(ABC):
    """Opens the extension's approval popup."""

    @abstractmethod
    async def open_popup(
        self, message_type: MessageType, origin: str, tab_id: int, params: dict[str, Any]
    ) -> bool:
        """Open the popup for a client request. Returns False if no window opened."""


class TabMessenger(ABC):
    """Delivers page messages to the content relay running in one tab."""

    @abstractmethod
    async def send_to_tab(self, tab_id: int, message: dict[str, Any]) -> None:
        """Send ``message`` (a TabMessage in wire form) to ``tab_id``"""
