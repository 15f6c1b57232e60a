"""
Background message dispatcher.

Every runtime message ``{"message": <MessageType>, "data": {...}}`` is routed
through one exhaustive handler table and answered with exactly one Result.

Client (web page) requests:
1. The content relay forwards a page request with the tab as sender.
2. Non-connection requests need a connected origin; otherwise NOT_CONNECTED
   is returned and no popup opens.
3. A PendingApproval is recorded and the approval popup is opened with its
   ``requestId``.
4. The popup answers with the paired ``*_RESPONSE`` message. The decision is
   relayed to the tab and origin recorded in step 3, never to the sender of
   the response.

Web pages may only send the messages in TAB_ALLOWED_MESSAGES; everything
else is reserved for the extension's own pages.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from loguru import logger
from pepecore.crypto import CryptoError
from pepecore.models import ConnectedClient
from pepecore.payloads import (
    ClientPayload,
    MessageRequestPayload,
    PsbtRequestPayload,
    TransactionRequestPayload,
)
from pepecore.protocol import (
    CLIENT_POPUP_MESSAGE_PAIRS,
    ClientRequestState,
    Err,
    ErrorKind,
    MessageType,
    Ok,
    PopupLauncher,
    Result,
    RuntimeMessage,
    Sender,
    TabMessage,
    TabMessenger,
)
from pepewallet.backends.base import IndexerBackend
from pepewallet.backends.mypepe import IndexerError
from pepewallet.wallet.keys import (
    KeyFormatError,
    create_wallet,
    generate_phrase,
    migrate_wallet,
    next_child,
    public_key_hex,
    to_wif,
    validate_phrase,
)
from pepewallet.wallet.psbt import (
    PSBTError,
    SighashPolicyError,
    check_sighash_type,
    sign_raw_psbt,
)
from pepewallet.wallet.signing import (
    TransactionSigningError,
    decrypt_data,
    sign_message,
    sign_raw_tx,
)
from pepewallet.wallet.tx_builder import InsufficientFundsError, build_unsigned_transaction
from pydantic import ValidationError

from background_service.config import Settings
from background_service.schemas import (
    AddressBalanceRequest,
    AuthenticateRequest,
    ClientDisconnectRequest,
    ConnectionResponse,
    CreateTransactionRequest,
    CreateWalletRequest,
    DecryptedMessageResponse,
    DecryptMessageRequest,
    DeleteAddressRequest,
    GenerateAddressRequest,
    PopupResponse,
    PsbtResponse,
    SelectAddressRequest,
    SendPsbtRequest,
    SendTransactionRequest,
    SignedMessageResponse,
    SignMessageRequest,
    SignPsbtRequest,
    TransactionDetailsRequest,
    TransactionResponse,
    TransactionsRequest,
    UpdateNicknameRequest,
)
from background_service.session import (
    PendingApproval,
    Session,
    SessionNotAuthenticatedError,
    WalletDecryptionError,
)
from background_service.storage import StorageError

SendResponse = Callable[[Result], None]
Handler = Callable[[dict[str, Any], Sender], Awaitable[Result]]

TAB_ALLOWED_MESSAGES = frozenset(
    {
        *CLIENT_POPUP_MESSAGE_PAIRS,
        MessageType.CLIENT_DISCONNECT,
        MessageType.GET_CONNECTED_CLIENTS,
        MessageType.GET_ADDRESS_BALANCE,
        MessageType.GET_TRANSACTION_DETAILS,
    }
)

CLIENT_REQUEST_PAYLOADS: dict[MessageType, type[ClientPayload]] = {
    MessageType.CLIENT_REQUEST_TRANSACTION: TransactionRequestPayload,
    MessageType.CLIENT_REQUEST_PSBT: PsbtRequestPayload,
    MessageType.CLIENT_REQUEST_SIGNED_MESSAGE: MessageRequestPayload,
    MessageType.CLIENT_REQUEST_DECRYPTED_MESSAGE: MessageRequestPayload,
}

POPUP_RESPONSE_SCHEMAS: dict[MessageType, type[PopupResponse]] = {
    MessageType.CLIENT_REQUEST_CONNECTION_RESPONSE: ConnectionResponse,
    MessageType.CLIENT_REQUEST_TRANSACTION_RESPONSE: TransactionResponse,
    MessageType.CLIENT_REQUEST_PSBT_RESPONSE: PsbtResponse,
    MessageType.CLIENT_REQUEST_SIGNED_MESSAGE_RESPONSE: SignedMessageResponse,
    MessageType.CLIENT_REQUEST_DECRYPTED_MESSAGE_RESPONSE: DecryptedMessageResponse,
}

DEFAULT_REJECTION = "User rejected request"
CONNECTION_REJECTION = "User rejected connection request"


class DispatchError(Exception):
    """Raised by handlers to answer with a specific error kind."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


class ResponseGuard:
    """Forwards the first result to ``send_response`` and drops any later one."""

    def __init__(self, send_response: SendResponse, label: str = ""):
        self._send_response = send_response
        self._label = label
        self.sent = False

    def __call__(self, result: Result) -> None:
        if self.sent:
            logger.warning(f"Dropping duplicate response for {self._label or 'message'}")
            return
        self.sent = True
        self._send_response(result)


def classify_error(exc: Exception) -> Err:
    """Map an exception raised by a handler to the error returned to the caller."""
    if isinstance(exc, DispatchError):
        return Err(exc.kind, exc.message)
    if isinstance(exc, ValidationError):
        return Err(ErrorKind.VALIDATION, "Invalid request data")
    if isinstance(exc, InsufficientFundsError):
        return Err(ErrorKind.INSUFFICIENT_FUNDS, str(exc))
    if isinstance(exc, SighashPolicyError):
        return Err(ErrorKind.POLICY_VIOLATION, str(exc))
    if isinstance(exc, (WalletDecryptionError, SessionNotAuthenticatedError)):
        return Err(ErrorKind.AUTH_FAILURE, str(exc))
    if isinstance(exc, (httpx.HTTPError, IndexerError)):
        return Err(ErrorKind.NETWORK_FAILURE, "Indexing service request failed")
    if isinstance(
        exc, (KeyFormatError, PSBTError, TransactionSigningError, CryptoError, ValueError)
    ):
        return Err(ErrorKind.VALIDATION, str(exc))
    if isinstance(exc, StorageError):
        return Err(ErrorKind.INTERNAL, "Storage failure")
    return Err(ErrorKind.INTERNAL, "Internal error")


class Dispatcher:
    def __init__(
        self,
        session: Session,
        backend: IndexerBackend,
        popup: PopupLauncher,
        tabs: TabMessenger,
        settings: Settings | None = None,
    ):
        self.session = session
        self.backend = backend
        self.popup = popup
        self.tabs = tabs

        settings = settings or Settings()
        self.params = settings.chain_params
        self.fee_policy = settings.fee_policy()
        self.page_size = settings.transaction_page_size
        self.price_currency = settings.price_currency

        self.handlers: dict[MessageType, Handler] = {
            MessageType.CREATE_WALLET: self._on_create_wallet,
            MessageType.RESET_WALLET: self._on_reset_wallet,
            MessageType.AUTHENTICATE: self._on_authenticate,
            MessageType.IS_ONBOARDING_COMPLETE: self._on_is_onboarding_complete,
            MessageType.IS_SESSION_AUTHENTICATED: self._on_is_session_authenticated,
            MessageType.SIGN_OUT: self._on_sign_out,
            MessageType.DELETE_WALLET: self._on_delete_wallet,
            MessageType.GENERATE_ADDRESS: self._on_generate_address,
            MessageType.DELETE_ADDRESS: self._on_delete_address,
            MessageType.UPDATE_ADDRESS_NICKNAME: self._on_update_nickname,
            MessageType.SELECT_ADDRESS: self._on_select_address,
            MessageType.GET_PRICE: self._on_get_price,
            MessageType.GET_ADDRESS_BALANCE: self._on_get_address_balance,
            MessageType.GET_TRANSACTIONS: self._on_get_transactions,
            MessageType.GET_TRANSACTION_DETAILS: self._on_get_transaction_details,
            MessageType.CREATE_TRANSACTION: self._on_create_transaction,
            MessageType.SEND_TRANSACTION: self._on_send_transaction,
            MessageType.SIGN_PSBT: self._on_sign_psbt,
            MessageType.SEND_PSBT: self._on_send_psbt,
            MessageType.SIGN_MESSAGE: self._on_sign_message,
            MessageType.DECRYPT_MESSAGE: self._on_decrypt_message,
            MessageType.GET_CONNECTED_CLIENTS: self._on_get_connected_clients,
            MessageType.CLIENT_DISCONNECT: self._on_client_disconnect,
        }
        for request_type, response_type in CLIENT_POPUP_MESSAGE_PAIRS.items():
            self.handlers[request_type] = self._client_request_handler(request_type)
            self.handlers[response_type] = self._popup_response_handler(response_type)

        missing = set(MessageType) - set(self.handlers)
        if missing:
            names = ", ".join(sorted(m.value for m in missing))
            raise RuntimeError(f"No handler registered for: {names}")

    async def handle(
        self, envelope: Any, sender: Sender, send_response: SendResponse
    ) -> Result:
        """Dispatch one runtime message and answer through ``send_response`` once."""
        label = str(envelope.get("message")) if isinstance(envelope, dict) else ""
        respond = ResponseGuard(send_response, label)
        result = await self.dispatch(envelope, sender)
        respond(result)
        return result

    async def dispatch(self, envelope: Any, sender: Sender) -> Result:
        try:
            request = RuntimeMessage.model_validate(envelope)
        except ValidationError:
            logger.warning("Rejected malformed or unknown runtime message")
            return Err(ErrorKind.VALIDATION, "Unknown message")

        message_type = request.message
        if sender.is_tab and message_type not in TAB_ALLOWED_MESSAGES:
            logger.warning(f"Refused {message_type.value} from web page {sender.origin}")
            return Err(ErrorKind.POLICY_VIOLATION, "Message not allowed from a web page")

        logger.debug(f"Handling {message_type.value}")
        try:
            return await self.handlers[message_type](request.data, sender)
        except Exception as e:
            error = classify_error(e)
            if error.kind is ErrorKind.INTERNAL:
                logger.exception(f"Handler for {message_type.value} failed")
            else:
                logger.warning(
                    f"{message_type.value} failed ({error.kind.value}): {error.message}"
                )
            return error

    # Helpers

    async def _signing_key(self, index: int | None) -> str:
        wallet = await self.session.load_wallet()
        if index is None:
            index = await self.session.get_selected_index()
        if index >= len(wallet.children):
            raise DispatchError(ErrorKind.VALIDATION, f"No address at index {index}")
        return wallet.children[index]

    async def _require_client(self, sender: Sender) -> ConnectedClient:
        client = await self.session.get_client(sender.origin or "")
        if client is None:
            logger.warning(f"Request from unconnected origin {sender.origin}")
            raise DispatchError(ErrorKind.NOT_CONNECTED, "Origin is not connected")
        return client

    async def _wallet_addresses(self) -> list[str]:
        view = await self.session.get_session_wallet()
        if view is None:
            raise SessionNotAuthenticatedError("Wallet is locked")
        return view.addresses

    # Wallet lifecycle

    async def _on_create_wallet(self, data: dict[str, Any], sender: Sender) -> Result:
        request = CreateWalletRequest.model_validate(data)
        phrase = (
            validate_phrase(request.seed_phrase) if request.seed_phrase else generate_phrase()
        )
        view = await self.session.initialize_wallet(
            create_wallet(phrase, self.params), request.password
        )
        logger.info("Wallet created")
        return Ok({"authenticated": True, "wallet": view.to_wire()})

    async def _on_reset_wallet(self, data: dict[str, Any], sender: Sender) -> Result:
        await self.session.end()
        return await self._on_create_wallet(data, sender)

    async def _on_authenticate(self, data: dict[str, Any], sender: Sender) -> Result:
        request = AuthenticateRequest.model_validate(data)
        if not await self.session.verify_password(request.password):
            raise WalletDecryptionError("Incorrect password")

        wallet = await self.session.load_wallet(request.password)
        wallet, migrated = migrate_wallet(wallet, self.params)

        # The migrated record must be stored before the session opens on it
        if migrated:
            await self.session.commit_wallet(wallet, request.password)
        await self.session.begin(wallet.session_view(), request.password)

        view = wallet.session_view(include_phrase=request.return_secret_phrase)
        return Ok({"authenticated": True, "wallet": view.to_wire()})

    async def _on_is_onboarding_complete(self, data: dict[str, Any], sender: Sender) -> Result:
        return Ok(await self.session.is_onboarding_complete())

    async def _on_is_session_authenticated(
        self, data: dict[str, Any], sender: Sender
    ) -> Result:
        view = await self.session.get_session_wallet()
        return Ok(
            {
                "authenticated": await self.session.is_authenticated(),
                "wallet": view.to_wire() if view else None,
                "selectedAddressIndex": await self.session.get_selected_index(),
            }
        )

    async def _on_sign_out(self, data: dict[str, Any], sender: Sender) -> Result:
        await self.session.end()
        return Ok(True)

    async def _on_delete_wallet(self, data: dict[str, Any], sender: Sender) -> Result:
        await self.session.delete_wallet()
        return Ok(True)

    async def _on_generate_address(self, data: dict[str, Any], sender: Sender) -> Result:
        request = GenerateAddressRequest.model_validate(data)
        wallet = await self.session.load_wallet()

        child, address = next_child(wallet, self.params)
        wallet.children.append(to_wif(child, self.params))
        wallet.addresses.append(address)
        wallet.nicknames[address] = request.nickname or f"Address {len(wallet.addresses)}"

        view = await self.session.commit_wallet(wallet)
        logger.info(f"Generated address #{len(wallet.addresses)}")
        return Ok({"wallet": view.to_wire()})

    async def _on_delete_address(self, data: dict[str, Any], sender: Sender) -> Result:
        request = DeleteAddressRequest.model_validate(data)
        wallet = await self.session.load_wallet()
        if request.index >= len(wallet.addresses):
            raise DispatchError(ErrorKind.VALIDATION, f"No address at index {request.index}")

        address = wallet.addresses.pop(request.index)
        del wallet.children[request.index]
        wallet.nicknames.pop(address, None)
        view = await self.session.commit_wallet(wallet)

        selected = await self.session.get_selected_index()
        if selected == request.index:
            await self.session.set_selected_index(0)
        elif selected > request.index:
            await self.session.set_selected_index(selected - 1)

        return Ok({"wallet": view.to_wire()})

    async def _on_update_nickname(self, data: dict[str, Any], sender: Sender) -> Result:
        request = UpdateNicknameRequest.model_validate(data)
        wallet = await self.session.load_wallet()
        if request.address not in wallet.addresses:
            raise DispatchError(ErrorKind.VALIDATION, "Address is not in this wallet")

        wallet.nicknames[request.address] = request.nickname
        view = await self.session.commit_wallet(wallet)
        return Ok({"wallet": view.to_wire()})

    async def _on_select_address(self, data: dict[str, Any], sender: Sender) -> Result:
        request = SelectAddressRequest.model_validate(data)
        if request.index >= len(await self._wallet_addresses()):
            raise DispatchError(ErrorKind.VALIDATION, f"No address at index {request.index}")
        await self.session.set_selected_index(request.index)
        return Ok({"selectedAddressIndex": request.index})

    # Chain data

    async def _on_get_price(self, data: dict[str, Any], sender: Sender) -> Result:
        return Ok(await self.backend.get_price(self.price_currency))

    async def _on_get_address_balance(self, data: dict[str, Any], sender: Sender) -> Result:
        request = AddressBalanceRequest.model_validate(data)
        targets = request.targets()

        if sender.is_tab:
            client = await self._require_client(sender)
            if any(address != client.address for address in targets):
                raise DispatchError(
                    ErrorKind.POLICY_VIOLATION, "Address is not connected to this origin"
                )

        balances = await asyncio.gather(
            *(self.backend.get_address_balance(address) for address in targets)
        )
        return Ok(list(balances) if request.addresses else balances[0])

    async def _on_get_transactions(self, data: dict[str, Any], sender: Sender) -> Result:
        request = TransactionsRequest.model_validate(data)
        page = await self.backend.get_address_transactions(
            request.address, request.page, self.page_size
        )

        details = await asyncio.gather(*(self.backend.get_transaction(t) for t in page.txids))
        transactions = sorted(
            (tx for tx in details if tx is not None),
            key=lambda tx: tx.get("blockTime") or 0,
            reverse=True,
        )
        return Ok(
            {"transactions": transactions, "totalPages": page.total_pages, "page": page.page}
        )

    async def _on_get_transaction_details(
        self, data: dict[str, Any], sender: Sender
    ) -> Result:
        request = TransactionDetailsRequest.model_validate(data)
        transaction = await self.backend.get_transaction(request.tx_id)
        if transaction is None:
            raise DispatchError(ErrorKind.VALIDATION, "Unknown transaction")
        return Ok(transaction)

    # Money movement

    async def _on_create_transaction(self, data: dict[str, Any], sender: Sender) -> Result:
        request = CreateTransactionRequest.model_validate(data)
        if request.sender_address not in await self._wallet_addresses():
            raise DispatchError(ErrorKind.VALIDATION, "Sender address is not in this wallet")

        utxos = await self.backend.get_utxos(request.sender_address)
        built = build_unsigned_transaction(
            request.sender_address,
            request.recipient_address,
            request.amount,
            utxos,
            self.fee_policy,
            self.params,
        )
        return Ok(built.to_wire())

    async def _on_send_transaction(self, data: dict[str, Any], sender: Sender) -> Result:
        request = SendTransactionRequest.model_validate(data)
        wif = await self._signing_key(request.selected_address_index)

        signed = sign_raw_tx(request.raw_tx, wif, self.params)
        return Ok(await self.backend.broadcast_transaction(signed))

    async def _on_sign_psbt(self, data: dict[str, Any], sender: Sender) -> Result:
        request = SignPsbtRequest.model_validate(data)
        # Policy is enforced before the wallet is decrypted
        check_sighash_type(request.sighash_type)
        wif = await self._signing_key(request.selected_address_index)

        result = sign_raw_psbt(
            request.raw_tx,
            request.indexes,
            wif,
            finalize=not request.fee_only,
            partial=request.partial,
            sighash_type=request.sighash_type,
            params=self.params,
        )
        return Ok(result.to_wire())

    async def _on_send_psbt(self, data: dict[str, Any], sender: Sender) -> Result:
        request = SendPsbtRequest.model_validate(data)
        return Ok(await self.backend.broadcast_transaction(request.raw_tx))

    async def _on_sign_message(self, data: dict[str, Any], sender: Sender) -> Result:
        request = SignMessageRequest.model_validate(data)
        wif = await self._signing_key(request.selected_address_index)
        return Ok(sign_message(request.message, wif, self.params))

    async def _on_decrypt_message(self, data: dict[str, Any], sender: Sender) -> Result:
        request = DecryptMessageRequest.model_validate(data)
        wif = await self._signing_key(request.selected_address_index)
        return Ok(decrypt_data(wif, request.message, self.params))

    # Client protocol

    async def _on_get_connected_clients(self, data: dict[str, Any], sender: Sender) -> Result:
        clients = await self.session.get_connected_clients()
        if sender.is_tab:
            clients = {origin: c for origin, c in clients.items() if origin == sender.origin}
        return Ok({origin: client.to_wire() for origin, client in clients.items()})

    async def _on_client_disconnect(self, data: dict[str, Any], sender: Sender) -> Result:
        # A page can only disconnect itself
        if sender.is_tab:
            origin = sender.origin
        else:
            origin = ClientDisconnectRequest.model_validate(data).origin
        if not origin:
            raise DispatchError(ErrorKind.VALIDATION, "origin is required")
        await self.session.disconnect_client(origin)
        return Ok(True)

    def _client_request_handler(self, message_type: MessageType) -> Handler:
        async def handler(data: dict[str, Any], sender: Sender) -> Result:
            return await self._on_client_request(message_type, data, sender)

        return handler

    def _popup_response_handler(self, message_type: MessageType) -> Handler:
        async def handler(data: dict[str, Any], sender: Sender) -> Result:
            return await self._on_popup_response(message_type, data, sender)

        return handler

    async def _on_client_request(
        self, message_type: MessageType, data: dict[str, Any], sender: Sender
    ) -> Result:
        if not sender.is_tab or sender.origin is None or sender.tab_id is None:
            raise DispatchError(ErrorKind.VALIDATION, "Client requests must come from a tab")

        params: dict[str, Any] = {}
        if message_type is MessageType.CLIENT_REQUEST_CONNECTION:
            params["isOnboardingPending"] = not await self.session.is_onboarding_complete()
        else:
            await self._require_client(sender)
            payload = CLIENT_REQUEST_PAYLOADS[message_type].model_validate(data)
            if isinstance(payload, PsbtRequestPayload):
                check_sighash_type(payload.sighash_type)
            params.update(payload.model_dump(by_alias=True))

        approval = await self.session.open_approval(message_type, sender.origin, sender.tab_id)
        params["requestId"] = approval.request_id

        opened = await self.popup.open_popup(message_type, sender.origin, sender.tab_id, params)
        if not opened:
            await self.session.take_approval(approval.request_id)
            logger.error(f"Could not open approval popup for {message_type.value}")
            return Err(ErrorKind.INTERNAL, "Unable to open approval window")

        approval.advance(ClientRequestState.POPUP_OPENED)
        approval.advance(ClientRequestState.AWAITING_USER_DECISION)
        await self.session.save_approval(approval)

        logger.info(f"Awaiting user decision on {message_type.value} from {sender.origin}")
        return Ok({"originTabId": sender.tab_id, "requestId": approval.request_id})

    async def _on_popup_response(
        self, message_type: MessageType, data: dict[str, Any], sender: Sender
    ) -> Result:
        response = POPUP_RESPONSE_SCHEMAS[message_type].model_validate(data)

        approval = await self.session.get_approval(response.request_id)
        if approval is None or approval.response_type is not message_type:
            logger.warning(f"No pending request {response.request_id} for {message_type.value}")
            raise DispatchError(ErrorKind.VALIDATION, "Unknown or expired request")
        await self.session.take_approval(approval.request_id)

        payload: dict[str, Any] | None = response.approved_payload
        if payload is None:
            approval.advance(ClientRequestState.REJECTED)
            default = (
                CONNECTION_REJECTION
                if message_type is MessageType.CLIENT_REQUEST_CONNECTION_RESPONSE
                else DEFAULT_REJECTION
            )
            error = response.error or default
            await self._send_to_tab(approval, error=error)
            logger.info(f"User rejected {approval.request_type.value} from {approval.origin}")
            return Err(ErrorKind.REJECTED_BY_USER, error)

        approval.advance(ClientRequestState.APPROVED)
        if isinstance(response, ConnectionResponse):
            try:
                payload = await self._connect_client(approval, response)
            except DispatchError as e:
                await self._send_to_tab(approval, error=e.message)
                raise
        await self._send_to_tab(approval, data=payload)
        approval.advance(ClientRequestState.EXECUTED)
        return Ok(True)

    async def _connect_client(
        self, approval: PendingApproval, response: ConnectionResponse
    ) -> dict[str, Any]:
        wallet = await self.session.load_wallet()
        index = response.selected_address_index
        if index >= len(wallet.addresses) or wallet.addresses[index] != response.address:
            raise DispatchError(ErrorKind.VALIDATION, "Address is not in this wallet")

        await self.session.connect_client(
            ConnectedClient(
                origin=approval.origin,
                address=wallet.addresses[index],
                origin_tab_id=approval.origin_tab_id,
            )
        )
        return {
            "approved": True,
            "publicKey": public_key_hex(wallet.children[index], self.params),
            "address": wallet.addresses[index],
            "balance": response.balance,
        }

    async def _send_to_tab(
        self,
        approval: PendingApproval,
        data: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        """Relay a decision to the tab and origin the request came from."""
        message = TabMessage(
            type=approval.response_type.value, data=data, error=error, origin=approval.origin
        )
        await self.tabs.send_to_tab(approval.origin_tab_id, message.to_wire())
