"""
Session context for the background dispatcher.

Lifecycle:
- begin(): on wallet creation or successful authentication. Stores the
  authenticated flag, the non-secret wallet view and the password in the
  session store.
- end(): on sign-out or wallet deletion. Clears the session store, which
  drops connected clients and pending approvals with it.

The session store itself is discarded when the process exits, so nothing
here survives a restart.
"""

from __future__ import annotations

import uuid
from typing import Any

from loguru import logger
from pepecore.constants import (
    AUTHENTICATED,
    CONNECTED_CLIENTS,
    LOCAL_KEYS,
    ONBOARDING_COMPLETE,
    PASSWORD,
    PENDING_APPROVALS,
    SELECTED_ADDRESS_INDEX,
    WALLET,
)
from pepecore.models import ConnectedClient, SessionWallet, WalletData
from pepecore.protocol import (
    CLIENT_POPUP_MESSAGE_PAIRS,
    CLIENT_REQUEST_TRANSITIONS,
    ClientRequestState,
    MessageType,
)
from pepewallet.wallet import cipher
from pydantic import BaseModel, ConfigDict, Field

from background_service.storage import KeyValueStore


class SessionNotAuthenticatedError(Exception):
    pass


class WalletDecryptionError(Exception):
    pass


class InvalidTransitionError(ValueError):
    pass


class PendingApproval(BaseModel):
    """A client request waiting for the user's decision in the approval popup."""

    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(..., alias="requestId")
    request_type: MessageType = Field(..., alias="requestType")
    origin: str
    origin_tab_id: int = Field(..., alias="originTabId")
    state: ClientRequestState = ClientRequestState.RECEIVED

    @property
    def response_type(self) -> MessageType:
        return CLIENT_POPUP_MESSAGE_PAIRS[self.request_type]

    def advance(self, state: ClientRequestState) -> None:
        if state not in CLIENT_REQUEST_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Request {self.request_id}: {self.state.value} -> {state.value} not allowed"
            )
        logger.debug(f"Request {self.request_id}: {self.state.value} -> {state.value}")
        self.state = state


class Session:
    def __init__(self, local: KeyValueStore, session: KeyValueStore):
        self.local = local
        self.session = session

    async def begin(self, wallet_view: SessionWallet, password: str) -> None:
        await self.session.set(
            {
                AUTHENTICATED: True,
                WALLET: wallet_view.model_dump(exclude={"phrase"}),
                PASSWORD: password,
            }
        )
        logger.info("Session started")

    async def end(self) -> None:
        await self.session.clear()
        logger.info("Session ended")

    async def initialize_wallet(self, wallet: WalletData, password: str) -> SessionWallet:
        """Persist a new wallet, complete onboarding and open a session for it."""
        await self.local.set(
            {
                PASSWORD: cipher.encrypt(cipher.hash_password(password), password),
                WALLET: cipher.encrypt(wallet.model_dump(), password),
                ONBOARDING_COMPLETE: True,
                SELECTED_ADDRESS_INDEX: 0,
            }
        )
        view = wallet.session_view()
        await self.begin(view, password)
        return view

    async def verify_password(self, password: str) -> bool:
        stored = cipher.decrypt(await self.local.get(PASSWORD), password)
        return stored is not None and stored == cipher.hash_password(password)

    async def delete_wallet(self) -> None:
        await self.end()
        await self.local.remove(LOCAL_KEYS)
        logger.info("Wallet deleted")

    async def is_authenticated(self) -> bool:
        return bool(await self.session.get(AUTHENTICATED))

    async def get_password(self) -> str:
        password = await self.session.get(PASSWORD)
        if not password:
            raise SessionNotAuthenticatedError("Wallet is locked")
        return password

    async def get_session_wallet(self) -> SessionWallet | None:
        data = await self.session.get(WALLET)
        return SessionWallet.model_validate(data) if data else None

    async def is_onboarding_complete(self) -> bool:
        return bool(await self.local.get(ONBOARDING_COMPLETE))

    async def get_selected_index(self) -> int:
        return int(await self.local.get(SELECTED_ADDRESS_INDEX) or 0)

    async def set_selected_index(self, index: int) -> None:
        await self.local.set({SELECTED_ADDRESS_INDEX: index})

    async def load_wallet(self, password: str | None = None) -> WalletData:
        """
        Decrypt the persisted wallet.

        Raises:
            SessionNotAuthenticatedError: No password given and the session is locked
            WalletDecryptionError: Missing blob, wrong password or corrupt payload
        """
        if password is None:
            password = await self.get_password()

        data = cipher.decrypt(await self.local.get(WALLET), password)
        if data is None:
            raise WalletDecryptionError("Unable to decrypt wallet")
        return WalletData.model_validate(data)

    async def commit_wallet(self, wallet: WalletData, password: str | None = None) -> SessionWallet:
        """
        Persist a mutated wallet and its session view as one step.

        Both values are prepared before anything is written. If the session
        write fails the local record is restored, so the encrypted wallet and
        the session view never disagree.
        """
        if password is None:
            password = await self.get_password()

        blob = cipher.encrypt(wallet.model_dump(), password)
        view = wallet.session_view()

        previous = await self.local.get(WALLET)
        await self.local.set({WALLET: blob})
        try:
            await self.session.set({WALLET: view.model_dump(exclude={"phrase"})})
        except Exception:
            logger.error("Session write failed, rolling back wallet record")
            if previous is None:
                await self.local.remove([WALLET])
            else:
                await self.local.set({WALLET: previous})
            raise

        return view

    # Connected clients

    async def _load_clients(self) -> dict[str, Any]:
        return await self.session.get(CONNECTED_CLIENTS) or {}

    async def get_connected_clients(self) -> dict[str, ConnectedClient]:
        return {
            origin: ConnectedClient.model_validate(client)
            for origin, client in (await self._load_clients()).items()
        }

    async def get_client(self, origin: str) -> ConnectedClient | None:
        client = (await self._load_clients()).get(origin)
        return ConnectedClient.model_validate(client) if client else None

    async def connect_client(self, client: ConnectedClient) -> None:
        clients = await self._load_clients()
        clients[client.origin] = client.to_wire()
        await self.session.set({CONNECTED_CLIENTS: clients})
        logger.info(f"Connected client {client.origin} (tab {client.origin_tab_id})")

    async def disconnect_client(self, origin: str) -> bool:
        clients = await self._load_clients()
        if clients.pop(origin, None) is None:
            return False
        await self.session.set({CONNECTED_CLIENTS: clients})
        logger.info(f"Disconnected client {origin}")
        return True

    # Pending approvals

    async def _load_approvals(self) -> dict[str, Any]:
        return await self.session.get(PENDING_APPROVALS) or {}

    async def open_approval(
        self, request_type: MessageType, origin: str, origin_tab_id: int
    ) -> PendingApproval:
        approval = PendingApproval(
            request_id=uuid.uuid4().hex,
            request_type=request_type,
            origin=origin,
            origin_tab_id=origin_tab_id,
        )
        await self.save_approval(approval)
        return approval

    async def save_approval(self, approval: PendingApproval) -> None:
        approvals = await self._load_approvals()
        approvals[approval.request_id] = approval.model_dump(mode="json")
        await self.session.set({PENDING_APPROVALS: approvals})

    async def take_approval(self, request_id: str) -> PendingApproval | None:
        """Remove and return a pending approval. Each approval can be taken once."""
        approvals = await self._load_approvals()
        data = approvals.pop(request_id, None)
        if data is None:
            return None
        await self.session.set({PENDING_APPROVALS: approvals})
        return PendingApproval.model_validate(data)

    async def get_approval(self, request_id: str) -> PendingApproval | None:
        data = (await self._load_approvals()).get(request_id)
        return PendingApproval.model_validate(data) if data else None
