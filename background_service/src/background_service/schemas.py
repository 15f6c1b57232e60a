"""
Request schemas for background messages.

Every handler validates its ``data`` dict against one of these before
touching storage or keys. Field names follow the wire (camelCase aliases).
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pepecore.constants import MAX_NICKNAME_LENGTH, SIGHASH_ALL
from pydantic import BaseModel, ConfigDict, Field, model_validator


class RequestData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# Wallet lifecycle


class CreateWalletRequest(RequestData):
    password: str = Field(..., min_length=1)
    seed_phrase: str | None = Field(default=None, alias="seedPhrase")


class AuthenticateRequest(RequestData):
    password: str = Field(..., min_length=1)
    return_secret_phrase: bool = Field(default=False, alias="_dangerouslyReturnSecretPhrase")


class GenerateAddressRequest(RequestData):
    nickname: str = Field(default="", max_length=MAX_NICKNAME_LENGTH)


class DeleteAddressRequest(RequestData):
    # Address 0 is permanent
    index: int = Field(..., gt=0)


class UpdateNicknameRequest(RequestData):
    address: str = Field(..., min_length=1)
    nickname: str = Field(..., min_length=1, max_length=MAX_NICKNAME_LENGTH)


class SelectAddressRequest(RequestData):
    index: int = Field(..., ge=0)


# Chain data


class AddressBalanceRequest(RequestData):
    address: str | None = None
    addresses: list[str] | None = None

    @model_validator(mode="after")
    def require_address(self) -> AddressBalanceRequest:
        if not self.address and not self.addresses:
            raise ValueError("address or addresses is required")
        return self

    def targets(self) -> list[str]:
        return list(self.addresses) if self.addresses else [self.address or ""]


class TransactionsRequest(RequestData):
    address: str = Field(..., min_length=1)
    page: int = Field(default=1, ge=1)


class TransactionDetailsRequest(RequestData):
    tx_id: str = Field(..., pattern=r"^[0-9a-fA-F]{64}$", alias="txId")


# Money movement


class KeyedRequest(RequestData):
    # Falls back to the persisted selection when omitted
    selected_address_index: int | None = Field(default=None, ge=0, alias="selectedAddressIndex")


class CreateTransactionRequest(RequestData):
    sender_address: str = Field(..., min_length=1, alias="senderAddress")
    recipient_address: str = Field(..., min_length=1, alias="recipientAddress")
    amount: int = Field(..., gt=0, strict=True)


class SendTransactionRequest(KeyedRequest):
    raw_tx: str = Field(..., min_length=1, alias="rawTx")


class SignPsbtRequest(KeyedRequest):
    raw_tx: str = Field(..., min_length=1, alias="rawTx")
    indexes: list[int] = Field(..., min_length=1)
    fee_only: bool = Field(default=False, alias="feeOnly")
    partial: bool = False
    sighash_type: int = Field(default=SIGHASH_ALL, alias="sighashType", strict=True)


class SendPsbtRequest(RequestData):
    raw_tx: str = Field(..., min_length=1, alias="rawTx")


class SignMessageRequest(KeyedRequest):
    message: str = Field(..., min_length=1)


class DecryptMessageRequest(KeyedRequest):
    message: str = Field(..., min_length=1)


# Approval popup decisions


class PopupResponse(RequestData, ABC):
    request_id: str = Field(..., min_length=1, alias="requestId")
    error: str | None = None

    @property
    @abstractmethod
    def approved_payload(self) -> dict[str, str] | None:
        """Data relayed to the page on approval, None when the user declined."""


class ConnectionResponse(PopupResponse):
    approved: bool = False
    address: str | None = None
    selected_address_index: int = Field(default=0, ge=0, alias="selectedAddressIndex")
    balance: int | str | None = None

    @property
    def approved_payload(self) -> dict[str, str] | None:
        return {"address": self.address} if self.approved and self.address else None


class TransactionResponse(PopupResponse):
    tx_id: str | None = Field(default=None, alias="txId")

    @property
    def approved_payload(self) -> dict[str, str] | None:
        return {"txId": self.tx_id} if self.tx_id else None


class PsbtResponse(PopupResponse):
    signed_raw_tx: str | None = Field(default=None, alias="signedRawTx")
    tx_id: str | None = Field(default=None, alias="txId")

    @property
    def approved_payload(self) -> dict[str, str] | None:
        payload = {}
        if self.signed_raw_tx:
            payload["signedRawTx"] = self.signed_raw_tx
        if self.tx_id:
            payload["txId"] = self.tx_id
        return payload or None


class SignedMessageResponse(PopupResponse):
    signed_message: str | None = Field(default=None, alias="signedMessage")

    @property
    def approved_payload(self) -> dict[str, str] | None:
        return {"signedMessage": self.signed_message} if self.signed_message else None


class DecryptedMessageResponse(PopupResponse):
    decrypted_message: str | None = Field(default=None, alias="decryptedMessage")

    @property
    def approved_payload(self) -> dict[str, str] | None:
        return {"decryptedMessage": self.decrypted_message} if self.decrypted_message else None


class ClientDisconnectRequest(RequestData):
    origin: str | None = None
