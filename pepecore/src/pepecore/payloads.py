"""
Payloads a web page may attach to client requests.

Validated twice: by the page provider before anything is queued, and again
by the background dispatcher, which never trusts the page.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from pepecore.constants import SIGHASH_ALL


class ClientPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TransactionRequestPayload(ClientPayload):
    recipient_address: str = Field(..., min_length=1, alias="recipientAddress")
    # Smallest units
    amount: int = Field(..., gt=0, strict=True)


class PsbtRequestPayload(ClientPayload):
    raw_tx: str = Field(..., min_length=1, alias="rawTx")
    indexes: list[int] = Field(..., min_length=1)
    sign_only: bool = Field(default=False, alias="signOnly")
    partial: bool = False
    sighash_type: int = Field(default=SIGHASH_ALL, alias="sighashType", strict=True)


class MessageRequestPayload(ClientPayload):
    message: str = Field(..., min_length=1)


class TransactionStatusPayload(ClientPayload):
    tx_id: str = Field(..., pattern=r"^[0-9a-fA-F]{64}$", alias="txId")
