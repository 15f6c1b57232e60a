"""
Core data models using Pydantic for validation and serialization.

Wire format is camelCase (what the extension pages send), Python attributes
are snake_case; every model accepts both.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ChainParams(BaseModel):
    """Version bytes and derivation constants for one address/key format."""

    model_config = ConfigDict(frozen=True)

    name: str
    pubkey_hash_version: int = Field(..., ge=0, le=255)
    script_hash_version: int = Field(..., ge=0, le=255)
    wif_version: int = Field(..., ge=0, le=255)
    coin_type: int = Field(..., ge=0)
    message_prefix: str

    @property
    def derivation_prefix(self) -> str:
        return f"m/44'/{self.coin_type}'/0'/0"


PEPECOIN = ChainParams(
    name="pepecoin",
    pubkey_hash_version=0x38,
    script_hash_version=0x16,
    wif_version=0x9E,
    coin_type=3434,
    message_prefix="Pepecoin Signed Message:\n",
)

# Keys written by early releases used Bitcoin's WIF version byte
BITCOIN = ChainParams(
    name="bitcoin",
    pubkey_hash_version=0x00,
    script_hash_version=0x05,
    wif_version=0x80,
    coin_type=0,
    message_prefix="Bitcoin Signed Message:\n",
)

NETWORKS: dict[str, ChainParams] = {
    PEPECOIN.name: PEPECOIN,
    BITCOIN.name: BITCOIN,
}


def get_chain_params(name: str) -> ChainParams:
    try:
        return NETWORKS[name]
    except KeyError:
        raise ValueError(f"Unknown network: {name}") from None


class WalletData(BaseModel):
    """
    Decrypted wallet secret.

    children[i] is the WIF of the key at derivation index i and addresses[i]
    is the address of that key.
    """

    phrase: str = Field(..., min_length=1)
    root: str = Field(..., min_length=1)
    children: list[str] = Field(default_factory=list)
    addresses: list[str] = Field(default_factory=list)
    nicknames: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_key_address_pairs(self) -> WalletData:
        if len(self.children) != len(self.addresses):
            raise ValueError(
                f"children/addresses length mismatch: {len(self.children)} != "
                f"{len(self.addresses)}"
            )
        return self

    def session_view(self, include_phrase: bool = False) -> SessionWallet:
        return SessionWallet(
            addresses=list(self.addresses),
            nicknames=dict(self.nicknames),
            phrase=self.phrase if include_phrase else None,
        )


class SessionWallet(BaseModel):
    """Non-secret view of the wallet kept in session storage."""

    addresses: list[str] = Field(default_factory=list)
    nicknames: dict[str, str] = Field(default_factory=dict)
    phrase: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ConnectedClient(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    origin: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    origin_tab_id: int = Field(..., alias="originTabId")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class UTXO(BaseModel):
    txid: str = Field(..., pattern=r"^[0-9a-fA-F]{64}$")
    vout: int = Field(..., ge=0)
    value: int = Field(..., ge=0)
    confirmations: int | None = None

    @field_validator("value", mode="before")
    @classmethod
    def parse_value(cls, v: Any) -> int:
        # The indexer reports values as decimal strings
        if isinstance(v, float) and not v.is_integer():
            raise ValueError(f"UTXO value must be a whole number of units: {v}")
        return int(v)
