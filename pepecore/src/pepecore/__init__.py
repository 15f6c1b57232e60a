"""
pepecore - Shared library for the wallet components

Provides the cross-context protocol, data models, chain parameters and
crypto primitives.
"""

__version__ = "0.1.0"

from pepecore.constants import (
    DEFAULT_DUST_THRESHOLD,
    DEFAULT_FEE_RATE,
    SIGHASH_TYPE_WHITELIST,
)
from pepecore.crypto import CryptoError, ecies_decrypt, ecies_encrypt, sign_compact
from pepecore.models import (
    BITCOIN,
    NETWORKS,
    PEPECOIN,
    UTXO,
    ChainParams,
    ConnectedClient,
    SessionWallet,
    WalletData,
    get_chain_params,
)
from pepecore.protocol import (
    CLIENT_POPUP_MESSAGE_PAIRS,
    ClientMessageType,
    ClientRequestState,
    Err,
    ErrorKind,
    MessageType,
    Ok,
    Result,
    RuntimeMessage,
    Sender,
    TabMessage,
)

__all__ = [
    "BITCOIN",
    "CLIENT_POPUP_MESSAGE_PAIRS",
    "ChainParams",
    "ClientMessageType",
    "ClientRequestState",
    "ConnectedClient",
    "CryptoError",
    "DEFAULT_DUST_THRESHOLD",
    "DEFAULT_FEE_RATE",
    "Err",
    "ErrorKind",
    "MessageType",
    "NETWORKS",
    "Ok",
    "PEPECOIN",
    "Result",
    "RuntimeMessage",
    "SIGHASH_TYPE_WHITELIST",
    "Sender",
    "SessionWallet",
    "TabMessage",
    "UTXO",
    "WalletData",
    "ecies_decrypt",
    "ecies_encrypt",
    "get_chain_params",
    "sign_compact",
]
