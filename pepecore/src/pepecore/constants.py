"""
Wallet, fee and protocol constants.

Fee estimation follows the extension's historical policy:
- every input is costed at P2PKH_INPUT_SIZE bytes
- two outputs are always assumed (payment + change)
- TX_OVERHEAD_SIZE covers version, counts and locktime

All of these are defaults only; the background service reads the live values
from its settings (see background_service.config).
"""

from __future__ import annotations

# Local record keys (persisted across restarts, never holds plaintext secrets)
PASSWORD = "@MyPepe_PASSWORD"
WALLET = "@MyPepe_WALLET"
ONBOARDING_COMPLETE = "@MyPepe_ONBOARDING_COMPLETE"
SELECTED_ADDRESS_INDEX = "@MyPepe_SELECTED_ADDRESS_INDEX"

# Session record keys (cleared on sign-out, wallet deletion or browser restart)
AUTHENTICATED = "@MyPepe_AUTHENTICATED"
CONNECTED_CLIENTS = "@MyPepe_CONNECTED_CLIENTS"
PENDING_APPROVALS = "@MyPepe_PENDING_APPROVALS"

LOCAL_KEYS = (PASSWORD, WALLET, ONBOARDING_COMPLETE, SELECTED_ADDRESS_INDEX)

MAX_NICKNAME_LENGTH = 18
TRANSACTION_PAGE_SIZE = 10

SATOSHIS_PER_COIN = 100_000_000

# Signature hash flags
SIGHASH_ALL = 0x01
SIGHASH_NONE = 0x02
SIGHASH_SINGLE = 0x03
SIGHASH_ANYONECANPAY = 0x80

# Allowed flags for externally requested PSBT signatures:
# ALL, SINGLE, ANYONECANPAY, ALL|ANYONECANPAY, SINGLE|ANYONECANPAY.
# SIGHASH_NONE and its variants are never accepted.
SIGHASH_TYPE_WHITELIST = frozenset({1, 3, 128, 129, 131})

# Fee estimation defaults (smallest units per byte, estimated sizes in bytes)
DEFAULT_FEE_RATE = 5000
P2PKH_INPUT_SIZE = 180
P2PKH_OUTPUT_SIZE = 34
TX_OVERHEAD_SIZE = 10

# Change at or below this amount is forfeited to the fee instead of creating an output
DEFAULT_DUST_THRESHOLD = 100_000

# Seconds the provider waits after a popup response before dispatching the next request
PROVIDER_SETTLE_DELAY = 0.5
