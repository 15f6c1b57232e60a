"""
Unsigned transaction builder.

Coin selection is deterministic:
1. Sort UTXOs ascending by value (ties keep their order).
2. Accumulate until the total covers the amount plus the fee estimated for
   the inputs selected so far.
3. Drop inputs, smallest first, that the remaining inputs make redundant.
4. Re-estimate the fee for the final input count; fail if still short.

Fees are estimated with a flat per-input and per-output size, always
assuming two outputs. Change at or below the dust threshold gets no output
and is added to the fee, so ``sum(inputs) == amount + fee + change`` holds
for every built transaction.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from loguru import logger
from pepecore.constants import (
    DEFAULT_DUST_THRESHOLD,
    DEFAULT_FEE_RATE,
    P2PKH_INPUT_SIZE,
    P2PKH_OUTPUT_SIZE,
    TX_OVERHEAD_SIZE,
)
from pepecore.models import PEPECOIN, UTXO, ChainParams
from pydantic import BaseModel, ConfigDict, Field

from pepewallet.wallet.address import address_to_scriptpubkey
from pepewallet.wallet.signing import Transaction, TxInput, TxOutput


class InsufficientFundsError(Exception):
    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient funds: need {required}, have {available}")


class FeePolicy(BaseModel):
    """Fee estimation constants (rate per byte, sizes in bytes, amounts in smallest units)."""

    model_config = ConfigDict(frozen=True)

    fee_rate: int = Field(default=DEFAULT_FEE_RATE, ge=0)
    input_size: int = Field(default=P2PKH_INPUT_SIZE, gt=0)
    output_size: int = Field(default=P2PKH_OUTPUT_SIZE, gt=0)
    overhead_size: int = Field(default=TX_OVERHEAD_SIZE, ge=0)
    dust_threshold: int = Field(default=DEFAULT_DUST_THRESHOLD, ge=0)


DEFAULT_FEE_POLICY = FeePolicy()


@dataclass
class BuiltTransaction:
    raw_transaction: str
    fee: int
    actual_amount: int
    change: int
    inputs: list[UTXO]

    @property
    def total_input(self) -> int:
        return sum(utxo.value for utxo in self.inputs)

    def to_wire(self) -> dict[str, int | str]:
        return {
            "rawTx": self.raw_transaction,
            "fee": self.fee,
            "amount": self.actual_amount,
            "change": self.change,
        }


def estimate_fee(num_inputs: int, policy: FeePolicy = DEFAULT_FEE_POLICY) -> int:
    """Fee for ``num_inputs`` inputs and two outputs."""
    size = policy.overhead_size + num_inputs * policy.input_size + 2 * policy.output_size
    return policy.fee_rate * size


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"Amount must be a positive integer, got {amount!r}")


def select_utxos(
    utxos: Iterable[UTXO], amount: int, policy: FeePolicy = DEFAULT_FEE_POLICY
) -> list[UTXO]:
    """
    Select inputs for a payment of ``amount``.

    Raises:
        ValueError: If amount is not a positive integer
        InsufficientFundsError: If all UTXOs together cannot cover amount + fee
    """
    _check_amount(amount)

    candidates = sorted(utxos, key=lambda u: u.value)

    selected: list[UTXO] = []
    total = 0
    for utxo in candidates:
        if total >= amount and total >= amount + estimate_fee(len(selected), policy):
            break
        selected.append(utxo)
        total += utxo.value

    kept = list(selected)
    for utxo in selected:
        if len(kept) == 1:
            break
        remaining = total - utxo.value
        if remaining >= amount + estimate_fee(len(kept) - 1, policy):
            kept = [u for u in kept if u is not utxo]
            total = remaining

    required = amount + estimate_fee(len(kept), policy)
    if total < required:
        raise InsufficientFundsError(required, total)

    logger.debug(
        f"Selected {len(kept)} of {len(candidates)} UTXOs: total={total}, required={required}"
    )
    return kept


def build_unsigned_transaction(
    sender_address: str,
    recipient_address: str,
    amount: int,
    utxos: Iterable[UTXO],
    policy: FeePolicy = DEFAULT_FEE_POLICY,
    params: ChainParams = PEPECOIN,
) -> BuiltTransaction:
    """
    Build an unsigned payment from ``sender_address`` to ``recipient_address``.

    Output 0 pays the recipient exactly ``amount``; output 1, if present,
    returns change to the sender.
    """
    recipient_script = address_to_scriptpubkey(recipient_address, params)
    sender_script = address_to_scriptpubkey(sender_address, params)

    selected = select_utxos(utxos, amount, policy)
    total = sum(utxo.value for utxo in selected)
    fee = estimate_fee(len(selected), policy)
    change = total - amount - fee

    tx = Transaction(
        inputs=[TxInput(bytes.fromhex(utxo.txid)[::-1], utxo.vout) for utxo in selected],
        outputs=[TxOutput(amount, recipient_script)],
    )

    if change > policy.dust_threshold:
        tx.outputs.append(TxOutput(change, sender_script))
    else:
        if change:
            logger.debug(f"Change {change} is below dust threshold, adding to fee")
        fee += change
        change = 0

    return BuiltTransaction(
        raw_transaction=tx.serialize().hex(),
        fee=fee,
        actual_amount=amount,
        change=change,
        inputs=selected,
    )
