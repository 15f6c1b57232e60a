"""
BIP174 Partially Signed Transactions for legacy P2PKH inputs.

Only the fields a legacy signer needs are decoded; every other key-value
pair is kept verbatim so a PSBT round-trips through the signer intact.

Signing policy: the requested sighash type must be one of
SIGHASH_TYPE_WHITELIST. SIGHASH_NONE variants would let any other party
rewrite the outputs after we sign, so they are refused before the PSBT is
even parsed.
"""

from __future__ import annotations

import base64
import binascii
import string
from dataclasses import dataclass, field

from loguru import logger
from pepecore.constants import SIGHASH_ALL, SIGHASH_SINGLE, SIGHASH_TYPE_WHITELIST
from pepecore.crypto import encode_varint
from pepecore.models import PEPECOIN, ChainParams

from pepewallet.wallet.address import pubkey_to_p2pkh_script
from pepewallet.wallet.keys import from_wif
from pepewallet.wallet.signing import (
    Transaction,
    TransactionSigningError,
    TxOutput,
    create_p2pkh_script_sig,
    deserialize_transaction,
    read_varint,
    sign_legacy_input,
)

PSBT_MAGIC = b"psbt\xff"

PSBT_GLOBAL_UNSIGNED_TX = 0x00

PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08


class PSBTError(Exception):
    pass


class SighashPolicyError(Exception):
    pass


KeyValue = tuple[bytes, bytes]


@dataclass
class PSBTInput:
    non_witness_utxo: Transaction | None = None
    witness_utxo: TxOutput | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: int | None = None
    final_script_sig: bytes | None = None
    final_script_witness: bytes | None = None
    unknown: list[KeyValue] = field(default_factory=list)

    @property
    def is_finalized(self) -> bool:
        return self.final_script_sig is not None or self.final_script_witness is not None


@dataclass
class PSBTOutput:
    unknown: list[KeyValue] = field(default_factory=list)


def _read_map(data: bytes, offset: int) -> tuple[list[KeyValue], int]:
    """Read one key-value map up to its 0x00 separator."""
    pairs: list[KeyValue] = []
    while True:
        key_len, offset = read_varint(data, offset)
        if key_len == 0:
            return pairs, offset
        if offset + key_len > len(data):
            raise PSBTError("Truncated PSBT key")
        key = data[offset : offset + key_len]
        offset += key_len

        value_len, offset = read_varint(data, offset)
        if offset + value_len > len(data):
            raise PSBTError("Truncated PSBT value")
        pairs.append((key, data[offset : offset + value_len]))
        offset += value_len


def _write_pair(key: bytes, value: bytes) -> bytes:
    return encode_varint(len(key)) + key + encode_varint(len(value)) + value


def _parse_witness_utxo(value: bytes) -> TxOutput:
    if len(value) < 9:
        raise PSBTError("Invalid witness UTXO")
    script_len, offset = read_varint(value, 8)
    script = value[offset : offset + script_len]
    if offset + script_len != len(value):
        raise PSBTError("Invalid witness UTXO")
    return TxOutput(int.from_bytes(value[:8], "little"), script)


def _parse_input(pairs: list[KeyValue]) -> PSBTInput:
    inp = PSBTInput()
    seen: set[bytes] = set()

    for key, value in pairs:
        if key in seen:
            raise PSBTError(f"Duplicate input key {key.hex()}")
        seen.add(key)

        key_type = key[0]
        if key_type == PSBT_IN_NON_WITNESS_UTXO and len(key) == 1:
            try:
                inp.non_witness_utxo = deserialize_transaction(value)
            except TransactionSigningError as e:
                raise PSBTError(f"Invalid non-witness UTXO: {e}") from e
        elif key_type == PSBT_IN_WITNESS_UTXO and len(key) == 1:
            inp.witness_utxo = _parse_witness_utxo(value)
        elif key_type == PSBT_IN_PARTIAL_SIG and len(key) in (34, 66):
            inp.partial_sigs[key[1:]] = value
        elif key_type == PSBT_IN_SIGHASH_TYPE and len(key) == 1:
            if len(value) != 4:
                raise PSBTError("Invalid sighash type field")
            inp.sighash_type = int.from_bytes(value, "little")
        elif key_type == PSBT_IN_FINAL_SCRIPTSIG and len(key) == 1:
            inp.final_script_sig = value
        elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS and len(key) == 1:
            inp.final_script_witness = value
        else:
            inp.unknown.append((key, value))

    return inp


class PSBT:
    def __init__(
        self,
        tx: Transaction,
        inputs: list[PSBTInput] | None = None,
        outputs: list[PSBTOutput] | None = None,
        global_unknown: list[KeyValue] | None = None,
    ):
        self.tx = tx
        self.inputs = inputs if inputs is not None else [PSBTInput() for _ in tx.inputs]
        self.outputs = outputs if outputs is not None else [PSBTOutput() for _ in tx.outputs]
        self.global_unknown = global_unknown or []

        if len(self.inputs) != len(tx.inputs) or len(self.outputs) != len(tx.outputs):
            raise PSBTError("PSBT maps do not match the unsigned transaction")

    @classmethod
    def parse(cls, data: bytes) -> PSBT:
        if not data.startswith(PSBT_MAGIC):
            raise PSBTError("Missing PSBT magic")

        try:
            global_pairs, offset = _read_map(data, len(PSBT_MAGIC))

            tx: Transaction | None = None
            global_unknown: list[KeyValue] = []
            for key, value in global_pairs:
                if key == bytes([PSBT_GLOBAL_UNSIGNED_TX]):
                    if tx is not None:
                        raise PSBTError("Duplicate unsigned transaction")
                    tx = deserialize_transaction(value)
                else:
                    global_unknown.append((key, value))

            if tx is None:
                raise PSBTError("PSBT has no unsigned transaction")
            if any(inp.script_sig for inp in tx.inputs):
                raise PSBTError("Unsigned transaction has non-empty scriptSig")

            inputs = []
            for _ in tx.inputs:
                pairs, offset = _read_map(data, offset)
                inputs.append(_parse_input(pairs))

            outputs = []
            for _ in tx.outputs:
                pairs, offset = _read_map(data, offset)
                outputs.append(PSBTOutput(unknown=pairs))

        except (IndexError, ValueError, TransactionSigningError) as e:
            raise PSBTError(f"Malformed PSBT: {e}") from e

        if offset != len(data):
            raise PSBTError("Trailing bytes after PSBT")

        return cls(tx, inputs, outputs, global_unknown)

    @classmethod
    def from_string(cls, encoded: str) -> PSBT:
        """Parse a hex or base64 encoded PSBT."""
        encoded = encoded.strip()
        try:
            if encoded and all(c in string.hexdigits for c in encoded):
                data = bytes.fromhex(encoded)
            else:
                data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise PSBTError("PSBT is neither hex nor base64") from e
        return cls.parse(data)

    def serialize(self) -> bytes:
        result = PSBT_MAGIC
        result += _write_pair(bytes([PSBT_GLOBAL_UNSIGNED_TX]), self.tx.serialize())
        for key, value in self.global_unknown:
            result += _write_pair(key, value)
        result += b"\x00"

        for inp in self.inputs:
            if inp.non_witness_utxo is not None:
                result += _write_pair(
                    bytes([PSBT_IN_NON_WITNESS_UTXO]), inp.non_witness_utxo.serialize()
                )
            if inp.witness_utxo is not None:
                utxo = inp.witness_utxo
                encoded_utxo = (
                    utxo.value.to_bytes(8, "little") + encode_varint(len(utxo.script)) + utxo.script
                )
                result += _write_pair(bytes([PSBT_IN_WITNESS_UTXO]), encoded_utxo)
            for pubkey, sig in inp.partial_sigs.items():
                result += _write_pair(bytes([PSBT_IN_PARTIAL_SIG]) + pubkey, sig)
            if inp.sighash_type is not None:
                result += _write_pair(
                    bytes([PSBT_IN_SIGHASH_TYPE]), inp.sighash_type.to_bytes(4, "little")
                )
            if inp.final_script_sig is not None:
                result += _write_pair(bytes([PSBT_IN_FINAL_SCRIPTSIG]), inp.final_script_sig)
            if inp.final_script_witness is not None:
                result += _write_pair(
                    bytes([PSBT_IN_FINAL_SCRIPTWITNESS]), inp.final_script_witness
                )
            for key, value in inp.unknown:
                result += _write_pair(key, value)
            result += b"\x00"

        for out in self.outputs:
            for key, value in out.unknown:
                result += _write_pair(key, value)
            result += b"\x00"

        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    def spent_output(self, index: int) -> TxOutput | None:
        """The output spent by input ``index``, if the PSBT carries it."""
        inp = self.inputs[index]
        txin = self.tx.inputs[index]
        if inp.non_witness_utxo is not None:
            if txin.vout >= len(inp.non_witness_utxo.outputs):
                raise PSBTError(f"Input {index} spends a missing output")
            return inp.non_witness_utxo.outputs[txin.vout]
        return inp.witness_utxo

    def fee(self) -> int | None:
        """Inputs minus outputs, or None when any input value is unknown."""
        total_in = 0
        for i in range(len(self.inputs)):
            spent = self.spent_output(i)
            if spent is None:
                return None
            total_in += spent.value
        return total_in - sum(out.value for out in self.tx.outputs)

    def finalize_input(self, index: int) -> None:
        """Build the final scriptSig of a signed P2PKH input."""
        inp = self.inputs[index]
        if inp.is_finalized:
            return

        spent = self.spent_output(index)
        if spent is None:
            raise PSBTError(f"Input {index} has no UTXO information")

        for pubkey, sig in inp.partial_sigs.items():
            if pubkey_to_p2pkh_script(pubkey) == spent.script:
                inp.final_script_sig = create_p2pkh_script_sig(sig, pubkey)
                inp.partial_sigs = {}
                inp.sighash_type = None
                return

        raise PSBTError(f"Input {index} is not signed")

    def extract(self) -> Transaction:
        """Assemble the network transaction from fully finalized inputs."""
        for i, inp in enumerate(self.inputs):
            if not inp.is_finalized:
                raise PSBTError(f"Input {i} is not finalized")
            if inp.final_script_witness is not None:
                raise PSBTError(f"Input {i} has a witness, which this chain does not support")

        tx = deserialize_transaction(self.tx.serialize())
        for txin, inp in zip(tx.inputs, self.inputs):
            txin.script_sig = inp.final_script_sig or b""
        return tx


@dataclass
class PsbtSignResult:
    raw_tx: str
    fee: int | None
    amount: int

    def to_wire(self) -> dict[str, int | str | None]:
        return {"rawTx": self.raw_tx, "fee": self.fee, "amount": self.amount}


def check_sighash_type(sighash_type: int) -> None:
    if isinstance(sighash_type, bool) or sighash_type not in SIGHASH_TYPE_WHITELIST:
        raise SighashPolicyError(f"Sighash type {sighash_type!r} is not allowed")


def sign_raw_psbt(
    psbt_data: str,
    input_indexes: list[int],
    wif: str,
    finalize: bool = True,
    partial: bool = False,
    sighash_type: int = SIGHASH_ALL,
    params: ChainParams = PEPECOIN,
) -> PsbtSignResult:
    """
    Sign the requested inputs of a PSBT with one key.

    Args:
        psbt_data: Hex or base64 PSBT
        input_indexes: Inputs to sign; each must spend the key's P2PKH output
        wif: Signing key
        finalize: Build final scriptSigs after signing
        partial: With finalize, finalize only the inputs signed here and
            return the PSBT; without it, finalize every input and return the
            extracted network transaction
        sighash_type: Signature hash type, checked against the whitelist
        params: Chain parameters

    Returns:
        PsbtSignResult with the PSBT (or final transaction) hex, the fee if
        every input value is known, and the amount paid to other addresses

    Raises:
        SighashPolicyError: Disallowed sighash type
        PSBTError: Malformed PSBT or an input this key cannot sign
    """
    check_sighash_type(sighash_type)

    psbt = PSBT.from_string(psbt_data)
    if not input_indexes:
        raise PSBTError("No inputs to sign")

    private_key = from_wif(wif, params)
    pubkey_bytes = private_key.public_key.format(compressed=True)
    own_script = pubkey_to_p2pkh_script(pubkey_bytes)

    for index in input_indexes:
        if isinstance(index, bool) or not 0 <= index < len(psbt.inputs):
            raise PSBTError(f"Input index {index!r} out of range")

        inp = psbt.inputs[index]
        if inp.is_finalized:
            raise PSBTError(f"Input {index} is already finalized")
        if inp.non_witness_utxo is None:
            raise PSBTError(f"Input {index} is missing its previous transaction")

        txin = psbt.tx.inputs[index]
        if inp.non_witness_utxo.txid() != txin.txid:
            raise PSBTError(f"Input {index} previous transaction does not match outpoint")

        spent = psbt.spent_output(index)
        if spent is None or spent.script != own_script:
            raise PSBTError(f"Input {index} is not spendable by this key")

        # A SINGLE signature without a matching output commits to nothing
        if sighash_type & 0x1F == SIGHASH_SINGLE and index >= len(psbt.tx.outputs):
            raise PSBTError(f"Input {index} has no matching output for SIGHASH_SINGLE")

        if inp.sighash_type is not None and inp.sighash_type != sighash_type:
            raise PSBTError(
                f"Input {index} requests sighash {inp.sighash_type}, not {sighash_type}"
            )

        inp.partial_sigs[pubkey_bytes] = sign_legacy_input(
            psbt.tx, index, own_script, private_key, sighash_type
        )
        inp.sighash_type = sighash_type

    logger.debug(f"Signed PSBT inputs {list(input_indexes)} with sighash {sighash_type}")

    if finalize and partial:
        for index in input_indexes:
            psbt.finalize_input(index)
        raw_tx = psbt.to_hex()
    elif finalize:
        for index in range(len(psbt.inputs)):
            psbt.finalize_input(index)
        raw_tx = psbt.extract().serialize().hex()
    else:
        raw_tx = psbt.to_hex()

    amount = sum(out.value for out in psbt.tx.outputs if out.script != own_script)

    return PsbtSignResult(raw_tx=raw_tx, fee=psbt.fee(), amount=amount)
