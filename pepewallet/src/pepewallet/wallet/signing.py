"""
Transaction and message signing for legacy P2PKH keys.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

from coincurve import PrivateKey
from pepecore.constants import (
    SIGHASH_ALL,
    SIGHASH_ANYONECANPAY,
    SIGHASH_NONE,
    SIGHASH_SINGLE,
)
from pepecore.crypto import (
    CryptoError,
    ecies_decrypt,
    ecies_encrypt,
    encode_varint,
    recover_compact,
    sign_compact,
)
from pepecore.models import PEPECOIN, ChainParams

from pepewallet.wallet.address import pubkey_to_p2pkh_address, pubkey_to_p2pkh_script
from pepewallet.wallet.keys import from_wif

# Sighash of SIGHASH_SINGLE for an input without a matching output
SIGHASH_SINGLE_BUG = (1).to_bytes(32, "little")


class TransactionSigningError(Exception):
    pass


@dataclass
class TxInput:
    txid_le: bytes
    vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF

    @property
    def txid(self) -> str:
        """Outpoint txid in display (big-endian) order"""
        return self.txid_le[::-1].hex()


@dataclass
class TxOutput:
    value: int
    script: bytes


@dataclass
class Transaction:
    version: int = 1
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    locktime: int = 0

    def serialize(self) -> bytes:
        """Legacy (non-witness) serialization."""
        result = self.version.to_bytes(4, "little")

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.txid_le + inp.vout.to_bytes(4, "little")
            result += encode_varint(len(inp.script_sig)) + inp.script_sig
            result += inp.sequence.to_bytes(4, "little")

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.value.to_bytes(8, "little")
            result += encode_varint(len(out.script)) + out.script

        result += self.locktime.to_bytes(4, "little")
        return result

    def txid(self) -> str:
        return hash256(self.serialize())[::-1].hex()


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        size = 2
    elif first == 0xFE:
        size = 4
    else:
        size = 8
    if offset + size > len(data):
        raise ValueError("Truncated varint")
    return int.from_bytes(data[offset : offset + size], "little"), offset + size


def _read(data: bytes, offset: int, size: int) -> tuple[bytes, int]:
    if offset + size > len(data):
        raise ValueError("Unexpected end of data")
    return data[offset : offset + size], offset + size


def deserialize_transaction(tx_bytes: bytes) -> Transaction:
    """
    Parse a serialized transaction.

    Witness data, if present, is skipped: this chain never spends witness
    outputs and txids are computed over the legacy serialization.
    """
    try:
        chunk, offset = _read(tx_bytes, 0, 4)
        version = int.from_bytes(chunk, "little")

        has_witness = False
        if tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01:
            has_witness = True
            offset += 2

        input_count, offset = read_varint(tx_bytes, offset)
        inputs: list[TxInput] = []
        for _ in range(input_count):
            txid_le, offset = _read(tx_bytes, offset, 32)
            chunk, offset = _read(tx_bytes, offset, 4)
            vout = int.from_bytes(chunk, "little")
            script_len, offset = read_varint(tx_bytes, offset)
            script, offset = _read(tx_bytes, offset, script_len)
            chunk, offset = _read(tx_bytes, offset, 4)
            inputs.append(TxInput(txid_le, vout, script, int.from_bytes(chunk, "little")))

        output_count, offset = read_varint(tx_bytes, offset)
        outputs: list[TxOutput] = []
        for _ in range(output_count):
            chunk, offset = _read(tx_bytes, offset, 8)
            script_len, offset = read_varint(tx_bytes, offset)
            script, offset = _read(tx_bytes, offset, script_len)
            outputs.append(TxOutput(int.from_bytes(chunk, "little"), script))

        if has_witness:
            for _ in range(input_count):
                stack_count, offset = read_varint(tx_bytes, offset)
                for _ in range(stack_count):
                    item_len, offset = read_varint(tx_bytes, offset)
                    _, offset = _read(tx_bytes, offset, item_len)

        chunk, offset = _read(tx_bytes, offset, 4)
        if offset != len(tx_bytes):
            raise ValueError(f"{len(tx_bytes) - offset} trailing bytes")

        return Transaction(version, inputs, outputs, int.from_bytes(chunk, "little"))

    except (IndexError, ValueError) as e:
        raise TransactionSigningError(f"Failed to parse transaction: {e}") from e


def compute_sighash_legacy(
    tx: Transaction, input_index: int, script_code: bytes, sighash_type: int
) -> bytes:
    """
    Original (pre-segwit) signature hash.

    The low five bits select ALL / NONE / SINGLE; the ANYONECANPAY bit
    commits to the signed input only.
    """
    if input_index >= len(tx.inputs):
        raise TransactionSigningError("Input index out of range")

    base_type = sighash_type & 0x1F
    anyone_can_pay = bool(sighash_type & SIGHASH_ANYONECANPAY)

    if base_type == SIGHASH_SINGLE and input_index >= len(tx.outputs):
        return SIGHASH_SINGLE_BUG

    inputs: list[TxInput] = []
    for i, inp in enumerate(tx.inputs):
        if i == input_index:
            inputs.append(TxInput(inp.txid_le, inp.vout, script_code, inp.sequence))
        elif not anyone_can_pay:
            sequence = 0 if base_type in (SIGHASH_NONE, SIGHASH_SINGLE) else inp.sequence
            inputs.append(TxInput(inp.txid_le, inp.vout, b"", sequence))

    if base_type == SIGHASH_NONE:
        outputs: list[TxOutput] = []
    elif base_type == SIGHASH_SINGLE:
        outputs = [TxOutput(0xFFFFFFFFFFFFFFFF, b"") for _ in range(input_index)]
        outputs.append(tx.outputs[input_index])
    else:
        outputs = list(tx.outputs)

    preimage = Transaction(tx.version, inputs, outputs, tx.locktime).serialize()
    return hash256(preimage + sighash_type.to_bytes(4, "little"))


def sign_legacy_input(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    private_key: PrivateKey,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """Sign one input; returns the DER signature with the sighash byte appended."""
    sighash = compute_sighash_legacy(tx, input_index, script_code, sighash_type)

    # RFC6979 nonce, low-S DER; the sighash is already double-SHA256
    signature = private_key.sign(sighash, hasher=None)

    return signature + bytes([sighash_type & 0xFF])


def create_p2pkh_script_sig(signature: bytes, pubkey_bytes: bytes) -> bytes:
    return (
        bytes([len(signature)]) + signature + bytes([len(pubkey_bytes)]) + pubkey_bytes
    )


def sign_raw_tx(raw_tx_hex: str, wif: str, params: ChainParams = PEPECOIN) -> str:
    """
    Sign every input of an unsigned transaction as a P2PKH spend from the
    key's own address, with SIGHASH_ALL.

    Returns:
        Signed transaction hex
    """
    try:
        tx_bytes = bytes.fromhex(raw_tx_hex)
    except ValueError as e:
        raise TransactionSigningError("Transaction is not valid hex") from e

    tx = deserialize_transaction(tx_bytes)
    if not tx.inputs:
        raise TransactionSigningError("Transaction has no inputs")

    private_key = from_wif(wif, params)
    pubkey_bytes = private_key.public_key.format(compressed=True)
    script_code = pubkey_to_p2pkh_script(pubkey_bytes)

    script_sigs = [
        create_p2pkh_script_sig(
            sign_legacy_input(tx, i, script_code, private_key, SIGHASH_ALL), pubkey_bytes
        )
        for i in range(len(tx.inputs))
    ]
    for inp, script_sig in zip(tx.inputs, script_sigs):
        inp.script_sig = script_sig

    return tx.serialize().hex()


def sign_message(message: str, wif: str, params: ChainParams = PEPECOIN) -> str:
    """Sign a message in the chain's signed-message format (base64 compact signature)."""
    return sign_compact(message, from_wif(wif, params).secret, params.message_prefix)


def verify_message(
    message: str, signature: str, address: str, params: ChainParams = PEPECOIN
) -> bool:
    try:
        pubkey_bytes, _ = recover_compact(message, signature, params.message_prefix)
    except CryptoError:
        return False
    return pubkey_to_p2pkh_address(pubkey_bytes, params) == address


def decrypt_data(wif: str, ciphertext: str, params: ChainParams = PEPECOIN) -> str:
    """
    Decrypt a message that was ECIES-encrypted to the key's public key.

    Raises:
        CryptoError: If the ciphertext is malformed or was not meant for this key
    """
    plaintext = ecies_decrypt(from_wif(wif, params).secret, ciphertext)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CryptoError("Decrypted message is not valid UTF-8") from e


def encrypt_message(pubkey_hex: str, message: str) -> str:
    try:
        pubkey_bytes = bytes.fromhex(pubkey_hex)
    except ValueError as e:
        raise CryptoError("Public key is not valid hex") from e
    return ecies_encrypt(pubkey_bytes, message.encode("utf-8"))
