"""
Legacy (base58check) address utilities.
"""

from __future__ import annotations

import hashlib

import base58
from pepecore.models import PEPECOIN, ChainParams


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG"""
    if len(pubkey_hash) != 20:
        raise ValueError(f"Invalid pubkey hash length: {len(pubkey_hash)}")
    return bytes([0x76, 0xA9, 0x14]) + pubkey_hash + bytes([0x88, 0xAC])


def p2sh_script(script_hash: bytes) -> bytes:
    """OP_HASH160 <20-byte-scripthash> OP_EQUAL"""
    if len(script_hash) != 20:
        raise ValueError(f"Invalid script hash length: {len(script_hash)}")
    return bytes([0xA9, 0x14]) + script_hash + bytes([0x87])


def pubkey_to_p2pkh_address(pubkey_bytes: bytes, params: ChainParams = PEPECOIN) -> str:
    """Convert a serialized public key to its P2PKH address."""
    if len(pubkey_bytes) not in (33, 65):
        raise ValueError(f"Invalid pubkey length: {len(pubkey_bytes)}")

    payload = bytes([params.pubkey_hash_version]) + hash160(pubkey_bytes)
    return base58.b58encode_check(payload).decode("ascii")


def pubkey_to_p2pkh_script(pubkey_bytes: bytes) -> bytes:
    return p2pkh_script(hash160(pubkey_bytes))


def address_to_scriptpubkey(address: str, params: ChainParams = PEPECOIN) -> bytes:
    """
    Convert an address to scriptPubKey.

    Supports P2PKH and P2SH for the given chain; anything else is rejected.
    """
    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid address: {address}") from e

    if len(decoded) != 21:
        raise ValueError(f"Invalid address payload length: {address}")

    version = decoded[0]
    payload = decoded[1:]

    if version == params.pubkey_hash_version:
        return p2pkh_script(payload)
    if version == params.script_hash_version:
        return p2sh_script(payload)

    raise ValueError(f"Unknown address version {version} for {params.name}")


def scriptpubkey_to_address(scriptpubkey: bytes, params: ChainParams = PEPECOIN) -> str:
    """Convert a P2PKH or P2SH scriptPubKey back to its address."""
    if (
        len(scriptpubkey) == 25
        and scriptpubkey[:3] == bytes([0x76, 0xA9, 0x14])
        and scriptpubkey[23:] == bytes([0x88, 0xAC])
    ):
        version = params.pubkey_hash_version
        payload = scriptpubkey[3:23]
    elif (
        len(scriptpubkey) == 23
        and scriptpubkey[:2] == bytes([0xA9, 0x14])
        and scriptpubkey[22] == 0x87
    ):
        version = params.script_hash_version
        payload = scriptpubkey[2:22]
    else:
        raise ValueError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")

    return base58.b58encode_check(bytes([version]) + payload).decode("ascii")


def is_valid_address(address: str, params: ChainParams = PEPECOIN) -> bool:
    try:
        address_to_scriptpubkey(address, params)
    except ValueError:
        return False
    return True
