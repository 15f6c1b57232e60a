"""
Cryptographic primitives for the wallet: signed messages and ECIES.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac

from coincurve import PrivateKey, PublicKey
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

ECIES_MAGIC = b"BIE1"
ECIES_MIN_LENGTH = len(ECIES_MAGIC) + 33 + 16 + 32  # magic + pubkey + one block + mac

COMPACT_HEADER_BASE = 27
COMPACT_COMPRESSED_FLAG = 4


class CryptoError(Exception):
    pass


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def message_hash(message: str, prefix: str) -> bytes:
    """
    Hash a message using the chain's signed-message format.

    Format: SHA256(SHA256(varint(len(prefix)) + prefix + varint(len(msg)) + msg))
    """
    prefix_bytes = prefix.encode("utf-8")
    msg_bytes = message.encode("utf-8")

    full_msg = (
        encode_varint(len(prefix_bytes))
        + prefix_bytes
        + encode_varint(len(msg_bytes))
        + msg_bytes
    )

    return hashlib.sha256(hashlib.sha256(full_msg).digest()).digest()


def sign_compact(message: str, private_key_bytes: bytes, prefix: str) -> str:
    """
    Sign a message and return a base64 compact (recoverable) signature.

    The 65-byte layout is header || r || s where header encodes the recovery
    id and the compressed-key flag, as produced by standard wallet software.
    RFC6979 nonces make the signature deterministic.
    """
    msg_hash = message_hash(message, prefix)

    priv_key = PrivateKey(private_key_bytes)
    recoverable = priv_key.sign_recoverable(msg_hash, hasher=None)

    rs, recid = recoverable[:64], recoverable[64]
    header = COMPACT_HEADER_BASE + recid + COMPACT_COMPRESSED_FLAG

    return base64.b64encode(bytes([header]) + rs).decode("ascii")


def recover_compact(message: str, signature_b64: str, prefix: str) -> tuple[bytes, bool]:
    """
    Recover the public key from a compact signature.

    Returns:
        (serialized public key, compressed flag)

    Raises:
        CryptoError: If the signature is malformed or recovery fails
    """
    try:
        signature = base64.b64decode(signature_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CryptoError(f"Invalid signature encoding: {e}") from e

    if len(signature) != 65:
        raise CryptoError(f"Invalid signature length: {len(signature)}")

    header = signature[0]
    if not COMPACT_HEADER_BASE <= header < COMPACT_HEADER_BASE + 8:
        raise CryptoError(f"Invalid signature header: {header}")

    compressed = header >= COMPACT_HEADER_BASE + COMPACT_COMPRESSED_FLAG
    recid = (header - COMPACT_HEADER_BASE) & 3

    try:
        pubkey = PublicKey.from_signature_and_message(
            signature[1:] + bytes([recid]), message_hash(message, prefix), hasher=None
        )
    except Exception as e:
        raise CryptoError(f"Public key recovery failed: {e}") from e

    return pubkey.format(compressed=compressed), compressed


def _ecies_keys(shared_point: PublicKey) -> tuple[bytes, bytes, bytes]:
    key = hashlib.sha512(shared_point.format(compressed=True)).digest()
    return key[0:16], key[16:32], key[32:]


def ecies_encrypt(
    pubkey_bytes: bytes, plaintext: bytes, ephemeral: PrivateKey | None = None
) -> str:
    """
    Encrypt for a secp256k1 public key (Electrum "BIE1" scheme).

    Layout: base64(magic || ephemeral_pubkey || AES-128-CBC ciphertext || HMAC-SHA256)
    """
    if ephemeral is None:
        ephemeral = PrivateKey()

    try:
        recipient = PublicKey(pubkey_bytes)
    except Exception as e:
        raise CryptoError(f"Invalid public key: {e}") from e

    iv, key_e, key_m = _ecies_keys(recipient.multiply(ephemeral.secret))

    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key_e), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    encrypted = ECIES_MAGIC + ephemeral.public_key.format(compressed=True) + ciphertext
    mac = hmac.new(key_m, encrypted, hashlib.sha256).digest()

    return base64.b64encode(encrypted + mac).decode("ascii")


def ecies_decrypt(private_key_bytes: bytes, ciphertext_b64: str) -> bytes:
    """
    Decrypt a "BIE1" ECIES payload with a secp256k1 private key.

    Raises:
        CryptoError: On malformed input, wrong key or tampered ciphertext
    """
    try:
        encrypted = base64.b64decode(ciphertext_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CryptoError(f"Invalid ciphertext encoding: {e}") from e

    if len(encrypted) < ECIES_MIN_LENGTH:
        raise CryptoError("Invalid ciphertext: too short")

    magic = encrypted[:4]
    ephemeral_bytes = encrypted[4:37]
    ciphertext = encrypted[37:-32]
    mac = encrypted[-32:]

    if magic != ECIES_MAGIC:
        raise CryptoError("Invalid ciphertext: bad magic")
    if len(ciphertext) % 16:
        raise CryptoError("Invalid ciphertext: not block aligned")

    try:
        ephemeral = PublicKey(ephemeral_bytes)
    except Exception as e:
        raise CryptoError(f"Invalid ephemeral public key: {e}") from e

    iv, key_e, key_m = _ecies_keys(ephemeral.multiply(private_key_bytes))

    expected_mac = hmac.new(key_m, encrypted[:-32], hashlib.sha256).digest()
    if not hmac.compare_digest(mac, expected_mac):
        raise CryptoError("Invalid ciphertext: MAC mismatch")

    decryptor = Cipher(algorithms.AES(key_e), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(128).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise CryptoError("Invalid ciphertext: bad padding") from e
