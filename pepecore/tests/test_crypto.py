"""
Tests for pepecore.crypto
"""

import base64
import hashlib

import pytest
from coincurve import PrivateKey

from pepecore.crypto import (
    CryptoError,
    ecies_decrypt,
    ecies_encrypt,
    encode_varint,
    message_hash,
    recover_compact,
    sign_compact,
)
from pepecore.models import PEPECOIN

SECRET = bytes.fromhex("01" * 32)


def test_encode_varint():
    assert encode_varint(0) == b"\x00"
    assert encode_varint(252) == b"\xfc"
    assert encode_varint(253) == b"\xfd\xfd\x00"
    assert encode_varint(0x10000) == b"\xfe\x00\x00\x01\x00"


def test_message_hash_layout():
    prefix = PEPECOIN.message_prefix
    expected_preimage = bytes([len(prefix)]) + prefix.encode() + b"\x05hello"
    expected = hashlib.sha256(hashlib.sha256(expected_preimage).digest()).digest()

    assert message_hash("hello", prefix) == expected


def test_sign_compact_recovers_signer():
    sig = sign_compact("hello world", SECRET, PEPECOIN.message_prefix)
    raw = base64.b64decode(sig)

    assert len(raw) == 65
    # Compressed keys use headers 31..34
    assert 31 <= raw[0] <= 34

    pubkey, compressed = recover_compact("hello world", sig, PEPECOIN.message_prefix)
    assert compressed
    assert pubkey == PrivateKey(SECRET).public_key.format(compressed=True)


def test_sign_compact_is_deterministic():
    first = sign_compact("same message", SECRET, PEPECOIN.message_prefix)
    second = sign_compact("same message", SECRET, PEPECOIN.message_prefix)
    assert first == second


def test_recover_compact_other_message():
    sig = sign_compact("original", SECRET, PEPECOIN.message_prefix)
    pubkey, _ = recover_compact("tampered", sig, PEPECOIN.message_prefix)

    assert pubkey != PrivateKey(SECRET).public_key.format(compressed=True)


def test_recover_compact_rejects_garbage():
    with pytest.raises(CryptoError):
        recover_compact("msg", "not base64!!", PEPECOIN.message_prefix)

    with pytest.raises(CryptoError):
        recover_compact("msg", base64.b64encode(b"\x1f" * 10).decode(), PEPECOIN.message_prefix)

    bad_header = base64.b64encode(bytes([99]) + b"\x01" * 64).decode()
    with pytest.raises(CryptoError):
        recover_compact("msg", bad_header, PEPECOIN.message_prefix)


class TestEcies:
    """Tests for BIE1 ECIES encryption."""

    def test_decrypt_with_recipient_key(self) -> None:
        """Test the recipient key decrypts what was encrypted to its pubkey."""
        recipient = PrivateKey(SECRET)
        payload = ecies_encrypt(recipient.public_key.format(), b"secret note")

        assert base64.b64decode(payload)[:4] == b"BIE1"
        assert ecies_decrypt(SECRET, payload) == b"secret note"

    def test_wrong_key_fails_mac(self) -> None:
        """Test decrypting with another key is refused."""
        recipient = PrivateKey(SECRET)
        payload = ecies_encrypt(recipient.public_key.format(), b"secret note")

        with pytest.raises(CryptoError, match="MAC"):
            ecies_decrypt(bytes.fromhex("02" * 32), payload)

    def test_tampered_ciphertext(self) -> None:
        """Test a flipped ciphertext byte is detected."""
        recipient = PrivateKey(SECRET)
        raw = bytearray(base64.b64decode(ecies_encrypt(recipient.public_key.format(), b"x" * 40)))
        raw[40] ^= 0x01

        with pytest.raises(CryptoError):
            ecies_decrypt(SECRET, base64.b64encode(bytes(raw)).decode())

    def test_short_and_bad_magic(self) -> None:
        """Test structural checks on the payload."""
        with pytest.raises(CryptoError, match="too short"):
            ecies_decrypt(SECRET, base64.b64encode(b"BIE1" + b"\x00" * 10).decode())

        recipient = PrivateKey(SECRET)
        raw = base64.b64decode(ecies_encrypt(recipient.public_key.format(), b"hi"))
        with pytest.raises(CryptoError, match="magic"):
            ecies_decrypt(SECRET, base64.b64encode(b"XXXX" + raw[4:]).decode())

    def test_invalid_public_key(self) -> None:
        """Test encrypting to a malformed key."""
        with pytest.raises(CryptoError):
            ecies_encrypt(b"\x02" + b"\x00" * 10, b"hi")
