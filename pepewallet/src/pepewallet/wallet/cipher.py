"""
Password-based encryption of wallet payloads.

Blob layout (base64 encoded):
    salt (16 bytes) || nonce (24 bytes) || XSalsa20-Poly1305 ciphertext

The symmetric key is derived from the password with scrypt over the blob's
own salt, so every blob is independent and the functions here hold no state.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from typing import Any

import libnacl
import libnacl.secret

SALT_SIZE = 16

# scrypt cost parameters
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1

_MIN_BLOB_SIZE = SALT_SIZE + libnacl.crypto_secretbox_NONCEBYTES + libnacl.crypto_secretbox_MACBYTES


def derive_key(
    password: str, salt: bytes, n: int = SCRYPT_N, r: int = SCRYPT_R, p: int = SCRYPT_P
) -> bytes:
    return hashlib.scrypt(
        password.encode("utf-8"),
        salt=salt,
        n=n,
        r=r,
        p=p,
        dklen=libnacl.crypto_secretbox_KEYBYTES,
    )


def encrypt(
    data: Any, password: str, n: int = SCRYPT_N, r: int = SCRYPT_R, p: int = SCRYPT_P
) -> str:
    """
    Encrypt any JSON-serializable value under a password.

    Returns:
        Opaque base64 blob
    """
    salt = libnacl.randombytes(SALT_SIZE)
    box = libnacl.secret.SecretBox(derive_key(password, salt, n, r, p))
    sealed = box.encrypt(json.dumps(data, separators=(",", ":")).encode("utf-8"))
    return base64.b64encode(salt + sealed).decode("ascii")


def decrypt(
    blob: Any,
    password: str | None,
    n: int = SCRYPT_N,
    r: int = SCRYPT_R,
    p: int = SCRYPT_P,
) -> Any | None:
    """
    Decrypt a blob produced by encrypt().

    Returns:
        The decrypted value, or None for a wrong password or a corrupt blob
    """
    # Stored values are untrusted JSON and may not be strings
    if not blob or not isinstance(blob, str) or password is None:
        return None

    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError):
        return None

    if len(raw) < _MIN_BLOB_SIZE:
        return None

    salt, sealed = raw[:SALT_SIZE], raw[SALT_SIZE:]
    box = libnacl.secret.SecretBox(derive_key(password, salt, n, r, p))

    try:
        plaintext = box.decrypt(sealed)
    except ValueError:
        return None

    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode("utf-8")).hexdigest()
