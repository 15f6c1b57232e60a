"""
BIP32 HD key derivation for wallet keys.
Implements BIP44 (legacy P2PKH) derivation paths.
"""

from __future__ import annotations

import hashlib
import hmac

from coincurve import PrivateKey, PublicKey
from mnemonic import Mnemonic

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

HARDENED_OFFSET = 0x80000000


class HDKey:
    """
    Hierarchical Deterministic private key.

    Only private derivation is supported; every key in the wallet is a
    spending key.
    """

    def __init__(
        self, private_key: PrivateKey, chain_code: bytes, depth: int = 0, index: int = 0
    ):
        if len(chain_code) != 32:
            raise ValueError(f"Invalid chain code length: {len(chain_code)}")
        self._private_key = private_key
        self._public_key = private_key.public_key
        self.chain_code = chain_code
        self.depth = depth
        self.index = index

    @property
    def private_key(self) -> PrivateKey:
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        return self._public_key

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from a BIP39 seed"""
        if not 16 <= len(seed) <= 64:
            raise ValueError(f"Invalid seed length: {len(seed)}")

        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(PrivateKey(hmac_result[:32]), hmac_result[32:], depth=0)

    def derive(self, path: str) -> HDKey:
        """
        Derive a descendant key from path notation (e.g. "m/44'/3434'/0'/0/0").
        ' or h marks hardened derivation.
        """
        if not path.startswith("m"):
            raise ValueError("Path must start with 'm'")

        key = self
        for part in path.split("/")[1:]:
            if not part:
                continue

            hardened = part.endswith(("'", "h"))
            index_str = part.rstrip("'h")
            if not index_str.isdigit():
                raise ValueError(f"Invalid path component: {part}")

            index = int(index_str)
            if index >= HARDENED_OFFSET:
                raise ValueError(f"Path index out of range: {part}")
            if hardened:
                index += HARDENED_OFFSET

            key = key._derive_child(index)

        return key

    def _derive_child(self, index: int) -> HDKey:
        if index >= HARDENED_OFFSET:
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self._public_key.format(compressed=True) + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        offset_int = int.from_bytes(hmac_result[:32], "big")
        if offset_int >= SECP256K1_N:
            raise ValueError("Invalid child key")

        parent_key_int = int.from_bytes(self._private_key.secret, "big")
        child_key_int = (parent_key_int + offset_int) % SECP256K1_N
        if child_key_int == 0:
            raise ValueError("Invalid child key")

        return HDKey(
            PrivateKey(child_key_int.to_bytes(32, "big")),
            hmac_result[32:],
            depth=self.depth + 1,
            index=index,
        )

    def get_private_key_bytes(self) -> bytes:
        return self._private_key.secret

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        return self._public_key.format(compressed=compressed)


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """Convert a BIP39 mnemonic to its 64-byte seed."""
    return Mnemonic.to_seed(mnemonic, passphrase)
