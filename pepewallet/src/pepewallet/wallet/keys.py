"""
Key derivation engine.

Wallet layout:
- ``root`` is the BIP32 master key serialized as WIF
- ``children[i]`` is the key at m/44'/<coin_type>'/0'/0/i, serialized as WIF
- ``addresses[i]`` is the P2PKH address of ``children[i]``

WIF strings carry the chain's version byte. Wallets created before the
Pepecoin version byte was adopted stored Bitcoin-format WIFs; they are
rebuilt from the phrase on first unlock (see migrate_wallet).
"""

from __future__ import annotations

import base58
from coincurve import PrivateKey
from loguru import logger
from mnemonic import Mnemonic
from pepecore.models import PEPECOIN, ChainParams, WalletData

from pepewallet.wallet.address import pubkey_to_p2pkh_address
from pepewallet.wallet.bip32 import HDKey, mnemonic_to_seed

_MNEMONIC = Mnemonic("english")

COMPRESSED_SUFFIX = b"\x01"


class KeyFormatError(Exception):
    pass


def generate_phrase(strength: int = 128) -> str:
    """Generate a new BIP39 mnemonic (12 words by default)."""
    return _MNEMONIC.generate(strength=strength)


def validate_phrase(phrase: str) -> str:
    """
    Normalize and check an imported mnemonic.

    Raises:
        KeyFormatError: If the word list or checksum is invalid
    """
    normalized = " ".join(phrase.split()).lower()
    if not normalized or not _MNEMONIC.check(normalized):
        raise KeyFormatError("Invalid mnemonic phrase")
    return normalized


def generate_root(phrase: str) -> HDKey:
    return HDKey.from_seed(mnemonic_to_seed(phrase))


def generate_child(root: HDKey, index: int, params: ChainParams = PEPECOIN) -> HDKey:
    """Derive the receive key at ``index``. Same root and index always give the same key."""
    if index < 0:
        raise ValueError(f"Invalid child index: {index}")
    return root.derive(f"{params.derivation_prefix}/{index}")


def generate_address(child: HDKey, params: ChainParams = PEPECOIN) -> str:
    return pubkey_to_p2pkh_address(child.get_public_key_bytes(compressed=True), params)


def to_wif(key: HDKey | PrivateKey, params: ChainParams = PEPECOIN) -> str:
    """Serialize a private key as compressed WIF."""
    secret = key.get_private_key_bytes() if isinstance(key, HDKey) else key.secret
    payload = bytes([params.wif_version]) + secret + COMPRESSED_SUFFIX
    return base58.b58encode_check(payload).decode("ascii")


def from_wif(wif: str, params: ChainParams = PEPECOIN) -> PrivateKey:
    """
    Deserialize a WIF private key.

    Also used as a format probe: a WIF written with another chain's version
    byte is rejected.

    Raises:
        KeyFormatError: On bad checksum, version byte or length
    """
    try:
        decoded = base58.b58decode_check(wif)
    except ValueError as e:
        raise KeyFormatError("Invalid WIF checksum") from e

    if not decoded or decoded[0] != params.wif_version:
        raise KeyFormatError(f"WIF is not a {params.name} key")

    secret = decoded[1:]
    if len(secret) == 33 and secret[-1:] == COMPRESSED_SUFFIX:
        secret = secret[:32]
    elif len(secret) != 32:
        raise KeyFormatError(f"Invalid WIF payload length: {len(secret)}")

    try:
        return PrivateKey(secret)
    except ValueError as e:
        raise KeyFormatError("WIF secret is out of range") from e


def is_valid_wif(wif: str, params: ChainParams = PEPECOIN) -> bool:
    try:
        from_wif(wif, params)
    except KeyFormatError:
        return False
    return True


def public_key_hex(wif: str, params: ChainParams = PEPECOIN) -> str:
    """Compressed public key of a stored child key."""
    return from_wif(wif, params).public_key.format(compressed=True).hex()


def create_wallet(phrase: str, params: ChainParams = PEPECOIN) -> WalletData:
    """Build a fresh wallet holding address 0."""
    root = generate_root(phrase)
    child = generate_child(root, 0, params)
    address0 = generate_address(child, params)

    return WalletData(
        phrase=phrase,
        root=to_wif(root, params),
        children=[to_wif(child, params)],
        addresses=[address0],
        nicknames={address0: "Address 1"},
    )


def next_child(wallet: WalletData, params: ChainParams = PEPECOIN) -> tuple[HDKey, str]:
    """
    Derive the next unused receive key.

    Starts at ``len(children)`` and skips any index whose address the wallet
    already holds (possible after an address was deleted).
    """
    root = generate_root(wallet.phrase)
    existing = set(wallet.addresses)
    index = len(wallet.children)

    while True:
        child = generate_child(root, index, params)
        address = generate_address(child, params)
        if address not in existing:
            return child, address
        index += 1


def migrate_wallet(
    wallet: WalletData, params: ChainParams = PEPECOIN
) -> tuple[WalletData, bool]:
    """
    Upgrade a wallet whose keys were serialized under another format.

    If ``wallet.root`` parses under ``params`` the wallet is returned unchanged.
    Otherwise root and children 0..N-1 are regenerated from the phrase,
    addresses are recomputed and nicknames are carried over by index.

    Returns:
        (wallet, migrated)
    """
    if is_valid_wif(wallet.root, params):
        return wallet, False

    root = generate_root(wallet.phrase)
    children: list[str] = []
    addresses: list[str] = []
    for i in range(len(wallet.children)):
        child = generate_child(root, i, params)
        children.append(to_wif(child, params))
        addresses.append(generate_address(child, params))

    old_addresses = set(wallet.addresses)
    nicknames = {
        address: nickname
        for address, nickname in wallet.nicknames.items()
        if address not in old_addresses
    }
    for old_address, new_address in zip(wallet.addresses, addresses):
        if old_address in wallet.nicknames:
            nicknames[new_address] = wallet.nicknames[old_address]

    logger.info(f"Migrated wallet keys to {params.name} format ({len(children)} children)")

    migrated = WalletData(
        phrase=wallet.phrase,
        root=to_wif(root, params),
        children=children,
        addresses=addresses,
        nicknames=nicknames,
    )
    return migrated, True
