"""
Test configuration for pepewallet tests.
"""

from __future__ import annotations

import pytest
from coincurve import PrivateKey

from pepewallet.wallet.address import pubkey_to_p2pkh_address
from pepewallet.wallet.keys import to_wif


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def signing_key() -> PrivateKey:
    return PrivateKey(bytes.fromhex("11" * 32))


@pytest.fixture
def signing_wif(signing_key: PrivateKey) -> str:
    return to_wif(signing_key)


@pytest.fixture
def own_address(signing_key: PrivateKey) -> str:
    return pubkey_to_p2pkh_address(signing_key.public_key.format(compressed=True))


@pytest.fixture
def other_address() -> str:
    other = PrivateKey(bytes.fromhex("22" * 32))
    return pubkey_to_p2pkh_address(other.public_key.format(compressed=True))
