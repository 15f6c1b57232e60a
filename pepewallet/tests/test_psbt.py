"""
Tests for PSBT parsing, signing policy and finalization.
"""

from __future__ import annotations

import pytest
from coincurve import PrivateKey
from pepecore.constants import (
    SIGHASH_ALL,
    SIGHASH_ANYONECANPAY,
    SIGHASH_NONE,
    SIGHASH_SINGLE,
)

from pepewallet.wallet.address import address_to_scriptpubkey, pubkey_to_p2pkh_script
from pepewallet.wallet.psbt import (
    PSBT,
    PSBTError,
    SighashPolicyError,
    check_sighash_type,
    sign_raw_psbt,
)
from pepewallet.wallet.signing import Transaction, TxInput, TxOutput, deserialize_transaction


def funding_tx(script: bytes, values: list[int]) -> Transaction:
    return Transaction(
        inputs=[TxInput(b"\xaa" * 32, 0)],
        outputs=[TxOutput(value, script) for value in values],
    )


def make_psbt(
    prev: Transaction, vouts: list[int], outputs: list[TxOutput], attach: bool = True
) -> PSBT:
    prev_txid_le = bytes.fromhex(prev.txid())[::-1]
    tx = Transaction(inputs=[TxInput(prev_txid_le, vout) for vout in vouts], outputs=outputs)
    psbt = PSBT(tx)
    if attach:
        for inp in psbt.inputs:
            inp.non_witness_utxo = prev
    return psbt


@pytest.fixture
def own_script(signing_key: PrivateKey) -> bytes:
    return pubkey_to_p2pkh_script(signing_key.public_key.format(compressed=True))


class TestSighashPolicy:
    """Tests for the sighash whitelist."""

    @pytest.mark.parametrize(
        "flag",
        [
            SIGHASH_ALL,
            SIGHASH_SINGLE,
            SIGHASH_ANYONECANPAY,
            SIGHASH_ALL | SIGHASH_ANYONECANPAY,
            SIGHASH_SINGLE | SIGHASH_ANYONECANPAY,
        ],
    )
    def test_allowed(self, flag: int) -> None:
        check_sighash_type(flag)

    @pytest.mark.parametrize(
        "flag", [0, SIGHASH_NONE, SIGHASH_NONE | SIGHASH_ANYONECANPAY, 4, 255, True]
    )
    def test_refused(self, flag: int) -> None:
        with pytest.raises(SighashPolicyError):
            check_sighash_type(flag)

    def test_refused_before_parsing(self, signing_wif: str) -> None:
        """Test a disallowed flag is refused even for garbage input."""
        with pytest.raises(SighashPolicyError):
            sign_raw_psbt("not a psbt", [0], signing_wif, sighash_type=SIGHASH_NONE)


class TestParse:
    """Tests for PSBT decoding."""

    def test_hex_and_base64(self, own_script: bytes, other_address: str) -> None:
        prev = funding_tx(own_script, [200000])
        psbt = make_psbt(prev, [0], [TxOutput(150000, address_to_scriptpubkey(other_address))])

        from_hex = PSBT.from_string(psbt.to_hex())
        from_b64 = PSBT.from_string(psbt.to_base64())

        assert from_hex.serialize() == from_b64.serialize() == psbt.serialize()
        assert from_hex.fee() == 50000

    def test_unknown_fields_preserved(self, own_script: bytes) -> None:
        psbt = make_psbt(funding_tx(own_script, [1000]), [0], [TxOutput(900, b"\x51")])
        psbt.global_unknown.append((b"\xfc\x01", b"proprietary"))
        psbt.inputs[0].unknown.append((b"\xfd", b"input-extra"))

        parsed = PSBT.parse(psbt.serialize())
        assert parsed.global_unknown == [(b"\xfc\x01", b"proprietary")]
        assert parsed.inputs[0].unknown == [(b"\xfd", b"input-extra")]

    @pytest.mark.parametrize("data", [b"", b"psbt", b"psbt\xff\x00", b"nope\xff\x00\x00"])
    def test_malformed(self, data: bytes) -> None:
        with pytest.raises(PSBTError):
            PSBT.parse(data)

    def test_not_encoded(self) -> None:
        with pytest.raises(PSBTError):
            PSBT.from_string("@@@")

    def test_fee_unknown_without_utxo(self, own_script: bytes) -> None:
        psbt = make_psbt(funding_tx(own_script, [1000]), [0], [TxOutput(900, b"\x51")], False)
        assert psbt.fee() is None


class TestSignRawPsbt:
    """Tests for signing PSBT inputs with a wallet key."""

    def test_sign_and_extract(
        self, signing_wif: str, own_script: bytes, other_address: str
    ) -> None:
        """Test a fully signed PSBT is extracted to a network transaction."""
        recipient = address_to_scriptpubkey(other_address)
        prev = funding_tx(own_script, [200000])
        psbt = make_psbt(prev, [0], [TxOutput(150000, recipient)])

        result = sign_raw_psbt(psbt.to_base64(), [0], signing_wif)

        tx = deserialize_transaction(bytes.fromhex(result.raw_tx))
        assert tx.inputs[0].script_sig
        assert tx.outputs[0].value == 150000
        assert result.fee == 50000
        assert result.amount == 150000
        assert result.to_wire() == {"rawTx": result.raw_tx, "fee": 50000, "amount": 150000}

    def test_sign_only(
        self, signing_key: PrivateKey, signing_wif: str, own_script: bytes
    ) -> None:
        """Test signing without finalizing leaves a partial signature."""
        psbt = make_psbt(funding_tx(own_script, [5000]), [0], [TxOutput(4000, b"\x51")])

        result = sign_raw_psbt(psbt.to_hex(), [0], signing_wif, finalize=False)

        parsed = PSBT.from_string(result.raw_tx)
        pubkey = signing_key.public_key.format(compressed=True)
        assert list(parsed.inputs[0].partial_sigs) == [pubkey]
        assert parsed.inputs[0].sighash_type == SIGHASH_ALL
        assert not parsed.inputs[0].is_finalized

    def test_partial_finalize(self, signing_wif: str, own_script: bytes) -> None:
        """Test partial mode finalizes only the inputs signed here."""
        prev = funding_tx(own_script, [3000, 4000])
        psbt = make_psbt(prev, [0, 1], [TxOutput(6000, b"\x51"), TxOutput(500, b"\x52")])

        result = sign_raw_psbt(psbt.to_hex(), [0], signing_wif, partial=True)

        parsed = PSBT.from_string(result.raw_tx)
        assert parsed.inputs[0].is_finalized
        assert not parsed.inputs[1].is_finalized

    def test_unsigned_inputs_block_extraction(self, signing_wif: str, own_script: bytes) -> None:
        prev = funding_tx(own_script, [3000, 4000])
        psbt = make_psbt(prev, [0, 1], [TxOutput(6000, b"\x51")])

        with pytest.raises(PSBTError, match="not signed"):
            sign_raw_psbt(psbt.to_hex(), [0], signing_wif)

    def test_single_without_matching_output(self, signing_wif: str, own_script: bytes) -> None:
        prev = funding_tx(own_script, [3000, 4000])
        psbt = make_psbt(prev, [0, 1], [TxOutput(6000, b"\x51")])

        with pytest.raises(PSBTError, match="SIGHASH_SINGLE"):
            sign_raw_psbt(
                psbt.to_hex(), [1], signing_wif, finalize=False, sighash_type=SIGHASH_SINGLE
            )

    def test_foreign_input(self, signing_wif: str, other_address: str) -> None:
        prev = funding_tx(address_to_scriptpubkey(other_address), [5000])
        psbt = make_psbt(prev, [0], [TxOutput(4000, b"\x51")])

        with pytest.raises(PSBTError, match="not spendable"):
            sign_raw_psbt(psbt.to_hex(), [0], signing_wif)

    def test_missing_previous_transaction(self, signing_wif: str, own_script: bytes) -> None:
        psbt = make_psbt(funding_tx(own_script, [5000]), [0], [TxOutput(4000, b"\x51")], False)

        with pytest.raises(PSBTError, match="previous transaction"):
            sign_raw_psbt(psbt.to_hex(), [0], signing_wif)

    def test_mismatched_previous_transaction(self, signing_wif: str, own_script: bytes) -> None:
        psbt = make_psbt(funding_tx(own_script, [5000]), [0], [TxOutput(4000, b"\x51")])
        psbt.inputs[0].non_witness_utxo = funding_tx(own_script, [6000])

        with pytest.raises(PSBTError, match="does not match"):
            sign_raw_psbt(psbt.to_hex(), [0], signing_wif)

    @pytest.mark.parametrize("indexes", [[], [1], [-1], [True]])
    def test_bad_indexes(self, signing_wif: str, own_script: bytes, indexes: list[int]) -> None:
        psbt = make_psbt(funding_tx(own_script, [5000]), [0], [TxOutput(4000, b"\x51")])

        with pytest.raises(PSBTError):
            sign_raw_psbt(psbt.to_hex(), indexes, signing_wif)

    def test_conflicting_sighash(self, signing_wif: str, own_script: bytes) -> None:
        psbt = make_psbt(funding_tx(own_script, [5000]), [0], [TxOutput(4000, b"\x51")])
        psbt.inputs[0].sighash_type = SIGHASH_SINGLE

        with pytest.raises(PSBTError, match="requests sighash"):
            sign_raw_psbt(psbt.to_hex(), [0], signing_wif)
