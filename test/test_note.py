#!/usr/bin/env python3
"""Tests for deposit derivation and the note/invoice formats."""

import pytest

from mixer_client.exceptions import InvalidNoteError, ValidationError
from mixer_client.hashing import FIELD_SIZE
from mixer_client.note import (
    SCALAR_BYTES,
    Deposit,
    create_note,
    format_invoice,
    format_note,
    parse_invoice,
    parse_note,
)

NULLIFIER = int.from_bytes(bytes(range(1, 32)), "little")
SECRET = int.from_bytes(bytes(range(101, 132)), "little")


class TestDeposit:
    """Tests for Deposit derivation."""

    def test_derivation_is_deterministic(self):
        """Deriving the same pair twice gives identical public values."""
        first = Deposit.create(NULLIFIER, SECRET)
        second = Deposit.create(NULLIFIER, SECRET)

        assert first.commitment == second.commitment
        assert first.nullifier_hash == second.nullifier_hash
        assert first.commitment_hex == second.commitment_hex

    def test_preimage_is_little_endian_concatenation(self):
        """The preimage is nullifier then secret, 31 bytes each, little-endian."""
        deposit = Deposit.create(1, 2)

        assert len(deposit.preimage) == 2 * SCALAR_BYTES
        assert deposit.preimage == b"\x01" + b"\x00" * 30 + b"\x02" + b"\x00" * 30

    def test_hashes_are_field_elements(self):
        deposit = Deposit.random()

        assert 0 <= deposit.commitment < FIELD_SIZE
        assert 0 <= deposit.nullifier_hash < FIELD_SIZE
        assert deposit.commitment_hex.startswith("0x")
        assert len(deposit.commitment_hex) == 66

    def test_different_secrets_give_different_commitments(self):
        assert Deposit.create(NULLIFIER, SECRET).commitment != Deposit.create(NULLIFIER, SECRET + 1).commitment
        # The nullifier hash depends on the nullifier only
        assert Deposit.create(NULLIFIER, SECRET).nullifier_hash == Deposit.create(NULLIFIER, SECRET + 1).nullifier_hash


class TestNoteFormat:
    """Tests for note and invoice parsing."""

    def test_parse_mainnet_eth_note(self):
        """A mixer-eth-1-1 note parses to its coordinates and a matching deposit."""
        expected = Deposit.create(NULLIFIER, SECRET)
        note = f"mixer-eth-1-1-0x{expected.preimage.hex()}"

        parsed = parse_note(note)

        assert parsed.currency == "eth"
        assert parsed.amount == "1"
        assert parsed.net_id == 1
        assert parsed.deposit.nullifier == NULLIFIER
        assert parsed.deposit.secret == SECRET
        assert parsed.deposit.commitment_hex == expected.commitment_hex

    def test_create_note_round_trip(self):
        note, invoice, deposit = create_note("DAI", "100.0", 1)

        parsed_note = parse_note(note)
        parsed_invoice = parse_invoice(invoice)

        assert note.startswith("mixer-dai-100-1-0x")
        assert parsed_note.currency == "dai"
        assert parsed_note.amount == "100"
        assert parsed_note.deposit == deposit
        assert parsed_invoice.currency == "dai"
        assert parsed_invoice.net_id == 1
        assert parsed_invoice.commitment_hex == deposit.commitment_hex

    def test_format_helpers_match_parsers(self):
        deposit = Deposit.create(NULLIFIER, SECRET)

        assert parse_note(format_note("bnb", "0.1", 56, deposit)).deposit == deposit
        assert parse_invoice(format_invoice("bnb", "0.1", 56, deposit)).commitment_hex == deposit.commitment_hex

    def test_surrounding_whitespace_is_ignored(self):
        deposit = Deposit.create(NULLIFIER, SECRET)
        note = f"  mixer-eth-0.1-1-0x{deposit.preimage.hex()}\n"

        assert parse_note(note).amount == "0.1"

    @pytest.mark.parametrize("note", [
        "",
        "mixer-eth-1-1-0x1234",
        "tornado-eth-1-1-0x" + "ab" * 62,
        "mixer-eth-1-1-0x" + "ab" * 63,
        "mixer-eth-1-1-0x" + "zz" * 62,
        "mixer-eth-one-1-0x" + "ab" * 62,
    ])
    def test_invalid_note_format(self, note):
        with pytest.raises(InvalidNoteError, match="The note has invalid format"):
            parse_note(note)

    def test_invoice_is_not_a_note(self):
        deposit = Deposit.create(NULLIFIER, SECRET)
        invoice = format_invoice("eth", "1", 1, deposit)

        with pytest.raises(InvalidNoteError):
            parse_note(invoice)

    def test_invalid_invoice_format(self):
        with pytest.raises(InvalidNoteError, match="The invoice has invalid format"):
            parse_invoice("mixerInvoice-eth-1-1-0x1234")

    def test_invalid_note_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            parse_note("garbage")
