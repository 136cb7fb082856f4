"""
Note and NoteLedger tests
"""

import pytest

from services.crypto_core.commitments import make_commitment, make_nullifier
from services.crypto_core.commitments import MAX_LAMPORTS
from services.crypto_core.errors import InsufficientUnspentNotes, IntegrityFault, InvalidAmount
from services.crypto_core.notes import Note, NoteLedger
from services.crypto_core.splits import change_amount, explicit_coin_select, fifo_coin_select

SOL = 1_000_000_000


def _ledger(*amounts):
    return NoteLedger(Note.create(a, leaf_index=i) for i, a in enumerate(amounts))


class TestNote:
    def test_create_binds_fields(self, fixed_secret, fixed_nonce):
        n = Note.create(5, leaf_index=2, secret=fixed_secret, nonce=fixed_nonce)
        assert n.commitment == make_commitment(5, fixed_secret, fixed_nonce)
        assert n.nullifier == make_nullifier(fixed_secret, 2)
        assert not n.spent and n.spent_at is None
        n.check_integrity()

    def test_fresh_material_per_note(self):
        a, b = Note.create(1, 0), Note.create(1, 1)
        assert a.secret != b.secret
        assert a.nonce != b.nonce
        assert a.commitment != b.commitment

    def test_tampered_amount_is_integrity_fault(self):
        n = Note.create(SOL, 0)
        n.amount = 2 * SOL
        with pytest.raises(IntegrityFault) as exc:
            n.check_integrity()
        assert exc.value.fatal
        assert exc.value.leaf_index == 0

    def test_repr_hides_secret_material(self):
        n = Note.create(SOL, 0)
        text = repr(n)
        assert n.secret.hex() not in text
        assert n.nonce.hex() not in text

    def test_public_view(self):
        n = Note.create(SOL, 4)
        pv = n.public_view()
        assert pv.commitment == n.commitment.hex()
        assert pv.leaf_index == 4
        assert not hasattr(pv, "secret")
        assert not hasattr(pv, "nonce")


class TestSelection:
    def test_fifo_takes_oldest_first(self):
        ledger = _ledger(SOL, 2 * SOL, 3 * SOL)
        notes, total = ledger.select_for_withdrawal(2 * SOL + SOL // 2)
        assert [n.leaf_index for n in notes] == [0, 1]
        assert total == 3 * SOL

    def test_fifo_exact_match(self):
        notes, total = _ledger(SOL, SOL).select_for_withdrawal(SOL)
        assert [n.leaf_index for n in notes] == [0]
        assert total == SOL

    def test_fifo_skips_spent(self):
        ledger = _ledger(SOL, 2 * SOL)
        ledger.mark_spent(ledger.get(0))
        notes, _ = ledger.select_for_withdrawal(SOL)
        assert [n.leaf_index for n in notes] == [1]
        assert ledger.unspent_total() == 2 * SOL

    def test_fifo_insufficient(self):
        with pytest.raises(InsufficientUnspentNotes) as exc:
            _ledger(SOL).select_for_withdrawal(2 * SOL)
        assert exc.value.available == SOL

    def test_explicit_selection(self):
        ledger = _ledger(SOL, 2 * SOL, 3 * SOL)
        notes, total = ledger.select_explicit([2], 2 * SOL)
        assert [n.leaf_index for n in notes] == [2]
        assert total == 3 * SOL

    def test_explicit_unknown_index(self):
        with pytest.raises(InsufficientUnspentNotes):
            _ledger(SOL).select_explicit([7], SOL)

    def test_explicit_does_not_cover(self):
        with pytest.raises(InsufficientUnspentNotes):
            _ledger(SOL, SOL).select_explicit([0], 2 * SOL)

    def test_helpers_on_plain_sequences(self):
        notes = [Note.create(SOL, 0), Note.create(SOL, 1)]
        assert fifo_coin_select(notes, SOL)[1] == SOL
        assert explicit_coin_select(notes, 2 * SOL)[1] == 2 * SOL

    def test_change_amount(self):
        assert change_amount(3 * SOL, SOL) == 2 * SOL
        assert change_amount(SOL, SOL) == 0
        assert change_amount(SOL + 1, SOL) == 1

    def test_change_must_fit_in_one_note(self):
        assert change_amount(MAX_LAMPORTS + 1, 1) == MAX_LAMPORTS
        with pytest.raises(InvalidAmount):
            change_amount(MAX_LAMPORTS + 2, 1)

        big = [Note.create(MAX_LAMPORTS, 0), Note.create(MAX_LAMPORTS, 1)]
        with pytest.raises(InvalidAmount) as exc:
            explicit_coin_select(big, 1)
        assert "does not fit" in str(exc.value)
        assert explicit_coin_select(big, MAX_LAMPORTS)[1] == 2 * MAX_LAMPORTS


class TestLedger:
    def test_duplicate_leaf_index(self):
        ledger = _ledger(SOL)
        with pytest.raises(IntegrityFault):
            ledger.append(Note.create(SOL, 0))

    def test_mark_spent_once(self):
        ledger = _ledger(SOL)
        note = ledger.get(0)
        ledger.mark_spent(note)
        assert note.spent and note.spent_at is not None
        with pytest.raises(IntegrityFault):
            ledger.mark_spent(note)

    def test_iteration_in_creation_order(self):
        ledger = _ledger(3, 1, 2)
        assert [n.amount for n in ledger] == [3, 1, 2]
        assert len(ledger) == 3
