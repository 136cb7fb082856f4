"""
Hash commitment, nullifier and amount conversion tests
"""

import hashlib
import struct
from decimal import Decimal

import pytest

from services.crypto_core.commitments import (
    LAMPORTS_PER_SOL,
    MAX_LAMPORTS,
    encode_amount,
    fmt_sol,
    lamports_to_sol,
    make_commitment,
    make_nullifier,
    to_lamports,
)
from services.crypto_core.errors import InvalidAmount


class TestAmounts:
    @pytest.mark.parametrize("amount,expected", [
        ("1.5", 1_500_000_000),
        (Decimal("2"), 2_000_000_000),
        (3, 3_000_000_000),
        (0.1, 100_000_000),
        ("0.000000001", 1),
        ("0.0000000019", 1),  # rounded down
    ])
    def test_to_lamports(self, amount, expected):
        assert to_lamports(amount) == expected

    @pytest.mark.parametrize("amount", [
        0, "0", -1, "-0.5", "0.0000000001", "abc", "", float("nan"), float("inf"), True, None, "1e30",
    ])
    def test_invalid_amounts(self, amount):
        with pytest.raises(InvalidAmount):
            to_lamports(amount)

    def test_lamports_to_sol(self):
        assert lamports_to_sol(1_500_000_000) == Decimal("1.5")
        assert fmt_sol(1) == "0.000000001"
        assert fmt_sol(2 * LAMPORTS_PER_SOL) == "2.000000000"

    def test_encode_amount_is_u64_be(self):
        assert encode_amount(1) == b"\x00" * 7 + b"\x01"
        assert encode_amount(MAX_LAMPORTS) == b"\xff" * 8

    @pytest.mark.parametrize("bad", [-1, MAX_LAMPORTS + 1, 1.5, True])
    def test_encode_amount_rejects(self, bad):
        with pytest.raises(ValueError):
            encode_amount(bad)


class TestCommitment:
    def test_known_layout(self, fixed_secret, fixed_nonce):
        expected = hashlib.sha256(struct.pack(">Q", 1_500_000_000) + fixed_secret + fixed_nonce).digest()
        assert make_commitment(1_500_000_000, fixed_secret, fixed_nonce) == expected

    def test_determinism(self, fixed_secret, fixed_nonce):
        assert make_commitment(42, fixed_secret, fixed_nonce) == make_commitment(42, fixed_secret, fixed_nonce)

    def test_amount_binding(self, fixed_secret, fixed_nonce):
        assert make_commitment(1, fixed_secret, fixed_nonce) != make_commitment(2, fixed_secret, fixed_nonce)

    def test_secret_binding(self, fixed_secret, fixed_nonce):
        other = bytes(32)
        assert make_commitment(1, fixed_secret, fixed_nonce) != make_commitment(1, other, fixed_nonce)

    def test_nonce_binding(self, fixed_secret, fixed_nonce):
        other = bytes(32)
        assert make_commitment(1, fixed_secret, fixed_nonce) != make_commitment(1, fixed_secret, other)

    @pytest.mark.parametrize("size", [0, 31, 33])
    def test_malformed_lengths(self, fixed_nonce, size):
        with pytest.raises(ValueError):
            make_commitment(1, bytes(size), fixed_nonce)
        with pytest.raises(ValueError):
            make_commitment(1, bytes(32), bytes(size))


class TestNullifier:
    def test_known_layout(self, fixed_secret):
        expected = hashlib.sha256(fixed_secret + struct.pack(">I", 7)).digest()
        assert make_nullifier(fixed_secret, 7) == expected

    def test_unique_across_indices(self, fixed_secret):
        seen = {make_nullifier(fixed_secret, i) for i in range(64)}
        assert len(seen) == 64

    def test_differs_from_commitment(self, fixed_secret, fixed_nonce):
        assert make_nullifier(fixed_secret, 0) != make_commitment(0, fixed_secret, fixed_nonce)

    @pytest.mark.parametrize("idx", [-1, 2**32, "0"])
    def test_bad_leaf_index(self, fixed_secret, idx):
        with pytest.raises(ValueError):
            make_nullifier(fixed_secret, idx)
