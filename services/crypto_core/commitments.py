# crypto_core/commitments.py
"""
Hash commitments and nullifiers for shielded notes.

    commitment = SHA256(u64_be(lamports) || secret[32] || nonce[32])
    nullifier  = SHA256(secret[32] || u32_be(leaf_index))

Amounts enter the hash as integer lamports so a float representation of
SOL can never leak into (or perturb) a commitment.
"""
from __future__ import annotations

import hashlib
import secrets
import struct
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Union

from services.crypto_core.errors import InvalidAmount

DIGEST_SIZE = 32
SECRET_SIZE = 32
NONCE_SIZE = 32
LAMPORTS_PER_SOL = 1_000_000_000
MAX_LAMPORTS = 2**64 - 1
MAX_LEAF_INDEX = 2**32 - 1

_Q = Decimal("0.000000001")

AmountLike = Union[Decimal, int, float, str]


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash_pair(left: bytes, right: bytes) -> bytes:
    return sha256(left + right)


def random_secret() -> bytes:
    return secrets.token_bytes(SECRET_SIZE)


def random_nonce() -> bytes:
    return secrets.token_bytes(NONCE_SIZE)


# ---------- amounts ----------
def to_lamports(amount: AmountLike) -> int:
    """
    Convert a SOL amount to integer lamports (9 decimals, rounded down).

    Raises InvalidAmount for non-numeric, non-finite, or non-positive
    amounts, including anything that rounds down to zero lamports.
    """
    if isinstance(amount, bool):
        raise InvalidAmount(amount)
    try:
        d = Decimal(str(amount))
        if not d.is_finite():
            raise InvalidAmount(amount)
        lamports = int((d.quantize(_Q, rounding=ROUND_DOWN) * LAMPORTS_PER_SOL).to_integral_value())
    except (InvalidOperation, ValueError):
        raise InvalidAmount(amount)
    if lamports <= 0 or lamports > MAX_LAMPORTS:
        raise InvalidAmount(amount)
    return lamports


def lamports_to_sol(lamports: int) -> Decimal:
    return (Decimal(lamports) / LAMPORTS_PER_SOL).quantize(_Q)


def fmt_sol(lamports: int) -> str:
    return f"{lamports_to_sol(lamports):f}"


def encode_amount(lamports: int) -> bytes:
    if not isinstance(lamports, int) or isinstance(lamports, bool):
        raise ValueError(f"amount must be integer lamports, got {type(lamports).__name__}")
    if lamports < 0 or lamports > MAX_LAMPORTS:
        raise ValueError(f"amount out of u64 range: {lamports}")
    return struct.pack(">Q", lamports)


def _check_len(name: str, value: bytes, size: int) -> None:
    if not isinstance(value, (bytes, bytearray)) or len(value) != size:
        got = len(value) if isinstance(value, (bytes, bytearray)) else type(value).__name__
        raise ValueError(f"{name} must be {size} bytes (got {got})")


# ---------- commitment / nullifier ----------
def make_commitment(lamports: int, secret: bytes, nonce: bytes) -> bytes:
    """Binding digest of (amount, secret, nonce)."""
    _check_len("secret", secret, SECRET_SIZE)
    _check_len("nonce", nonce, NONCE_SIZE)
    return sha256(encode_amount(lamports) + bytes(secret) + bytes(nonce))


def make_nullifier(secret: bytes, leaf_index: int) -> bytes:
    """
    Spend tag for the note at `leaf_index`. The same secret at another
    position yields an unrelated nullifier.
    """
    _check_len("secret", secret, SECRET_SIZE)
    if not isinstance(leaf_index, int) or leaf_index < 0 or leaf_index > MAX_LEAF_INDEX:
        raise ValueError(f"leaf_index out of range: {leaf_index!r}")
    return sha256(bytes(secret) + struct.pack(">I", leaf_index))


def short_hex(digest: bytes, n: int = 16) -> str:
    return digest.hex()[:n] + "..."
