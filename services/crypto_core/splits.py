# crypto_core/splits.py
from __future__ import annotations

from typing import List, Sequence, Tuple, TypeVar

from services.crypto_core.commitments import MAX_LAMPORTS
from services.crypto_core.errors import InsufficientUnspentNotes, InvalidAmount

N = TypeVar("N")

# Amounts are integer lamports, so any positive remainder is real change.
CHANGE_EPSILON_LAMPORTS = 0


def fifo_coin_select(notes: Sequence[N], target: int) -> Tuple[List[N], int]:
    """
    Take unspent notes in creation order until their sum reaches `target`.

    `notes` must already be in creation (leaf) order. Spent notes are
    skipped. Raises InsufficientUnspentNotes when the unspent notes run
    out before the target is met.
    """
    chosen: List[N] = []
    total = 0
    for n in notes:
        if n.spent:
            continue
        chosen.append(n)
        total += n.amount
        if total >= target:
            return chosen, total
    raise InsufficientUnspentNotes(target, total)


def explicit_coin_select(notes: Sequence[N], target: int) -> Tuple[List[N], int]:
    """
    Use exactly the caller-named notes. Spent status is not checked here;
    the nullifier set is what rejects a note that was already spent.
    """
    total = sum(n.amount for n in notes)
    if total < target:
        raise InsufficientUnspentNotes(target, total, "named notes do not cover the amount")
    change_amount(total, target)
    return list(notes), total


def change_amount(selected_total: int, target: int) -> int:
    """Remainder returned to the vault as a new note. It must fit in a u64 note amount."""
    change = selected_total - target
    if change > MAX_LAMPORTS:
        raise InvalidAmount(
            change, f"Change of {change} lamports does not fit in one note (max {MAX_LAMPORTS}); withdraw more or name fewer notes"
        )
    return change if change > CHANGE_EPSILON_LAMPORTS else 0
