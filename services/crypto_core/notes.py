# crypto_core/notes.py
"""
Shielded notes (private UTXOs) and the ledger that tracks them.

A note is created once, by a shield or as change during an unshield, and
moves from unspent to spent exactly once. Notes are never deleted.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from services.crypto_core.commitments import (
    make_commitment,
    make_nullifier,
    random_nonce,
    random_secret,
)
from services.crypto_core.errors import InsufficientUnspentNotes, IntegrityFault
from services.crypto_core.splits import explicit_coin_select, fifo_coin_select


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Note:
    amount: int  # lamports
    secret: bytes
    nonce: bytes
    commitment: bytes
    leaf_index: int
    nullifier: bytes
    created_at: datetime = field(default_factory=_now)
    spent: bool = False
    spent_at: Optional[datetime] = None

    @classmethod
    def create(cls, amount: int, leaf_index: int, secret: Optional[bytes] = None,
               nonce: Optional[bytes] = None) -> "Note":
        """Fresh note with new secret material, bound to `leaf_index`."""
        secret = secret if secret is not None else random_secret()
        nonce = nonce if nonce is not None else random_nonce()
        return cls(
            amount=amount,
            secret=secret,
            nonce=nonce,
            commitment=make_commitment(amount, secret, nonce),
            leaf_index=leaf_index,
            nullifier=make_nullifier(secret, leaf_index),
        )

    def recompute_commitment(self) -> bytes:
        return make_commitment(self.amount, self.secret, self.nonce)

    def recompute_nullifier(self) -> bytes:
        return make_nullifier(self.secret, self.leaf_index)

    def check_integrity(self) -> None:
        if self.recompute_commitment() != self.commitment:
            raise IntegrityFault(self.leaf_index, "commitment does not match amount/secret/nonce")

    def public_view(self) -> "PublicNote":
        return PublicNote(
            commitment=self.commitment.hex(),
            leaf_index=self.leaf_index,
            amount=self.amount,
            spent=self.spent,
            created_at=self.created_at,
        )

    def __repr__(self) -> str:
        # keep secret material out of logs and tracebacks
        return (
            f"Note(leaf_index={self.leaf_index}, amount={self.amount}, "
            f"commitment={self.commitment.hex()[:16]}..., spent={self.spent})"
        )


@dataclass(frozen=True)
class PublicNote:
    commitment: str
    leaf_index: int
    amount: int
    spent: bool
    created_at: datetime


class NoteLedger:
    """Notes in creation order, indexed by leaf index."""

    def __init__(self, notes: Optional[Iterable[Note]] = None):
        self._notes: List[Note] = []
        self._by_index: Dict[int, Note] = {}
        for n in notes or ():
            self.append(n)

    def __len__(self) -> int:
        return len(self._notes)

    def __iter__(self) -> Iterator[Note]:
        return iter(self._notes)

    def append(self, note: Note) -> None:
        if note.leaf_index in self._by_index:
            raise IntegrityFault(note.leaf_index, "duplicate leaf index in ledger")
        self._notes.append(note)
        self._by_index[note.leaf_index] = note

    def get(self, leaf_index: int) -> Optional[Note]:
        return self._by_index.get(leaf_index)

    def unspent(self) -> List[Note]:
        return [n for n in self._notes if not n.spent]

    def unspent_total(self) -> int:
        return sum(n.amount for n in self._notes if not n.spent)

    def mark_spent(self, note: Note, when: Optional[datetime] = None) -> None:
        if note.spent:
            raise IntegrityFault(note.leaf_index, "note already marked spent")
        note.spent = True
        note.spent_at = when or _now()

    def select_for_withdrawal(self, amount: int) -> Tuple[List[Note], int]:
        """FIFO selection over unspent notes; returns (notes, selected_total)."""
        return fifo_coin_select(self._notes, amount)

    def select_explicit(self, leaf_indices: Sequence[int], amount: int) -> Tuple[List[Note], int]:
        notes = []
        for idx in leaf_indices:
            note = self._by_index.get(idx)
            if note is None:
                raise InsufficientUnspentNotes(amount, 0, f"unknown leaf index {idx}")
            notes.append(note)
        return explicit_coin_select(notes, amount)
