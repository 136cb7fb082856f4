# crypto_core/nullifiers.py
from __future__ import annotations

import threading
from typing import Iterable, Iterator, Optional, Set

from services.crypto_core.errors import DoubleSpendAttempt


class NullifierSet:
    """
    Revealed nullifiers. Insert-only: a nullifier is never removed once
    added, and membership does not depend on which note produced it.
    """

    def __init__(self, nullifiers: Optional[Iterable[bytes]] = None):
        self._items: Set[bytes] = set()
        self._lock = threading.Lock()
        for nf in nullifiers or ():
            self.insert(nf)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[bytes]:
        return iter(sorted(self._items))

    def contains(self, nullifier: bytes) -> bool:
        return bytes(nullifier) in self._items

    __contains__ = contains

    def insert(self, nullifier: bytes, leaf_index: Optional[int] = None) -> None:
        """Check-then-insert as one step; raises DoubleSpendAttempt if present."""
        nf = bytes(nullifier)
        with self._lock:
            if nf in self._items:
                raise DoubleSpendAttempt(nf.hex(), leaf_index)
            self._items.add(nf)
