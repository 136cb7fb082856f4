# crypto_core/merkle.py
"""
Append-only fixed-depth binary Merkle tree over note commitments.

Levels are rebuilt bottom-up from the leaf list; an unpaired node at the
end of a level is hashed with the empty-subtree digest for that level.
With no leaves the root is empty_hashes[depth].
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from services.crypto_core.commitments import DIGEST_SIZE, hash_pair
from services.crypto_core.errors import TreeCapacityExceeded

DEFAULT_DEPTH = 16
MAX_DEPTH = 32
EMPTY_LEAF = b"\x00" * DIGEST_SIZE


def compute_empty_hashes(depth: int) -> List[bytes]:
    empties = [EMPTY_LEAF]
    for _ in range(depth):
        empties.append(hash_pair(empties[-1], empties[-1]))
    return empties


@dataclass(frozen=True)
class MerkleProof:
    leaf_index: int
    siblings: Tuple[bytes, ...]
    path_bits: Tuple[int, ...]  # 0 = path node is a left child, 1 = right

    def to_dict(self) -> dict:
        return {
            "leaf_index": self.leaf_index,
            "siblings": [s.hex() for s in self.siblings],
            "path_bits": list(self.path_bits),
        }


def verify_merkle(leaf: bytes, siblings: Sequence[bytes], path_bits: Sequence[int], root: bytes) -> bool:
    """Recompute the path hash from `leaf` and compare it to `root`."""
    if len(siblings) != len(path_bits):
        return False
    current = bytes(leaf)
    for sibling, bit in zip(siblings, path_bits):
        if bit == 0:
            current = hash_pair(current, sibling)
        elif bit == 1:
            current = hash_pair(sibling, current)
        else:
            return False
    return current == bytes(root)


class MerkleTree:
    def __init__(self, depth: int = DEFAULT_DEPTH, leaves: Optional[Iterable[bytes]] = None):
        if not isinstance(depth, int) or not 1 <= depth <= MAX_DEPTH:
            raise ValueError(f"depth must be in [1, {MAX_DEPTH}] (got {depth!r})")
        self.depth = depth
        self.capacity = 2**depth
        self.empty_hashes = compute_empty_hashes(depth)
        self._leaves: List[bytes] = []
        for leaf in leaves or ():
            self.insert(leaf)

    def __len__(self) -> int:
        return len(self._leaves)

    @property
    def leaves(self) -> Tuple[bytes, ...]:
        return tuple(self._leaves)

    def is_full(self) -> bool:
        return len(self._leaves) >= self.capacity

    def remaining_capacity(self) -> int:
        return self.capacity - len(self._leaves)

    def insert(self, leaf: bytes) -> int:
        """Append a leaf and return its 0-based index."""
        if not isinstance(leaf, (bytes, bytearray)) or len(leaf) != DIGEST_SIZE:
            raise ValueError(f"leaf must be {DIGEST_SIZE} bytes")
        if self.is_full():
            raise TreeCapacityExceeded(self.capacity)
        index = len(self._leaves)
        self._leaves.append(bytes(leaf))
        return index

    def _next_level(self, level: List[bytes], depth: int) -> List[bytes]:
        nxt = []
        for i in range(0, len(level), 2):
            left = level[i]
            right = level[i + 1] if i + 1 < len(level) else self.empty_hashes[depth]
            nxt.append(hash_pair(left, right))
        return nxt

    def _root_of(self, leaves: List[bytes]) -> bytes:
        if not leaves:
            return self.empty_hashes[self.depth]
        level = list(leaves)
        for d in range(self.depth):
            level = self._next_level(level, d)
        return level[0]

    def root(self) -> bytes:
        return self._root_of(self._leaves)

    def preview_root(self, pending: Sequence[bytes]) -> bytes:
        """Root after appending `pending`, without touching the tree."""
        if len(pending) > self.remaining_capacity():
            raise TreeCapacityExceeded(self.capacity)
        return self._root_of(self._leaves + [bytes(p) for p in pending])

    def prove(self, leaf_index: int) -> MerkleProof:
        if not isinstance(leaf_index, int) or not 0 <= leaf_index < len(self._leaves):
            raise IndexError(f"Leaf index {leaf_index} out of range (size {len(self._leaves)})")

        siblings: List[bytes] = []
        path_bits: List[int] = []
        level = list(self._leaves)
        idx = leaf_index
        for d in range(self.depth):
            sib = idx ^ 1
            siblings.append(level[sib] if sib < len(level) else self.empty_hashes[d])
            path_bits.append(idx & 1)
            level = self._next_level(level, d)
            idx //= 2
        return MerkleProof(leaf_index=leaf_index, siblings=tuple(siblings), path_bits=tuple(path_bits))

    def verify(self, leaf: bytes, proof: MerkleProof, root: Optional[bytes] = None) -> bool:
        return verify_merkle(leaf, proof.siblings, proof.path_bits, self.root() if root is None else root)
