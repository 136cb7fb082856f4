"""
Merkle tree tests
"""

import pytest

from services.crypto_core.commitments import hash_pair, sha256
from services.crypto_core.errors import TreeCapacityExceeded
from services.crypto_core.merkle import EMPTY_LEAF, MerkleTree, compute_empty_hashes, verify_merkle


def _leaf(i: int) -> bytes:
    return sha256(b"leaf-%d" % i)


class TestEmptyTree:
    def test_empty_hashes_chain(self):
        e = compute_empty_hashes(4)
        assert len(e) == 5
        assert e[0] == EMPTY_LEAF == b"\x00" * 32
        for i in range(1, 5):
            assert e[i] == hash_pair(e[i - 1], e[i - 1])

    def test_empty_root(self):
        t = MerkleTree(5)
        assert t.root() == t.empty_hashes[5]
        assert len(t) == 0

    @pytest.mark.parametrize("depth", [0, 33, -1, "16"])
    def test_bad_depth(self, depth):
        with pytest.raises(ValueError):
            MerkleTree(depth)


class TestInsertAndRoot:
    def test_indices_are_sequential(self):
        t = MerkleTree(4)
        assert [t.insert(_leaf(i)) for i in range(5)] == [0, 1, 2, 3, 4]

    def test_single_leaf_root(self):
        t = MerkleTree(2)
        t.insert(_leaf(0))
        e = t.empty_hashes
        assert t.root() == hash_pair(hash_pair(_leaf(0), e[0]), e[1])

    def test_three_leaf_root(self):
        t = MerkleTree(2)
        for i in range(3):
            t.insert(_leaf(i))
        left = hash_pair(_leaf(0), _leaf(1))
        right = hash_pair(_leaf(2), t.empty_hashes[0])
        assert t.root() == hash_pair(left, right)

    def test_same_leaves_same_root(self):
        a, b = MerkleTree(6), MerkleTree(6, leaves=[_leaf(i) for i in range(7)])
        for i in range(7):
            a.insert(_leaf(i))
        assert a.root() == b.root()

    def test_order_matters(self):
        a = MerkleTree(3, leaves=[_leaf(0), _leaf(1)])
        b = MerkleTree(3, leaves=[_leaf(1), _leaf(0)])
        assert a.root() != b.root()

    def test_capacity(self):
        t = MerkleTree(2)
        for i in range(4):
            t.insert(_leaf(i))
        assert t.is_full()
        with pytest.raises(TreeCapacityExceeded):
            t.insert(_leaf(4))
        assert len(t) == 4

    def test_rejects_malformed_leaf(self):
        with pytest.raises(ValueError):
            MerkleTree(2).insert(b"short")

    def test_preview_root_does_not_mutate(self):
        t = MerkleTree(4, leaves=[_leaf(0)])
        before = t.root()
        preview = t.preview_root([_leaf(1), _leaf(2)])
        assert t.root() == before
        assert len(t) == 1
        t.insert(_leaf(1))
        t.insert(_leaf(2))
        assert t.root() == preview

    def test_preview_root_capacity(self):
        t = MerkleTree(1, leaves=[_leaf(0)])
        with pytest.raises(TreeCapacityExceeded):
            t.preview_root([_leaf(1), _leaf(2)])


class TestProofs:
    @pytest.mark.parametrize("n", [1, 2, 3, 5, 8, 9])
    def test_round_trip_every_index(self, n):
        t = MerkleTree(4, leaves=[_leaf(i) for i in range(n)])
        root = t.root()
        for i in range(n):
            p = t.prove(i)
            assert len(p.siblings) == len(p.path_bits) == 4
            assert verify_merkle(_leaf(i), p.siblings, p.path_bits, root)
            assert t.verify(_leaf(i), p)

    def test_path_bits_follow_index(self):
        t = MerkleTree(3, leaves=[_leaf(i) for i in range(6)])
        assert t.prove(5).path_bits == (1, 0, 1)
        assert t.prove(0).path_bits == (0, 0, 0)

    def test_tamper_rejection(self):
        t = MerkleTree(4, leaves=[_leaf(i) for i in range(5)])
        root = t.root()
        p = t.prove(2)
        for j in range(5):
            if j != 2:
                assert not verify_merkle(_leaf(j), p.siblings, p.path_bits, root)
        assert not verify_merkle(sha256(b"forged"), p.siblings, p.path_bits, root)

    def test_stale_root_rejected(self):
        t = MerkleTree(4, leaves=[_leaf(0)])
        p = t.prove(0)
        t.insert(_leaf(1))
        assert not t.verify(_leaf(0), p)
        assert t.verify(_leaf(0), t.prove(0))

    def test_malformed_proofs(self):
        t = MerkleTree(2, leaves=[_leaf(0)])
        p = t.prove(0)
        root = t.root()
        assert not verify_merkle(_leaf(0), p.siblings[:1], p.path_bits, root)
        assert not verify_merkle(_leaf(0), p.siblings, (2, 0), root)

    @pytest.mark.parametrize("idx", [-1, 1, 100])
    def test_prove_out_of_range(self, idx):
        t = MerkleTree(2, leaves=[_leaf(0)])
        with pytest.raises(IndexError):
            t.prove(idx)

    def test_proof_to_dict(self):
        t = MerkleTree(2, leaves=[_leaf(0), _leaf(1)])
        d = t.prove(1).to_dict()
        assert d["leaf_index"] == 1
        assert d["path_bits"] == [1, 0]
        assert d["siblings"][0] == _leaf(0).hex()
