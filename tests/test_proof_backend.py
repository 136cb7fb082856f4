"""
Proof backend tests: hash reveal and Groth16 via a fake snarkjs runner
"""

import json
from decimal import Decimal
from pathlib import Path

import pytest

from services.api.subprocess_retry import SubprocessRetryError
from services.crypto_core.errors import InvalidMerkleProof, ProofBackendError
from services.crypto_core.merkle import MerkleTree
from services.crypto_core.notes import Note
from services.crypto_core.proof_backend import (
    BN254_FIELD_MODULUS,
    CIRCUIT_WASM,
    CIRCUIT_ZKEY,
    VERIFICATION_KEY,
    HashRevealBackend,
    SnarkBackend,
    build_backend,
    to_field,
)
from services.crypto_core.vault import ShieldedVault


class FakeSnarkjs:
    """Stands in for `snarkjs groth16 fullprove|verify`."""

    def __init__(self, fail_prove=False, reject=False, public=None, verify_error=None):
        self.fail_prove = fail_prove
        self.reject = reject
        self.verify_error = verify_error
        self.public = public
        self.calls = []

    def __call__(self, cmd, max_retries, timeout, description):
        self.calls.append(cmd)
        if cmd[2:4] == ["groth16", "fullprove"]:
            if self.fail_prove:
                raise SubprocessRetryError("snarkjs exited 1")
            inputs = json.loads(Path(cmd[4]).read_text())
            public = self.public if self.public is not None else [inputs["merkle_root"], inputs["nullifier"]]
            Path(cmd[7]).write_text(json.dumps({"pi_a": ["1", "2"], "protocol": "groth16"}))
            Path(cmd[8]).write_text(json.dumps(public))
        elif cmd[2:4] == ["groth16", "verify"]:
            if self.verify_error:
                raise SubprocessRetryError(self.verify_error)
            if self.reject:
                raise SubprocessRetryError("[ERROR] snarkJS: Invalid proof")
        return None


@pytest.fixture
def circuit_dir(tmp_path):
    for name in (CIRCUIT_WASM, CIRCUIT_ZKEY, VERIFICATION_KEY):
        (tmp_path / name).write_bytes(b"artifact")
    return tmp_path


def _tree_with(note):
    tree = MerkleTree(4)
    tree.insert(note.commitment)
    return tree


class TestHashReveal:
    def test_prove_and_verify(self):
        note = Note.create(10, 0)
        tree = _tree_with(note)
        backend = HashRevealBackend()
        proof = backend.prove_spend(note, tree, tree.root())
        assert proof.nullifier == note.nullifier
        assert backend.verify_spend(proof, note.commitment)
        assert not backend.verify_spend(proof, Note.create(10, 0).commitment)

    def test_build_backend(self, circuit_dir):
        assert isinstance(build_backend("hash"), HashRevealBackend)
        assert isinstance(build_backend("SNARK", circuit_dir), SnarkBackend)
        with pytest.raises(ProofBackendError):
            build_backend("snark")
        with pytest.raises(ValueError):
            build_backend("plonk")


class TestSnark:
    def test_missing_artifacts(self, tmp_path):
        with pytest.raises(ProofBackendError) as exc:
            SnarkBackend(tmp_path)
        assert CIRCUIT_ZKEY in str(exc.value)

    def test_field_reduction(self):
        assert int(to_field(b"\xff" * 32)) < BN254_FIELD_MODULUS
        assert to_field(b"\x00" * 31 + b"\x05") == "5"

    def test_witness_inputs(self, circuit_dir):
        note = Note.create(10, 0)
        tree = _tree_with(note)
        mp = tree.prove(0)
        inputs = SnarkBackend(circuit_dir, runner=FakeSnarkjs()).witness_inputs(
            note, mp.siblings, mp.path_bits, tree.root()
        )
        assert inputs["amount"] == "10"
        assert inputs["nullifier"] == to_field(note.nullifier)
        assert len(inputs["path_elements"]) == 4
        assert inputs["path_indices"] == ["0", "0", "0", "0"]

    def test_vault_unshield_with_snark(self, circuit_dir):
        runner = FakeSnarkjs()
        vault = ShieldedVault(depth=4, backend=SnarkBackend(circuit_dir, runner=runner))
        vault.shield("2")
        r = vault.unshield("0.5")
        assert r.proof_valid
        assert vault.balance() == Decimal("1.5")
        assert [c[2:4] for c in runner.calls] == [["groth16", "fullprove"], ["groth16", "verify"]]
        assert runner.calls[0][:2] == ["npx", "snarkjs"]

    def test_proving_failure_changes_nothing(self, circuit_dir):
        vault = ShieldedVault(depth=4, backend=SnarkBackend(circuit_dir, runner=FakeSnarkjs(fail_prove=True)))
        vault.shield("2")
        before = vault.state()
        with pytest.raises(ProofBackendError):
            vault.unshield("1")
        assert vault.state() is before

    def test_verifier_rejection(self, circuit_dir):
        vault = ShieldedVault(depth=4, backend=SnarkBackend(circuit_dir, runner=FakeSnarkjs(reject=True)))
        vault.shield("2")
        before = vault.state()
        with pytest.raises(InvalidMerkleProof) as exc:
            vault.unshield("1")
        assert exc.value.backend == "snark"
        assert vault.state() is before

    @pytest.mark.parametrize("message", [
        "Groth16 verify (leaf 0) could not be started: [Errno 2] No such file or directory: 'npx'",
        "Groth16 verify (leaf 0) failed after 1 attempts. Last error: timed out after 120s",
    ])
    def test_verifier_unavailable_is_backend_error(self, circuit_dir, message):
        vault = ShieldedVault(depth=4, backend=SnarkBackend(circuit_dir, runner=FakeSnarkjs(verify_error=message)))
        vault.shield("2")
        before = vault.state()
        with pytest.raises(ProofBackendError):
            vault.unshield("1")
        assert vault.state() is before
        assert vault.state().nullifier_count == 0

    def test_public_signals_must_bind_root(self, circuit_dir):
        runner = FakeSnarkjs(public=["1", "2"])
        vault = ShieldedVault(depth=4, backend=SnarkBackend(circuit_dir, runner=runner))
        vault.shield("2")
        with pytest.raises(InvalidMerkleProof):
            vault.unshield("1")
        # rejected before the verifier ran
        assert len(runner.calls) == 1

    def test_verify_without_payload(self, circuit_dir):
        note = Note.create(10, 0)
        tree = _tree_with(note)
        proof = HashRevealBackend().prove_spend(note, tree, tree.root())
        with pytest.raises(ProofBackendError):
            SnarkBackend(circuit_dir, runner=FakeSnarkjs()).verify_spend(proof, note.commitment)
