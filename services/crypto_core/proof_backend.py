# crypto_core/proof_backend.py
"""
Spend-proof strategies.

Both backends consume the same notes, nullifiers and Merkle tree; they
differ only in what is handed to a verifier:

- HashRevealBackend: nullifier + Merkle path (sibling hashes and bits).
- SnarkBackend:      nullifier + Groth16 proof produced by snarkjs from
                     external circuit artifacts.

A backend is chosen once, when the vault is constructed.
"""
from __future__ import annotations

import json
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from services.api.logging_config import get_logger
from services.api.subprocess_retry import SubprocessRetryError, run_with_retry
from services.crypto_core.errors import ProofBackendError
from services.crypto_core.merkle import MerkleTree, verify_merkle
from services.crypto_core.notes import Note

logger = get_logger("proof_backend")

# BN254 scalar field (Groth16 over alt_bn128)
BN254_FIELD_MODULUS = 21888242871839275222246405745257275088548364400416034343698204186575808495617

CIRCUIT_WASM = "transfer.wasm"
CIRCUIT_ZKEY = "transfer_final.zkey"
VERIFICATION_KEY = "verification_key.json"
# snarkjs reports a rejected proof with this text and a nonzero exit
INVALID_PROOF_MARKER = "invalid proof"


@dataclass(frozen=True)
class SpendProof:
    leaf_index: int
    commitment: bytes
    nullifier: bytes
    merkle_root: bytes
    siblings: Tuple[bytes, ...]
    path_bits: Tuple[int, ...]
    backend: str = "hash"
    payload: Optional[Dict[str, Any]] = None
    public_signals: Tuple[str, ...] = field(default_factory=tuple)


class ProofBackend(ABC):
    name: str = "abstract"

    @abstractmethod
    def prove_spend(self, note: Note, tree: MerkleTree, root: bytes) -> SpendProof:
        """Produce a proof that `note` is in `tree` under `root`."""

    @abstractmethod
    def verify_spend(self, proof: SpendProof, leaf: bytes) -> bool:
        """Check `proof` for `leaf` against the root it carries."""


class HashRevealBackend(ProofBackend):
    name = "hash"

    def prove_spend(self, note: Note, tree: MerkleTree, root: bytes) -> SpendProof:
        mp = tree.prove(note.leaf_index)
        return SpendProof(
            leaf_index=note.leaf_index,
            commitment=note.commitment,
            nullifier=note.recompute_nullifier(),
            merkle_root=root,
            siblings=mp.siblings,
            path_bits=mp.path_bits,
            backend=self.name,
        )

    def verify_spend(self, proof: SpendProof, leaf: bytes) -> bool:
        return verify_merkle(leaf, proof.siblings, proof.path_bits, proof.merkle_root)


def to_field(digest: bytes) -> str:
    return str(int.from_bytes(digest, "big") % BN254_FIELD_MODULUS)


class SnarkBackend(ProofBackend):
    """
    Groth16 proofs through the snarkjs CLI.

    The circuit must take the witness layout produced by `witness_inputs`
    (commitment/nullifier/root as BN254 field elements plus the Merkle
    path). Artifacts are looked up in `circuit_dir`.
    """

    name = "snark"

    def __init__(
        self,
        circuit_dir: str | Path,
        snarkjs_cmd: Sequence[str] = ("npx", "snarkjs"),
        runner: Callable[..., Any] = run_with_retry,
        timeout: int = 300,
    ):
        self.circuit_dir = Path(circuit_dir)
        self.snarkjs_cmd = list(snarkjs_cmd)
        self._runner = runner
        self.timeout = timeout

        missing = [
            f for f in (CIRCUIT_WASM, CIRCUIT_ZKEY, VERIFICATION_KEY)
            if not (self.circuit_dir / f).exists()
        ]
        if missing:
            raise ProofBackendError(
                f"SNARK circuit artifacts missing in {self.circuit_dir}: {', '.join(missing)}"
            )

    def witness_inputs(self, note: Note, siblings: Sequence[bytes], path_bits: Sequence[int],
                       root: bytes) -> Dict[str, Any]:
        return {
            "merkle_root": to_field(root),
            "nullifier": to_field(note.recompute_nullifier()),
            "commitment": to_field(note.commitment),
            "amount": str(note.amount),
            "secret": to_field(note.secret),
            "nonce": to_field(note.nonce),
            "leaf_index": str(note.leaf_index),
            "path_elements": [to_field(s) for s in siblings],
            "path_indices": [str(b) for b in path_bits],
        }

    def _exec(self, args: List[str], description: str, retries: int) -> None:
        self._runner(
            cmd=self.snarkjs_cmd + args,
            max_retries=retries,
            timeout=self.timeout,
            description=description,
        )

    def prove_spend(self, note: Note, tree: MerkleTree, root: bytes) -> SpendProof:
        mp = tree.prove(note.leaf_index)
        inputs = self.witness_inputs(note, mp.siblings, mp.path_bits, root)

        with tempfile.TemporaryDirectory(prefix="vault_snark_") as tmp:
            tmpdir = Path(tmp)
            input_path = tmpdir / "input.json"
            proof_path = tmpdir / "proof.json"
            public_path = tmpdir / "public.json"
            input_path.write_text(json.dumps(inputs))

            try:
                self._exec(
                    [
                        "groth16", "fullprove",
                        str(input_path),
                        str(self.circuit_dir / CIRCUIT_WASM),
                        str(self.circuit_dir / CIRCUIT_ZKEY),
                        str(proof_path),
                        str(public_path),
                    ],
                    description=f"Groth16 prove (leaf {note.leaf_index})",
                    retries=2,
                )
                payload = json.loads(proof_path.read_text())
                public = json.loads(public_path.read_text())
            except (SubprocessRetryError, OSError, json.JSONDecodeError) as e:
                raise ProofBackendError(f"Groth16 proving failed for leaf {note.leaf_index}: {e}") from e

        logger.info(f"Groth16 proof generated for leaf {note.leaf_index}")
        return SpendProof(
            leaf_index=note.leaf_index,
            commitment=note.commitment,
            nullifier=note.recompute_nullifier(),
            merkle_root=root,
            siblings=mp.siblings,
            path_bits=mp.path_bits,
            backend=self.name,
            payload=payload,
            public_signals=tuple(str(s) for s in public),
        )

    def verify_spend(self, proof: SpendProof, leaf: bytes) -> bool:
        if proof.payload is None:
            raise ProofBackendError(f"No Groth16 payload for leaf {proof.leaf_index}")

        # the succinct proof must speak about the same root and nullifier
        if not verify_merkle(leaf, proof.siblings, proof.path_bits, proof.merkle_root):
            return False
        signals = set(proof.public_signals)
        if to_field(proof.merkle_root) not in signals or to_field(proof.nullifier) not in signals:
            logger.error(f"Groth16 public signals do not bind root/nullifier for leaf {proof.leaf_index}")
            return False

        with tempfile.TemporaryDirectory(prefix="vault_snark_") as tmp:
            tmpdir = Path(tmp)
            proof_path = tmpdir / "proof.json"
            public_path = tmpdir / "public.json"
            proof_path.write_text(json.dumps(proof.payload))
            public_path.write_text(json.dumps(list(proof.public_signals)))
            try:
                self._exec(
                    [
                        "groth16", "verify",
                        str(self.circuit_dir / VERIFICATION_KEY),
                        str(public_path),
                        str(proof_path),
                    ],
                    description=f"Groth16 verify (leaf {proof.leaf_index})",
                    retries=1,
                )
            except SubprocessRetryError as e:
                if INVALID_PROOF_MARKER not in str(e).lower():
                    raise ProofBackendError(f"Groth16 verifier unavailable for leaf {proof.leaf_index}: {e}") from e
                logger.error(f"Groth16 verification rejected leaf {proof.leaf_index}: {e}")
                return False
        return True


def build_backend(kind: str = "hash", circuit_dir: Optional[str | Path] = None) -> ProofBackend:
    kind = (kind or "hash").lower()
    if kind == "hash":
        return HashRevealBackend()
    if kind == "snark":
        if not circuit_dir:
            raise ProofBackendError("PROOF_BACKEND=snark requires SNARK_CIRCUIT_DIR")
        return SnarkBackend(circuit_dir)
    raise ValueError(f"Unknown proof backend: {kind}")
