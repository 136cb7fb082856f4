"""
Error taxonomy for the shielded vault.

Recoverable errors (fatal = False) are ordinary outcomes the caller is
expected to handle: bad input, not enough funds, a replayed spend.
Fatal errors mean the vault state or the build itself cannot be trusted.
"""
from __future__ import annotations

from typing import Any, Optional


class VaultError(RuntimeError):
    """Base class for every error raised by the vault core."""

    fatal = False


class InvalidAmount(VaultError):
    """Amount is not a positive quantity of at least one lamport."""

    def __init__(self, amount: Any, detail: str = ""):
        self.amount = amount
        super().__init__(detail or f"Amount must be > 0 (got {amount!r})")


class InsufficientBalance(VaultError):
    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient vault balance: requested {requested} lamports, available {available} lamports"
        )


class InsufficientUnspentNotes(VaultError):
    """Aggregate balance may suffice but the selected notes cannot cover the amount."""

    def __init__(self, requested: int, available: int, detail: str = ""):
        self.requested = requested
        self.available = available
        msg = (
            f"Could not assemble {requested} lamports from unspent notes "
            f"(coverable: {available} lamports)"
        )
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class DoubleSpendAttempt(VaultError):
    def __init__(self, nullifier_hex: str, leaf_index: Optional[int] = None):
        self.nullifier = nullifier_hex
        self.leaf_index = leaf_index
        super().__init__(f"Nullifier already spent: {nullifier_hex} (leaf {leaf_index})")


class OperationInProgress(VaultError):
    """A shield or unshield was started while another one was still open on the same vault."""

    def __init__(self, vault_id: str, detail: str = "another operation is still in flight"):
        self.vault_id = vault_id
        super().__init__(f"Vault {vault_id}: {detail}")


class InvalidMerkleProof(VaultError):
    def __init__(self, leaf_index: int, backend: str = "hash"):
        self.leaf_index = leaf_index
        self.backend = backend
        super().__init__(f"Merkle proof rejected for leaf {leaf_index} ({backend} backend)")


class ProofBackendError(VaultError):
    """A proof backend could not produce or check a proof."""


class IntegrityFault(VaultError):
    """Stored note data no longer matches its public commitment."""

    fatal = True

    def __init__(self, leaf_index: Optional[int], detail: str):
        self.leaf_index = leaf_index
        self.detail = detail
        super().__init__(f"Integrity fault (leaf {leaf_index}): {detail}")


class TreeCapacityExceeded(VaultError):
    fatal = True

    def __init__(self, capacity: int):
        self.capacity = capacity
        super().__init__(f"Merkle tree is full (capacity {capacity} leaves)")


class SelfTestFailure(VaultError):
    """The startup self-test failed; this build must not handle funds."""

    fatal = True

    def __init__(self, report: Any):
        self.report = report
        failed = ", ".join(c.name for c in report.checks if not c.passed)
        super().__init__(f"Cryptographic self-test failed: {failed}")
