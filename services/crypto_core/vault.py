# crypto_core/vault.py
"""
ShieldedVault: shield / unshield over notes, nullifiers and the Merkle tree.

Every mutating operation runs in two phases under one writer lock:

  prepare  validate the amount, select notes, recompute commitments,
           check nullifiers, prove and verify membership, preview the
           new root. Nothing is mutated.
  commit   write the store (one SQLite transaction), then apply the
           same changes in memory and publish a fresh VaultState.

`shielding()` / `unshielding()` expose the gap between the two phases so
the caller can run the on-chain transfer leg inside it; an exception in
the block aborts the operation with nothing changed.

Readers only ever see the last published VaultState, which is immutable.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from services.api.logging_config import get_logger
from services.crypto_core.commitments import (
    AmountLike,
    fmt_sol,
    lamports_to_sol,
    short_hex,
    to_lamports,
)
from services.crypto_core.errors import (
    DoubleSpendAttempt,
    InsufficientBalance,
    IntegrityFault,
    InvalidMerkleProof,
    OperationInProgress,
    TreeCapacityExceeded,
)
from services.crypto_core.merkle import DEFAULT_DEPTH, MerkleTree
from services.crypto_core.notes import Note, NoteLedger, PublicNote
from services.crypto_core.nullifiers import NullifierSet
from services.crypto_core.proof_backend import HashRevealBackend, ProofBackend, SpendProof
from services.crypto_core.splits import change_amount

logger = get_logger("vault")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OperationType(Enum):
    SHIELD = "shield"
    UNSHIELD = "unshield"


@dataclass(frozen=True)
class HistoryEntry:
    op: OperationType
    amount: int  # lamports
    timestamp: datetime
    commitment: str
    merkle_root: str
    nullifier: Optional[str] = None
    proof_valid: Optional[bool] = None
    change_commitment: Optional[str] = None

    @property
    def amount_sol(self) -> Decimal:
        return lamports_to_sol(self.amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.op.value,
            "amount": fmt_sol(self.amount),
            "amount_lamports": self.amount,
            "timestamp": self.timestamp.isoformat(),
            "commitment": self.commitment,
            "merkle_root": self.merkle_root,
            "nullifier": self.nullifier,
            "proof_valid": self.proof_valid,
            "change_commitment": self.change_commitment,
        }


@dataclass(frozen=True)
class VaultState:
    vault_id: str
    balance_lamports: int
    total_shielded_lamports: int
    total_unshielded_lamports: int
    history: Tuple[HistoryEntry, ...]
    merkle_root: str
    note_count: int
    nullifier_count: int
    unspent_count: int
    tree_depth: int
    tree_capacity: int
    notes: Tuple[PublicNote, ...] = ()

    @property
    def balance(self) -> Decimal:
        return lamports_to_sol(self.balance_lamports)

    @property
    def total_shielded(self) -> Decimal:
        return lamports_to_sol(self.total_shielded_lamports)

    @property
    def total_unshielded(self) -> Decimal:
        return lamports_to_sol(self.total_unshielded_lamports)


@dataclass(frozen=True)
class ShieldResult:
    commitment: str
    nullifier: str
    merkle_root: str
    leaf_index: int
    new_balance: Decimal


@dataclass(frozen=True)
class UnshieldResult:
    commitment: str
    nullifier: str
    merkle_root: str
    proof_valid: bool
    new_balance: Decimal
    spent_leaf_indices: Tuple[int, ...]
    nullifiers: Tuple[str, ...]
    change_commitment: Optional[str] = None
    change_amount: Decimal = Decimal(0)


@dataclass
class PendingShield:
    note: Note
    entry: HistoryEntry
    result: ShieldResult
    total_shielded: int
    base_root: bytes = b""

    @property
    def amount(self) -> int:
        return self.note.amount


@dataclass
class PendingUnshield:
    amount: int
    spent: List[Note]
    proofs: List[SpendProof]
    change_note: Optional[Note]
    entry: HistoryEntry
    result: UnshieldResult
    total_unshielded: int
    spent_at: datetime = field(default_factory=_now)
    base_root: bytes = b""
    base_size: int = 0

    @property
    def nullifiers(self) -> List[Tuple[bytes, int]]:
        return [(p.nullifier, p.leaf_index) for p in self.proofs]


class ShieldedVault:
    def __init__(
        self,
        depth: int = DEFAULT_DEPTH,
        backend: Optional[ProofBackend] = None,
        store: Any = None,
        vault_id: str = "default",
    ):
        self.vault_id = vault_id
        self.backend = backend or HashRevealBackend()
        self.store = store
        self._lock = threading.RLock()
        self._in_flight = False

        self._tree = MerkleTree(depth)
        self._ledger = NoteLedger()
        self._nullifiers = NullifierSet()
        self._history: List[HistoryEntry] = []
        self._total_shielded = 0
        self._total_unshielded = 0

        if store is not None:
            self._load_from_store()
        self._publish()

    @property
    def depth(self) -> int:
        return self._tree.depth

    # ---------- persistence ----------
    def _load_from_store(self) -> None:
        stored = self.store.load(self.vault_id)
        if stored is None:
            self.store.create_vault(self.vault_id, self._tree.depth)
            logger.info(f"Created vault {self.vault_id} (depth {self._tree.depth})")
            return

        if stored.depth != self._tree.depth:
            raise ValueError(
                f"Vault {self.vault_id} was created with depth {stored.depth}, not {self._tree.depth}"
            )

        notes = sorted(stored.notes, key=lambda n: n.leaf_index)
        for expected, note in enumerate(notes):
            if note.leaf_index != expected:
                self._fault(IntegrityFault(note.leaf_index, f"stored leaf indices not contiguous (expected {expected})"))
            self._tree.insert(note.commitment)
            self._ledger.append(note)
        for nf in stored.nullifiers:
            self._nullifiers.insert(nf)
        self._history = list(stored.history)
        self._total_shielded = stored.total_shielded
        self._total_unshielded = stored.total_unshielded

        self.verify_integrity()
        if self._history and self._history[-1].merkle_root != self._tree.root().hex():
            self._fault(IntegrityFault(None, "rebuilt Merkle root differs from the last recorded root"))

        logger.info(
            f"Loaded vault {self.vault_id}: {len(self._ledger)} notes, "
            f"{len(self._nullifiers)} nullifiers, balance {fmt_sol(self._ledger.unspent_total())} SOL"
        )

    def _fault(self, err: IntegrityFault) -> None:
        logger.critical(f"Vault {self.vault_id}: {err}")
        raise err

    # ---------- snapshot ----------
    def _publish(self) -> None:
        unspent = self._ledger.unspent()
        self._state = VaultState(
            vault_id=self.vault_id,
            balance_lamports=sum(n.amount for n in unspent),
            total_shielded_lamports=self._total_shielded,
            total_unshielded_lamports=self._total_unshielded,
            history=tuple(self._history),
            merkle_root=self._tree.root().hex(),
            note_count=len(self._ledger),
            nullifier_count=len(self._nullifiers),
            unspent_count=len(unspent),
            tree_depth=self._tree.depth,
            tree_capacity=self._tree.capacity,
            notes=tuple(n.public_view() for n in self._ledger),
        )

    def state(self) -> VaultState:
        return self._state

    def balance(self) -> Decimal:
        return self._state.balance

    def history(self, limit: Optional[int] = None) -> Tuple[HistoryEntry, ...]:
        h = self._state.history
        if limit is not None:
            h = h[-limit:] if limit > 0 else ()
        return h

    def public_notes(self) -> Tuple[PublicNote, ...]:
        return self._state.notes

    # ---------- operations ----------
    @contextmanager
    def _operation(self) -> Iterator[None]:
        """Hold the vault for one shield or unshield. Nested operations are refused."""
        with self._lock:
            if self._in_flight:
                logger.error(f"Vault {self.vault_id}: nested operation refused")
                raise OperationInProgress(self.vault_id)
            self._in_flight = True
            try:
                yield
            finally:
                self._in_flight = False

    def _check_unchanged(self, base_root: bytes, base_size: int) -> None:
        if len(self._tree) != base_size or self._tree.root() != base_root:
            raise OperationInProgress(self.vault_id, "tree changed after the operation was prepared")

    # ---------- shield ----------
    def _ensure_capacity(self, needed: int) -> None:
        if self._tree.remaining_capacity() < needed:
            err = TreeCapacityExceeded(self._tree.capacity)
            logger.critical(f"Vault {self.vault_id}: {err}")
            raise err

    def _prepare_shield(self, amount: AmountLike) -> PendingShield:
        lamports = to_lamports(amount)
        self._ensure_capacity(1)

        note = Note.create(lamports, leaf_index=len(self._tree))
        root = self._tree.preview_root([note.commitment])
        new_balance = self._ledger.unspent_total() + lamports
        entry = HistoryEntry(
            op=OperationType.SHIELD,
            amount=lamports,
            timestamp=note.created_at,
            commitment=note.commitment.hex(),
            merkle_root=root.hex(),
        )
        result = ShieldResult(
            commitment=note.commitment.hex(),
            nullifier=note.nullifier.hex(),
            merkle_root=root.hex(),
            leaf_index=note.leaf_index,
            new_balance=lamports_to_sol(new_balance),
        )
        return PendingShield(note=note, entry=entry, result=result,
                             total_shielded=self._total_shielded + lamports,
                             base_root=self._tree.root())

    def _commit_shield(self, p: PendingShield) -> ShieldResult:
        self._check_unchanged(p.base_root, p.note.leaf_index)
        if self.store is not None:
            self.store.commit_shield(self.vault_id, p.note, p.entry, p.total_shielded, self._total_unshielded)

        self._tree.insert(p.note.commitment)
        self._ledger.append(p.note)
        self._total_shielded = p.total_shielded
        self._history.append(p.entry)
        self._publish()

        logger.info(
            f"shield {fmt_sol(p.amount)} SOL -> leaf {p.note.leaf_index}, "
            f"commitment {short_hex(p.note.commitment)}, root {p.entry.merkle_root[:16]}..., "
            f"balance {fmt_sol(self._state.balance_lamports)} SOL"
        )
        return p.result

    @contextmanager
    def shielding(self, amount: AmountLike) -> Iterator[PendingShield]:
        with self._operation():
            pending = self._prepare_shield(amount)
            try:
                yield pending
            except BaseException:
                logger.warning(f"shield {fmt_sol(pending.amount)} SOL aborted before commit")
                raise
            self._commit_shield(pending)

    def shield(self, amount: AmountLike) -> ShieldResult:
        with self.shielding(amount) as pending:
            pass
        return pending.result

    # ---------- unshield ----------
    def _select(self, lamports: int, leaf_indices: Optional[Sequence[int]]) -> Tuple[List[Note], int]:
        if leaf_indices is not None:
            return self._ledger.select_explicit(list(leaf_indices), lamports)
        available = self._ledger.unspent_total()
        if lamports > available:
            raise InsufficientBalance(lamports, available)
        return self._ledger.select_for_withdrawal(lamports)

    def _check_note(self, note: Note, root: bytes, seen: set) -> SpendProof:
        try:
            note.check_integrity()
        except IntegrityFault as e:
            self._fault(e)
        if self._tree.leaves[note.leaf_index] != note.commitment:
            self._fault(IntegrityFault(note.leaf_index, "tree leaf differs from note commitment"))

        nf = note.recompute_nullifier()
        if nf != note.nullifier:
            self._fault(IntegrityFault(note.leaf_index, "stored nullifier differs from recomputed nullifier"))
        if nf in self._nullifiers or nf in seen:
            logger.warning(f"Double-spend attempt on vault {self.vault_id}: leaf {note.leaf_index}, nullifier {short_hex(nf)}")
            raise DoubleSpendAttempt(nf.hex(), note.leaf_index)
        seen.add(nf)

        proof = self.backend.prove_spend(note, self._tree, root)
        if proof.merkle_root != root or not self.backend.verify_spend(proof, note.commitment):
            logger.error(f"Merkle proof rejected for leaf {note.leaf_index} ({self.backend.name} backend)")
            raise InvalidMerkleProof(note.leaf_index, self.backend.name)
        return proof

    def _prepare_unshield(self, amount: AmountLike, leaf_indices: Optional[Sequence[int]]) -> PendingUnshield:
        lamports = to_lamports(amount)
        notes, selected_total = self._select(lamports, leaf_indices)

        root = self._tree.root()
        seen: set = set()
        proofs = [self._check_note(n, root, seen) for n in notes]

        change = change_amount(selected_total, lamports)
        change_note = None
        new_root = root
        if change:
            self._ensure_capacity(1)
            change_note = Note.create(change, leaf_index=len(self._tree))
            new_root = self._tree.preview_root([change_note.commitment])

        new_balance = self._ledger.unspent_total() - selected_total + change
        change_hex = change_note.commitment.hex() if change_note else None
        first = proofs[0]
        entry = HistoryEntry(
            op=OperationType.UNSHIELD,
            amount=lamports,
            timestamp=_now(),
            commitment=first.commitment.hex(),
            merkle_root=new_root.hex(),
            nullifier=first.nullifier.hex(),
            proof_valid=True,
            change_commitment=change_hex,
        )
        result = UnshieldResult(
            commitment=first.commitment.hex(),
            nullifier=first.nullifier.hex(),
            merkle_root=new_root.hex(),
            proof_valid=True,
            new_balance=lamports_to_sol(new_balance),
            spent_leaf_indices=tuple(n.leaf_index for n in notes),
            nullifiers=tuple(p.nullifier.hex() for p in proofs),
            change_commitment=change_hex,
            change_amount=lamports_to_sol(change),
        )
        return PendingUnshield(
            amount=lamports,
            spent=notes,
            proofs=proofs,
            change_note=change_note,
            entry=entry,
            result=result,
            total_unshielded=self._total_unshielded + lamports,
            spent_at=entry.timestamp,
            base_root=root,
            base_size=len(self._tree),
        )

    def _commit_unshield(self, p: PendingUnshield) -> UnshieldResult:
        self._check_unchanged(p.base_root, p.base_size)
        if self.store is not None:
            self.store.commit_unshield(
                self.vault_id, p.spent, p.nullifiers, p.change_note, p.entry,
                self._total_shielded, p.total_unshielded, p.spent_at,
            )

        for nf, leaf_index in p.nullifiers:
            self._nullifiers.insert(nf, leaf_index)
        for note in p.spent:
            self._ledger.mark_spent(note, p.spent_at)
        if p.change_note is not None:
            self._tree.insert(p.change_note.commitment)
            self._ledger.append(p.change_note)
        self._total_unshielded = p.total_unshielded
        self._history.append(p.entry)
        self._publish()

        change_msg = f", change {fmt_sol(p.change_note.amount)} SOL -> leaf {p.change_note.leaf_index}" if p.change_note else ""
        logger.info(
            f"unshield {fmt_sol(p.amount)} SOL from leaves {list(p.result.spent_leaf_indices)}, "
            f"nullifier {p.result.nullifier[:16]}...{change_msg}, "
            f"root {p.entry.merkle_root[:16]}..., balance {fmt_sol(self._state.balance_lamports)} SOL"
        )
        return p.result

    @contextmanager
    def unshielding(self, amount: AmountLike,
                    leaf_indices: Optional[Sequence[int]] = None) -> Iterator[PendingUnshield]:
        with self._operation():
            pending = self._prepare_unshield(amount, leaf_indices)
            try:
                yield pending
            except BaseException:
                logger.warning(f"unshield {fmt_sol(pending.amount)} SOL aborted before commit")
                raise
            self._commit_unshield(pending)

    def unshield(self, amount: AmountLike, leaf_indices: Optional[Sequence[int]] = None) -> UnshieldResult:
        with self.unshielding(amount, leaf_indices) as pending:
            pass
        return pending.result

    # ---------- audit ----------
    def verify_integrity(self) -> int:
        """
        Recompute every note commitment and nullifier, check the tree
        leaves match the notes in leaf order and every spent note's
        nullifier is recorded. Returns the number of notes checked.

        Raises:
            IntegrityFault: on the first mismatch
        """
        with self._lock:
            leaves = self._tree.leaves
            notes = list(self._ledger)
            if len(leaves) != len(notes):
                self._fault(IntegrityFault(None, f"{len(leaves)} tree leaves vs {len(notes)} notes"))
            for note in notes:
                try:
                    note.check_integrity()
                except IntegrityFault as e:
                    self._fault(e)
                if leaves[note.leaf_index] != note.commitment:
                    self._fault(IntegrityFault(note.leaf_index, "tree leaf differs from note commitment"))
                if note.recompute_nullifier() != note.nullifier:
                    self._fault(IntegrityFault(note.leaf_index, "stored nullifier differs from recomputed nullifier"))
                if note.spent and note.nullifier not in self._nullifiers:
                    self._fault(IntegrityFault(note.leaf_index, "spent note has no recorded nullifier"))
            spent = sum(1 for n in notes if n.spent)
            if spent != len(self._nullifiers):
                self._fault(IntegrityFault(None, f"{spent} spent notes vs {len(self._nullifiers)} nullifiers"))
            return len(notes)

    def format_for_agent(self, sol_price: Optional[Decimal] = None) -> str:
        s = self._state
        bal = f"Balance: {fmt_sol(s.balance_lamports)} SOL"
        if sol_price is not None:
            bal += f" (~${(s.balance * Decimal(str(sol_price))).quantize(Decimal('0.01'))})"
        lines = [
            "Shielded vault",
            bal,
            f"Notes: {s.unspent_count} unspent / {s.note_count} total",
            f"Nullifiers revealed: {s.nullifier_count}",
            f"Merkle root: {s.merkle_root[:16]}...",
        ]
        if s.history:
            last = s.history[-1]
            lines.append(
                f"Last op: {last.op.value} {fmt_sol(last.amount)} SOL at {last.timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC"
            )
        else:
            lines.append("Last op: none")
        return "\n".join(lines)
