"""
Durable vault state in SQLite.

One row per vault, one row per note (secret and nonce sealed with the
vault's derived key), one row per revealed nullifier and an append-only
history. Each shield/unshield is written in a single transaction.
"""
from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from services.api.logging_config import get_logger
from services.crypto_core.notes import Note
from services.crypto_core.sealing import NoteSealer
from services.crypto_core.vault import HistoryEntry, OperationType

logger = get_logger("vault_store")

# amounts are u64 lamports and can exceed SQLite's signed INTEGER, so they are kept as TEXT
DDL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS vaults(
  vault_id TEXT PRIMARY KEY,
  depth INTEGER NOT NULL,
  total_shielded TEXT NOT NULL DEFAULT '0',
  total_unshielded TEXT NOT NULL DEFAULT '0',
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notes(
  vault_id TEXT NOT NULL REFERENCES vaults(vault_id),
  leaf_index INTEGER NOT NULL,
  amount_lamports TEXT NOT NULL,
  commitment TEXT NOT NULL,
  nullifier TEXT NOT NULL,
  secret_sealed BLOB NOT NULL,
  nonce_sealed BLOB NOT NULL,
  spent INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL,
  spent_at TEXT,
  PRIMARY KEY(vault_id, leaf_index)
);

CREATE TABLE IF NOT EXISTS nullifiers(
  vault_id TEXT NOT NULL REFERENCES vaults(vault_id),
  nullifier TEXT NOT NULL,
  leaf_index INTEGER NOT NULL,
  spent_at TEXT NOT NULL,
  PRIMARY KEY(vault_id, nullifier)
);

CREATE TABLE IF NOT EXISTS history(
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  vault_id TEXT NOT NULL REFERENCES vaults(vault_id),
  op TEXT NOT NULL,
  amount_lamports TEXT NOT NULL,
  ts TEXT NOT NULL,
  commitment TEXT NOT NULL,
  merkle_root TEXT NOT NULL,
  nullifier TEXT,
  proof_valid INTEGER,
  change_commitment TEXT
);

CREATE INDEX IF NOT EXISTS idx_history_vault ON history(vault_id, id);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ts(dt: datetime) -> str:
    return dt.isoformat()


@dataclass
class StoredVault:
    vault_id: str
    depth: int
    total_shielded: int
    total_unshielded: int
    notes: List[Note] = field(default_factory=list)
    nullifiers: List[bytes] = field(default_factory=list)
    history: List[HistoryEntry] = field(default_factory=list)


class VaultStore:
    def __init__(self, db_path: str | Path, sealer: NoteSealer):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.sealer = sealer
        self._lock = threading.Lock()
        self._cx = sqlite3.connect(self.db_path, check_same_thread=False)
        self._cx.execute("PRAGMA foreign_keys=ON;")
        self._cx.executescript(DDL)
        logger.info(f"Vault store ready at {self.db_path}")

    def close(self) -> None:
        with self._lock:
            self._cx.close()

    def ping(self) -> bool:
        with self._lock:
            return self._cx.execute("SELECT 1").fetchone() == (1,)

    def list_vaults(self) -> List[str]:
        with self._lock:
            rows = self._cx.execute("SELECT vault_id FROM vaults ORDER BY vault_id").fetchall()
        return [r[0] for r in rows]

    def create_vault(self, vault_id: str, depth: int) -> None:
        now = _now()
        with self._lock, self._cx:
            self._cx.execute(
                "INSERT INTO vaults(vault_id,depth,total_shielded,total_unshielded,created_at,updated_at) "
                "VALUES(?,?,?,?,?,?)",
                (vault_id, depth, "0", "0", now, now),
            )

    # ---------- load ----------
    def _row_to_note(self, vault_id: str, row: Tuple) -> Note:
        leaf_index, amount, commitment, nullifier, secret_sealed, nonce_sealed, spent, created_at, spent_at = row
        return Note(
            amount=int(amount),
            secret=self.sealer.open(vault_id, bytes(secret_sealed), leaf_index),
            nonce=self.sealer.open(vault_id, bytes(nonce_sealed), leaf_index),
            commitment=bytes.fromhex(commitment),
            leaf_index=leaf_index,
            nullifier=bytes.fromhex(nullifier),
            created_at=datetime.fromisoformat(created_at),
            spent=bool(spent),
            spent_at=datetime.fromisoformat(spent_at) if spent_at else None,
        )

    @staticmethod
    def _row_to_entry(row: Tuple) -> HistoryEntry:
        op, amount, ts, commitment, merkle_root, nullifier, proof_valid, change_commitment = row
        return HistoryEntry(
            op=OperationType(op),
            amount=int(amount),
            timestamp=datetime.fromisoformat(ts),
            commitment=commitment,
            merkle_root=merkle_root,
            nullifier=nullifier,
            proof_valid=None if proof_valid is None else bool(proof_valid),
            change_commitment=change_commitment,
        )

    def load(self, vault_id: str) -> Optional[StoredVault]:
        with self._lock:
            cx = self._cx
            row = cx.execute(
                "SELECT depth,total_shielded,total_unshielded FROM vaults WHERE vault_id=?", (vault_id,)
            ).fetchone()
            if row is None:
                return None
            note_rows = cx.execute(
                "SELECT leaf_index,amount_lamports,commitment,nullifier,secret_sealed,nonce_sealed,"
                "spent,created_at,spent_at FROM notes WHERE vault_id=? ORDER BY leaf_index",
                (vault_id,),
            ).fetchall()
            nf_rows = cx.execute(
                "SELECT nullifier FROM nullifiers WHERE vault_id=? ORDER BY leaf_index", (vault_id,)
            ).fetchall()
            hist_rows = cx.execute(
                "SELECT op,amount_lamports,ts,commitment,merkle_root,nullifier,proof_valid,change_commitment "
                "FROM history WHERE vault_id=? ORDER BY id",
                (vault_id,),
            ).fetchall()

        depth, total_shielded, total_unshielded = row
        return StoredVault(
            vault_id=vault_id,
            depth=depth,
            total_shielded=int(total_shielded),
            total_unshielded=int(total_unshielded),
            notes=[self._row_to_note(vault_id, r) for r in note_rows],
            nullifiers=[bytes.fromhex(r[0]) for r in nf_rows],
            history=[self._row_to_entry(r) for r in hist_rows],
        )

    # ---------- writes ----------
    def _insert_note(self, cx: sqlite3.Connection, vault_id: str, note: Note) -> None:
        cx.execute(
            "INSERT INTO notes(vault_id,leaf_index,amount_lamports,commitment,nullifier,"
            "secret_sealed,nonce_sealed,spent,created_at,spent_at) VALUES(?,?,?,?,?,?,?,?,?,?)",
            (
                vault_id,
                note.leaf_index,
                str(note.amount),
                note.commitment.hex(),
                note.nullifier.hex(),
                self.sealer.seal(vault_id, note.secret),
                self.sealer.seal(vault_id, note.nonce),
                int(note.spent),
                _ts(note.created_at),
                _ts(note.spent_at) if note.spent_at else None,
            ),
        )

    @staticmethod
    def _insert_history(cx: sqlite3.Connection, vault_id: str, e: HistoryEntry) -> None:
        cx.execute(
            "INSERT INTO history(vault_id,op,amount_lamports,ts,commitment,merkle_root,nullifier,"
            "proof_valid,change_commitment) VALUES(?,?,?,?,?,?,?,?,?)",
            (
                vault_id,
                e.op.value,
                str(e.amount),
                _ts(e.timestamp),
                e.commitment,
                e.merkle_root,
                e.nullifier,
                None if e.proof_valid is None else int(e.proof_valid),
                e.change_commitment,
            ),
        )

    @staticmethod
    def _update_totals(cx: sqlite3.Connection, vault_id: str, shielded: int, unshielded: int) -> None:
        cur = cx.execute(
            "UPDATE vaults SET total_shielded=?, total_unshielded=?, updated_at=? WHERE vault_id=?",
            (str(shielded), str(unshielded), _now(), vault_id),
        )
        if cur.rowcount != 1:
            raise KeyError(f"Unknown vault: {vault_id}")

    def commit_shield(self, vault_id: str, note: Note, entry: HistoryEntry,
                      total_shielded: int, total_unshielded: int) -> None:
        with self._lock, self._cx:
            self._insert_note(self._cx, vault_id, note)
            self._insert_history(self._cx, vault_id, entry)
            self._update_totals(self._cx, vault_id, total_shielded, total_unshielded)

    def commit_unshield(
        self,
        vault_id: str,
        spent: Sequence[Note],
        nullifiers: Sequence[Tuple[bytes, int]],
        change_note: Optional[Note],
        entry: HistoryEntry,
        total_shielded: int,
        total_unshielded: int,
        spent_at: datetime,
    ) -> None:
        when = _ts(spent_at)
        with self._lock, self._cx:
            cx = self._cx
            for note in spent:
                cur = cx.execute(
                    "UPDATE notes SET spent=1, spent_at=? WHERE vault_id=? AND leaf_index=? AND spent=0",
                    (when, vault_id, note.leaf_index),
                )
                if cur.rowcount != 1:
                    raise sqlite3.IntegrityError(f"note {note.leaf_index} missing or already spent in store")
            for nf, leaf_index in nullifiers:
                cx.execute(
                    "INSERT INTO nullifiers(vault_id,nullifier,leaf_index,spent_at) VALUES(?,?,?,?)",
                    (vault_id, nf.hex(), leaf_index, when),
                )
            if change_note is not None:
                self._insert_note(cx, vault_id, change_note)
            self._insert_history(cx, vault_id, entry)
            self._update_totals(cx, vault_id, total_shielded, total_unshielded)


__all__ = ["DDL", "StoredVault", "VaultStore"]
