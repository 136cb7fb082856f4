from __future__ import annotations

from decimal import Decimal
from typing import List, Optional, Literal

from pydantic import BaseModel, ConfigDict, Field, conint

class _DecimalAsStr(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

class Ok(_DecimalAsStr):
    status: str = Field("ok", description="Fixed OK status for successful responses.")

class ErrorRes(_DecimalAsStr):
    error: str = Field(..., description="Error class, e.g. DoubleSpendAttempt.")
    detail: str = Field(..., description="Human-readable message.")
    fatal: bool = Field(False, description="True when the vault state can no longer be trusted.")

# ---------- shield / unshield ----------
# amounts are validated by the vault itself so that every bad amount maps to InvalidAmount (400)
class ShieldReq(_DecimalAsStr):
    amount_sol: Decimal = Field(..., description="Amount to shield (SOL, 9 decimals, rounded down).")
    onchain: bool = Field(False, description="Also move the SOL from the wallet to the vault address.")

class ShieldRes(Ok):
    commitment: str = Field(..., description="Note commitment (hex).")
    nullifier: str = Field(..., description="Pre-derived nullifier (hex); revealed only on spend.")
    merkle_root: str = Field(..., description="Merkle root after insertion (hex).")
    leaf_index: conint(ge=0) = Field(..., description="Index of the commitment in the tree (needed for explicit withdrawals).")
    new_balance: str = Field(..., description="Shielded balance after the operation (SOL).")
    tx_signature: Optional[str] = Field(None, description="On-chain transfer signature when onchain=true.")
    vault_address: Optional[str] = Field(None, description="Vault address that received the SOL.")

class UnshieldReq(_DecimalAsStr):
    amount_sol: Decimal = Field(..., description="Amount to withdraw (SOL).")
    leaf_indices: Optional[List[conint(ge=0)]] = Field(
        None, description="Spend exactly these notes instead of FIFO selection."
    )
    onchain: bool = Field(False, description="Also move the SOL from the vault address back to the wallet.")

class UnshieldRes(Ok):
    commitment: str = Field(..., description="Commitment of the first spent note (hex).")
    nullifier: str = Field(..., description="Nullifier revealed for the first spent note (hex).")
    merkle_root: str = Field(..., description="Merkle root after the operation (hex).")
    proof_valid: bool = Field(..., description="Every membership proof verified.")
    new_balance: str = Field(..., description="Shielded balance after the operation (SOL).")
    spent_leaf_indices: List[int] = Field(..., description="Leaf indices of all spent notes.")
    nullifiers: List[str] = Field(..., description="All revealed nullifiers (hex).")
    change_commitment: Optional[str] = Field(None, description="Commitment of the change note, if any.")
    change_amount: str = Field("0", description="Change re-shielded (SOL).")
    tx_signature: Optional[str] = Field(None, description="On-chain transfer signature when onchain=true.")

# ---------- reads ----------
class VaultStateRes(Ok):
    owner: str
    balance: str = Field(..., description="Sum of unspent notes (SOL).")
    total_shielded: str
    total_unshielded: str
    merkle_root: str
    note_count: conint(ge=0)
    nullifier_count: conint(ge=0)
    unspent_count: conint(ge=0)
    tree_depth: conint(ge=1)
    tree_capacity: conint(ge=2)
    sol_price_usd: Optional[str] = Field(None, description="Display-only SOL price.")
    usd_value: Optional[str] = Field(None, description="Display-only USD value of the balance.")
    summary: str = Field(..., description="Short multi-line summary for the trading agent.")

class HistoryItem(_DecimalAsStr):
    type: Literal["shield", "unshield"]
    amount: str
    timestamp: str
    commitment: str
    merkle_root: str
    nullifier: Optional[str] = None
    proof_valid: Optional[bool] = None
    change_commitment: Optional[str] = None

class HistoryRes(Ok):
    owner: str
    items: List[HistoryItem]

class NoteItem(_DecimalAsStr):
    """Public metadata of a note; secret and nonce never leave the vault."""
    commitment: str
    leaf_index: conint(ge=0)
    amount_sol: str
    spent: bool
    created_at: str

class NotesRes(Ok):
    owner: str
    notes: List[NoteItem]
    unspent_total_sol: str

class MerkleStatus(_DecimalAsStr):
    owner: str
    root_hex: str = Field(..., description="Current Merkle root (hex).")
    leaves: conint(ge=0) = Field(..., description="Number of leaves in the tree.")
    depth: conint(ge=1)
    capacity: conint(ge=2)
    remaining_capacity: conint(ge=0)
    nullifiers: conint(ge=0) = Field(..., description="Count of revealed nullifiers.")
    unspent_total_sol: str = Field(..., description="Sum of unspent notes (SOL, as string).")

class SelfTestCheckRes(_DecimalAsStr):
    name: str
    passed: bool
    detail: str = ""

class SelfTestRes(_DecimalAsStr):
    passed: bool
    duration_ms: float
    checks: List[SelfTestCheckRes]
