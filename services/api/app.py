# services/api/app.py
from __future__ import annotations

import re
import threading
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from services.api.cli_adapter import CLIAdapterError, SolanaCliTransferProvider, TransferProvider
from services.api.health_checks import comprehensive_health_check
from services.api.logging_config import configure_logging, get_logger
from services.api.pricing import fetch_sol_price
from services.api.schemas_api import (
    ErrorRes,
    HistoryItem, HistoryRes,
    MerkleStatus,
    NoteItem, NotesRes,
    SelfTestRes,
    ShieldReq, ShieldRes,
    UnshieldReq, UnshieldRes,
    VaultStateRes,
)
from services.config import Settings, load_settings
from services.crypto_core.commitments import fmt_sol, lamports_to_sol
from services.crypto_core.errors import (
    DoubleSpendAttempt,
    InsufficientBalance,
    InsufficientUnspentNotes,
    InvalidAmount,
    InvalidMerkleProof,
    OperationInProgress,
    ProofBackendError,
    VaultError,
)
from services.crypto_core.proof_backend import ProofBackend, build_backend
from services.crypto_core.sealing import NoteSealer, load_master_key
from services.crypto_core.selftest import SelfTestReport, ensure_safe, run_self_test
from services.crypto_core.vault import ShieldedVault
from services.database.backup import BackupScheduler, VaultBackup
from services.database.vault_store import VaultStore

logger = get_logger("api")

OWNER_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

STATUS_BY_ERROR = {
    InvalidAmount: 400,
    InsufficientBalance: 400,
    InsufficientUnspentNotes: 409,
    DoubleSpendAttempt: 409,
    OperationInProgress: 409,
    InvalidMerkleProof: 422,
    ProofBackendError: 503,
}


def status_for(err: VaultError) -> int:
    if err.fatal:
        return 500
    for cls, code in STATUS_BY_ERROR.items():
        if isinstance(err, cls):
            return code
    return 400


class VaultRegistry:
    """One ShieldedVault per owner, all sharing one store and proof backend."""

    def __init__(self, depth: int, store: Optional[VaultStore], backend: ProofBackend):
        self.depth = depth
        self.store = store
        self.backend = backend
        self._vaults: Dict[str, ShieldedVault] = {}
        self._lock = threading.Lock()

    def get(self, owner: str) -> ShieldedVault:
        if not OWNER_RE.match(owner):
            raise HTTPException(status_code=400, detail="owner must be 1-64 chars of [A-Za-z0-9_-]")
        with self._lock:
            v = self._vaults.get(owner)
            if v is None:
                v = self._vaults[owner] = ShieldedVault(
                    depth=self.depth, backend=self.backend, store=self.store, vault_id=owner
                )
            return v

    def owners(self) -> List[str]:
        with self._lock:
            return sorted(self._vaults)


def _build_store(settings: Settings) -> VaultStore:
    key = load_master_key(settings.master_key_hex, settings.master_key_path)
    return VaultStore(settings.db_path, NoteSealer(key))


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[VaultStore] = None,
    backend: Optional[ProofBackend] = None,
    provider_factory: Optional[Callable[[str], TransferProvider]] = None,
    price_fn: Optional[Callable[[], Optional[Decimal]]] = None,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level, settings.log_file)

    # refuse to start on an unsafe build
    report: SelfTestReport = ensure_safe(settings.tree_depth)

    store = store if store is not None else _build_store(settings)
    backend = backend or build_backend(settings.proof_backend, settings.snark_circuit_dir)
    registry = VaultRegistry(settings.tree_depth, store, backend)

    if provider_factory is None and settings.wallet_keypair is not None:
        def provider_factory(owner: str) -> TransferProvider:
            return SolanaCliTransferProvider(settings.wallet_keypair, settings.rpc_url, vault_id=owner)

    if price_fn is None:
        def price_fn() -> Optional[Decimal]:
            return fetch_sol_price(settings.sol_price_url, settings.sol_price_fallback_usd or None)

    backup: Optional[VaultBackup] = None
    if settings.backup_dir is not None and store.db_path != ":memory:":
        backup = VaultBackup(str(store.db_path), str(settings.backup_dir), max_backups=settings.max_backups)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = None
        if backup is not None:
            scheduler = BackupScheduler(backup, interval_hours=settings.backup_interval_hours)
            await scheduler.start()
        yield
        if scheduler is not None:
            await scheduler.stop()
        store.close()

    app = FastAPI(title="Shielded Vault API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.selftest = report
    app.state.backup = backup

    @app.exception_handler(VaultError)
    async def _vault_error(request, exc: VaultError):
        code = status_for(exc)
        if exc.fatal:
            logger.critical(f"{type(exc).__name__} on {request.url.path}: {exc}")
        body = ErrorRes(error=type(exc).__name__, detail=str(exc), fatal=exc.fatal)
        return JSONResponse(status_code=code, content=body.model_dump())

    def _provider(owner: str) -> TransferProvider:
        if provider_factory is None:
            raise HTTPException(status_code=400, detail="onchain transfers need WALLET_KEYPAIR to be configured")
        return provider_factory(owner)

    # =========================
    # Mutations
    # =========================

    error_responses = {code: {"model": ErrorRes} for code in (400, 409, 422, 500, 503)}

    @app.post("/vault/{owner}/shield", response_model=ShieldRes, responses=error_responses)
    def shield(owner: str, req: ShieldReq):
        vault = registry.get(owner)
        if not req.onchain:
            r = vault.shield(req.amount_sol)
            return ShieldRes(
                commitment=r.commitment, nullifier=r.nullifier, merkle_root=r.merkle_root,
                leaf_index=r.leaf_index, new_balance=f"{r.new_balance:f}",
            )

        provider = _provider(owner)
        try:
            with vault.shielding(req.amount_sol) as pending:
                receipt = provider.transfer_to_vault(lamports_to_sol(pending.amount))
        except CLIAdapterError as e:
            raise HTTPException(status_code=502, detail=f"SOL transfer to vault failed: {e}")
        r = pending.result
        return ShieldRes(
            commitment=r.commitment, nullifier=r.nullifier, merkle_root=r.merkle_root,
            leaf_index=r.leaf_index, new_balance=f"{r.new_balance:f}",
            tx_signature=receipt.signature, vault_address=receipt.vault_address,
        )

    @app.post("/vault/{owner}/unshield", response_model=UnshieldRes, responses=error_responses)
    def unshield(owner: str, req: UnshieldReq):
        vault = registry.get(owner)
        receipt = None
        if req.onchain:
            provider = _provider(owner)
            try:
                with vault.unshielding(req.amount_sol, req.leaf_indices) as pending:
                    receipt = provider.transfer_from_vault(lamports_to_sol(pending.amount))
            except CLIAdapterError as e:
                raise HTTPException(status_code=502, detail=f"SOL transfer from vault failed: {e}")
            r = pending.result
        else:
            r = vault.unshield(req.amount_sol, req.leaf_indices)

        return UnshieldRes(
            commitment=r.commitment,
            nullifier=r.nullifier,
            merkle_root=r.merkle_root,
            proof_valid=r.proof_valid,
            new_balance=f"{r.new_balance:f}",
            spent_leaf_indices=list(r.spent_leaf_indices),
            nullifiers=list(r.nullifiers),
            change_commitment=r.change_commitment,
            change_amount=f"{r.change_amount:f}",
            tx_signature=receipt.signature if receipt else None,
        )

    # =========================
    # Reads
    # =========================

    @app.get("/vault/{owner}", response_model=VaultStateRes)
    def vault_state(owner: str, with_price: bool = Query(False, description="Include display-only USD value.")):
        vault = registry.get(owner)
        s = vault.state()
        price = price_fn() if with_price else None
        return VaultStateRes(
            owner=owner,
            balance=fmt_sol(s.balance_lamports),
            total_shielded=fmt_sol(s.total_shielded_lamports),
            total_unshielded=fmt_sol(s.total_unshielded_lamports),
            merkle_root=s.merkle_root,
            note_count=s.note_count,
            nullifier_count=s.nullifier_count,
            unspent_count=s.unspent_count,
            tree_depth=s.tree_depth,
            tree_capacity=s.tree_capacity,
            sol_price_usd=str(price) if price is not None else None,
            usd_value=str((s.balance * price).quantize(Decimal("0.01"))) if price is not None else None,
            summary=vault.format_for_agent(price),
        )

    @app.get("/vault/{owner}/history", response_model=HistoryRes)
    def vault_history(owner: str, limit: Optional[int] = Query(None, ge=1, le=1000)):
        vault = registry.get(owner)
        items = [HistoryItem(**e.to_dict()) for e in vault.history(limit)]
        return HistoryRes(owner=owner, items=items)

    @app.get("/vault/{owner}/notes", response_model=NotesRes)
    def vault_notes(owner: str):
        s = registry.get(owner).state()
        notes = [
            NoteItem(
                commitment=n.commitment,
                leaf_index=n.leaf_index,
                amount_sol=fmt_sol(n.amount),
                spent=n.spent,
                created_at=n.created_at.isoformat(),
            )
            for n in s.notes
        ]
        return NotesRes(owner=owner, notes=notes, unspent_total_sol=fmt_sol(s.balance_lamports))

    @app.get("/merkle/status/{owner}", response_model=MerkleStatus)
    def merkle_status(owner: str):
        s = registry.get(owner).state()
        return MerkleStatus(
            owner=owner,
            root_hex=s.merkle_root,
            leaves=s.note_count,
            depth=s.tree_depth,
            capacity=s.tree_capacity,
            remaining_capacity=s.tree_capacity - s.note_count,
            nullifiers=s.nullifier_count,
            unspent_total_sol=fmt_sol(s.balance_lamports),
        )

    @app.get("/selftest", response_model=SelfTestRes)
    def selftest():
        r = run_self_test(settings.tree_depth)
        if not r.passed:
            logger.critical("Self-test failed at runtime; this process must not handle funds")
        return SelfTestRes(**r.to_dict())

    @app.get("/health")
    async def health(check_rpc: bool = Query(False, description="Also probe SOLANA_RPC_URL.")):
        return await comprehensive_health_check(
            store=store,
            rpc_url=settings.rpc_url if check_rpc else None,
            selftest_report=report,
        )

    return app
