# services/config.py
"""
Environment-driven settings for the API process and the operator CLI.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Mapping, Optional

from services.crypto_core.merkle import DEFAULT_DEPTH, MAX_DEPTH

PROOF_BACKENDS = ("hash", "snark")


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    db_path: Path
    tree_depth: int = DEFAULT_DEPTH
    master_key_hex: Optional[str] = None
    master_key_path: Optional[Path] = None
    proof_backend: str = "hash"
    snark_circuit_dir: Optional[Path] = None
    rpc_url: str = "https://api.devnet.solana.com"
    wallet_keypair: Optional[Path] = None
    sol_price_url: str = "https://api.coingecko.com/api/v3/simple/price?ids=solana&vs_currencies=usd"
    sol_price_fallback_usd: Decimal = Decimal("0")
    backup_dir: Optional[Path] = None
    max_backups: int = 7
    backup_interval_hours: float = 24.0
    log_level: str = "INFO"
    log_file: Optional[str] = None


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer (got {raw!r})")


def _path(env: Mapping[str, str], key: str) -> Optional[Path]:
    raw = env.get(key)
    return Path(raw).expanduser() if raw else None


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Read settings from `env` (defaults to os.environ).

    Raises:
        ValueError: on any malformed value
    """
    env = os.environ if env is None else env

    data_dir = Path(env.get("DATA_DIR") or "./data").expanduser()
    db_path = _path(env, "VAULT_DB_PATH") or data_dir / "vault.db"

    depth = _int(env, "VAULT_TREE_DEPTH", DEFAULT_DEPTH)
    if not 1 <= depth <= MAX_DEPTH:
        raise ValueError(f"VAULT_TREE_DEPTH must be in [1, {MAX_DEPTH}] (got {depth})")

    backend = (env.get("PROOF_BACKEND") or "hash").lower()
    if backend not in PROOF_BACKENDS:
        raise ValueError(f"PROOF_BACKEND must be one of {PROOF_BACKENDS} (got {backend!r})")
    circuit_dir = _path(env, "SNARK_CIRCUIT_DIR")
    if backend == "snark" and circuit_dir is None:
        raise ValueError("PROOF_BACKEND=snark requires SNARK_CIRCUIT_DIR")

    master_hex = env.get("VAULT_MASTER_KEY") or None
    if master_hex is not None:
        try:
            if len(bytes.fromhex(master_hex.strip())) != 32:
                raise ValueError
        except ValueError:
            raise ValueError("VAULT_MASTER_KEY must be 64 hex characters")

    raw_price = env.get("SOL_PRICE_FALLBACK_USD") or "0"
    try:
        fallback = Decimal(raw_price)
    except InvalidOperation:
        raise ValueError(f"SOL_PRICE_FALLBACK_USD must be a number (got {raw_price!r})")

    max_backups = _int(env, "MAX_BACKUPS", 7)
    if max_backups < 1:
        raise ValueError("MAX_BACKUPS must be >= 1")
    raw_interval = env.get("BACKUP_INTERVAL_HOURS") or "24"
    try:
        interval = float(raw_interval)
    except ValueError:
        raise ValueError(f"BACKUP_INTERVAL_HOURS must be a number (got {raw_interval!r})")
    if interval <= 0:
        raise ValueError("BACKUP_INTERVAL_HOURS must be > 0")

    return Settings(
        data_dir=data_dir,
        db_path=db_path,
        tree_depth=depth,
        master_key_hex=master_hex,
        master_key_path=_path(env, "VAULT_MASTER_KEY_PATH") or data_dir / "vault_master.key",
        proof_backend=backend,
        snark_circuit_dir=circuit_dir,
        rpc_url=env.get("SOLANA_RPC_URL") or "https://api.devnet.solana.com",
        wallet_keypair=_path(env, "WALLET_KEYPAIR"),
        sol_price_url=env.get("SOL_PRICE_URL") or Settings.sol_price_url,
        sol_price_fallback_usd=fallback,
        backup_dir=_path(env, "BACKUP_DIR") or data_dir / "backups",
        max_backups=max_backups,
        backup_interval_hours=interval,
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        log_file=env.get("LOG_FILE") or None,
    )
