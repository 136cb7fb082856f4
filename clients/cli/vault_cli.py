#!/usr/bin/env python3
"""
Operator CLI for the shielded vault.

Works directly against the configured SQLite store (VAULT_DB_PATH /
DATA_DIR); the API process should not be writing the same vault at the
same time.

  vault-cli selftest
  vault-cli --owner alice status
  vault-cli --owner alice shield 1.5
  vault-cli --owner alice unshield 0.5 [--leaf 3 --leaf 4] [--onchain]
  vault-cli --owner alice history --limit 10
  vault-cli backup [--list | --restore FILE]
"""
import argparse
import asyncio
import json
import sys
from typing import List, Optional

from services.api.cli_adapter import CLIAdapterError, SolanaCliTransferProvider
from services.api.logging_config import configure_logging
from services.api.pricing import fetch_sol_price
from services.config import Settings, load_settings
from services.crypto_core.commitments import fmt_sol, lamports_to_sol
from services.crypto_core.errors import VaultError
from services.crypto_core.proof_backend import build_backend
from services.crypto_core.sealing import NoteSealer, load_master_key
from services.crypto_core.selftest import run_self_test
from services.crypto_core.vault import ShieldedVault
from services.database.backup import VaultBackup
from services.database.vault_store import VaultStore


def _open_vault(args, settings: Settings) -> ShieldedVault:
    key = load_master_key(settings.master_key_hex, settings.master_key_path)
    args.store = VaultStore(settings.db_path, NoteSealer(key))
    backend = build_backend(settings.proof_backend, settings.snark_circuit_dir)
    return ShieldedVault(depth=settings.tree_depth, backend=backend, store=args.store, vault_id=args.owner)


def _provider(settings: Settings, owner: str) -> SolanaCliTransferProvider:
    if settings.wallet_keypair is None:
        raise CLIAdapterError("--onchain needs WALLET_KEYPAIR")
    return SolanaCliTransferProvider(settings.wallet_keypair, settings.rpc_url, vault_id=owner)


def _print(obj, as_json: bool) -> None:
    if as_json:
        print(json.dumps(obj, indent=2, default=str))
    elif isinstance(obj, dict):
        for k, v in obj.items():
            print(f"{k:>20}: {v}")
    else:
        print(obj)


def cmd_selftest(args, settings: Settings) -> int:
    report = run_self_test(settings.tree_depth)
    if args.json:
        _print(report.to_dict(), True)
    else:
        print(report.format())
    return 0 if report.passed else 1


def cmd_status(args, settings: Settings) -> int:
    vault = _open_vault(args, settings)
    if args.json:
        s = vault.state()
        _print({
            "owner": args.owner,
            "balance": fmt_sol(s.balance_lamports),
            "total_shielded": fmt_sol(s.total_shielded_lamports),
            "total_unshielded": fmt_sol(s.total_unshielded_lamports),
            "merkle_root": s.merkle_root,
            "notes": s.note_count,
            "unspent": s.unspent_count,
            "nullifiers": s.nullifier_count,
        }, True)
        return 0
    price = fetch_sol_price(settings.sol_price_url, settings.sol_price_fallback_usd or None) if args.price else None
    print(vault.format_for_agent(price))
    return 0


def cmd_history(args, settings: Settings) -> int:
    vault = _open_vault(args, settings)
    entries = [e.to_dict() for e in vault.history(args.limit)]
    if args.json:
        _print(entries, True)
        return 0
    if not entries:
        print("No operations yet.")
    for e in entries:
        nf = f" nf={e['nullifier'][:16]}..." if e["nullifier"] else ""
        print(f"{e['timestamp']}  {e['type']:<8} {e['amount']:>14} SOL  root={e['merkle_root'][:16]}...{nf}")
    return 0


def cmd_notes(args, settings: Settings) -> int:
    vault = _open_vault(args, settings)
    notes = vault.public_notes()
    if args.json:
        _print([{"leaf_index": n.leaf_index, "commitment": n.commitment, "amount": fmt_sol(n.amount),
                 "spent": n.spent, "created_at": n.created_at.isoformat()} for n in notes], True)
        return 0
    for n in notes:
        print(f"[{n.leaf_index:>5}] {fmt_sol(n.amount):>14} SOL  {'spent ' if n.spent else 'unspent'}  {n.commitment[:16]}...")
    print(f"Unspent total: {vault.balance():f} SOL")
    return 0


def cmd_shield(args, settings: Settings) -> int:
    vault = _open_vault(args, settings)
    sig = None
    if args.onchain:
        provider = _provider(settings, args.owner)
        with vault.shielding(args.amount) as pending:
            sig = provider.transfer_to_vault(lamports_to_sol(pending.amount)).signature
        r = pending.result
    else:
        r = vault.shield(args.amount)
    _print({
        "commitment": r.commitment,
        "nullifier": r.nullifier,
        "merkle_root": r.merkle_root,
        "leaf_index": r.leaf_index,
        "new_balance": f"{r.new_balance:f}",
        "tx_signature": sig,
    }, args.json)
    return 0


def cmd_unshield(args, settings: Settings) -> int:
    vault = _open_vault(args, settings)
    sig = None
    if args.onchain:
        provider = _provider(settings, args.owner)
        with vault.unshielding(args.amount, args.leaf) as pending:
            sig = provider.transfer_from_vault(lamports_to_sol(pending.amount)).signature
        r = pending.result
    else:
        r = vault.unshield(args.amount, args.leaf)
    _print({
        "nullifier": r.nullifier,
        "merkle_root": r.merkle_root,
        "proof_valid": r.proof_valid,
        "spent_leaf_indices": list(r.spent_leaf_indices),
        "change_amount": f"{r.change_amount:f}",
        "change_commitment": r.change_commitment,
        "new_balance": f"{r.new_balance:f}",
        "tx_signature": sig,
    }, args.json)
    return 0


def cmd_backup(args, settings: Settings) -> int:
    mgr = VaultBackup(str(settings.db_path), str(settings.backup_dir), max_backups=settings.max_backups)
    if args.list:
        _print(asyncio.run(mgr.get_backup_stats()), args.json)
    elif args.restore:
        _print(asyncio.run(mgr.restore_backup(args.restore)), args.json)
    else:
        _print(asyncio.run(mgr.create_backup(description=args.description)), args.json)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vault-cli", description="Shielded vault operator CLI")
    parser.add_argument("--owner", default="default", help="Vault id (one vault per owner)")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("selftest", help="Run the cryptographic self-test").set_defaults(func=cmd_selftest)

    p = sub.add_parser("status", help="Balance, notes and root")
    p.add_argument("--price", action="store_true", help="Show display-only USD value")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("history", help="Operation history")
    p.add_argument("--limit", type=int, default=None)
    p.set_defaults(func=cmd_history)

    sub.add_parser("notes", help="Public note metadata").set_defaults(func=cmd_notes)

    p = sub.add_parser("shield", help="Shield AMOUNT SOL")
    p.add_argument("amount")
    p.add_argument("--onchain", action="store_true", help="Also transfer from the wallet to the vault address")
    p.set_defaults(func=cmd_shield)

    p = sub.add_parser("unshield", help="Unshield AMOUNT SOL")
    p.add_argument("amount")
    p.add_argument("--leaf", type=int, action="append", default=None, help="Spend this leaf index (repeatable)")
    p.add_argument("--onchain", action="store_true", help="Also transfer from the vault address to the wallet")
    p.set_defaults(func=cmd_unshield)

    p = sub.add_parser("backup", help="Back up, list or restore the vault store")
    p.add_argument("--list", action="store_true")
    p.add_argument("--restore", metavar="FILE", default=None)
    p.add_argument("--description", default="Manual backup")
    p.set_defaults(func=cmd_backup)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_file)
    try:
        return args.func(args, settings)
    except VaultError as e:
        print(f"ERROR [{type(e).__name__}]: {e}", file=sys.stderr)
        return 1
    except CLIAdapterError as e:
        print(f"ERROR [onchain]: {e}", file=sys.stderr)
        return 1
    finally:
        if getattr(args, "store", None) is not None:
            args.store.close()


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted by user.")
        sys.exit(130)
