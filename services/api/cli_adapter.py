# services/api/cli_adapter.py
"""
On-chain leg of shield/unshield: SOL moves between the user's wallet and
the vault's derived address through the `solana` CLI.

The vault address is derived deterministically from the wallet secret,
so the same wallet always maps to the same vault account.
"""
from __future__ import annotations

import hashlib
import json
import os
import tempfile
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, List, Optional, Protocol

import base58
import requests
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from nacl.signing import SigningKey

from services.api.logging_config import get_logger
from services.api.subprocess_retry import SubprocessRetryError, run_json_script_with_retry, run_with_retry
from services.crypto_core.commitments import LAMPORTS_PER_SOL, fmt_sol, to_lamports

LOG = get_logger("cli_adapter")

SOLANA_BIN = os.getenv("SOLANA_BIN", "solana")


# ===== Exceptions =====
class CLIAdapterError(RuntimeError):
    """Raised when an on-chain transfer or RPC read fails."""


@dataclass(frozen=True)
class TransferReceipt:
    signature: str
    vault_address: str
    amount: Decimal
    direction: str  # "to_vault" | "from_vault"


class TransferProvider(Protocol):
    vault_address: str

    def transfer_to_vault(self, amount: Decimal) -> TransferReceipt: ...

    def transfer_from_vault(self, amount: Decimal) -> TransferReceipt: ...


# ===== Keys =====
def _read_secret_64_from_keyfile(path: str | Path) -> bytes:
    with open(path, "r") as f:
        raw = json.load(f)
    if isinstance(raw, list) and len(raw) >= 64 and all(isinstance(x, int) for x in raw[:64]):
        return bytes(raw[:64])
    raise CLIAdapterError(f"Unsupported secret key JSON format in {path}")


def pubkey_from_secret64(sk64: bytes) -> str:
    return base58.b58encode(sk64[32:64]).decode("ascii")


def derive_vault_keypair(wallet_sk64: bytes, vault_id: str = "default") -> bytes:
    """
    Ed25519 keypair (secret||pub, 64 bytes) for the vault account, derived
    with HKDF-SHA256 from the wallet seed. Deterministic per (wallet, vault_id).
    """
    seed = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=b"shielded-vault-address-v1|" + vault_id.encode("utf-8"),
    ).derive(wallet_sk64[:32])
    sk = SigningKey(seed)
    return seed + bytes(sk.verify_key)


def _write_temp_keypair(sk64: bytes, prefix: str = "vault_") -> str:
    """
    Write a 64-byte keypair to a temporary JSON file compatible with
    solana-keygen (secret||pub).
    """
    fd, path = tempfile.mkstemp(prefix=prefix, suffix=".json")
    with os.fdopen(fd, "w") as f:
        json.dump(list(sk64), f)
    os.chmod(path, 0o600)
    return path


# ===== RPC =====
def _rpc(rpc_url: str, method: str, params=None, timeout: float = 5) -> dict:
    try:
        r = requests.post(
            rpc_url,
            json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []},
            timeout=timeout,
        )
        r.raise_for_status()
        j = r.json()
    except (requests.RequestException, ValueError) as e:
        raise CLIAdapterError(f"RPC {method} failed: {e}") from e
    if "error" in j:
        raise CLIAdapterError(f"RPC {method} error: {j['error']}")
    return j


def get_sol_balance(rpc_url: str, pubkey: str) -> Decimal:
    j = _rpc(rpc_url, "getBalance", [pubkey, {"commitment": "confirmed"}])
    lamports = int((j.get("result") or {}).get("value", 0))
    return Decimal(lamports) / LAMPORTS_PER_SOL


# ===== Providers =====
class SolanaCliTransferProvider:
    def __init__(
        self,
        wallet_keyfile: str | Path,
        rpc_url: str,
        vault_id: str = "default",
        runner: Callable[..., Any] = run_with_retry,
    ):
        self.wallet_keyfile = str(wallet_keyfile)
        self.rpc_url = rpc_url
        self.vault_id = vault_id
        self._runner = runner

        wallet_sk = _read_secret_64_from_keyfile(self.wallet_keyfile)
        self.wallet_address = pubkey_from_secret64(wallet_sk)
        self._vault_sk = derive_vault_keypair(wallet_sk, vault_id)
        self.vault_address = pubkey_from_secret64(self._vault_sk)
        LOG.info(f"Vault address for wallet {self.wallet_address}: {self.vault_address}")

    def _transfer(self, from_keyfile: str, dest_pub: str, amount: Decimal, description: str) -> str:
        cmd: List[str] = [
            SOLANA_BIN,
            "transfer",
            dest_pub,
            fmt_sol(to_lamports(amount)),
            "--url",
            self.rpc_url,
            "--fee-payer",
            self.wallet_keyfile,
            "--from",
            from_keyfile,
            "--allow-unfunded-recipient",
            "--output",
            "json",
        ]
        try:
            out = run_json_script_with_retry(cmd, description=description, runner=self._runner)
        except SubprocessRetryError as e:
            raise CLIAdapterError(str(e)) from e
        sig = out.get("signature") if isinstance(out, dict) else None
        if not sig:
            raise CLIAdapterError(f"{description}: no signature in CLI output")
        return sig

    def transfer_to_vault(self, amount: Decimal) -> TransferReceipt:
        sig = self._transfer(self.wallet_keyfile, self.vault_address, amount,
                             f"Transfer {amount} SOL to vault")
        LOG.info(f"[onchain] wallet -> vault {amount} SOL sig={sig}")
        return TransferReceipt(sig, self.vault_address, Decimal(str(amount)), "to_vault")

    def transfer_from_vault(self, amount: Decimal) -> TransferReceipt:
        tmp = _write_temp_keypair(self._vault_sk)
        try:
            sig = self._transfer(tmp, self.wallet_address, amount,
                                 f"Transfer {amount} SOL from vault")
        finally:
            os.remove(tmp)
        LOG.info(f"[onchain] vault -> wallet {amount} SOL sig={sig}")
        return TransferReceipt(sig, self.vault_address, Decimal(str(amount)), "from_vault")

    def vault_onchain_balance(self) -> Decimal:
        return get_sol_balance(self.rpc_url, self.vault_address)


@dataclass
class DryRunTransferProvider:
    """No chain access: deterministic fake signatures, every call recorded."""

    vault_address: str = "DryRunVau1t111111111111111111111111111111111"
    calls: List[TransferReceipt] = field(default_factory=list)
    fail_with: Optional[Exception] = None

    def _receipt(self, amount: Decimal, direction: str) -> TransferReceipt:
        if self.fail_with is not None:
            raise self.fail_with
        digest = hashlib.sha256(f"{len(self.calls)}|{direction}|{amount}".encode()).digest()
        r = TransferReceipt(base58.b58encode(digest + digest[:32]).decode("ascii"),
                            self.vault_address, Decimal(str(amount)), direction)
        self.calls.append(r)
        LOG.info(f"[dry-run] {direction} {amount} SOL sig={r.signature[:16]}...")
        return r

    def transfer_to_vault(self, amount: Decimal) -> TransferReceipt:
        return self._receipt(amount, "to_vault")

    def transfer_from_vault(self, amount: Decimal) -> TransferReceipt:
        return self._receipt(amount, "from_vault")
