from __future__ import annotations
from pathlib import Path
from typing import Optional, Tuple
import os
from nacl.secret import SecretBox
from nacl.exceptions import CryptoError
from nacl.utils import random as nacl_random
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes

from services.crypto_core.errors import IntegrityFault

MASTER_KEY_SIZE = 32
SEAL_NONCE_SIZE = SecretBox.NONCE_SIZE  # 24


def derive_vault_key(master_key: bytes, vault_id: str) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=b"shielded-vault-seal-v1|" + vault_id.encode("utf-8"),
    )
    return hkdf.derive(master_key)


def seal(key32: bytes, plaintext: bytes) -> Tuple[bytes, bytes]:
    sb = SecretBox(key32)  # XSalsa20-Poly1305
    nonce = nacl_random(SEAL_NONCE_SIZE)
    ct = sb.encrypt(plaintext, nonce)
    return nonce, ct.ciphertext


def unseal(key32: bytes, nonce24: bytes, ciphertext: bytes) -> bytes:
    sb = SecretBox(key32)
    return sb.decrypt(ciphertext, nonce24)


class NoteSealer:
    """Seals note secrets/nonces at rest; one derived key per vault id."""

    def __init__(self, master_key: bytes):
        if len(master_key) != MASTER_KEY_SIZE:
            raise ValueError(f"master key must be {MASTER_KEY_SIZE} bytes (got {len(master_key)})")
        self._master = bytes(master_key)
        self._keys: dict = {}

    def _key(self, vault_id: str) -> bytes:
        k = self._keys.get(vault_id)
        if k is None:
            k = self._keys[vault_id] = derive_vault_key(self._master, vault_id)
        return k

    def seal(self, vault_id: str, plaintext: bytes) -> bytes:
        nonce, ct = seal(self._key(vault_id), plaintext)
        return nonce + ct

    def open(self, vault_id: str, blob: bytes, leaf_index: Optional[int] = None) -> bytes:
        try:
            return unseal(self._key(vault_id), blob[:SEAL_NONCE_SIZE], blob[SEAL_NONCE_SIZE:])
        except CryptoError as e:
            # wrong master key or tampered row: the note can no longer be trusted
            raise IntegrityFault(leaf_index, f"sealed note material failed to open: {e}") from e


def load_master_key(env_hex: Optional[str] = None, key_path: Optional[str | Path] = None) -> bytes:
    """
    Master key from hex (VAULT_MASTER_KEY) or from a key file, creating
    the file with mode 0600 on first use.
    """
    if env_hex:
        key = bytes.fromhex(env_hex.strip())
        if len(key) != MASTER_KEY_SIZE:
            raise ValueError(f"VAULT_MASTER_KEY must be {MASTER_KEY_SIZE} bytes of hex")
        return key
    if key_path is None:
        raise ValueError("No master key configured: set VAULT_MASTER_KEY or VAULT_MASTER_KEY_PATH")

    p = Path(key_path)
    if p.exists():
        key = p.read_bytes()
        if len(key) != MASTER_KEY_SIZE:
            raise ValueError(f"Master key file {p} must hold {MASTER_KEY_SIZE} raw bytes")
        return key

    p.parent.mkdir(parents=True, exist_ok=True)
    key = nacl_random(MASTER_KEY_SIZE)
    fd = os.open(str(p), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(key)
    return key
