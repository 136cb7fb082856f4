"""
Shielded vault test fixtures
"""

import pytest

from services.crypto_core.sealing import NoteSealer
from services.crypto_core.vault import ShieldedVault
from services.database.vault_store import VaultStore

MASTER_KEY = bytes(range(32))


@pytest.fixture
def fixed_secret() -> bytes:
    return bytes([i % 256 for i in range(32)])


@pytest.fixture
def fixed_nonce() -> bytes:
    return bytes([(i + 100) % 256 for i in range(32)])


@pytest.fixture
def vault() -> ShieldedVault:
    """Fresh in-memory vault per test."""
    return ShieldedVault(depth=8)


@pytest.fixture
def sealer() -> NoteSealer:
    return NoteSealer(MASTER_KEY)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "vault.db"


@pytest.fixture
def store(db_path, sealer):
    s = VaultStore(db_path, sealer)
    yield s
    s.close()


@pytest.fixture
def stored_vault(store) -> ShieldedVault:
    return ShieldedVault(depth=8, store=store, vault_id="alice")
