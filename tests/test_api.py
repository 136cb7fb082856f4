"""
HTTP API tests over an in-memory store
"""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from services.api.app import create_app, status_for
from services.api.cli_adapter import CLIAdapterError, DryRunTransferProvider
from services.api.schemas_api import ErrorRes
from services.config import load_settings
from services.crypto_core.errors import (
    DoubleSpendAttempt,
    IntegrityFault,
    InvalidAmount,
    OperationInProgress,
    ProofBackendError,
)
from services.crypto_core.proof_backend import HashRevealBackend
from services.database.vault_store import VaultStore


class RejectingBackend(HashRevealBackend):
    def verify_spend(self, proof, leaf):
        return False


class BrokenBackend(HashRevealBackend):
    name = "snark"

    def prove_spend(self, note, tree, root):
        raise ProofBackendError("snarkjs not installed")


@pytest.fixture
def provider():
    return DryRunTransferProvider()


@pytest.fixture
def make_client(sealer, provider):
    clients = []

    def make(backend=None, with_provider=True):
        settings = load_settings({"VAULT_TREE_DEPTH": "8"})
        app = create_app(
            settings,
            store=VaultStore(":memory:", sealer),
            backend=backend,
            provider_factory=(lambda owner: provider) if with_provider else None,
            price_fn=lambda: Decimal("100"),
        )
        c = TestClient(app)
        c.__enter__()
        clients.append(c)
        return c

    yield make
    for c in clients:
        c.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


def _shield(client, amount, owner="alice", **extra):
    return client.post(f"/vault/{owner}/shield", json={"amount_sol": amount, **extra})


def _unshield(client, amount, owner="alice", **extra):
    return client.post(f"/vault/{owner}/unshield", json={"amount_sol": amount, **extra})


class TestStatusMapping:
    def test_codes(self):
        assert status_for(InvalidAmount(0)) == 400
        assert status_for(DoubleSpendAttempt("ab")) == 409
        assert status_for(OperationInProgress("alice")) == 409
        assert status_for(ProofBackendError("x")) == 503
        assert status_for(IntegrityFault(0, "x")) == 500


class TestShieldUnshield:
    def test_shield_then_unshield_with_change(self, client):
        r = _shield(client, "3")
        assert r.status_code == 200
        body = r.json()
        assert body["leaf_index"] == 0
        assert Decimal(body["new_balance"]) == Decimal("3")
        assert "secret" not in body

        r = _unshield(client, "1")
        assert r.status_code == 200
        body = r.json()
        assert body["proof_valid"] is True
        assert body["spent_leaf_indices"] == [0]
        assert Decimal(body["change_amount"]) == Decimal("2")
        assert Decimal(body["new_balance"]) == Decimal("2")

    def test_invalid_amount(self, client):
        for amount in ("0", "-1", "0.0000000001"):
            r = _shield(client, amount)
            assert r.status_code == 400
            assert r.json()["error"] == "InvalidAmount"

    def test_insufficient_balance(self, client):
        _shield(client, "1")
        r = _unshield(client, "5")
        assert r.status_code == 400
        assert r.json()["error"] == "InsufficientBalance"

    def test_error_body_shape(self, client):
        _shield(client, "1")
        _unshield(client, "1", leaf_indices=[0])
        r = _unshield(client, "1", leaf_indices=[0])
        body = r.json()
        assert set(body) == {"error", "detail", "fatal"}
        assert ErrorRes.model_validate(body).error == "DoubleSpendAttempt"
        assert "Nullifier already spent" in body["detail"]

    def test_error_model_in_openapi(self, client):
        responses = client.get("/openapi.json").json()["paths"]["/vault/{owner}/unshield"]["post"]["responses"]
        for code in ("400", "409", "503"):
            assert responses[code]["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorRes")

    def test_replay_is_conflict(self, client):
        _shield(client, "1")
        _shield(client, "1")
        assert _unshield(client, "1", leaf_indices=[0]).status_code == 200
        r = _unshield(client, "1", leaf_indices=[0])
        assert r.status_code == 409
        assert r.json()["error"] == "DoubleSpendAttempt"
        assert r.json()["fatal"] is False

    def test_uncovered_explicit_notes(self, client):
        _shield(client, "1")
        r = _unshield(client, "2", leaf_indices=[0])
        assert r.status_code == 409
        assert r.json()["error"] == "InsufficientUnspentNotes"

    def test_bad_owner(self, client):
        assert _shield(client, "1", owner="x" * 65).status_code == 400

    def test_owners_are_separate(self, client):
        _shield(client, "1", owner="alice")
        assert client.get("/vault/bob").json()["balance"] == "0.000000000"
        assert client.get("/vault/alice").json()["balance"] == "1.000000000"


class TestFailures:
    def test_rejected_proof(self, make_client):
        client = make_client(backend=RejectingBackend())
        _shield(client, "1")
        r = _unshield(client, "1")
        assert r.status_code == 422
        assert r.json()["error"] == "InvalidMerkleProof"

    def test_backend_unavailable(self, make_client):
        client = make_client(backend=BrokenBackend())
        _shield(client, "1")
        r = _unshield(client, "1")
        assert r.status_code == 503
        assert Decimal(client.get("/vault/alice").json()["balance"]) == Decimal("1")

    def test_integrity_fault_is_fatal(self, client):
        _shield(client, "1")
        vault = client.app.state.registry.get("alice")
        vault._ledger.get(0).amount = 9
        r = _unshield(client, "1")
        assert r.status_code == 500
        assert r.json()["error"] == "IntegrityFault"
        assert r.json()["fatal"] is True


class TestOnchain:
    def test_shield_onchain(self, client, provider):
        r = _shield(client, "1.5", onchain=True)
        assert r.status_code == 200
        body = r.json()
        assert body["tx_signature"] == provider.calls[0].signature
        assert body["vault_address"] == provider.vault_address
        assert provider.calls[0].amount == Decimal("1.5")

    def test_unshield_onchain(self, client, provider):
        _shield(client, "2")
        r = _unshield(client, "0.5", onchain=True)
        assert r.status_code == 200
        assert r.json()["tx_signature"] == provider.calls[-1].signature
        assert provider.calls[-1].direction == "from_vault"

    def test_failed_transfer_leaves_vault_unchanged(self, client, provider):
        _shield(client, "2")
        before = client.get("/merkle/status/alice").json()
        provider.fail_with = CLIAdapterError("rpc down")

        assert _shield(client, "1", onchain=True).status_code == 502
        assert _unshield(client, "1", onchain=True).status_code == 502
        assert client.get("/merkle/status/alice").json() == before
        assert len(client.get("/vault/alice/history").json()["items"]) == 1

    def test_no_wallet_configured(self, make_client):
        client = make_client(with_provider=False)
        r = _shield(client, "1", onchain=True)
        assert r.status_code == 400
        assert client.get("/vault/alice/notes").json()["notes"] == []


class TestReads:
    def test_vault_state_with_price(self, client):
        _shield(client, "2")
        body = client.get("/vault/alice", params={"with_price": True}).json()
        assert Decimal(body["balance"]) == Decimal("2")
        assert body["usd_value"] == "200.00"
        assert "~$200.00" in body["summary"]

    def test_vault_state_without_price(self, client):
        body = client.get("/vault/alice").json()
        assert body["sol_price_usd"] is None
        assert body["tree_depth"] == 8
        assert body["tree_capacity"] == 256

    def test_history(self, client):
        _shield(client, "2")
        _unshield(client, "1")
        items = client.get("/vault/alice/history").json()["items"]
        assert [i["type"] for i in items] == ["shield", "unshield"]
        assert items[1]["proof_valid"] is True
        last = client.get("/vault/alice/history", params={"limit": 1}).json()["items"]
        assert last == items[-1:]
        assert client.get("/vault/alice/history", params={"limit": 0}).status_code == 422

    def test_notes_hide_secrets(self, client):
        _shield(client, "1")
        notes = client.get("/vault/alice/notes").json()["notes"]
        assert len(notes) == 1
        assert set(notes[0]) == {"commitment", "leaf_index", "amount_sol", "spent", "created_at"}

    def test_notes_and_total_from_one_snapshot(self, client, monkeypatch):
        _shield(client, "2")
        _unshield(client, "0.5")
        vault = client.app.state.registry.get("alice")

        def stale_read(*a, **kw):
            raise AssertionError("notes must be read from a single state snapshot")

        monkeypatch.setattr(vault, "public_notes", stale_read)
        monkeypatch.setattr(vault, "balance", stale_read)
        body = client.get("/vault/alice/notes").json()
        unspent = sum(Decimal(n["amount_sol"]) for n in body["notes"] if not n["spent"])
        assert Decimal(body["unspent_total_sol"]) == unspent == Decimal("1.5")
        assert body["unspent_total_sol"] == "1.500000000"

    def test_merkle_status(self, client):
        _shield(client, "1")
        body = client.get("/merkle/status/alice").json()
        assert body["leaves"] == 1
        assert body["remaining_capacity"] == 255
        assert body["root_hex"] == client.get("/vault/alice").json()["merkle_root"]

    def test_selftest(self, client):
        body = client.get("/selftest").json()
        assert body["passed"] is True
        assert len(body["checks"]) == 9

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["status"] == "healthy"
        assert body["checks"]["rpc"]["status"] == "not_configured"
