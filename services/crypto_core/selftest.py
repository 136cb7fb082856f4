# crypto_core/selftest.py
"""
Startup self-test: exercises the commitment, nullifier, Merkle and
nullifier-set guarantees on throwaway data and reports pass/fail.

A failing report means the build must not handle funds; `ensure_safe()`
turns that into SelfTestFailure.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from services.api.logging_config import get_logger
from services.crypto_core.commitments import make_commitment, make_nullifier, random_nonce, random_secret
from services.crypto_core.errors import DoubleSpendAttempt, SelfTestFailure
from services.crypto_core.merkle import MerkleTree
from services.crypto_core.nullifiers import NullifierSet

logger = get_logger("selftest")


@dataclass(frozen=True)
class SelfTestCheck:
    name: str
    passed: bool
    detail: str = ""


@dataclass(frozen=True)
class SelfTestReport:
    checks: Tuple[SelfTestCheck, ...]
    duration_ms: float = 0.0

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def failed(self) -> List[SelfTestCheck]:
        return [c for c in self.checks if not c.passed]

    def format(self) -> str:
        lines = [f"{'PASS' if c.passed else 'FAIL'}  {c.name}" + (f"  ({c.detail})" if c.detail else "")
                 for c in self.checks]
        verdict = "ALL CHECKS PASSED" if self.passed else f"{len(self.failed)} CHECK(S) FAILED: build is unsafe"
        lines.append(f"{verdict} [{self.duration_ms:.1f} ms]")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "duration_ms": round(self.duration_ms, 3),
            "checks": [{"name": c.name, "passed": c.passed, "detail": c.detail} for c in self.checks],
        }


def _check_double_spend() -> bool:
    ns = NullifierSet()
    nf = make_nullifier(random_secret(), 0)
    ns.insert(nf)
    if not ns.contains(nf):
        return False
    try:
        ns.insert(nf)
    except DoubleSpendAttempt:
        return True
    return False


def _battery(depth: int) -> List[Tuple[str, Callable[[], bool]]]:
    s1, s2 = random_secret(), random_secret()
    n1, n2 = random_nonce(), random_nonce()
    c1 = make_commitment(1_500_000_000, s1, n1)

    tree = MerkleTree(depth)
    leaves = [make_commitment(a, random_secret(), random_nonce()) for a in (1_000_000_000, 2_000_000_000, 3_000_000_000)]
    for leaf in leaves:
        tree.insert(leaf)
    root = tree.root()
    p0, p1 = tree.prove(0), tree.prove(1)
    forged = make_commitment(1_000_000_000, random_secret(), random_nonce())

    return [
        ("commitment_determinism", lambda: make_commitment(1_500_000_000, s1, n1) == c1),
        ("amount_binding", lambda: make_commitment(1_500_000_001, s1, n1) != c1),
        ("secret_binding", lambda: make_commitment(1_500_000_000, s2, n1) != c1),
        ("nonce_binding", lambda: make_commitment(1_500_000_000, s1, n2) != c1),
        ("nullifier_uniqueness", lambda: make_nullifier(s1, 0) != make_nullifier(s1, 1)),
        ("merkle_proof_leaf_0", lambda: tree.verify(leaves[0], p0, root)),
        ("merkle_proof_leaf_1", lambda: tree.verify(leaves[1], p1, root)),
        ("merkle_forged_leaf_rejected", lambda: not tree.verify(forged, p0, root)),
        ("double_spend_detected", _check_double_spend),
    ]


def run_self_test(depth: int = 16, vault=None) -> SelfTestReport:
    """
    Run the fixed battery. With `vault`, its stored state is also checked
    with verify_integrity() (read-only).
    """
    start = time.perf_counter()
    checks: List[SelfTestCheck] = []

    battery = _battery(depth)
    if vault is not None:
        battery.append(("vault_integrity", lambda: vault.verify_integrity() >= 0))

    for name, fn in battery:
        try:
            ok = bool(fn())
            checks.append(SelfTestCheck(name, ok, "" if ok else "assertion failed"))
        except Exception as e:
            checks.append(SelfTestCheck(name, False, f"{type(e).__name__}: {e}"))

    report = SelfTestReport(checks=tuple(checks), duration_ms=(time.perf_counter() - start) * 1000)
    if report.passed:
        logger.info(f"Self-test passed ({len(checks)} checks, {report.duration_ms:.1f} ms)")
    else:
        logger.critical(f"Self-test FAILED: {', '.join(c.name for c in report.failed)}")
    return report


def ensure_safe(depth: int = 16, vault=None, report: Optional[SelfTestReport] = None) -> SelfTestReport:
    report = report or run_self_test(depth, vault)
    if not report.passed:
        raise SelfTestFailure(report)
    return report
