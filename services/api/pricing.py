# services/api/pricing.py
"""SOL/USD price for display. Never used in any vault accounting."""
from __future__ import annotations

import os
import threading
import time
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple

import requests

from services.api.logging_config import get_logger

LOG = get_logger("pricing")

SOL_PRICE_URL = os.getenv(
    "SOL_PRICE_URL", "https://api.coingecko.com/api/v3/simple/price?ids=solana&vs_currencies=usd"
)
CACHE_TTL_S = 60.0

_cache: Optional[Tuple[float, Decimal]] = None
_cache_lock = threading.Lock()


def _parse_price(j) -> Decimal:
    # coingecko shape {"solana": {"usd": 142.1}} or a flat {"price": "142.1"}
    raw = None
    if isinstance(j, dict):
        if isinstance(j.get("solana"), dict):
            raw = j["solana"].get("usd")
        else:
            raw = j.get("price")
    if raw is None:
        raise ValueError("no SOL price in response")
    price = Decimal(str(raw))
    if not price.is_finite() or price <= 0:
        raise ValueError(f"bad SOL price {raw!r}")
    return price


def clear_cache() -> None:
    global _cache
    with _cache_lock:
        _cache = None


def fetch_sol_price(
    url: Optional[str] = None,
    fallback: Optional[Decimal] = None,
    timeout: float = 5,
    now=time.monotonic,
) -> Optional[Decimal]:
    """
    Current SOL price in USD, cached for CACHE_TTL_S.

    On a failed fetch returns `fallback` (None when no fallback is set) and
    does not cache it.
    """
    global _cache
    with _cache_lock:
        if _cache is not None and now() - _cache[0] < CACHE_TTL_S:
            return _cache[1]

    try:
        r = requests.get(url or SOL_PRICE_URL, timeout=timeout)
        r.raise_for_status()
        price = _parse_price(r.json())
    except (requests.RequestException, ValueError, InvalidOperation) as e:
        LOG.warning(f"SOL price fetch failed, using fallback {fallback}: {e}")
        return fallback if fallback else None

    with _cache_lock:
        _cache = (now(), price)
    return price
