#!/usr/bin/env python3
"""
Health check endpoints and system monitoring
"""
import time
from datetime import datetime, timezone
from typing import Dict, Any, Optional

import httpx

from services.api.logging_config import get_logger

logger = get_logger("health")

# Track API startup time
API_START_TIME = time.time()


def check_store_health(store) -> Dict[str, Any]:
    """
    Check vault store connectivity

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    start = time.time()
    try:
        ok = store.ping()
    except Exception as e:
        logger.error(f"Vault store health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}

    return {
        "status": "healthy" if ok else "unhealthy",
        "response_time_ms": round((time.time() - start) * 1000, 2),
        "vaults": len(store.list_vaults()) if ok else None,
    }


async def check_rpc_health(rpc_url: str) -> Dict[str, Any]:
    """
    Check Solana RPC connectivity

    Args:
        rpc_url: Solana RPC endpoint URL

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    start = time.time()
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(
                rpc_url,
                json={"jsonrpc": "2.0", "id": 1, "method": "getHealth"}
            )
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"RPC health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e),
            "rpc_url": rpc_url
        }

    return {
        "status": "healthy",
        "response_time_ms": round((time.time() - start) * 1000, 2),
        "rpc_url": rpc_url
    }


def get_uptime() -> Dict[str, Any]:
    """
    Get API uptime

    Returns:
        dict with uptime_seconds and uptime_formatted
    """
    uptime_seconds = time.time() - API_START_TIME
    uptime_minutes = uptime_seconds / 60
    uptime_hours = uptime_minutes / 60
    uptime_days = uptime_hours / 24

    if uptime_days >= 1:
        uptime_str = f"{int(uptime_days)}d {int(uptime_hours % 24)}h"
    elif uptime_hours >= 1:
        uptime_str = f"{int(uptime_hours)}h {int(uptime_minutes % 60)}m"
    else:
        uptime_str = f"{int(uptime_minutes)}m {int(uptime_seconds % 60)}s"

    return {
        "uptime_seconds": round(uptime_seconds, 2),
        "uptime_formatted": uptime_str
    }


async def comprehensive_health_check(
    store=None,
    rpc_url: Optional[str] = None,
    selftest_report=None,
) -> Dict[str, Any]:
    """
    Perform comprehensive health check of all services

    Args:
        store: VaultStore, or None when running without persistence
        rpc_url: Solana RPC URL to check (skipped when None)
        selftest_report: SelfTestReport from startup

    Returns:
        dict with overall status and component statuses
    """
    checks = {}

    checks["store"] = check_store_health(store) if store is not None else {"status": "disabled"}

    if rpc_url:
        checks["rpc"] = await check_rpc_health(rpc_url)
    else:
        checks["rpc"] = {"status": "not_configured"}

    if selftest_report is None:
        checks["selftest"] = {"status": "not_run"}
    else:
        checks["selftest"] = {
            "status": "healthy" if selftest_report.passed else "unhealthy",
            "checks": len(selftest_report.checks),
        }

    checks["uptime"] = get_uptime()

    # RPC is informational; the vault itself works without it
    critical = [checks["store"].get("status"), checks["selftest"].get("status")]
    overall_status = "healthy" if all(s in ("healthy", "disabled") for s in critical) else "unhealthy"

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks
    }
