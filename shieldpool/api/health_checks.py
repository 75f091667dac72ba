#!/usr/bin/env python3
"""
Health check endpoints and system monitoring
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import psutil
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from shieldpool.api.logging_config import get_logger
from shieldpool.database.config import check_connection

logger = get_logger("health")

# Track API startup time
API_START_TIME = time.time()

HEALTHY_STATES = ("healthy", "disabled", "not_configured")


def _elapsed_ms(start: float) -> float:
    return round((time.time() - start) * 1000, 2)


def check_database_health(engine: Optional[Engine]) -> Dict[str, Any]:
    """
    Check note store connectivity

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    if engine is None:
        return {"status": "disabled"}
    start = time.time()
    try:
        check_connection(engine)
    except SQLAlchemyError as e:
        logger.error("Database health check failed: %s", e)
        return {"status": "unhealthy", "error": str(e)}
    return {"status": "healthy", "response_time_ms": _elapsed_ms(start)}


async def check_rpc_health(rpc_url: Optional[str], client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    """
    Check ledger RPC connectivity (getHealth)

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    if not rpc_url:
        return {"status": "not_configured"}
    start = time.time()
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=5.0) as c:
                response = await c.post(rpc_url, json={"jsonrpc": "2.0", "id": 1, "method": "getHealth"})
        else:
            response = await client.post(rpc_url, json={"jsonrpc": "2.0", "id": 1, "method": "getHealth"}, timeout=5.0)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("RPC health check failed: %s", e)
        return {"status": "unhealthy", "error": str(e), "rpc_url": rpc_url}
    return {"status": "healthy", "response_time_ms": _elapsed_ms(start), "rpc_url": rpc_url}


async def check_indexer_health(indexer_url: Optional[str], client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    """Check the index service /health endpoint."""
    if not indexer_url:
        return {"status": "not_configured"}
    url = indexer_url.rstrip("/") + "/health"
    start = time.time()
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=5.0) as c:
                response = await c.get(url)
        else:
            response = await client.get(url, timeout=5.0)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("Indexer health check failed: %s", e)
        return {"status": "unhealthy", "error": str(e), "indexer_url": indexer_url}
    return {"status": "healthy", "response_time_ms": _elapsed_ms(start), "indexer_url": indexer_url}


def get_system_metrics() -> Dict[str, Any]:
    """
    Get system resource metrics

    Returns:
        dict with CPU, memory, and disk usage
    """
    try:
        cpu_percent = psutil.cpu_percent(interval=0.1)
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage("/")
    except (OSError, psutil.Error) as e:
        logger.error("Failed to get system metrics: %s", e)
        return {"error": str(e)}

    return {
        "cpu": {"usage_percent": round(cpu_percent, 2)},
        "memory": {
            "usage_percent": round(memory.percent, 2),
            "used_mb": round(memory.used / (1024 * 1024), 2),
            "total_mb": round(memory.total / (1024 * 1024), 2),
        },
        "disk": {
            "usage_percent": round(disk.percent, 2),
            "used_gb": round(disk.used / (1024 ** 3), 2),
            "total_gb": round(disk.total / (1024 ** 3), 2),
        },
    }


def get_uptime() -> Dict[str, Any]:
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

    return {"uptime_seconds": round(uptime_seconds, 2), "uptime_formatted": uptime_str}


async def comprehensive_health_check(
    engine: Optional[Engine],
    rpc_url: Optional[str] = None,
    indexer_url: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Health of every collaborator plus host metrics

    Returns:
        dict with overall status and component statuses
    """
    checks = {
        "database": check_database_health(engine),
        "rpc": await check_rpc_health(rpc_url),
        "indexer": await check_indexer_health(indexer_url),
        "system": get_system_metrics(),
        "uptime": get_uptime(),
    }
    component_statuses = [checks[k].get("status") for k in ("database", "rpc", "indexer")]
    overall_status = "healthy" if all(s in HEALTHY_STATES for s in component_statuses) else "unhealthy"

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "checks": checks,
    }


async def readiness_check(
    engine: Optional[Engine],
    rpc_url: Optional[str] = None,
    indexer_url: Optional[str] = None,
) -> bool:
    """Ready when the store, ledger RPC and index service all answer."""
    statuses = [
        check_database_health(engine)["status"],
        (await check_rpc_health(rpc_url))["status"],
        (await check_indexer_health(indexer_url))["status"],
    ]
    return all(s in HEALTHY_STATES for s in statuses)


async def liveness_check() -> bool:
    return True
