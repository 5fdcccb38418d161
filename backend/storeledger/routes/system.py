# backend/storeledger/routes/system.py
"""
System health endpoint.

Checks each owned store (one database bind per component) and the cache
backend. A cache outage only degrades the service: reads fall through to
the stores.
"""

import time

from flask import Blueprint, current_app
from sqlalchemy import text

from ..core import get_core
from ..extensions import db
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")

# Bind key per owned store; None is the default (catalog) bind.
STORES = {
    "catalog": None,
    "stock": "stock",
    "sales": "sales",
    "refunds": "refunds",
}


def check_store_health(name: str, bind_key) -> dict:
    start_time = time.time()
    try:
        with db.engines[bind_key].connect() as conn:
            conn.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Health check failed for %s store", name)
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_cache_health() -> dict:
    cache = get_core().cache
    backend = type(cache.backend).__name__
    if cache.is_available():
        return {"status": "healthy", "backend": backend}
    return {"status": "degraded", "backend": backend, "error": "Cache backend unavailable"}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: All stores reachable (cache may be degraded)
    - 503: One or more stores unreachable
    """
    start_time = time.time()

    checks = {name: check_store_health(name, key) for name, key in STORES.items()}
    checks["cache"] = check_cache_health()

    statuses = [check["status"] for check in checks.values()]
    if "unhealthy" in statuses:
        overall_status = "unhealthy"
        http_status = 503
    elif "degraded" in statuses:
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": checks,
    }

    return response, http_status
