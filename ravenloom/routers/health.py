"""
Health check endpoints for container orchestration checks.

Provides:
- /health/live: Liveness check - is the process running?
- /health/ready: Readiness check - can the database be reached?
"""
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Response, status
from sqlalchemy import text

from ravenloom.resilience import get_all_circuit_states

router = APIRouter(prefix="/health", tags=["health"])


def _measure_health_check(check_fn) -> dict[str, Any]:
    """Wrapper to measure latency of a health check function."""
    start = time.perf_counter()
    try:
        result = check_fn()
    except Exception as e:
        latency_ms = (time.perf_counter() - start) * 1000
        return {"status": "unavailable", "error": str(e), "latency_ms": round(latency_ms, 2)}
    latency_ms = (time.perf_counter() - start) * 1000
    result["latency_ms"] = round(latency_ms, 2)
    return result


def _check_database() -> dict[str, Any]:
    from ravenloom.database import engine

    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "healthy"}


def check_database_health() -> dict[str, Any]:
    """Check database connection health with latency measurement."""
    return _measure_health_check(_check_database)


@router.get("/live")
async def liveness():
    """
    Liveness check endpoint.

    Returns 200 if the application process is running and responsive.
    """
    return {"status": "ok"}


@router.get("/ready")
async def readiness(response: Response):
    """
    Readiness check endpoint.

    Returns 503 when the database is unreachable. The LLM circuit state is
    reported but does not fail readiness: Ask and Remember degrade to 503
    on their own while the circuit is open.
    """
    deps = {"database": check_database_health()}
    timestamp = datetime.now(timezone.utc).isoformat()
    circuits = get_all_circuit_states()

    if all(dep["status"] == "healthy" for dep in deps.values()):
        return {"status": "ok", "timestamp": timestamp, "dependencies": deps, "circuits": circuits}

    response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {"status": "degraded", "timestamp": timestamp, "dependencies": deps, "circuits": circuits}
