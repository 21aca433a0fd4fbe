"""
Health checks - dependency probes for the readiness endpoint.

Two levels:
- liveness: the process is up (no dependency checks)
- readiness: database and broker reachable, plus a circuit breaker summary
"""
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import text

from app.core.circuit_breaker import CircuitBreakerRegistry, CircuitState
from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# Sanitized: no infrastructure details in the response
_ERROR_DB = "error: db_unavailable"
_ERROR_BROKER = "error: broker_unavailable"
_ERROR_CIRCUITS = "error: circuit_state_unavailable"


async def _check_db() -> str:
    """Lightweight query against the database."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_broker() -> str:
    """PING the Celery broker (Redis)."""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Broker health check failed", extra_data={"error": str(e)})
        return _ERROR_BROKER


async def summarize_circuits(breakers: CircuitBreakerRegistry) -> dict[str, Any]:
    """Provider keys grouped by breaker state"""
    summary: dict[str, list[str]] = {state.value: [] for state in CircuitState}
    for snapshot in await breakers.snapshots():
        summary[snapshot.state].append(snapshot.service)
    return summary


async def check_readiness(breakers: CircuitBreakerRegistry) -> dict[str, Any]:
    """
    Readiness probe.

    Returns a dict with the overall status and a value per dependency:
    - status: "healthy" when db and broker are reachable, otherwise "degraded"
    - db / broker: "ok" or "error: ..."
    - circuits: provider keys per breaker state, or "error: ..." when the
      shared breaker state cannot be read (informational either way, an open
      circuit does not make the service unready)
    """
    checks = {
        "db": await _check_db(),
        "broker": await _check_broker(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    try:
        circuits: Any = await summarize_circuits(breakers)
    except RedisError as e:
        logger.warning("Circuit state read failed", extra_data={"error": str(e)})
        circuits = _ERROR_CIRCUITS

    return {"status": overall_status, **checks, "circuits": circuits}
