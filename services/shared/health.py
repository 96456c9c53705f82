"""Health check utilities for FastAPI services.

Provides endpoints /health and /ready for Docker/Kubernetes monitoring.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

import redis.asyncio as aioredis
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine

# A check returns True (healthy), False (configured but failing) or None (not configured).
HealthCheck = Callable[[], Optional[bool]]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def check_database_health(engine: Optional[Engine]) -> bool:
    """Return True when a trivial query succeeds against ``engine``."""
    if engine is None:
        return False

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return True
    except Exception:
        return False


async def check_redis_health(redis_url: Optional[str]) -> Optional[bool]:
    """Ping Redis; None when no Redis URL is configured."""
    if not redis_url:
        return None

    client = aioredis.from_url(redis_url)
    try:
        await asyncio.wait_for(client.ping(), timeout=1.0)
        return True
    except Exception:
        return False
    finally:
        await client.aclose()


def create_health_router(
    service_name: str,
    database_engine: Optional[Engine] = None,
    redis_url: Optional[str] = None,
    extra_checks: Optional[Mapping[str, HealthCheck]] = None,
) -> APIRouter:
    """Build the /health and /ready router.

    ``extra_checks`` follow the Redis convention: ``None`` means the dependency
    is not configured and does not make the service unready.
    """
    router = APIRouter(tags=["Health"])
    checks_to_run = dict(extra_checks or {})

    @router.get("/health", status_code=status.HTTP_200_OK)
    def health():
        """Liveness: always 200 while the process is serving requests."""
        return {
            "status": "ok",
            "service": service_name,
            "timestamp": _now_iso(),
        }

    @router.get("/ready", status_code=status.HTTP_200_OK)
    async def ready():
        """Readiness: 200 when every configured dependency answers, 503 otherwise."""
        checks = {"database": check_database_health(database_engine)}
        checks["redis"] = await check_redis_health(redis_url)
        for name, check in checks_to_run.items():
            checks[name] = check()

        all_healthy = checks["database"] and all(value is not False for value in checks.values())

        response_data = {
            "status": "ready" if all_healthy else "not_ready",
            "service": service_name,
            "timestamp": _now_iso(),
            "checks": checks,
        }
        return JSONResponse(
            content=response_data,
            status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return router
