"""Health check endpoints."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.deps import get_db, get_redis
from app.schemas.common import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _probe(name: str, check: Callable[[], Awaitable[Any]]) -> bool:
    try:
        await check()
    except Exception as e:
        logger.warning("Health probe %s failed: %s", name, e)
        return False
    return True


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    redis_client: aioredis.Redis = Depends(get_redis),
) -> dict[str, Any]:
    """
    Report database and broker connectivity.

    The scheduler cannot enqueue or cancel sends without Redis, so a broker
    outage marks the whole service unhealthy.
    """
    checks = {
        "database": await _probe("database", lambda: db.execute(text("SELECT 1"))),
        "redis": await _probe("redis", redis_client.ping),
    }
    return {
        "status": "healthy" if all(checks.values()) else "unhealthy",
        "version": settings.version,
        "environment": settings.environment,
        "checks": {name: "healthy" if ok else "unhealthy" for name, ok in checks.items()},
    }


@router.get("/health/live")
async def liveness_check() -> dict[str, str]:
    """Liveness probe: the process is up."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)) -> dict[str, str]:
    """Readiness probe: the database answers queries."""
    await db.execute(text("SELECT 1"))
    return {"status": "ready"}
