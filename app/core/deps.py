"""Dependency injection for FastAPI routes."""

from collections.abc import AsyncGenerator
from typing import Annotated, Any

import redis.asyncio as aioredis
from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

# Re-export auth dependencies for convenience
from app.core.auth import CurrentUser, get_current_user
from app.core.config import settings
from app.core.database import get_async_session
from app.core.exceptions import ForbiddenError
from app.core.feature_flags import FeatureFlags, get_feature_flags
from app.models.profile import Profile
from app.services.flow_registry import FlowRegistry, get_flow_registry
from app.services.template_service import TemplateRenderer, get_template_renderer
from app.workers.scheduler import SequenceScheduler, get_scheduler


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Alias for get_async_session, overridable in tests."""
    async for session in get_async_session():
        yield session


# Shared Redis connection pool
_redis_pool: aioredis.ConnectionPool | None = None


def _get_redis_pool() -> aioredis.ConnectionPool:
    global _redis_pool  # noqa: PLW0603
    if _redis_pool is None:
        _redis_pool = aioredis.ConnectionPool.from_url(
            str(settings.redis_url), decode_responses=True
        )
    return _redis_pool


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    """Yield a Redis client from the shared connection pool."""
    pool = _get_redis_pool()
    r = aioredis.Redis(connection_pool=pool)
    try:
        yield r
    finally:
        await r.aclose()


# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Collaborators injected into services
Registry = Annotated[FlowRegistry, Depends(get_flow_registry)]
Renderer = Annotated[TemplateRenderer, Depends(get_template_renderer)]
Scheduler = Annotated[SequenceScheduler, Depends(get_scheduler)]
Flags = Annotated[FeatureFlags, Depends(get_feature_flags)]


async def get_admin_user(user: CurrentUser, db: DBSession) -> dict[str, Any]:
    """Require the caller's profile to carry ``is_admin``."""
    stmt = select(Profile.is_admin).where(Profile.user_id == str(user.get("sub", "")))
    is_admin = (await db.execute(stmt)).scalar_one_or_none()
    if not is_admin:
        raise ForbiddenError("Admin access required")
    return user


AdminUser = Annotated[dict[str, Any], Depends(get_admin_user)]


__all__ = [
    "AdminUser",
    "CurrentUser",
    "DBSession",
    "Flags",
    "Registry",
    "Renderer",
    "Scheduler",
    "get_admin_user",
    "get_current_user",
    "get_db",
    "get_redis",
]
