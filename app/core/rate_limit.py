"""Rate limiting for the public token endpoints (slowapi)."""

from slowapi import Limiter
from starlette.requests import Request

from app.core.config import settings


def _get_real_client_ip(request: Request) -> str:
    """Extract the real client IP behind a CDN or reverse proxy."""
    return (
        request.headers.get("CF-Connecting-IP")
        or request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
        or (request.client.host if request.client else "127.0.0.1")
    )


# memory:// is per-process; point at Redis when running several API workers
limiter = Limiter(key_func=_get_real_client_ip, storage_uri=settings.rate_limit_storage_uri)
