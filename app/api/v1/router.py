"""API v1 router combining all route modules."""

from fastapi import APIRouter

from app.api.v1 import email, health
from app.schemas.common import ErrorResponse

api_router = APIRouter()

# Include health check routes (no prefix)
api_router.include_router(health.router)

# Lifecycle email (mixed auth: admin management, user preferences,
# public token links, signature-verified provider webhook)
api_router.include_router(
    email.router,
    prefix="/email",
    tags=["email"],
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)
