"""Pydantic schemas for request/response validation."""

from app.schemas.common import ErrorResponse, HealthResponse, PaginatedResponse

__all__ = [
    "HealthResponse",
    "ErrorResponse",
    "PaginatedResponse",
]
