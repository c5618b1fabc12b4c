"""Shared Pydantic response/request models for the cardsync HTTP API.

Every successful response follows ``{"data": T, "meta": {...}}``; errors use
``{"error": {"code": "...", "message": "..."}}``.
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


class ApiResponse(BaseModel, Generic[T]):
    """Generic API response wrapper."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail
