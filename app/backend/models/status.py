"""Models describing service health and diagnostics."""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class HealthLimits(BaseModel):
    """Operational limits that are useful when debugging."""

    max_upload_mb: int = Field(..., ge=1)
    max_audio_minutes: int = Field(..., ge=1)
    session_ttl_minutes: float = Field(..., gt=0)
    sweep_interval_minutes: float = Field(..., gt=0)
    poll_interval_s: float = Field(..., ge=0)
    poll_max_attempts: int = Field(..., ge=1)


class HealthResponse(BaseModel):
    """Structured response for the ``/health`` endpoint."""

    status: Literal["ok"]
    provider: str
    environment: str
    debug_mode: bool
    active_sessions: int = Field(0, ge=0)
    limits: HealthLimits | None = None


__all__ = ["HealthLimits", "HealthResponse"]
