"""Request and response payloads for the spatialization endpoints."""
from __future__ import annotations

from pydantic import AliasChoices, BaseModel, Field

from app.backend.models.provider import RemoteFileHandle
from app.backend.models.session import PipelineState


class SpatializeRequest(BaseModel):
    """Request payload for ``/api/spatialize``."""

    access_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("accessUrl", "iasUrl", "access_url"),
        description="Provider access URL; defaults to the session's uploaded file",
    )
    intensity: int = Field(3, ge=1, le=5, description="Spatialization preset level")


class UploadResponse(BaseModel):
    """Response returned after a file has been stored remotely."""

    message: str = "File uploaded successfully"
    session_id: str
    path: str
    filename: str
    size_bytes: int
    duration_seconds: float | None = None
    remote: RemoteFileHandle


class DownloadInfo(BaseModel):
    """Relative paths and sizes of downloadable artifacts."""

    binaural: str | None = None
    binaural_size: int | None = None
    immersive: str | None = None
    immersive_size: int | None = None
    archive: str | None = None
    archive_size: int | None = None
    archive_error: str | None = None


class SpatializationResult(BaseModel):
    """Outcome of one spatialization run."""

    session_id: str
    job_id: str
    intensity: int
    state: PipelineState
    downloads: DownloadInfo


class CurrentFileResponse(BaseModel):
    """Latest session as seen by a client that does not track session ids."""

    audio_url: str | None = None
    session_id: str | None = None
    state: PipelineState | None = None
    remote: RemoteFileHandle | None = None
    downloads: DownloadInfo | None = None


class TokenStatusResponse(BaseModel):
    status: str = "ok"


__all__ = [
    "CurrentFileResponse",
    "DownloadInfo",
    "SpatializationResult",
    "SpatializeRequest",
    "TokenStatusResponse",
    "UploadResponse",
]
