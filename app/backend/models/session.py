"""Models for upload sessions and their derived artifacts."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from app.backend.models.provider import RemoteFileHandle


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class PipelineState(str, Enum):
    """Progress of a session through the spatialization pipeline."""

    UPLOADED = "uploaded"
    REMOTE_STORED = "remote_stored"
    JOB_RUNNING = "job_running"
    COMPLETE = "complete"
    FAILED = "failed"


class ArtifactKind(str, Enum):
    """Derived outputs produced by a spatialization job."""

    BINAURAL = "binaural"
    IMMERSIVE = "immersive"

    @property
    def extension(self) -> str:
        return ".mp3" if self is ArtifactKind.BINAURAL else ".wav"


class UploadedFile(BaseModel):
    """Local copy of the file supplied by the user."""

    model_config = ConfigDict(frozen=True)

    path: str
    original_filename: str
    content_type: str
    size_bytes: int
    duration_seconds: float | None = None


class DerivedArtifacts(BaseModel):
    """Relative paths and sizes of downloaded job results."""

    model_config = ConfigDict(frozen=True)

    binaural_path: str | None = None
    binaural_size: int | None = None
    immersive_path: str | None = None
    immersive_size: int | None = None

    def path_for(self, kind: ArtifactKind) -> str | None:
        return self.binaural_path if kind is ArtifactKind.BINAURAL else self.immersive_path

    @property
    def complete(self) -> bool:
        return self.binaural_path is not None and self.immersive_path is not None


class Session(BaseModel):
    """Immutable snapshot of one upload's lifecycle.

    The registry replaces the whole snapshot on every change, so a reader
    holding a ``Session`` never observes a partially applied update.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str
    uploaded_file: UploadedFile
    state: PipelineState = PipelineState.UPLOADED
    remote_handle: RemoteFileHandle | None = None
    job_id: str | None = None
    intensity: int | None = None
    artifacts: DerivedArtifacts = Field(default_factory=DerivedArtifacts)
    archive_path: str | None = None
    archive_size: int | None = None
    archive_error: str | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    last_touched_at: datetime = Field(default_factory=utcnow)

    def age(self, reference: datetime) -> float:
        """Seconds elapsed since the session was last touched."""

        return (reference - self.last_touched_at).total_seconds()


__all__ = [
    "ArtifactKind",
    "DerivedArtifacts",
    "PipelineState",
    "Session",
    "UploadedFile",
    "utcnow",
]
