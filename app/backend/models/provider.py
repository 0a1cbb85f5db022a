"""Models describing spatialization provider payloads."""
from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

SUCCESS_STATUS = "success"
ERROR_STATUS = "error"


class Token(BaseModel):
    """Bearer token issued by the provider's credential endpoint."""

    model_config = ConfigDict(frozen=True)

    value: str
    issued_at: datetime
    expires_at: datetime

    def is_valid(self, reference: datetime) -> bool:
        """Return True while ``reference`` is strictly before expiry."""

        return reference < self.expires_at


class RemoteFileHandle(BaseModel):
    """Handle returned by the provider's object storage after an upload."""

    model_config = ConfigDict(frozen=True)

    id: str
    access_url: str


class RemoteFileMetadata(BaseModel):
    """Subset of the storage manager metadata used for downloads."""

    id: str
    filename: str


class JobState(str, Enum):
    """Lifecycle of one remote spatialization job."""

    SUBMITTED = "submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.SUBMITTED: frozenset({JobState.POLLING, JobState.FAILED}),
    JobState.POLLING: frozenset({JobState.SUCCEEDED, JobState.FAILED}),
    JobState.SUCCEEDED: frozenset(),
    JobState.FAILED: frozenset(),
}


class Job(BaseModel):
    """A submitted spatialization job and the states it has passed through."""

    id: str
    intensity: int
    history: list[JobState] = Field(default_factory=lambda: [JobState.SUBMITTED])

    @property
    def state(self) -> JobState:
        return self.history[-1]

    @property
    def finished(self) -> bool:
        return not _TRANSITIONS[self.state]

    def advance(self, state: JobState) -> None:
        """Move to ``state``; terminal jobs are never resumed."""

        if state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Job {self.id} cannot move from {self.state.value} to {state.value}")
        self.history.append(state)


class RemoteFileRef(BaseModel):
    """Reference to a result file held in provider storage."""

    id: str


class SpatializationReport(BaseModel):
    """Report produced by a successful spatialization job."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    binaural_file: RemoteFileRef | None = Field(default=None, alias="binauralFile")
    immersive_file: RemoteFileRef | None = Field(default=None, alias="immersiveFile")


__all__ = [
    "ERROR_STATUS",
    "SUCCESS_STATUS",
    "Job",
    "JobState",
    "RemoteFileHandle",
    "RemoteFileMetadata",
    "RemoteFileRef",
    "SpatializationReport",
    "Token",
]
