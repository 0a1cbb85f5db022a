"""Pipeline orchestration for upload, spatialization and downloads."""
from __future__ import annotations

import asyncio
import logging
import re
import time
from pathlib import Path, PurePosixPath

from app.backend import exceptions
from app.backend.models.provider import RemoteFileRef
from app.backend.models.session import (
    ArtifactKind,
    DerivedArtifacts,
    PipelineState,
    Session,
    UploadedFile,
)
from app.backend.models.spatialization import CurrentFileResponse, DownloadInfo, SpatializationResult
from app.backend.services.archive import ArchiveBuilder, ArchiveError, archive_name
from app.backend.services.blob_store import ORIGINAL_PREFIX, BlobStore, StoredUpload
from app.backend.services.credentials import CredentialCache
from app.backend.services.job_poller import JobPoller
from app.backend.services.provider_errors import (
    AuthError,
    JobFailedError,
    JobSubmissionError,
    JobTimeoutError,
    MalformedResponseError,
    ProviderError,
)
from app.backend.services.remote_storage import RemoteStorageClient
from app.backend.services.session_registry import SessionNotFoundError, SessionRegistry
from app.common.logging import bound_session, json_log

logger = logging.getLogger(__name__)

_RESULT_SUFFIX = re.compile(r"_(2|18)_(binaural|immersive)\.[^.]+$")
_EXTENSION = re.compile(r"\.[^.]+$")


def artifact_filename(kind: ArtifactKind, remote_filename: str) -> str:
    """Return the local name for a result file downloaded from the provider."""

    base = PurePosixPath(remote_filename).name
    base = _RESULT_SUFFIX.sub("", base)
    if base.startswith(ORIGINAL_PREFIX):
        base = base[len(ORIGINAL_PREFIX):]
    base = _EXTENSION.sub("", base) or "audio"
    return f"{kind.value}_{base}{kind.extension}"


def provider_error_to_api(exc: ProviderError, stage: str) -> exceptions.ApiError:
    """Translate a provider failure into a stage-tagged API error."""

    hint = str(exc) or None
    if isinstance(exc, AuthError):
        return exceptions.auth_failed(hint=hint, stage=stage)
    if isinstance(exc, JobSubmissionError):
        return exceptions.job_submission_failed()
    if isinstance(exc, JobFailedError):
        return exceptions.job_failed(hint=hint)
    if isinstance(exc, JobTimeoutError):
        return exceptions.job_timeout()
    if isinstance(exc, MalformedResponseError):
        return exceptions.malformed_response(hint=hint, stage=stage)
    return exceptions.remote_service_error(hint=hint, stage=stage)


class SpatializationPipeline:
    """Coordinate local sessions with the remote spatialization provider.

    The pipeline assumes a single active user per process: spatialization
    always targets the most recently touched session.
    """

    def __init__(
        self,
        *,
        credentials: CredentialCache,
        remote_storage: RemoteStorageClient,
        poller: JobPoller,
        registry: SessionRegistry | None = None,
        blob_store: BlobStore | None = None,
        archive_builder: ArchiveBuilder | None = None,
    ) -> None:
        self._credentials = credentials
        self._storage = remote_storage
        self._poller = poller
        self._registry = registry or SessionRegistry()
        self._blob_store = blob_store or BlobStore()
        self._archive = archive_builder or ArchiveBuilder()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def blob_store(self) -> BlobStore:
        return self._blob_store

    async def check_token(self) -> None:
        try:
            await self._credentials.ensure_valid()
        except AuthError as exc:
            raise exceptions.auth_failed(hint=str(exc), stage="auth") from exc

    async def handle_upload(self, stored: StoredUpload, *, duration_seconds: float | None = None) -> Session:
        """Register a stored upload and push it to provider storage.

        A failed remote upload leaves the session registered with its error
        recorded, so it can still be inspected until the sweep evicts it.
        """

        session_id = stored.session_id
        uploaded = UploadedFile(
            path=self._blob_store.relative(stored.path),
            original_filename=stored.original_filename,
            content_type=stored.content_type,
            size_bytes=stored.size_bytes,
            duration_seconds=duration_seconds,
        )
        self._registry.create(session_id, uploaded)

        start = time.perf_counter()
        try:
            handle = await self._storage.upload(stored.path)
        except ProviderError as exc:
            self._registry.update(session_id, error=str(exc))
            json_log(logger, logging.ERROR, "upload.failed", session_id=session_id, error=str(exc))
            raise provider_error_to_api(exc, stage="upload") from exc

        session = self._registry.update(session_id, remote_handle=handle, state=PipelineState.REMOTE_STORED)
        if session is None:
            raise exceptions.session_not_found(stage="upload")
        json_log(
            logger,
            logging.INFO,
            "upload.complete",
            session_id=session_id,
            remote_file_id=handle.id,
            size_bytes=stored.size_bytes,
            timings={"remote_upload_ms": int((time.perf_counter() - start) * 1000)},
        )
        return session

    async def handle_spatialize(self, access_url: str | None, intensity: int) -> SpatializationResult:
        """Run a spatialization job for the latest session and collect its outputs."""

        session = self._registry.latest()
        if session is None:
            raise exceptions.session_not_found("No active sessions found.", stage="spatialize")
        if not access_url and session.remote_handle is not None:
            access_url = session.remote_handle.access_url
        if not access_url:
            raise exceptions.missing_access_url()

        session_id = session.session_id
        with bound_session(session_id), self._registry.pin(session_id):
            return await self._spatialize(session, access_url, intensity)

    async def _spatialize(self, session: Session, access_url: str, intensity: int) -> SpatializationResult:
        session_id = session.session_id
        overall_start = time.perf_counter()
        self._registry.update(
            session_id,
            state=PipelineState.JOB_RUNNING,
            intensity=intensity,
            job_id=None,
            error=None,
            artifacts=DerivedArtifacts(),
            archive_path=None,
            archive_size=None,
            archive_error=None,
        )

        stage = "submit"
        try:
            job = await self._poller.submit(access_url, intensity)
            job_id = job.id
            self._registry.update(session_id, job_id=job_id)
            stage = "poll"
            poll_start = time.perf_counter()
            report = await self._poller.run_to_completion(job)
            poll_ms = int((time.perf_counter() - poll_start) * 1000)
            stage = "download"
            download_start = time.perf_counter()
            artifacts = await self._download_artifacts(session_id, report.binaural_file, report.immersive_file)
            download_ms = int((time.perf_counter() - download_start) * 1000)
        except ProviderError as exc:
            self._fail(session_id, stage, exc)
            raise provider_error_to_api(exc, stage=stage) from exc
        except OSError as exc:
            self._fail(session_id, stage, exc)
            raise exceptions.storage_error(hint=str(exc) or None, stage=stage) from exc

        updated = self._registry.update(
            session_id,
            artifacts=artifacts,
            state=PipelineState.COMPLETE,
        )
        if updated is None:
            raise exceptions.session_not_found("Session expired during processing.", stage="spatialize")

        archive_ms = 0
        if artifacts.complete:
            archive_start = time.perf_counter()
            updated = await self._build_archive(updated)
            archive_ms = int((time.perf_counter() - archive_start) * 1000)

        json_log(
            logger,
            logging.INFO,
            "spatialize.complete",
            session_id=session_id,
            job_id=job_id,
            intensity=intensity,
            artifacts={
                "binaural": artifacts.binaural_path is not None,
                "immersive": artifacts.immersive_path is not None,
                "archive": updated.archive_path is not None,
            },
            timings={
                "poll_ms": poll_ms,
                "download_ms": download_ms,
                "archive_ms": archive_ms,
                "total_ms": int((time.perf_counter() - overall_start) * 1000),
            },
        )
        return SpatializationResult(
            session_id=session_id,
            job_id=job_id,
            intensity=intensity,
            state=updated.state,
            downloads=self._downloads(updated),
        )

    def _fail(self, session_id: str, stage: str, exc: Exception) -> None:
        self._registry.update(session_id, state=PipelineState.FAILED, error=str(exc))
        json_log(logger, logging.ERROR, "spatialize.failed", session_id=session_id, stage=stage, error=str(exc))

    async def _download_artifacts(
        self,
        session_id: str,
        binaural: RemoteFileRef | None,
        immersive: RemoteFileRef | None,
    ) -> DerivedArtifacts:
        fields: dict[str, object] = {}
        for kind, ref in ((ArtifactKind.BINAURAL, binaural), (ArtifactKind.IMMERSIVE, immersive)):
            if ref is None:
                continue
            relative, size = await self._download_artifact(session_id, kind, ref)
            fields[f"{kind.value}_path"] = relative
            fields[f"{kind.value}_size"] = size
            # Recorded per file so a later failure keeps earlier downloads reachable.
            self._registry.update(session_id, artifacts=DerivedArtifacts(**fields))
        return DerivedArtifacts(**fields)

    async def _download_artifact(self, session_id: str, kind: ArtifactKind, ref: RemoteFileRef) -> tuple[str, int]:
        metadata = await self._storage.fetch_metadata(ref.id)
        destination = self._blob_store.session_dir(session_id) / artifact_filename(kind, metadata.filename)
        size = await self._storage.fetch_to_path(ref.id, metadata.filename, destination)
        return self._blob_store.relative(destination), size

    async def _build_archive(self, session: Session) -> Session:
        session_id = session.session_id
        artifacts = session.artifacts
        names = [PurePosixPath(artifacts.binaural_path).name, PurePosixPath(artifacts.immersive_path).name]
        output_name = archive_name(PurePosixPath(session.uploaded_file.path).name)
        try:
            path = await asyncio.to_thread(
                self._archive.build, self._blob_store.session_dir(session_id), names, output_name
            )
        except ArchiveError as exc:
            json_log(logger, logging.WARNING, "archive.skipped", session_id=session_id, error=str(exc))
            return self._registry.update(session_id, archive_error=str(exc)) or session

        return self._registry.update(
            session_id,
            archive_path=self._blob_store.relative(path),
            archive_size=path.stat().st_size,
        ) or session

    @staticmethod
    def _downloads(session: Session) -> DownloadInfo:
        artifacts = session.artifacts
        return DownloadInfo(
            binaural=artifacts.binaural_path,
            binaural_size=artifacts.binaural_size,
            immersive=artifacts.immersive_path,
            immersive_size=artifacts.immersive_size,
            archive=session.archive_path,
            archive_size=session.archive_size,
            archive_error=session.archive_error,
        )

    def current_file(self) -> CurrentFileResponse:
        session = self._registry.latest()
        if session is None:
            return CurrentFileResponse()
        return CurrentFileResponse(
            audio_url=f"/temp/{session.uploaded_file.path}",
            session_id=session.session_id,
            state=session.state,
            remote=session.remote_handle,
            downloads=self._downloads(session),
        )

    def _require_session(self, session_id: str) -> Session:
        try:
            return self._registry.require(session_id)
        except SessionNotFoundError as exc:
            raise exceptions.session_not_found(stage="download") from exc

    def artifact_path(self, session_id: str, kind: ArtifactKind) -> Path:
        relative = self._require_session(session_id).artifacts.path_for(kind)
        if relative is None:
            raise exceptions.artifact_not_found(f"{kind.value} file not found.")
        return self._blob_store.resolve(relative)

    def archive_file(self, session_id: str) -> Path:
        relative = self._require_session(session_id).archive_path
        if relative is None:
            raise exceptions.artifact_not_found("ZIP file not found.")
        return self._blob_store.resolve(relative)

    def session_file(self, session_id: str, filename: str) -> Path:
        self._require_session(session_id)
        return self._blob_store.path(session_id, filename)


__all__ = ["SpatializationPipeline", "artifact_filename", "provider_error_to_api"]
