"""FastAPI route definitions for the spatial audio service."""
from __future__ import annotations

from functools import lru_cache

import httpx
from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.responses import FileResponse

from app.backend import exceptions
from app.backend.config import Settings, get_settings
from app.backend.models.session import ArtifactKind
from app.backend.models.spatialization import (
    CurrentFileResponse,
    SpatializationResult,
    SpatializeRequest,
    TokenStatusResponse,
    UploadResponse,
)
from app.backend.models.status import HealthLimits, HealthResponse
from app.backend.services.audio_validation import is_supported_upload, validate_duration
from app.backend.services.blob_store import BlobStore
from app.backend.services.credentials import CredentialCache
from app.backend.services.job_poller import JobPoller
from app.backend.services.pipeline import SpatializationPipeline
from app.backend.services.remote_storage import RemoteStorageClient
from app.backend.services.session_registry import SessionRegistry
from app.backend.services.sweeper import SessionSweeper
from app.common.logging import bound_session

router = APIRouter()


@lru_cache()
def get_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=get_settings().http_timeout_s)


@lru_cache()
def get_session_registry() -> SessionRegistry:
    return SessionRegistry()


@lru_cache()
def get_blob_store() -> BlobStore:
    return BlobStore()


@lru_cache()
def get_credentials() -> CredentialCache:
    return CredentialCache(get_http_client())


@lru_cache()
def get_pipeline() -> SpatializationPipeline:
    client = get_http_client()
    credentials = get_credentials()
    return SpatializationPipeline(
        credentials=credentials,
        remote_storage=RemoteStorageClient(client, credentials),
        poller=JobPoller(client, credentials),
        registry=get_session_registry(),
        blob_store=get_blob_store(),
    )


@lru_cache()
def get_sweeper() -> SessionSweeper:
    return SessionSweeper(get_session_registry(), get_blob_store())


def get_app_settings() -> Settings:
    return get_settings()


def reset_dependencies() -> None:
    """Drop every cached service so the next request rebuilds them."""

    for factory in (
        get_sweeper,
        get_pipeline,
        get_credentials,
        get_blob_store,
        get_session_registry,
        get_http_client,
    ):
        factory.cache_clear()


async def close_http_client() -> None:
    """Close the shared client and drop every service that holds it."""

    if get_http_client.cache_info().currsize:
        await get_http_client().aclose()
    reset_dependencies()


@router.get("/health", response_model=HealthResponse)
async def health(
    raw: bool = Query(False, description="Return configured limits when debug mode is enabled."),
    settings: Settings = Depends(get_app_settings),
    registry: SessionRegistry = Depends(get_session_registry),
) -> HealthResponse:
    if raw and not settings.debug_mode:
        raise exceptions.http_error("Extended health data is only available in debug mode.", status_code=401)

    limits: HealthLimits | None = None
    if raw:
        limits = HealthLimits(
            max_upload_mb=settings.max_upload_mb,
            max_audio_minutes=settings.max_audio_minutes,
            session_ttl_minutes=settings.session_ttl_minutes,
            sweep_interval_minutes=settings.sweep_interval_minutes,
            poll_interval_s=settings.poll_interval_s,
            poll_max_attempts=settings.poll_max_attempts,
        )

    return HealthResponse(
        status="ok",
        provider="IRCAM Amplify",
        environment=settings.environment,
        debug_mode=settings.debug_mode,
        active_sessions=len(registry),
        limits=limits,
    )


@router.get("/api/check-token", response_model=TokenStatusResponse)
async def check_token(pipeline: SpatializationPipeline = Depends(get_pipeline)) -> TokenStatusResponse:
    await pipeline.check_token()
    return TokenStatusResponse()


@router.post("/api/upload", response_model=UploadResponse)
async def upload(
    audio: UploadFile | None = File(None),
    pipeline: SpatializationPipeline = Depends(get_pipeline),
    blob_store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_app_settings),
) -> UploadResponse:
    if audio is None:
        raise exceptions.no_file_uploaded()
    if not is_supported_upload(audio.filename, audio.content_type):
        raise exceptions.invalid_file_type()

    session_id = blob_store.create_session()
    with bound_session(session_id):
        try:
            stored = await blob_store.save_upload(
                session_id, audio, max_bytes=settings.max_upload_mb * 1024 * 1024
            )
            duration = await validate_duration(stored.path)
        except Exception:
            blob_store.delete(session_id)
            raise
        session = await pipeline.handle_upload(stored, duration_seconds=duration)

    return UploadResponse(
        session_id=session.session_id,
        path=f"/temp/{session.uploaded_file.path}",
        filename=stored.filename,
        size_bytes=stored.size_bytes,
        duration_seconds=duration,
        remote=session.remote_handle,
    )


@router.get("/api/current-file", response_model=CurrentFileResponse)
async def current_file(pipeline: SpatializationPipeline = Depends(get_pipeline)) -> CurrentFileResponse:
    return pipeline.current_file()


@router.post("/api/spatialize", response_model=SpatializationResult)
async def spatialize(
    request: SpatializeRequest,
    pipeline: SpatializationPipeline = Depends(get_pipeline),
) -> SpatializationResult:
    return await pipeline.handle_spatialize(request.access_url, request.intensity)


@router.get("/api/download-zip/{session_id}")
async def download_zip(session_id: str, pipeline: SpatializationPipeline = Depends(get_pipeline)) -> FileResponse:
    path = pipeline.archive_file(session_id)
    return FileResponse(path, filename=path.name, media_type="application/zip")


@router.get("/api/download-file/{session_id}/{kind}")
async def download_file(
    session_id: str,
    kind: str,
    pipeline: SpatializationPipeline = Depends(get_pipeline),
) -> FileResponse:
    try:
        artifact_kind = ArtifactKind(kind)
    except ValueError as exc:
        raise exceptions.invalid_artifact_kind() from exc
    path = pipeline.artifact_path(session_id, artifact_kind)
    return FileResponse(path, filename=path.name)


@router.get("/temp/{session_id}/{filename}")
async def session_file(
    session_id: str,
    filename: str,
    pipeline: SpatializationPipeline = Depends(get_pipeline),
) -> FileResponse:
    path = pipeline.session_file(session_id, filename)
    return FileResponse(path, headers={"Cache-Control": "no-cache", "Accept-Ranges": "bytes"})


__all__ = ["close_http_client", "reset_dependencies", "router"]
