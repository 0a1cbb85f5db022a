"""Client for the provider's object storage API."""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import AsyncIterator

import httpx

from app.backend.config import get_settings
from app.backend.models.provider import RemoteFileHandle, RemoteFileMetadata
from app.backend.services.credentials import CredentialCache
from app.backend.services.provider_errors import (
    MalformedResponseError,
    RemoteServiceError,
    response_json,
)
from app.common.logging import json_log

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


async def _iter_file(path: Path, chunk_size: int = _CHUNK_SIZE) -> AsyncIterator[bytes]:
    stream = await asyncio.to_thread(path.open, "rb")
    try:
        while chunk := await asyncio.to_thread(stream.read, chunk_size):
            yield chunk
    finally:
        stream.close()


class RemoteStorageClient:
    """Upload and download files through the provider's storage manager.

    Nothing here retries; callers decide whether a failure is worth repeating.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: CredentialCache,
        *,
        base_url: str | None = None,
    ) -> None:
        settings = get_settings()
        self._client = client
        self._credentials = credentials
        self._base_url = (base_url or settings.ircam_storage_url).rstrip("/")

    @property
    def manager_url(self) -> str:
        return f"{self._base_url}/manager/"

    def file_url(self, file_id: str, filename: str) -> str:
        return f"{self._base_url}/{file_id}/{filename}"

    async def _send(self, method: str, url: str, context: str, **kwargs) -> httpx.Response:
        headers = await self._credentials.headers()
        headers.update(kwargs.pop("headers", {}))
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteServiceError(f"{context}: {exc}", method=method, url=url) from exc
        if not response.is_success:
            json_log(
                logger,
                logging.ERROR,
                "storage.request.failed",
                context=context,
                method=method,
                url=url,
                status_code=response.status_code,
            )
            raise RemoteServiceError.from_response(context, response)
        return response

    async def create_slot(self) -> str:
        """Reserve a storage location and return its identifier."""

        response = await self._send("POST", self.manager_url, "Failed to create storage slot", json={})
        file_id = response_json(response, "create storage slot").get("id")
        if not file_id:
            raise MalformedResponseError("Storage manager response did not include an id")
        json_log(logger, logging.INFO, "storage.slot.created", file_id=file_id)
        return str(file_id)

    async def put_bytes(self, file_id: str, local_path: Path) -> None:
        """Stream ``local_path`` to ``{file_id}/{basename}``."""

        local_path = Path(local_path)
        size = local_path.stat().st_size
        await self._send(
            "PUT",
            self.file_url(file_id, local_path.name),
            "Failed to upload file contents",
            content=_iter_file(local_path),
            headers={"Content-Type": "application/octet-stream", "Content-Length": str(size)},
        )
        json_log(logger, logging.INFO, "storage.put.complete", file_id=file_id, size_bytes=size)

    async def _manager_entry(self, file_id: str) -> dict:
        response = await self._send("GET", f"{self.manager_url}{file_id}", "Failed to read file metadata")
        return response_json(response, "storage manager metadata")

    async def get_access_url(self, file_id: str) -> str:
        """Return the provider-issued access URL used as job input."""

        access_url = (await self._manager_entry(file_id)).get("ias")
        if not access_url:
            raise MalformedResponseError(f"Storage metadata for {file_id} has no access URL")
        return str(access_url)

    async def fetch_metadata(self, file_id: str) -> RemoteFileMetadata:
        filename = (await self._manager_entry(file_id)).get("filename")
        if not filename:
            raise MalformedResponseError(f"Storage metadata for {file_id} has no filename")
        return RemoteFileMetadata(id=file_id, filename=str(filename))

    async def fetch_bytes(self, file_id: str, filename: str) -> bytes:
        response = await self._send("GET", self.file_url(file_id, filename), "Failed to download file")
        return response.content

    async def fetch_to_path(self, file_id: str, filename: str, destination: Path) -> int:
        """Stream a stored file into ``destination`` and return its size."""

        url = self.file_url(file_id, filename)
        headers = await self._credentials.headers()
        written = 0
        try:
            async with self._client.stream("GET", url, headers=headers) as response:
                if not response.is_success:
                    await response.aread()
                    raise RemoteServiceError.from_response("Failed to download file", response)
                sink = await asyncio.to_thread(destination.open, "wb")
                try:
                    async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                        await asyncio.to_thread(sink.write, chunk)
                        written += len(chunk)
                finally:
                    sink.close()
        except httpx.HTTPError as exc:
            destination.unlink(missing_ok=True)
            raise RemoteServiceError(f"Failed to download file: {exc}", method="GET", url=url) from exc
        except (RemoteServiceError, OSError):
            destination.unlink(missing_ok=True)
            raise
        json_log(logger, logging.INFO, "storage.download.complete", file_id=file_id, size_bytes=written)
        return written

    async def upload(self, local_path: Path) -> RemoteFileHandle:
        """Create a slot, push ``local_path`` and resolve its access URL."""

        start = time.perf_counter()
        file_id = await self.create_slot()
        await self.put_bytes(file_id, local_path)
        access_url = await self.get_access_url(file_id)
        json_log(
            logger,
            logging.INFO,
            "storage.upload.complete",
            file_id=file_id,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return RemoteFileHandle(id=file_id, access_url=access_url)


__all__ = ["RemoteStorageClient"]
