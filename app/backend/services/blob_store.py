"""Session-addressed file storage for uploads and derived artifacts."""
from __future__ import annotations

import re
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import List

from fastapi import UploadFile

from app.backend import exceptions
from app.backend.config import get_settings

_UPLOAD_CHUNK_SIZE = 1024 * 1024
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9]")

ORIGINAL_PREFIX = "original_"


def sanitize_filename(filename: str) -> str:
    """Return ``original_<base><ext>`` with a lower-cased, dash-separated base."""

    name = PurePosixPath(filename.replace("\\", "/")).name or "upload"
    suffix = PurePosixPath(name).suffix.lower()
    stem = name[: -len(suffix)] if suffix else name
    base = _UNSAFE_CHARS.sub("-", stem).lower() or "upload"
    return f"{ORIGINAL_PREFIX}{base}{suffix}"


@dataclass(frozen=True)
class StoredUpload:
    """Location of an upload persisted in a session directory."""

    session_id: str
    path: Path
    filename: str
    original_filename: str
    content_type: str
    size_bytes: int


class BlobStore:
    """Keep every session's files under ``<storage_dir>/<session_id>/``."""

    def __init__(self, root: Path | None = None) -> None:
        self._root = Path(root) if root is not None else get_settings().storage_dir
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def session_dir(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id in {".", ".."}:
            raise exceptions.session_not_found()
        return self._root / session_id

    def create_session(self) -> str:
        """Allocate a fresh session directory and return its identifier."""

        session_id = str(uuid.uuid4())
        self.session_dir(session_id).mkdir(parents=True, exist_ok=False)
        return session_id

    async def save_upload(self, session_id: str, file: UploadFile, *, max_bytes: int) -> StoredUpload:
        """Stream an uploaded file into the session directory."""

        original = file.filename or "upload"
        filename = sanitize_filename(original)
        destination = self.session_dir(session_id) / filename
        size = 0
        with destination.open("wb") as sink:
            while chunk := await file.read(_UPLOAD_CHUNK_SIZE):
                size += len(chunk)
                if size > max_bytes:
                    break
                sink.write(chunk)
        if size > max_bytes:
            destination.unlink(missing_ok=True)
            raise exceptions.file_too_large()
        return StoredUpload(
            session_id=session_id,
            path=destination,
            filename=filename,
            original_filename=original,
            content_type=file.content_type or "application/octet-stream",
            size_bytes=size,
        )

    def path(self, session_id: str, name: str) -> Path:
        """Return the path of an existing file in a session directory."""

        candidate = self.session_dir(session_id) / PurePosixPath(name).name
        if not candidate.is_file():
            raise exceptions.artifact_not_found()
        return candidate

    def relative(self, path: Path) -> str:
        """Return ``path`` relative to the storage root using forward slashes."""

        return Path(path).relative_to(self._root).as_posix()

    def resolve(self, relative_path: str) -> Path:
        session_id, _, name = relative_path.partition("/")
        return self.path(session_id, name)

    def delete(self, session_id: str) -> None:
        """Remove a session directory and everything in it."""

        directory = self.session_dir(session_id)
        if directory.exists():
            shutil.rmtree(directory)

    def list_sessions(self) -> List[str]:
        return sorted(entry.name for entry in self._root.iterdir() if entry.is_dir())

    def age(self, session_id: str, reference: datetime) -> float | None:
        """Seconds since the session directory was last modified."""

        try:
            mtime = self.session_dir(session_id).stat().st_mtime
        except FileNotFoundError:
            return None
        modified = datetime.fromtimestamp(mtime, tz=timezone.utc)
        return (reference - modified).total_seconds()


__all__ = ["BlobStore", "ORIGINAL_PREFIX", "StoredUpload", "sanitize_filename"]
