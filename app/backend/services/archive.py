"""Bundle derived artifacts into a single ZIP download."""
from __future__ import annotations

import logging
import re
import shutil
import zipfile
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Sequence

from app.backend.models.session import utcnow
from app.common.logging import json_log

logger = logging.getLogger(__name__)

_COPY_CHUNK_SIZE = 1024 * 1024


class ArchiveError(RuntimeError):
    """Raised when the archive cannot be assembled."""


def archive_name(stored_filename: str, now: datetime | None = None) -> str:
    """Return ``<base>_<timestamp>.zip`` for the stored name of an upload."""

    timestamp = (now or utcnow()).isoformat(timespec="milliseconds")
    timestamp = re.sub(r"[:.]", "-", timestamp.replace("+00:00", "Z"))
    base = PurePosixPath(stored_filename).stem or "spatialized"
    return f"{base}_{timestamp}.zip"


class ArchiveBuilder:
    """Write artifacts into a DEFLATE-compressed ZIP without buffering them."""

    def __init__(self, compresslevel: int = 9) -> None:
        self._compresslevel = compresslevel

    def build(self, session_dir: Path, artifact_names: Sequence[str], output_name: str) -> Path:
        """Create ``output_name`` inside ``session_dir`` from ``artifact_names``.

        The archive is written to a temporary ``.part`` file and moved into
        place once closed, so the returned path is always a complete file.
        """

        session_dir = Path(session_dir)
        sources = [session_dir / name for name in artifact_names]
        missing = [source.name for source in sources if not source.is_file()]
        if missing:
            raise ArchiveError(f"Artifacts missing at build time: {', '.join(missing)}")

        if "\x00" in output_name or PurePosixPath(output_name).name != output_name:
            raise ArchiveError(f"Invalid archive name: {output_name!r}")

        destination = session_dir / output_name
        partial = destination.with_name(f"{destination.name}.part")
        try:
            with zipfile.ZipFile(
                partial, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=self._compresslevel
            ) as bundle:
                for source in sources:
                    with source.open("rb") as reader, bundle.open(source.name, "w", force_zip64=True) as writer:
                        shutil.copyfileobj(reader, writer, _COPY_CHUNK_SIZE)
            partial.replace(destination)
        except (OSError, ValueError, zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
            partial.unlink(missing_ok=True)
            json_log(logger, logging.ERROR, "archive.failed", output=output_name, error=str(exc))
            raise ArchiveError(f"Failed to write archive {output_name}: {exc}") from exc

        json_log(
            logger,
            logging.INFO,
            "archive.complete",
            output=output_name,
            entries=len(sources),
            size_bytes=destination.stat().st_size,
        )
        return destination


__all__ = ["ArchiveBuilder", "ArchiveError", "archive_name"]
