"""Checks applied to uploaded audio before it leaves the server."""
from __future__ import annotations

import asyncio
from pathlib import Path

import mutagen
from mutagen import MutagenError

from app.backend import exceptions
from app.backend.config import get_settings

AUDIO_MIME_TYPES = {"audio/flac", "audio/wav", "audio/wave", "audio/x-wav", "audio/mpeg"}
AUDIO_EXTENSIONS = {".flac", ".wav", ".mp3"}


def is_supported_upload(filename: str | None, content_type: str | None) -> bool:
    content_type = (content_type or "").lower()
    if content_type in AUDIO_MIME_TYPES:
        return True
    return Path((filename or "").lower()).suffix in AUDIO_EXTENSIONS


def read_duration(path: Path) -> float:
    """Return the duration of ``path`` in seconds."""

    try:
        audio = mutagen.File(path)
    except MutagenError as exc:
        raise exceptions.invalid_audio(hint=str(exc) or None) from exc
    if audio is None or getattr(audio, "info", None) is None:
        raise exceptions.invalid_audio(hint="Unrecognised audio container.")
    length = getattr(audio.info, "length", None)
    if not length or length <= 0:
        raise exceptions.invalid_audio(hint="Audio stream reports no duration.")
    return float(length)


async def validate_duration(path: Path) -> float:
    """Read the duration off the event loop and enforce the configured maximum."""

    settings = get_settings()
    duration = await asyncio.to_thread(read_duration, path)
    if duration > settings.max_audio_minutes * 60:
        raise exceptions.audio_too_long(
            f"Audio file exceeds maximum duration of {settings.max_audio_minutes} minutes."
        )
    return duration


__all__ = [
    "AUDIO_EXTENSIONS",
    "AUDIO_MIME_TYPES",
    "is_supported_upload",
    "read_duration",
    "validate_duration",
]
