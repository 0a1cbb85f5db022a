"""API-facing exceptions and error payload helpers."""
from __future__ import annotations

from typing import Dict

from fastapi import HTTPException, status


def build_error_payload(
    error_code: str,
    message: str,
    hint: str | None = None,
    stage: str | None = None,
) -> Dict[str, str]:
    """Return a standardized error payload."""

    payload: Dict[str, str] = {"error_code": error_code, "message": message}
    if stage:
        payload["stage"] = stage
    if hint:
        payload["hint"] = hint
    return payload


class ApiError(HTTPException):
    """Base error with standardized payload."""

    def __init__(
        self,
        *,
        status_code: int,
        error_code: str,
        message: str,
        hint: str | None = None,
        stage: str | None = None,
    ) -> None:
        self.error_code = error_code
        self.message = message
        self.hint = hint
        self.stage = stage
        super().__init__(
            status_code=status_code,
            detail=build_error_payload(error_code=error_code, message=message, hint=hint, stage=stage),
        )

    def to_payload(self) -> Dict[str, str]:
        """Return the serialized payload for the error."""

        return build_error_payload(self.error_code, self.message, self.hint, self.stage)


def no_file_uploaded(message: str = "No file uploaded.") -> ApiError:
    return ApiError(status_code=status.HTTP_400_BAD_REQUEST, error_code="NO_FILE", message=message, stage="upload")


def invalid_file_type(
    message: str = "Invalid file type. Only FLAC, WAV and MP3 files are supported.",
) -> ApiError:
    return ApiError(
        status_code=status.HTTP_400_BAD_REQUEST, error_code="INVALID_FILE_TYPE", message=message, stage="upload"
    )


def file_too_large(message: str = "File exceeds size limit (100 MB).") -> ApiError:
    return ApiError(status_code=status.HTTP_400_BAD_REQUEST, error_code="FILE_TOO_LARGE", message=message, stage="upload")


def audio_too_long(message: str = "Audio file exceeds maximum duration of 30 minutes.") -> ApiError:
    return ApiError(status_code=status.HTTP_400_BAD_REQUEST, error_code="AUDIO_TOO_LONG", message=message, stage="upload")


def invalid_audio(
    message: str = "Error validating audio file. Please ensure the file is a valid FLAC, WAV or MP3 file.",
    *,
    hint: str | None = None,
) -> ApiError:
    return ApiError(
        status_code=status.HTTP_400_BAD_REQUEST,
        error_code="INVALID_AUDIO",
        message=message,
        hint=hint,
        stage="upload",
    )


def auth_failed(
    message: str = "Failed to obtain an access token from the spatialization provider.",
    *,
    hint: str | None = None,
    stage: str | None = None,
) -> ApiError:
    return ApiError(
        status_code=status.HTTP_502_BAD_GATEWAY, error_code="AUTH_ERROR", message=message, hint=hint, stage=stage
    )


def remote_service_error(
    message: str = "The spatialization provider rejected the request.",
    *,
    hint: str | None = None,
    stage: str | None = None,
) -> ApiError:
    return ApiError(
        status_code=status.HTTP_502_BAD_GATEWAY,
        error_code="REMOTE_SERVICE_ERROR",
        message=message,
        hint=hint,
        stage=stage,
    )


def job_submission_failed(message: str = "The provider did not return a job identifier.") -> ApiError:
    return ApiError(
        status_code=status.HTTP_502_BAD_GATEWAY, error_code="JOB_SUBMISSION_ERROR", message=message, stage="submit"
    )


def job_failed(message: str = "Spatialization job failed.", *, hint: str | None = None) -> ApiError:
    return ApiError(
        status_code=status.HTTP_502_BAD_GATEWAY, error_code="JOB_FAILED", message=message, hint=hint, stage="poll"
    )


def job_timeout(message: str = "Spatialization job did not finish in time.") -> ApiError:
    return ApiError(status_code=status.HTTP_504_GATEWAY_TIMEOUT, error_code="JOB_TIMEOUT", message=message, stage="poll")


def malformed_response(
    message: str = "The provider returned an unexpected response.",
    *,
    hint: str | None = None,
    stage: str | None = None,
) -> ApiError:
    return ApiError(
        status_code=status.HTTP_502_BAD_GATEWAY,
        error_code="MALFORMED_RESPONSE",
        message=message,
        hint=hint,
        stage=stage,
    )


def storage_error(
    message: str = "Failed to store a file on the server.",
    *,
    hint: str | None = None,
    stage: str | None = None,
) -> ApiError:
    return ApiError(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code="STORAGE_ERROR",
        message=message,
        hint=hint,
        stage=stage,
    )


def session_not_found(message: str = "Session not found or expired.", *, stage: str | None = None) -> ApiError:
    return ApiError(status_code=status.HTTP_404_NOT_FOUND, error_code="SESSION_NOT_FOUND", message=message, stage=stage)


def artifact_not_found(message: str = "Requested file not found.") -> ApiError:
    return ApiError(status_code=status.HTTP_404_NOT_FOUND, error_code="FILE_NOT_FOUND", message=message, stage="download")


def invalid_artifact_kind(message: str = "Invalid file type requested.") -> ApiError:
    return ApiError(
        status_code=status.HTTP_400_BAD_REQUEST, error_code="INVALID_ARTIFACT_TYPE", message=message, stage="download"
    )


def missing_access_url(message: str = "Missing access URL for the uploaded file.") -> ApiError:
    return ApiError(
        status_code=status.HTTP_400_BAD_REQUEST, error_code="MISSING_ACCESS_URL", message=message, stage="spatialize"
    )


def internal_error(message: str = "Unexpected server error. Please retry or contact support.") -> ApiError:
    return ApiError(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, error_code="INTERNAL_ERROR", message=message)


def invalid_request(
    message: str = "The request payload is invalid.",
    *,
    hint: str | None = None,
) -> ApiError:
    return ApiError(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        error_code="INVALID_REQUEST",
        message=message,
        hint=hint,
    )


def http_error(
    message: str = "An HTTP error occurred while processing the request.",
    *,
    status_code: int = status.HTTP_400_BAD_REQUEST,
    hint: str | None = None,
) -> ApiError:
    return ApiError(status_code=status_code, error_code="HTTP_ERROR", message=message, hint=hint)


def resource_not_found(message: str = "The requested resource was not found.") -> ApiError:
    return ApiError(status_code=status.HTTP_404_NOT_FOUND, error_code="RESOURCE_NOT_FOUND", message=message)


__all__ = [
    "ApiError",
    "no_file_uploaded",
    "invalid_file_type",
    "file_too_large",
    "audio_too_long",
    "invalid_audio",
    "auth_failed",
    "remote_service_error",
    "job_submission_failed",
    "job_failed",
    "job_timeout",
    "malformed_response",
    "storage_error",
    "session_not_found",
    "artifact_not_found",
    "invalid_artifact_kind",
    "missing_access_url",
    "internal_error",
    "invalid_request",
    "http_error",
    "resource_not_found",
    "build_error_payload",
]
