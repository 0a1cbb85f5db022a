"""Errors raised while talking to the spatialization provider."""
from __future__ import annotations

from typing import Any

import httpx


class ProviderError(RuntimeError):
    """Base error for provider interactions."""


class AuthError(ProviderError):
    """Raised when a bearer token cannot be obtained."""


class RemoteServiceError(ProviderError):
    """Raised for any non-success HTTP exchange with the provider."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: Any = None,
        method: str | None = None,
        url: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.method = method
        self.url = url
        detail = message
        if status_code is not None:
            detail = f"{message} (HTTP {status_code}): {body!r}"
        super().__init__(detail)

    @classmethod
    def from_response(cls, message: str, response: httpx.Response) -> "RemoteServiceError":
        return cls(
            message,
            status_code=response.status_code,
            body=response_body(response),
            method=response.request.method,
            url=str(response.request.url),
        )


class JobSubmissionError(ProviderError):
    """Raised when a job submission returns no job identifier."""


class JobFailedError(ProviderError):
    """Raised when the provider reports the job as failed."""

    def __init__(self, job_id: str, message: str = "Spatialization job failed") -> None:
        self.job_id = job_id
        super().__init__(f"{message}: {job_id}")


class JobTimeoutError(ProviderError):
    """Raised when a job stays non-terminal past the allowed poll attempts."""

    def __init__(self, job_id: str, attempts: int) -> None:
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(f"Job {job_id} still running after {attempts} status checks")


class MalformedResponseError(ProviderError):
    """Raised when a provider payload lacks required fields."""


def response_body(response: httpx.Response) -> Any:
    """Return the decoded JSON body when possible, else the raw text."""

    try:
        return response.json()
    except ValueError:
        return response.text


def response_json(response: httpx.Response, context: str) -> dict[str, Any]:
    """Decode a JSON object body or raise ``MalformedResponseError``."""

    try:
        payload = response.json()
    except ValueError as exc:
        raise MalformedResponseError(f"{context}: response body is not JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedResponseError(f"{context}: expected a JSON object, got {type(payload).__name__}")
    return payload


__all__ = [
    "AuthError",
    "JobFailedError",
    "JobSubmissionError",
    "JobTimeoutError",
    "MalformedResponseError",
    "ProviderError",
    "RemoteServiceError",
    "response_body",
    "response_json",
]
