"""Spatialization job submission and status polling."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

import httpx
from pydantic import ValidationError

from app.backend.config import get_settings
from app.backend.models.provider import (
    ERROR_STATUS,
    SUCCESS_STATUS,
    Job,
    JobState,
    SpatializationReport,
)
from app.backend.services.credentials import CredentialCache
from app.backend.services.provider_errors import (
    JobFailedError,
    JobSubmissionError,
    JobTimeoutError,
    MalformedResponseError,
    ProviderError,
    RemoteServiceError,
    response_json,
)
from app.common.logging import json_log

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class JobPoller:
    """Drive a remote spatialization job to a terminal state.

    Status checks for one job are strictly sequential: the first check runs
    immediately and each later check waits ``poll_interval_s`` after the
    previous response. Cancelling the awaiting task stops the loop at the
    next network call or sleep.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: CredentialCache,
        *,
        base_url: str | None = None,
        poll_interval_s: float | None = None,
        max_attempts: int | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self._client = client
        self._credentials = credentials
        base = base_url or settings.ircam_spatial_url
        self._base_url = base if base.endswith("/") else f"{base}/"
        self._poll_interval_s = settings.poll_interval_s if poll_interval_s is None else poll_interval_s
        self._max_attempts = max_attempts or settings.poll_max_attempts
        self._sleep = sleep

    def _job_url(self, job_id: str) -> str:
        return f"{self._base_url}{job_id}"

    async def _request(self, method: str, url: str, context: str, **kwargs: Any) -> dict[str, Any]:
        headers = await self._credentials.headers()
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteServiceError(f"{context}: {exc}", method=method, url=url) from exc
        if not response.is_success:
            raise RemoteServiceError.from_response(context, response)
        return response_json(response, context)

    async def submit(self, access_url: str, intensity: int) -> Job:
        """Submit a job for ``access_url`` at preset ``intensity``."""

        payload = {"audioUrl": access_url, "presetId": int(intensity)}
        data = await self._request("POST", self._base_url, "Failed to submit spatialization job", json=payload)
        job_id = data.get("id")
        if not job_id:
            raise JobSubmissionError("No job ID returned from the spatialization API")
        job = Job(id=str(job_id), intensity=int(intensity))
        json_log(logger, logging.INFO, "job.submitted", job_id=job.id, intensity=job.intensity, state=job.state.value)
        return job

    @staticmethod
    def _advance(job: Job, state: JobState, **fields: Any) -> None:
        previous = job.state
        job.advance(state)
        level = logging.ERROR if state is JobState.FAILED else logging.INFO
        json_log(logger, level, "job.state", job_id=job.id, previous=previous.value, state=state.value, **fields)

    async def _status(self, job_id: str) -> tuple[str | None, dict[str, Any]]:
        data = await self._request("GET", self._job_url(job_id), "Failed to check job status")
        job_infos = data.get("job_infos")
        if not isinstance(job_infos, dict):
            raise MalformedResponseError(f"Status response for job {job_id} is missing job_infos")
        return job_infos.get("job_status"), job_infos

    async def run_to_completion(self, job: Job) -> SpatializationReport:
        """Poll ``job`` until it succeeds or fails and return its report.

        ``job`` is advanced through POLLING to SUCCEEDED or FAILED. Any
        provider error while polling leaves it FAILED; a cancelled poll
        leaves it POLLING.
        """

        start = time.perf_counter()
        attempts = 0
        self._advance(job, JobState.POLLING)
        try:
            status: str | None = None
            while status not in (SUCCESS_STATUS, ERROR_STATUS):
                if attempts >= self._max_attempts:
                    raise JobTimeoutError(job.id, attempts)
                if attempts:
                    await self._sleep(self._poll_interval_s)
                attempts += 1
                status, _ = await self._status(job.id)
                json_log(logger, logging.INFO, "job.poll", job_id=job.id, attempt=attempts, job_status=status)

            if status == ERROR_STATUS:
                raise JobFailedError(job.id)
            report = await self._report(job.id)
        except ProviderError as exc:
            self._advance(job, JobState.FAILED, attempts=attempts, error=str(exc))
            raise

        self._advance(
            job,
            JobState.SUCCEEDED,
            attempts=attempts,
            duration_ms=int((time.perf_counter() - start) * 1000),
            binaural=report.binaural_file is not None,
            immersive=report.immersive_file is not None,
        )
        return report

    async def _report(self, job_id: str) -> SpatializationReport:
        _, job_infos = await self._status(job_id)
        report_info = job_infos.get("report_info")
        raw_report = report_info.get("report") if isinstance(report_info, dict) else None
        if not isinstance(raw_report, dict):
            raise MalformedResponseError(f"Job {job_id} reported success without a report")
        try:
            return SpatializationReport.model_validate(raw_report)
        except ValidationError as exc:
            raise MalformedResponseError(f"Job {job_id} returned an invalid report: {exc}") from exc


__all__ = ["JobPoller", "Sleep"]
