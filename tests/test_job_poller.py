from __future__ import annotations

import asyncio

import pytest

from app.backend.models.provider import Job, JobState
from app.backend.services.credentials import CredentialCache
from app.backend.services.job_poller import JobPoller
from app.backend.services.provider_errors import (
    JobFailedError,
    JobSubmissionError,
    JobTimeoutError,
    MalformedResponseError,
)


def _job() -> Job:
    return Job(id="job-1", intensity=3)


@pytest.fixture
def poller(http_client, recording_sleep):
    return JobPoller(
        http_client,
        CredentialCache(http_client),
        poll_interval_s=5.0,
        max_attempts=10,
        sleep=recording_sleep,
    )


def test_submit_posts_access_url_and_preset(poller, provider):
    job = asyncio.run(poller.submit("ias://slot-1", 3))

    assert job.id == "job-1"
    assert job.intensity == 3
    assert job.state is JobState.SUBMITTED
    assert provider.submit_payload == {"audioUrl": "ias://slot-1", "presetId": 3}


def test_submit_without_job_id_fails(poller, provider):
    provider.submit_response = {"status": "accepted"}

    with pytest.raises(JobSubmissionError):
        asyncio.run(poller.submit("ias://slot-1", 3))


def test_polls_until_success_and_returns_report(poller, provider, recording_sleep):
    provider.status_sequence = ["pending", "pending", "success"]

    report = asyncio.run(poller.run_to_completion(_job()))

    assert report.binaural_file is not None and report.binaural_file.id == "bin-1"
    assert report.immersive_file is not None and report.immersive_file.id == "imm-1"
    assert recording_sleep.delays == [5.0, 5.0]
    # Three status checks plus the follow-up read of the report.
    assert provider.status_calls == 4


def test_first_status_check_happens_before_any_delay(poller, provider):
    provider.status_sequence = ["pending", "success"]

    asyncio.run(poller.run_to_completion(_job()))

    assert provider.events[:3] == ["status", "sleep", "status"]


def test_error_status_stops_without_further_checks(poller, provider, recording_sleep):
    provider.status_sequence = ["pending", "error"]

    with pytest.raises(JobFailedError) as excinfo:
        asyncio.run(poller.run_to_completion(_job()))

    assert excinfo.value.job_id == "job-1"
    assert provider.status_calls == 2
    assert recording_sleep.delays == [5.0]


def test_success_without_report_is_malformed(poller, provider):
    provider.status_sequence = ["success"]
    provider.report = None

    with pytest.raises(MalformedResponseError):
        asyncio.run(poller.run_to_completion(_job()))


def test_missing_job_infos_is_malformed(poller, provider):
    provider.job_infos_missing = True

    with pytest.raises(MalformedResponseError):
        asyncio.run(poller.run_to_completion(_job()))


def test_binaural_only_report(poller, provider):
    provider.status_sequence = ["success"]
    provider.report = {"binauralFile": {"id": "bin-1"}}

    report = asyncio.run(poller.run_to_completion(_job()))

    assert report.binaural_file is not None
    assert report.immersive_file is None


def test_gives_up_after_max_attempts(http_client, provider, recording_sleep):
    provider.status_sequence = ["pending"]
    poller = JobPoller(
        http_client,
        CredentialCache(http_client),
        poll_interval_s=1.0,
        max_attempts=3,
        sleep=recording_sleep,
    )

    with pytest.raises(JobTimeoutError) as excinfo:
        asyncio.run(poller.run_to_completion(_job()))

    assert excinfo.value.attempts == 3
    assert provider.status_calls == 3


def test_status_checks_never_overlap(poller, provider):
    provider.status_sequence = ["pending"] * 5 + ["success"]

    asyncio.run(poller.run_to_completion(_job()))

    assert provider.max_in_flight == 1


def test_cancellation_stops_polling(http_client, provider):
    provider.status_sequence = ["pending"]
    poller = JobPoller(
        http_client,
        CredentialCache(http_client),
        poll_interval_s=0.01,
        max_attempts=10_000,
    )

    job = _job()

    async def scenario():
        task = asyncio.create_task(poller.run_to_completion(job))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        calls_at_cancel = provider.status_calls
        await asyncio.sleep(0.05)
        return calls_at_cancel

    calls_at_cancel = asyncio.run(scenario())

    assert calls_at_cancel >= 1
    assert provider.status_calls == calls_at_cancel
    assert job.state is JobState.POLLING


def test_successful_job_moves_through_polling_to_succeeded(poller, provider):
    provider.status_sequence = ["pending", "success"]
    job = _job()

    asyncio.run(poller.run_to_completion(job))

    assert job.history == [JobState.SUBMITTED, JobState.POLLING, JobState.SUCCEEDED]
    assert job.finished


@pytest.mark.parametrize(
    ("setup", "expected"),
    [
        ({"status_sequence": ["pending", "error"]}, JobFailedError),
        ({"status_sequence": ["success"], "report": None}, MalformedResponseError),
        ({"job_infos_missing": True}, MalformedResponseError),
    ],
)
def test_failed_job_ends_in_failed_state(poller, provider, setup, expected):
    for name, value in setup.items():
        setattr(provider, name, value)
    job = _job()

    with pytest.raises(expected):
        asyncio.run(poller.run_to_completion(job))

    assert job.history == [JobState.SUBMITTED, JobState.POLLING, JobState.FAILED]


def test_timed_out_job_ends_in_failed_state(http_client, provider, recording_sleep):
    provider.status_sequence = ["pending"]
    poller = JobPoller(
        http_client,
        CredentialCache(http_client),
        poll_interval_s=1.0,
        max_attempts=2,
        sleep=recording_sleep,
    )
    job = _job()

    with pytest.raises(JobTimeoutError):
        asyncio.run(poller.run_to_completion(job))

    assert job.state is JobState.FAILED


def test_finished_job_is_never_resumed(poller, provider):
    provider.status_sequence = ["error"]
    job = _job()
    with pytest.raises(JobFailedError):
        asyncio.run(poller.run_to_completion(job))

    with pytest.raises(ValueError):
        asyncio.run(poller.run_to_completion(job))

    assert provider.status_calls == 1
    assert job.history == [JobState.SUBMITTED, JobState.POLLING, JobState.FAILED]
