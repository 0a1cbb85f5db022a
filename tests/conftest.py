import asyncio
import sys
import wave
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

# Ensure the application package is importable when tests run from the repository root.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from app.backend import config
from app.backend.api import routes
from app.backend.main import app
from app.backend.services.credentials import CredentialCache
from app.backend.services.job_poller import JobPoller
from app.backend.services.pipeline import SpatializationPipeline
from app.backend.services.remote_storage import RemoteStorageClient

AUTH_URL = "https://auth.test/oauth/token"
STORAGE_URL = "https://storage.test"
SPATIAL_URL = "https://api.test/stereotospatial/"


class FakeAmplify:
    """In-memory stand-in for the spatialization provider's HTTP API."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.events: list[str] = []
        self.auth_status = 200
        self.auth_payload: dict | None = None
        self.tokens_issued = 0
        self.manager_status = 200
        self.put_status = 200
        self.omit_ias = False
        self.slots = 0
        self.uploads: dict[str, tuple[str, bytes]] = {}
        self.files = {
            "bin-1": ("original_song_2_binaural.mp3", b"BINAURAL-AUDIO" * 64),
            "imm-1": ("original_song_18_immersive.wav", b"IMMERSIVE-AUDIO" * 64),
        }
        self.submit_response: dict = {"id": "job-1"}
        self.submit_payload: dict | None = None
        self.status_sequence = ["pending", "success"]
        self.status_calls = 0
        self.job_infos_missing = False
        self.report: dict | None = {"binauralFile": {"id": "bin-1"}, "immersiveFile": {"id": "imm-1"}}
        self.broken_downloads: set[str] = set()
        self.in_flight = 0
        self.max_in_flight = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, str(request.url)))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            return self._dispatch(request)
        finally:
            self.in_flight -= 1

    def _dispatch(self, request: httpx.Request) -> httpx.Response:
        host, path = request.url.host, request.url.path
        if host == "auth.test":
            return self._auth()
        if request.headers.get("authorization", "").split(" ")[0] != "Bearer":
            return httpx.Response(401, json={"detail": "missing token"})
        if host == "storage.test":
            return self._storage(request, path)
        if host == "api.test":
            return self._spatial(request, path)
        return httpx.Response(404)

    def _auth(self) -> httpx.Response:
        if self.auth_status != 200:
            return httpx.Response(self.auth_status, json={"error": "invalid_client"})
        self.tokens_issued += 1
        payload = self.auth_payload if self.auth_payload is not None else {"id_token": f"token-{self.tokens_issued}"}
        return httpx.Response(200, json=payload)

    def _storage(self, request: httpx.Request, path: str) -> httpx.Response:
        parts = [part for part in path.split("/") if part]
        if parts == ["manager"] and request.method == "POST":
            if self.manager_status != 200:
                return httpx.Response(self.manager_status, json={"detail": "storage unavailable"})
            self.slots += 1
            return httpx.Response(200, json={"id": f"slot-{self.slots}"})
        if len(parts) == 2 and parts[0] == "manager" and request.method == "GET":
            file_id = parts[1]
            entry = self.uploads.get(file_id) or self.files.get(file_id)
            if entry is None:
                return httpx.Response(404, json={"detail": "unknown file"})
            payload = {"id": file_id, "filename": entry[0]}
            if not self.omit_ias:
                payload["ias"] = f"ias://{file_id}"
            return httpx.Response(200, json=payload)
        if len(parts) == 2 and request.method == "PUT":
            if self.put_status != 200:
                return httpx.Response(self.put_status, json={"detail": "quota exceeded"})
            self.uploads[parts[0]] = (parts[1], request.content)
            return httpx.Response(200)
        if len(parts) == 2 and request.method == "GET":
            entry = self.files.get(parts[0]) or self.uploads.get(parts[0])
            if entry is None or entry[0] != parts[1]:
                return httpx.Response(404, json={"detail": "unknown file"})
            if parts[0] in self.broken_downloads:
                return httpx.Response(503, json={"detail": "storage backend unavailable"})
            return httpx.Response(200, content=entry[1])
        return httpx.Response(404)

    def _spatial(self, request: httpx.Request, path: str) -> httpx.Response:
        if path == "/stereotospatial/" and request.method == "POST":
            self.submit_payload = httpx.Response(200, content=request.content).json()
            return httpx.Response(200, json=self.submit_response)
        if request.method == "GET":
            self.events.append("status")
            index = min(self.status_calls, len(self.status_sequence) - 1)
            self.status_calls += 1
            if self.job_infos_missing:
                return httpx.Response(200, json={"detail": "no infos"})
            status = self.status_sequence[index]
            job_infos: dict = {"job_status": status}
            if status == "success" and self.report is not None:
                job_infos["report_info"] = {"report": self.report}
            return httpx.Response(200, json={"job_infos": job_infos})
        return httpx.Response(404)


class RecordingSleep:
    """Sleep replacement that records requested delays without waiting."""

    def __init__(self, events: list[str] | None = None) -> None:
        self.delays: list[float] = []
        self._events = events

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self._events is not None:
            self._events.append("sleep")


def write_wav(path: Path, seconds: float = 1.0, rate: int = 8000) -> Path:
    with wave.open(str(path), "wb") as handle:
        handle.setnchannels(2)
        handle.setsampwidth(2)
        handle.setframerate(rate)
        handle.writeframes(b"\x00\x00\x00\x00" * int(seconds * rate))
    return path


@pytest.fixture(autouse=True)
def _reset_settings(monkeypatch, tmp_path):
    storage_root = tmp_path / "storage"
    monkeypatch.setenv("SPATIAL_STORAGE_DIR", str(storage_root))
    monkeypatch.setenv("SPATIAL_ENVIRONMENT", "dev")
    monkeypatch.setenv("SPATIAL_DEBUG_MODE", "true")
    monkeypatch.setenv("SPATIAL_IRCAM_CLIENT_ID", "client-id")
    monkeypatch.setenv("SPATIAL_IRCAM_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("SPATIAL_IRCAM_AUTH_URL", AUTH_URL)
    monkeypatch.setenv("SPATIAL_IRCAM_STORAGE_URL", STORAGE_URL)
    monkeypatch.setenv("SPATIAL_IRCAM_SPATIAL_URL", SPATIAL_URL)
    monkeypatch.setenv("SPATIAL_POLL_INTERVAL_S", "5")

    config.get_settings.cache_clear()
    routes.reset_dependencies()

    settings = config.get_settings()

    yield settings

    app.dependency_overrides.clear()
    routes.reset_dependencies()
    config.get_settings.cache_clear()


@pytest.fixture
def provider() -> FakeAmplify:
    return FakeAmplify()


@pytest.fixture
def http_client(provider) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=provider.transport())


@pytest.fixture
def recording_sleep(provider) -> RecordingSleep:
    return RecordingSleep(provider.events)


@pytest.fixture
def pipeline(http_client, recording_sleep) -> SpatializationPipeline:
    credentials = CredentialCache(http_client)
    return SpatializationPipeline(
        credentials=credentials,
        remote_storage=RemoteStorageClient(http_client, credentials),
        poller=JobPoller(http_client, credentials, sleep=recording_sleep),
        registry=routes.get_session_registry(),
        blob_store=routes.get_blob_store(),
    )


@pytest.fixture
def wav_factory(tmp_path):
    def _make(name: str = "song.wav", seconds: float = 1.0) -> Path:
        return write_wav(tmp_path / name, seconds=seconds)

    return _make


@pytest.fixture
def client(pipeline):
    app.dependency_overrides[routes.get_pipeline] = lambda: pipeline
    with TestClient(app) as test_client:
        yield test_client
