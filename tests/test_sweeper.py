from __future__ import annotations

import asyncio
import os
import threading
from datetime import datetime, timedelta, timezone

import pytest

from app.backend.models.session import UploadedFile
from app.backend.services.blob_store import BlobStore
from app.backend.services.session_registry import SessionRegistry
from app.backend.services.sweeper import SessionSweeper

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def blob_store(tmp_path):
    return BlobStore(tmp_path / "blobs")


def _session(registry: SessionRegistry, blob_store: BlobStore, minutes_old: float) -> str:
    session_id = blob_store.create_session()
    (blob_store.session_dir(session_id) / "original_song.wav").write_bytes(b"data")
    registry.create(
        session_id,
        UploadedFile(
            path=f"{session_id}/original_song.wav",
            original_filename="song.wav",
            content_type="audio/wav",
            size_bytes=4,
        ),
        now=NOW - timedelta(minutes=minutes_old),
    )
    return session_id


def _sweeper(registry, blob_store, **overrides) -> SessionSweeper:
    options = {"ttl": timedelta(minutes=15), "grace": timedelta(0)}
    options.update(overrides)
    return SessionSweeper(registry, blob_store, **options)


def test_sweep_evicts_only_expired_sessions(registry, blob_store):
    stale = _session(registry, blob_store, minutes_old=16)
    fresh = _session(registry, blob_store, minutes_old=14)

    evicted = _sweeper(registry, blob_store).sweep(NOW)

    assert evicted == [stale]
    assert registry.get(stale) is None
    assert not blob_store.session_dir(stale).exists()
    assert registry.get(fresh) is not None
    assert blob_store.session_dir(fresh).exists()


def test_grace_margin_delays_eviction(registry, blob_store):
    session_id = _session(registry, blob_store, minutes_old=15.25)

    evicted = _sweeper(registry, blob_store, grace=timedelta(seconds=30)).sweep(NOW)

    assert evicted == []
    assert registry.get(session_id) is not None


def test_pinned_sessions_survive_the_sweep(registry, blob_store):
    session_id = _session(registry, blob_store, minutes_old=60)

    with registry.pin(session_id):
        evicted = _sweeper(registry, blob_store).sweep(NOW)

    assert evicted == []
    assert registry.get(session_id) is not None
    assert blob_store.session_dir(session_id).exists()


def test_orphaned_directories_are_aged_by_mtime(registry, blob_store):
    orphan = blob_store.create_session()
    old = (NOW - timedelta(minutes=20)).timestamp()
    os.utime(blob_store.session_dir(orphan), (old, old))
    recent = blob_store.create_session()
    fresh = (NOW - timedelta(minutes=1)).timestamp()
    os.utime(blob_store.session_dir(recent), (fresh, fresh))

    evicted = _sweeper(registry, blob_store).sweep(NOW)

    assert evicted == [orphan]
    assert blob_store.session_dir(recent).exists()


def test_failure_on_one_session_does_not_stop_the_sweep(registry, blob_store, monkeypatch):
    first = _session(registry, blob_store, minutes_old=30)
    second = _session(registry, blob_store, minutes_old=30)
    broken = min(first, second)
    healthy = max(first, second)
    original_delete = blob_store.delete

    def _delete(session_id: str) -> None:
        if session_id == broken:
            raise OSError("permission denied")
        original_delete(session_id)

    monkeypatch.setattr(blob_store, "delete", _delete)

    evicted = _sweeper(registry, blob_store).sweep(NOW)

    assert evicted == [healthy]
    assert not blob_store.session_dir(healthy).exists()
    assert registry.get(broken) is None


def test_background_task_sweeps_periodically(registry, blob_store):
    session_id = _session(registry, blob_store, minutes_old=16)
    sweeper = _sweeper(registry, blob_store, interval=timedelta(milliseconds=10), clock=lambda: NOW)

    async def scenario():
        sweeper.start()
        await asyncio.sleep(0.1)
        await sweeper.stop()

    asyncio.run(scenario())

    assert registry.get(session_id) is None
    assert not blob_store.session_dir(session_id).exists()


def test_background_sweep_deletes_off_the_event_loop(registry, blob_store, monkeypatch):
    _session(registry, blob_store, minutes_old=16)
    sweeper = _sweeper(registry, blob_store, interval=timedelta(milliseconds=10), clock=lambda: NOW)
    delete = blob_store.delete
    threads: list[int] = []

    def _recording_delete(session_id: str) -> None:
        threads.append(threading.get_ident())
        delete(session_id)

    monkeypatch.setattr(blob_store, "delete", _recording_delete)

    async def scenario():
        loop_thread = threading.get_ident()
        sweeper.start()
        await asyncio.sleep(0.1)
        await sweeper.stop()
        return loop_thread

    loop_thread = asyncio.run(scenario())

    assert threads
    assert loop_thread not in threads
