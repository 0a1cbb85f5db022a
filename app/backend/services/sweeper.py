"""Periodic eviction of expired sessions."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List

from app.backend.config import get_settings
from app.backend.models.session import utcnow
from app.backend.services.blob_store import BlobStore
from app.backend.services.session_registry import SessionRegistry
from app.common.logging import json_log

logger = logging.getLogger(__name__)


class SessionSweeper:
    """Evict sessions and their files once they outlive the TTL.

    A session is removed from the registry before its directory is deleted,
    so a lookup racing the sweep behaves as if the session never existed.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        blob_store: BlobStore,
        *,
        ttl: timedelta | None = None,
        interval: timedelta | None = None,
        grace: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings = get_settings()
        self._registry = registry
        self._blob_store = blob_store
        self._ttl = ttl or timedelta(minutes=settings.session_ttl_minutes)
        self._interval = interval or timedelta(minutes=settings.sweep_interval_minutes)
        self._grace = grace if grace is not None else timedelta(seconds=settings.sweep_grace_seconds)
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    def _age(self, session_id: str, now: datetime) -> float | None:
        age = self._registry.age(session_id, now)
        if age is None:
            age = self._blob_store.age(session_id, now)
        return age

    def sweep(self, now: datetime | None = None) -> List[str]:
        """Evict every expired, unpinned session and return their ids."""

        now = now or self._clock()
        limit = (self._ttl + self._grace).total_seconds()
        candidates = set(self._registry.ids()) | set(self._blob_store.list_sessions())
        evicted: List[str] = []
        for session_id in sorted(candidates):
            if self._registry.is_pinned(session_id):
                continue
            age = self._age(session_id, now)
            if age is None or age <= limit:
                continue
            try:
                self._registry.evict(session_id)
                self._blob_store.delete(session_id)
            except Exception as exc:
                json_log(
                    logger,
                    logging.ERROR,
                    "sweep.evict.failed",
                    session_id=session_id,
                    error=str(exc),
                )
                continue
            evicted.append(session_id)
        json_log(
            logger,
            logging.INFO,
            "sweep.complete",
            scanned=len(candidates),
            evicted=len(evicted),
            ttl_s=self._ttl.total_seconds(),
        )
        return evicted

    async def _run(self) -> None:
        interval = self._interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("sweep.failed")

    def start(self) -> asyncio.Task[None]:
        """Launch the periodic sweep on the running event loop."""

        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="session-sweeper")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


__all__ = ["SessionSweeper"]
