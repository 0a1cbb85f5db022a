"""In-memory registry of upload sessions."""
from __future__ import annotations

import itertools
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List

from app.backend.models.session import Session, UploadedFile, utcnow
from app.common.logging import json_log

logger = logging.getLogger(__name__)


class SessionNotFoundError(LookupError):
    """Raised when a session is missing at lookup or download time."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionRegistry:
    """Map session identifiers to immutable ``Session`` snapshots.

    Every mutation swaps the stored snapshot under a lock, so concurrent
    readers see either the previous or the next version of a session.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._sessions: Dict[str, Session] = {}
        self._order: Dict[str, int] = {}
        self._pins: Dict[str, int] = {}
        self._sequence = itertools.count()

    def create(self, session_id: str, uploaded_file: UploadedFile, *, now: datetime | None = None) -> Session:
        """Register a new session, overwriting any entry with the same id."""

        timestamp = now or self._clock()
        session = Session(
            session_id=session_id,
            uploaded_file=uploaded_file,
            created_at=timestamp,
            last_touched_at=timestamp,
        )
        with self._lock:
            self._sessions[session_id] = session
            self._order[session_id] = next(self._sequence)
        json_log(logger, logging.INFO, "session.created", session_id=session_id)
        return session

    def update(self, session_id: str, *, now: datetime | None = None, **fields: Any) -> Session | None:
        """Apply ``fields`` to a session and refresh its last-touched time.

        Updating an unknown session is a logged no-op returning ``None``; a
        late update must not resurrect an evicted session.
        """

        with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                json_log(
                    logger,
                    logging.WARNING,
                    "session.update.missing",
                    session_id=session_id,
                    fields=sorted(fields),
                )
                return None
            fields["last_touched_at"] = now or self._clock()
            updated = current.model_copy(update=fields)
            self._sessions[session_id] = updated
        return updated

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def latest(self) -> Session | None:
        """Return the most recently touched session; creation order breaks ties."""

        with self._lock:
            if not self._sessions:
                return None
            session_id = max(
                self._sessions,
                key=lambda key: (self._sessions[key].last_touched_at, self._order[key]),
            )
            return self._sessions[session_id]

    def evict(self, session_id: str) -> None:
        """Remove a session; unknown ids are ignored."""

        with self._lock:
            removed = self._sessions.pop(session_id, None)
            self._order.pop(session_id, None)
        if removed is not None:
            json_log(logger, logging.INFO, "session.evicted", session_id=session_id)

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def age(self, session_id: str, reference: datetime | None = None) -> float | None:
        """Seconds since the session was last touched, or ``None`` if unknown."""

        session = self.get(session_id)
        if session is None:
            return None
        return session.age(reference or self._clock())

    @contextmanager
    def pin(self, session_id: str) -> Iterator[None]:
        """Mark a session as in use so the eviction sweep leaves it alone."""

        with self._lock:
            self._pins[session_id] = self._pins.get(session_id, 0) + 1
        try:
            yield
        finally:
            with self._lock:
                remaining = self._pins.get(session_id, 1) - 1
                if remaining:
                    self._pins[session_id] = remaining
                else:
                    self._pins.pop(session_id, None)

    def is_pinned(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._pins

    def clear(self) -> None:
        """Remove all tracked sessions."""

        with self._lock:
            self._sessions.clear()
            self._order.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


__all__ = ["SessionNotFoundError", "SessionRegistry"]
