"""
Session Store
=============

Server-side storage of session records keyed by the opaque session id the
browser carries in its cookie.

Records are stored as JSON-mode dumps of SessionData, so two requests on
the same session never share a mutable object; each request works on its
own copy and writes it back when the response starts.

MemorySessionStore keeps everything in process memory. A distributed
backend implements the same five coroutines.
"""

import time
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from authgate.models import SessionData


class SessionStore(ABC):
    """Interface every session backend implements."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[SessionData]:
        """Return the record, or None if unknown or expired."""

    @abstractmethod
    async def set(self, session_id: str, data: SessionData) -> None:
        """Create or overwrite the record."""

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        """Remove the record; unknown ids are ignored."""

    @abstractmethod
    def items(self) -> AsyncIterator[Tuple[str, SessionData]]:
        """Iterate over all live records."""

    async def delete_where(self, predicate: Callable[[SessionData], bool]) -> int:
        """
        Delete every record matching predicate.

        Used by back-channel logout and CAS single logout, which identify
        sessions by provider-side identifiers rather than by cookie.

        Returns:
            Number of deleted records
        """
        matched = [session_id async for session_id, data in self.items() if predicate(data)]
        for session_id in matched:
            await self.delete(session_id)
        return len(matched)


class MemorySessionStore(SessionStore):
    """
    In-process session store with a fixed time-to-live. Expired records
    are swept on every write and every scan.

    Only suitable for a single gateway instance; use a shared backend when
    running several workers.
    """

    def __init__(self, max_age_seconds: int = 14 * 24 * 60 * 60):
        self.max_age_seconds = max_age_seconds
        self._records: Dict[str, Tuple[float, dict]] = {}

    def _expired(self, stored_at: float) -> bool:
        return (time.time() - stored_at) >= self.max_age_seconds

    async def get(self, session_id: str) -> Optional[SessionData]:
        entry = self._records.get(session_id)
        if entry is None:
            return None
        if self._expired(entry[0]):
            del self._records[session_id]
            return None
        return SessionData.model_validate(entry[1])

    def purge_expired(self) -> int:
        """
        Drop every expired record.

        Returns:
            Number of dropped records
        """
        expired = [session_id for session_id, (stored_at, _) in self._records.items() if self._expired(stored_at)]
        for session_id in expired:
            del self._records[session_id]
        return len(expired)

    async def set(self, session_id: str, data: SessionData) -> None:
        self.purge_expired()
        self._records[session_id] = (time.time(), data.model_dump(mode="json"))

    async def delete(self, session_id: str) -> None:
        self._records.pop(session_id, None)

    async def items(self) -> AsyncIterator[Tuple[str, SessionData]]:
        self.purge_expired()
        for session_id, (_, raw) in list(self._records.items()):
            yield session_id, SessionData.model_validate(raw)

    def __len__(self) -> int:
        return len(self._records)
