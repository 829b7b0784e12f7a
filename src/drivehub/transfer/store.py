"""Transfer session persistence.

The coordinator persists a snapshot after every mutation so sessions survive
a restart. ``InMemoryTransferSessionStore`` serves single-process use and
tests; the SQLAlchemy implementation lives in ``drivehub.database.stores``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from drivehub.transfer.models import TransferSession


class TransferSessionStore(ABC):
    """Abstract transfer session store."""

    @abstractmethod
    async def save(self, session: TransferSession) -> None:
        """Insert or replace a session snapshot."""
        ...

    @abstractmethod
    async def get(self, session_id: str) -> TransferSession | None:
        """Load a session snapshot by id."""
        ...

    @abstractmethod
    async def list_active(self, source_id: str | None = None) -> list[TransferSession]:
        """List non-terminal sessions, optionally for one source."""
        ...

    @abstractmethod
    async def list_finished_before(self, cutoff: datetime) -> list[TransferSession]:
        """List terminal sessions last updated before cutoff."""
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        """Delete a session snapshot."""
        ...


class InMemoryTransferSessionStore(TransferSessionStore):
    """Process local session store holding deep copies."""

    def __init__(self) -> None:
        self._sessions: dict[str, TransferSession] = {}

    async def save(self, session: TransferSession) -> None:
        self._sessions[session.session_id] = session.model_copy(deep=True)

    async def get(self, session_id: str) -> TransferSession | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def list_active(self, source_id: str | None = None) -> list[TransferSession]:
        return [
            s.model_copy(deep=True)
            for s in self._sessions.values()
            if not s.is_terminal and (source_id is None or s.source_id == source_id)
        ]

    async def list_finished_before(self, cutoff: datetime) -> list[TransferSession]:
        return [
            s.model_copy(deep=True)
            for s in self._sessions.values()
            if s.is_terminal and s.updated_at < cutoff
        ]

    async def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
