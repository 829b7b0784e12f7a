"""SQLAlchemy backed source registry and transfer session store."""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from drivehub.database.connection import get_session
from drivehub.database.repositories import (
    StorageSourceRepository,
    TransferSessionRepository,
)
from drivehub.gateway.registry import SourceRegistry
from drivehub.storage.base import StorageSource
from drivehub.transfer.models import TransferSession
from drivehub.transfer.store import TransferSessionStore

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class SQLSourceRegistry(SourceRegistry):
    """Source registry persisted in the ``storage_sources`` table."""

    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session = session_factory

    async def add(self, source: StorageSource) -> None:
        try:
            async with self._session() as session:
                await StorageSourceRepository.create(session, source)
        except IntegrityError as e:
            raise ValueError(f"Source {source.source_id} already registered") from e

    async def get(self, source_id: str) -> StorageSource | None:
        async with self._session() as session:
            row = await StorageSourceRepository.get_by_id(session, source_id)
            return StorageSourceRepository.to_model(row) if row else None

    async def list_for_owner(self, owner_id: str) -> list[StorageSource]:
        async with self._session() as session:
            rows = await StorageSourceRepository.get_by_owner(session, owner_id)
            return [StorageSourceRepository.to_model(row) for row in rows]

    async def update(
        self,
        source_id: str,
        display_name: str | None = None,
        enabled: bool | None = None,
    ) -> StorageSource | None:
        async with self._session() as session:
            updated = await StorageSourceRepository.update(
                session, source_id, display_name=display_name, enabled=enabled
            )
            if not updated:
                return None
            row = await StorageSourceRepository.get_by_id(session, source_id)
            return StorageSourceRepository.to_model(row)

    async def remove(self, source_id: str) -> bool:
        async with self._session() as session:
            return await StorageSourceRepository.delete(session, source_id)


class SQLTransferSessionStore(TransferSessionStore):
    """Transfer session store persisted in the ``transfer_sessions`` table."""

    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session = session_factory

    async def save(self, transfer: TransferSession) -> None:
        async with self._session() as session:
            await TransferSessionRepository.save(session, transfer)

    async def get(self, session_id: str) -> TransferSession | None:
        async with self._session() as session:
            row = await TransferSessionRepository.get_by_id(session, session_id)
            return TransferSessionRepository.to_model(row) if row else None

    async def list_active(self, source_id: str | None = None) -> list[TransferSession]:
        async with self._session() as session:
            rows = await TransferSessionRepository.get_active(session, source_id)
            return [TransferSessionRepository.to_model(row) for row in rows]

    async def list_finished_before(self, cutoff: datetime) -> list[TransferSession]:
        async with self._session() as session:
            rows = await TransferSessionRepository.get_finished_before(session, cutoff)
            return [TransferSessionRepository.to_model(row) for row in rows]

    async def delete(self, session_id: str) -> None:
        async with self._session() as session:
            await TransferSessionRepository.delete(session, session_id)
