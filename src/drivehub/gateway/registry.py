"""Storage source registry.

Persistence boundary for configured storage sources. The gateway only ever
mutates the display name and the enabled flag of an existing source.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime

from drivehub.storage.base import StorageSource


class SourceRegistry(ABC):
    """Abstract storage source registry."""

    @abstractmethod
    async def add(self, source: StorageSource) -> None:
        """Persist a new source.

        Raises:
            ValueError: If the source id is already registered
        """
        ...

    @abstractmethod
    async def get(self, source_id: str) -> StorageSource | None:
        ...

    @abstractmethod
    async def list_for_owner(self, owner_id: str) -> list[StorageSource]:
        ...

    @abstractmethod
    async def update(
        self,
        source_id: str,
        display_name: str | None = None,
        enabled: bool | None = None,
    ) -> StorageSource | None:
        """Update the mutable fields of a source.

        Returns:
            Updated source, or None if it does not exist
        """
        ...

    @abstractmethod
    async def remove(self, source_id: str) -> bool:
        ...


class InMemorySourceRegistry(SourceRegistry):
    """Process local source registry."""

    def __init__(self, sources: list[StorageSource] | None = None) -> None:
        self._sources: dict[str, StorageSource] = {
            source.source_id: source for source in sources or []
        }

    async def add(self, source: StorageSource) -> None:
        if source.source_id in self._sources:
            raise ValueError(f"Source {source.source_id} already registered")
        self._sources[source.source_id] = source.model_copy()

    async def get(self, source_id: str) -> StorageSource | None:
        source = self._sources.get(source_id)
        return source.model_copy() if source else None

    async def list_for_owner(self, owner_id: str) -> list[StorageSource]:
        return [s.model_copy() for s in self._sources.values() if s.owner_id == owner_id]

    async def update(
        self,
        source_id: str,
        display_name: str | None = None,
        enabled: bool | None = None,
    ) -> StorageSource | None:
        source = self._sources.get(source_id)
        if source is None:
            return None

        changes: dict = {"updated_at": datetime.now(UTC)}
        if display_name is not None:
            changes["display_name"] = display_name
        if enabled is not None:
            changes["enabled"] = enabled

        updated = source.model_copy(update=changes)
        self._sources[source_id] = updated
        return updated.model_copy()

    async def remove(self, source_id: str) -> bool:
        return self._sources.pop(source_id, None) is not None
