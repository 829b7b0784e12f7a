"""Adapter factory for creating provider-specific adapters.

Maps a storage source's provider kind to the adapter class serving it.
Builders can be replaced per kind, which is how tests plug in fakes.
"""

from __future__ import annotations

from collections.abc import Callable

import httpx
import structlog

from drivehub.storage.base import (
    CredentialProvider,
    ProviderAdapter,
    ProviderKind,
    StorageSource,
)
from drivehub.storage.memory import MemoryBackend

logger = structlog.get_logger(__name__)

AdapterBuilder = Callable[[StorageSource, CredentialProvider], ProviderAdapter]


class AdapterFactory:
    """Factory for creating storage adapters.

    In-memory sources sharing a ``root_scope`` share one backend, so a
    re-created adapter still sees the data written through its predecessor.
    """

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        """Initialize adapter factory.

        Args:
            http_client: Optional httpx client shared by REST adapters
        """
        self.http_client = http_client
        self._memory_backends: dict[str, MemoryBackend] = {}
        self._builders: dict[ProviderKind, AdapterBuilder] = {
            ProviderKind.S3_COMPATIBLE: self._build_s3,
            ProviderKind.ONEDRIVE: self._build_onedrive,
            ProviderKind.GOOGLE_DRIVE: self._build_gdrive,
            ProviderKind.MEMORY: self._build_memory,
        }

    def register(self, kind: ProviderKind, builder: AdapterBuilder) -> None:
        """Replace the builder used for a provider kind."""
        self._builders[kind] = builder

    def create(
        self,
        source: StorageSource,
        credentials: CredentialProvider,
    ) -> ProviderAdapter:
        """Create storage adapter for a source.

        Args:
            source: Storage source
            credentials: Credential provider bound to the source

        Returns:
            Provider-specific adapter instance

        Raises:
            ValueError: If provider kind is not supported
        """
        builder = self._builders.get(source.provider_kind)
        if builder is None:
            raise ValueError(
                f"Unsupported provider kind: {source.provider_kind}. "
                f"Supported kinds: {', '.join(self.supported_kinds())}"
            )

        adapter = builder(source, credentials)

        logger.info(
            "storage_adapter_created",
            source_id=source.source_id,
            provider=source.provider_kind.value,
        )

        return adapter

    def supported_kinds(self) -> list[str]:
        return [kind.value for kind in self._builders]

    def memory_backend(self, root_scope: str) -> MemoryBackend:
        """Get (or create) the shared in-memory backend for a root scope."""
        return self._memory_backends.setdefault(root_scope, MemoryBackend())

    def _build_s3(self, source: StorageSource, credentials: CredentialProvider) -> ProviderAdapter:
        from drivehub.storage.s3 import S3CompatibleAdapter

        return S3CompatibleAdapter(source, credentials)

    def _build_onedrive(self, source: StorageSource, credentials: CredentialProvider) -> ProviderAdapter:
        from drivehub.storage.onedrive import OneDriveAdapter

        return OneDriveAdapter(source, credentials, self.http_client)

    def _build_gdrive(self, source: StorageSource, credentials: CredentialProvider) -> ProviderAdapter:
        from drivehub.storage.gdrive import GoogleDriveAdapter

        return GoogleDriveAdapter(source, credentials, self.http_client)

    def _build_memory(self, source: StorageSource, credentials: CredentialProvider) -> ProviderAdapter:
        from drivehub.storage.memory import InMemoryAdapter

        return InMemoryAdapter(
            source,
            credentials,
            backend=self.memory_backend(source.root_scope or source.source_id),
            min_part_size=int(source.settings.get("min_part_size", 1)),
        )
