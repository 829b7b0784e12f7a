"""Shared builders for tests."""

from __future__ import annotations

from drivehub.storage.base import ProviderKind, StorageSource


def make_source(
    source_id: str = "src-a",
    owner_id: str = "alice",
    provider_kind: ProviderKind = ProviderKind.MEMORY,
    **overrides,
) -> StorageSource:
    """Build a storage source with test defaults."""
    values = {
        "source_id": source_id,
        "provider_kind": provider_kind,
        "display_name": f"Source {source_id}",
        "root_scope": source_id,
        "owner_id": owner_id,
        "credential_ref": f"cred-{source_id}",
    }
    values.update(overrides)
    return StorageSource(**values)


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
