"""Root-level pytest configuration for all tests."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from drivehub.gateway.models import GatewayConfig
from drivehub.gateway.registry import InMemorySourceRegistry
from drivehub.gateway.service import StorageGateway
from drivehub.resilience.governor import Governor
from drivehub.resilience.models import RetryPolicy
from drivehub.security.credential_store import CredentialType, EncryptedCredentialStore
from drivehub.storage.base import StorageSource
from drivehub.transfer.models import TransferConfig
from tests.helpers import SleepRecorder, make_source


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def credential_store() -> EncryptedCredentialStore:
    """Credential store with cheap key derivation."""
    return EncryptedCredentialStore(pbkdf2_iterations=1000)


@pytest.fixture
def gateway_config() -> GatewayConfig:
    """Small multipart threshold so tests exercise transfer sessions."""
    return GatewayConfig(
        default_page_size=2,
        max_page_size=50,
        retry=RetryPolicy(max_attempts=5, initial_backoff_seconds=0.01, jitter=False),
        transfer=TransferConfig(multipart_threshold=64, default_part_size=16),
    )


@pytest.fixture
def add_source(
    credential_store: EncryptedCredentialStore,
) -> Callable[..., StorageSource]:
    """Store a credential for a source built by ``make_source``."""

    def _add(source_id: str = "src-a", owner_id: str = "alice", **overrides) -> StorageSource:
        source = make_source(source_id, owner_id, **overrides)
        credential_store.store(
            source_id,
            CredentialType.ACCESS_KEY,
            {"access_key_id": "AKIA", "secret_access_key": "secret"},
            credential_id=source.credential_ref,
        )
        return source

    return _add


@pytest.fixture
async def gateway(
    credential_store: EncryptedCredentialStore,
    gateway_config: GatewayConfig,
    add_source: Callable[..., StorageSource],
    sleep: SleepRecorder,
) -> StorageGateway:
    """Gateway over two in-memory sources owned by alice and one owned by bob."""
    gateway = StorageGateway(
        registry=InMemorySourceRegistry(),
        credentials=credential_store,
        governor=Governor(gateway_config.retry, sleep=sleep),
        config=gateway_config,
    )
    for source_id, owner in (("src-a", "alice"), ("src-b", "alice"), ("src-bob", "bob")):
        await gateway.register_source(add_source(source_id, owner))
    return gateway
