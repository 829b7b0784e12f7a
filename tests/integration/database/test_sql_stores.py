"""Integration tests for the SQL source registry and transfer session store."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from drivehub.database.stores import SQLSourceRegistry, SQLTransferSessionStore
from drivehub.storage.base import MultipartUpload, ProviderKind
from drivehub.transfer.models import PartDescriptor, TransferSession, TransferState
from tests.helpers import make_source

pytestmark = pytest.mark.integration


def make_session(session_id: str, state: TransferState = TransferState.INITIATED, **overrides) -> TransferSession:
    values = {
        "session_id": session_id,
        "owner_id": "alice",
        "source_id": "src-a",
        "path": "/big.bin",
        "total_size": 30,
        "part_size": 10,
        "expected_parts": 3,
        "state": state,
    }
    values.update(overrides)
    return TransferSession(**values)


class TestSQLSourceRegistry:
    """Test source persistence."""

    async def test_add_and_get(self, database) -> None:
        registry = SQLSourceRegistry()
        source = make_source(
            "s3-main",
            provider_kind=ProviderKind.S3_COMPATIBLE,
            settings={"region": "eu-west-1", "addressing_style": "path"},
        )

        await registry.add(source)
        loaded = await registry.get("s3-main")

        assert loaded is not None
        assert loaded.provider_kind == ProviderKind.S3_COMPATIBLE
        assert loaded.settings == {"region": "eu-west-1", "addressing_style": "path"}
        assert loaded.credential_ref == "cred-s3-main"
        assert loaded.created_at.tzinfo is not None

    async def test_duplicate_rejected(self, database) -> None:
        registry = SQLSourceRegistry()
        await registry.add(make_source("a"))

        with pytest.raises(ValueError):
            await registry.add(make_source("a"))

    async def test_missing(self, database) -> None:
        assert await SQLSourceRegistry().get("nope") is None

    async def test_list_for_owner(self, database) -> None:
        registry = SQLSourceRegistry()
        await registry.add(make_source("a"))
        await registry.add(make_source("b", owner_id="bob"))
        await registry.add(make_source("c"))

        sources = await registry.list_for_owner("alice")

        assert sorted(s.source_id for s in sources) == ["a", "c"]

    async def test_update(self, database) -> None:
        registry = SQLSourceRegistry()
        await registry.add(make_source("a"))

        updated = await registry.update("a", display_name="Renamed", enabled=False)

        assert updated.display_name == "Renamed"
        assert updated.enabled is False
        assert (await registry.get("a")).enabled is False

    async def test_update_missing(self, database) -> None:
        assert await SQLSourceRegistry().update("nope", display_name="x") is None

    async def test_remove(self, database) -> None:
        registry = SQLSourceRegistry()
        await registry.add(make_source("a"))

        assert await registry.remove("a") is True
        assert await registry.remove("a") is False
        assert await registry.get("a") is None


class TestSQLTransferSessionStore:
    """Test transfer session persistence."""

    async def test_round_trip(self, database) -> None:
        """Test parts and the provider handle survive a save and load."""
        store = SQLTransferSessionStore()
        session = make_session(
            "t-1",
            state=TransferState.IN_PROGRESS,
            upload=MultipartUpload(
                upload_id="up-1",
                path="/big.bin",
                total_size=30,
                provider_state={"key": "team/big.bin"},
            ),
        )
        session.completed_parts[2] = PartDescriptor(index=2, offset=20, size=10, checksum="c2", etag='"e2"')

        await store.save(session)
        loaded = await store.get("t-1")

        assert loaded.state == TransferState.IN_PROGRESS
        assert loaded.completed_parts == {2: session.completed_parts[2]}
        assert loaded.upload.provider_state == {"key": "team/big.bin"}
        assert loaded.missing_parts() == [0, 1]

    async def test_save_replaces(self, database) -> None:
        store = SQLTransferSessionStore()
        session = make_session("t-1")
        await store.save(session)

        session.state = TransferState.FAILED
        session.error_kind = "quota_exceeded"
        await store.save(session)

        loaded = await store.get("t-1")
        assert loaded.state == TransferState.FAILED
        assert loaded.error_kind == "quota_exceeded"

    async def test_list_active(self, database) -> None:
        store = SQLTransferSessionStore()
        await store.save(make_session("t-1"))
        await store.save(make_session("t-2", state=TransferState.COMPLETED))
        await store.save(make_session("t-3", state=TransferState.FAILED, source_id="src-b"))

        assert sorted(s.session_id for s in await store.list_active()) == ["t-1", "t-3"]
        assert [s.session_id for s in await store.list_active("src-b")] == ["t-3"]

    async def test_list_finished_before(self, database) -> None:
        store = SQLTransferSessionStore()
        old = datetime.now(UTC) - timedelta(days=10)
        await store.save(make_session("t-1", state=TransferState.ABORTED, updated_at=old))
        await store.save(make_session("t-2", state=TransferState.COMPLETED))
        await store.save(make_session("t-3", updated_at=old))

        finished = await store.list_finished_before(datetime.now(UTC) - timedelta(days=7))

        assert [s.session_id for s in finished] == ["t-1"]

    async def test_delete(self, database) -> None:
        store = SQLTransferSessionStore()
        await store.save(make_session("t-1"))

        await store.delete("t-1")

        assert await store.get("t-1") is None
