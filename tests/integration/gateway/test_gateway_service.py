"""Tests for the storage gateway over in-memory sources."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta

import pytest

from drivehub.gateway.models import GatewayConfig
from drivehub.gateway.registry import InMemorySourceRegistry
from drivehub.gateway.service import StorageGateway
from drivehub.resilience.governor import Governor
from drivehub.resilience.rate_limiter import LocalBucketBackend, TokenBucketLimiter
from drivehub.security.credential_store import EncryptedCredentialStore
from drivehub.storage.base import EntryKind, StorageSource
from drivehub.storage.exceptions import (
    AuthExpiredError,
    ConflictError,
    ErrorKind,
    InvalidCursorError,
    NotFoundError,
    OperationCancelledError,
    PermissionDeniedError,
    SourceDisabledError,
    StorageTimeoutError,
    ThrottledError,
    UnavailableError,
)
from drivehub.transfer.models import TransferState
from tests.helpers import SleepRecorder, make_source

pytestmark = pytest.mark.integration


async def read_all(gateway: StorageGateway, source_id: str, path: str, user_id: str = "alice") -> bytes:
    stream = await gateway.read_file(user_id, source_id, path)
    return await stream.read()


async def chunks(*parts: bytes) -> AsyncIterator[bytes]:
    for part in parts:
        yield part


class TestFileOperations:
    """Test single-source file operations."""

    async def test_write_stat_read(self, gateway: StorageGateway) -> None:
        """Test a small write is readable with matching metadata."""
        written = await gateway.write_file("alice", "src-a", "/docs/hello.txt", b"hello")

        entry = await gateway.stat_entry("alice", "src-a", "docs/hello.txt")

        assert written.source_id == "src-a"
        assert entry.size == 5
        assert entry.kind == EntryKind.FILE
        assert entry.source_id == "src-a"
        assert await read_all(gateway, "src-a", "/docs/hello.txt") == b"hello"

    async def test_read_range(self, gateway: StorageGateway) -> None:
        """Test inclusive byte ranges."""
        await gateway.write_file("alice", "src-a", "/a.bin", b"0123456789")

        stream = await gateway.read_file("alice", "src-a", "/a.bin", byte_range=(2, 5))

        assert await stream.read() == b"2345"

    async def test_invalid_range(self, gateway: StorageGateway) -> None:
        """Test inverted ranges are rejected before dispatch."""
        with pytest.raises(ValueError):
            await gateway.read_file("alice", "src-a", "/a.bin", byte_range=(5, 2))

    async def test_stat_missing(self, gateway: StorageGateway) -> None:
        """Test missing paths surface as not found with the source id."""
        with pytest.raises(NotFoundError) as exc_info:
            await gateway.stat_entry("alice", "src-a", "/nope.txt")

        assert exc_info.value.source_id == "src-a"

    async def test_write_without_overwrite(self, gateway: StorageGateway) -> None:
        """Test overwrite=False refuses to replace an existing file."""
        await gateway.write_file("alice", "src-a", "/a.txt", b"one")

        with pytest.raises(ConflictError):
            await gateway.write_file("alice", "src-a", "/a.txt", b"two", overwrite=False)

        assert await read_all(gateway, "src-a", "/a.txt") == b"one"

    async def test_write_if_match(self, gateway: StorageGateway) -> None:
        """Test etag preconditions on small writes."""
        first = await gateway.write_file("alice", "src-a", "/a.txt", b"one")

        await gateway.write_file("alice", "src-a", "/a.txt", b"two", if_match=first.etag)
        with pytest.raises(ConflictError):
            await gateway.write_file("alice", "src-a", "/a.txt", b"three", if_match=first.etag)

    async def test_small_stream_buffered(self, gateway: StorageGateway) -> None:
        """Test a small stream with a declared size is written in one request."""
        adapter = await gateway.adapter_for("alice", "src-a")

        await gateway.write_file("alice", "src-a", "/s.txt", chunks(b"ab", b"cd"), size=4)

        assert "write" in adapter.calls
        assert "initiate_multipart" not in adapter.calls
        assert await read_all(gateway, "src-a", "/s.txt") == b"abcd"

    async def test_declared_size_mismatch(self, gateway: StorageGateway) -> None:
        """Test a stream shorter than its declared size is rejected."""
        with pytest.raises(ValueError):
            await gateway.write_file("alice", "src-a", "/s.txt", chunks(b"ab"), size=4)

    async def test_delete(self, gateway: StorageGateway) -> None:
        """Test deleting a file."""
        await gateway.write_file("alice", "src-a", "/a.txt", b"x")

        await gateway.delete_entry("alice", "src-a", "/a.txt")

        with pytest.raises(NotFoundError):
            await gateway.stat_entry("alice", "src-a", "/a.txt")

    async def test_delete_root_rejected(self, gateway: StorageGateway) -> None:
        """Test the source root can never be deleted."""
        with pytest.raises(ValueError):
            await gateway.delete_entry("alice", "src-a", "/")

    async def test_move(self, gateway: StorageGateway) -> None:
        """Test moving a file into a new folder."""
        await gateway.write_file("alice", "src-a", "/a.txt", b"x")

        moved = await gateway.move_entry("alice", "src-a", "/a.txt", "/archive/b.txt")

        assert moved.path == "/archive/b.txt"
        assert moved.source_id == "src-a"
        assert await read_all(gateway, "src-a", "/archive/b.txt") == b"x"

    async def test_move_conflict(self, gateway: StorageGateway) -> None:
        """Test moving onto an existing entry without overwrite."""
        await gateway.write_file("alice", "src-a", "/a.txt", b"x")
        await gateway.write_file("alice", "src-a", "/b.txt", b"y")

        with pytest.raises(ConflictError):
            await gateway.move_entry("alice", "src-a", "/a.txt", "/b.txt")

    async def test_move_into_itself_rejected(self, gateway: StorageGateway) -> None:
        """Test a folder cannot move into its own subtree."""
        await gateway.create_folder("alice", "src-a", "/docs")

        with pytest.raises(ValueError):
            await gateway.move_entry("alice", "src-a", "/docs", "/docs/inner")

    async def test_create_folder(self, gateway: StorageGateway) -> None:
        """Test folder creation and duplicate detection."""
        folder = await gateway.create_folder("alice", "src-a", "/photos/2026")

        assert folder.kind == EntryKind.FOLDER
        with pytest.raises(ConflictError):
            await gateway.create_folder("alice", "src-a", "/photos/2026")

    async def test_share(self, gateway: StorageGateway) -> None:
        """Test share links with and without expiry."""
        await gateway.write_file("alice", "src-a", "/a.txt", b"x")

        link = await gateway.share_entry("alice", "src-a", "/a.txt", expires_in=60)

        assert link.url.startswith("memory://")
        assert link.expires_at is not None
        with pytest.raises(ValueError):
            await gateway.share_entry("alice", "src-a", "/a.txt", expires_in=0)


class TestListing:
    """Test paginated and federated listings."""

    @pytest.fixture
    async def docs(self, gateway: StorageGateway) -> None:
        for name in ("a.txt", "b.txt", "c.txt"):
            await gateway.write_file("alice", "src-a", f"/docs/{name}", name.encode())
            await gateway.write_file("alice", "src-b", f"/docs/{name}", name.encode())

    async def test_pagination(self, gateway: StorageGateway, docs: None) -> None:
        """Test cursors walk the folder page by page."""
        first = await gateway.list_folder("alice", "src-a", "/docs")
        second = await gateway.list_folder("alice", "src-a", "/docs", cursor=first.next_cursor)

        assert [e.name for e in first.entries] == ["a.txt", "b.txt"]
        assert first.next_cursor is not None
        assert [e.name for e in second.entries] == ["c.txt"]
        assert second.next_cursor is None
        assert all(e.source_id == "src-a" for e in first.entries + second.entries)

    async def test_page_size_clamped(self, gateway: StorageGateway, docs: None) -> None:
        """Test oversized page requests are clamped, not rejected."""
        page = await gateway.list_folder("alice", "src-a", "/docs", page_size=10_000)

        assert len(page.entries) == 3
        assert page.next_cursor is None

    async def test_cursor_bound_to_source(self, gateway: StorageGateway, docs: None) -> None:
        """Test a cursor from one source is rejected by another."""
        first = await gateway.list_folder("alice", "src-a", "/docs")

        with pytest.raises(InvalidCursorError):
            await gateway.list_folder("alice", "src-b", "/docs", cursor=first.next_cursor)

    async def test_cursor_bound_to_listing(self, gateway: StorageGateway, docs: None) -> None:
        """Test a cursor cannot continue a listing of another folder."""
        first = await gateway.list_folder("alice", "src-a", "/docs")

        with pytest.raises(InvalidCursorError):
            await gateway.list_folder("alice", "src-a", "/", cursor=first.next_cursor)

    async def test_list_missing_folder(self, gateway: StorageGateway) -> None:
        """Test listing a missing folder."""
        with pytest.raises(NotFoundError):
            await gateway.list_folder("alice", "src-a", "/nope")

    async def test_federated(self, gateway: StorageGateway, docs: None) -> None:
        """Test federated listings merge sources and continue per source."""
        first = await gateway.list_federated("alice", ["src-a", "src-b"], "/docs")

        assert not first.partial
        assert len(first.entries) == 4
        assert {e.source_id for e in first.entries} == {"src-a", "src-b"}
        assert set(first.next_cursors) == {"src-a", "src-b"}

        second = await gateway.list_federated(
            "alice", ["src-a", "src-b"], "/docs", cursors=first.next_cursors
        )

        assert sorted((e.source_id, e.name) for e in second.entries) == [
            ("src-a", "c.txt"),
            ("src-b", "c.txt"),
        ]
        assert second.next_cursors == {}

    async def test_federated_partial_failure(
        self, gateway: StorageGateway, docs: None, sleep: SleepRecorder
    ) -> None:
        """Test a failing source is reported while the others still list."""
        adapter = await gateway.adapter_for("alice", "src-b")
        adapter.inject_failures("list_folder", *[UnavailableError("down") for _ in range(5)])

        listing = await gateway.list_federated("alice", ["src-a", "src-b"], "/docs")

        assert listing.partial
        assert [e.source_id for e in listing.entries] == ["src-a", "src-a"]
        assert len(listing.failures) == 1
        assert listing.failures[0].source_id == "src-b"
        assert listing.failures[0].kind == ErrorKind.UNAVAILABLE
        assert len(sleep.delays) == 4

    async def test_federated_timeout(self, gateway: StorageGateway, docs: None) -> None:
        """Test a slow source times out without holding back the rest."""
        adapter = await gateway.adapter_for("alice", "src-b")
        adapter.latency = 1.0

        listing = await gateway.list_federated("alice", ["src-a", "src-b"], "/docs", timeout=0.05)

        assert listing.partial
        assert listing.failures[0].kind == ErrorKind.TIMEOUT
        assert {e.source_id for e in listing.entries} == {"src-a"}

    async def test_federated_foreign_source_reported(self, gateway: StorageGateway, docs: None) -> None:
        """Test another user's source shows up as a not-found failure."""
        listing = await gateway.list_federated("alice", ["src-a", "src-bob"], "/docs")

        assert listing.failures[0].source_id == "src-bob"
        assert listing.failures[0].kind == ErrorKind.NOT_FOUND
        assert len(listing.entries) == 2


class TestOwnershipAndLifecycle:
    """Test source ownership and lifecycle."""

    async def test_other_users_source_not_found(self, gateway: StorageGateway) -> None:
        """Test a user cannot reach another user's source."""
        with pytest.raises(NotFoundError):
            await gateway.stat_entry("bob", "src-a", "/")
        with pytest.raises(NotFoundError):
            await gateway.rename_source("bob", "src-a", "mine now")

    async def test_list_sources(self, gateway: StorageGateway) -> None:
        """Test users only see their own sources."""
        assert {s.source_id for s in await gateway.list_sources("alice")} == {"src-a", "src-b"}
        assert [s.source_id for s in await gateway.list_sources("bob")] == ["src-bob"]

    async def test_duplicate_registration(self, gateway: StorageGateway) -> None:
        """Test source ids are unique."""
        with pytest.raises(ValueError):
            await gateway.register_source(make_source("src-a"))

    async def test_rename(self, gateway: StorageGateway) -> None:
        """Test renaming a source."""
        renamed = await gateway.rename_source("alice", "src-a", "Work")

        assert renamed.display_name == "Work"

    async def test_disable_and_enable(self, gateway: StorageGateway) -> None:
        """Test a disabled source rejects operations until re-enabled."""
        await gateway.write_file("alice", "src-a", "/a.txt", b"x")

        await gateway.set_source_enabled("alice", "src-a", False)
        with pytest.raises(SourceDisabledError):
            await gateway.stat_entry("alice", "src-a", "/a.txt")

        await gateway.set_source_enabled("alice", "src-a", True)
        entry = await gateway.stat_entry("alice", "src-a", "/a.txt")
        assert entry.size == 1

    async def test_revoked_credential_disables_source(
        self, gateway: StorageGateway, credential_store: EncryptedCredentialStore
    ) -> None:
        """Test revoking the credential drops the adapter and disables the source."""
        adapter = await gateway.adapter_for("alice", "src-a")
        await adapter.connect()

        await credential_store.revoke("src-a")

        assert not adapter.is_connected()
        with pytest.raises(SourceDisabledError):
            await gateway.stat_entry("alice", "src-a", "/")

    async def test_remove_source_aborts_transfers(self, gateway: StorageGateway) -> None:
        """Test removing a source aborts its open sessions."""
        session = await gateway.transfers.start_upload("alice", "src-a", "/big.bin", total_size=100)

        await gateway.remove_source("alice", "src-a")

        assert (await gateway.transfers.get_session("alice", session.session_id)).state == TransferState.ABORTED
        with pytest.raises(NotFoundError):
            await gateway.stat_entry("alice", "src-a", "/")

    async def test_health_check(self, gateway: StorageGateway) -> None:
        assert await gateway.health_check("alice", "src-a")

    async def test_close_disconnects(self, gateway: StorageGateway) -> None:
        """Test close disconnects cached adapters."""
        await gateway.stat_entry("alice", "src-a", "/")
        adapter = await gateway.adapter_for("alice", "src-a")

        await gateway.close()

        assert not adapter.is_connected()

    async def test_maintenance_aborts_idle_sessions(self, gateway: StorageGateway) -> None:
        """Test maintenance aborts idle transfers when no limiter is configured."""
        session = await gateway.transfers.start_upload("alice", "src-a", "/big.bin", total_size=100)

        result = await gateway.run_maintenance(now=datetime.now(UTC) + timedelta(days=2))

        assert result == {"aborted": 1, "purged": 0, "buckets_purged": 0}
        assert (await gateway.transfers.get_session("alice", session.session_id)).state == TransferState.ABORTED

    async def test_maintenance_purges_idle_buckets(
        self,
        credential_store: EncryptedCredentialStore,
        gateway_config: GatewayConfig,
        add_source: Callable[..., StorageSource],
        sleep: SleepRecorder,
    ) -> None:
        """Test maintenance drops rate limit buckets of sources gone quiet."""
        clock = [0.0]
        limiter = TokenBucketLimiter(
            LocalBucketBackend(idle_ttl_seconds=60.0, clock=lambda: clock[0]),
            sleep=sleep,
        )
        gateway = StorageGateway(
            registry=InMemorySourceRegistry(),
            credentials=credential_store,
            governor=Governor(gateway_config.retry, limiter=limiter, sleep=sleep),
            config=gateway_config,
        )
        await gateway.register_source(add_source("src-a", "alice"))
        await gateway.stat_entry("alice", "src-a", "/")

        assert (await gateway.run_maintenance())["buckets_purged"] == 0

        clock[0] += 61.0
        assert (await gateway.run_maintenance())["buckets_purged"] == 1
        assert len(limiter.backend) == 0


class TestDispatchResilience:
    """Test retries, credential refresh, timeouts and cancellation."""

    async def test_transient_failures_retried(self, gateway: StorageGateway, sleep: SleepRecorder) -> None:
        """Test transient failures are retried with growing backoff."""
        await gateway.write_file("alice", "src-a", "/a.txt", b"x")
        adapter = await gateway.adapter_for("alice", "src-a")
        adapter.inject_failures("stat", UnavailableError("blip"), UnavailableError("blip"))

        entry = await gateway.stat_entry("alice", "src-a", "/a.txt")

        assert entry.size == 1
        assert sleep.delays == [0.01, 0.02]

    async def test_earlier_retry_after_not_reused(self, gateway: StorageGateway, sleep: SleepRecorder) -> None:
        """Test a throttle hint from a past call does not stretch later backoff."""
        await gateway.write_file("alice", "src-a", "/a.txt", b"x")
        adapter = await gateway.adapter_for("alice", "src-a")
        adapter.inject_failures("stat", ThrottledError("slow", retry_after=60.0))
        await gateway.stat_entry("alice", "src-a", "/a.txt")

        adapter.inject_failures("stat", UnavailableError("blip"))
        await gateway.stat_entry("alice", "src-a", "/a.txt")

        assert sleep.delays == [60.0, 0.01]

    async def test_auth_expired_refreshes_once(self, gateway: StorageGateway) -> None:
        """Test an expired credential is refreshed and the call re-dispatched."""
        adapter = await gateway.adapter_for("alice", "src-a")
        adapter.inject_failures("stat", AuthExpiredError("token expired", status_code=401))

        entry = await gateway.stat_entry("alice", "src-a", "/")

        assert entry.kind == EntryKind.FOLDER
        assert adapter.calls == ["stat", "stat"]

    async def test_auth_expired_twice_is_permission_denied(self, gateway: StorageGateway) -> None:
        """Test a refreshed credential that is still rejected surfaces as permission denied."""
        adapter = await gateway.adapter_for("alice", "src-a")
        adapter.inject_failures(
            "stat",
            AuthExpiredError("token expired", status_code=401),
            AuthExpiredError("token expired", status_code=401),
        )

        with pytest.raises(PermissionDeniedError) as exc_info:
            await gateway.stat_entry("alice", "src-a", "/")

        assert not isinstance(exc_info.value, AuthExpiredError)
        assert exc_info.value.source_id == "src-a"

    async def test_timeout(self, gateway: StorageGateway) -> None:
        """Test slow provider calls time out."""
        adapter = await gateway.adapter_for("alice", "src-a")
        adapter.latency = 1.0

        with pytest.raises(StorageTimeoutError) as exc_info:
            await gateway.stat_entry("alice", "src-a", "/", timeout=0.05)

        assert exc_info.value.kind == ErrorKind.TIMEOUT
        assert exc_info.value.source_id == "src-a"

    async def test_cancel_in_flight(self, gateway: StorageGateway) -> None:
        """Test setting the cancel event stops an in-flight call."""
        adapter = await gateway.adapter_for("alice", "src-a")
        adapter.latency = 5.0
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.02, cancel.set)

        with pytest.raises(OperationCancelledError):
            await gateway.stat_entry("alice", "src-a", "/", cancel=cancel)

    async def test_cancel_before_start(self, gateway: StorageGateway) -> None:
        """Test a pre-set cancel event prevents the provider call."""
        adapter = await gateway.adapter_for("alice", "src-a")
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(OperationCancelledError):
            await gateway.stat_entry("alice", "src-a", "/", cancel=cancel)

        assert adapter.calls == []


class TestLargeWrites:
    """Test writes routed through transfer sessions."""

    async def test_large_bytes_use_multipart(self, gateway: StorageGateway) -> None:
        """Test content over the threshold is uploaded in parts."""
        data = bytes(range(100))
        adapter = await gateway.adapter_for("alice", "src-a")

        entry = await gateway.write_file("alice", "src-a", "/big.bin", data)

        assert entry.size == 100
        assert entry.source_id == "src-a"
        assert adapter.calls.count("upload_part") == 7
        assert adapter.calls[-1] == "complete_multipart"
        assert await read_all(gateway, "src-a", "/big.bin") == data

    async def test_unknown_size_stream(self, gateway: StorageGateway) -> None:
        """Test a stream of unknown size is uploaded through a session."""
        parts = [bytes([i]) * 30 for i in range(4)]

        entry = await gateway.write_file("alice", "src-a", "/stream.bin", chunks(*parts))

        assert entry.size == 120
        assert await read_all(gateway, "src-a", "/stream.bin") == b"".join(parts)

    async def test_large_write_precondition(self, gateway: StorageGateway) -> None:
        """Test overwrite=False is enforced before a multipart upload starts."""
        await gateway.write_file("alice", "src-a", "/big.bin", b"small")
        adapter = await gateway.adapter_for("alice", "src-a")

        with pytest.raises(ConflictError):
            await gateway.write_file("alice", "src-a", "/big.bin", b"x" * 100, overwrite=False)

        assert "initiate_multipart" not in adapter.calls

    async def test_failed_stream_aborts_session(self, gateway: StorageGateway) -> None:
        """Test a failing upload leaves no open session behind."""
        adapter = await gateway.adapter_for("alice", "src-a")
        adapter.inject_failures("complete_multipart", ConflictError("rejected"))

        with pytest.raises(ConflictError):
            await gateway.write_file("alice", "src-a", "/big.bin", b"x" * 100)

        assert await gateway.transfers.store.list_active() == []
        assert "abort_multipart" in adapter.calls
