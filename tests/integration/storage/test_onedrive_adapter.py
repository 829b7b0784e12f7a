"""Tests for the OneDrive adapter against a mocked Graph API."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import httpx
import pytest
import respx
from pydantic import SecretStr

from drivehub.security.credential_store import Credential, CredentialType
from drivehub.storage.base import EntryKind, MultipartUpload, ProviderKind
from drivehub.storage.exceptions import (
    AuthExpiredError,
    ConflictError,
    InvalidCursorError,
    NotFoundError,
    QuotaExceededError,
    ThrottledError,
)
from drivehub.storage.onedrive import GRAPH_BASE_URL, OneDriveAdapter
from tests.helpers import make_source

DRIVE = f"{GRAPH_BASE_URL}/drives/drive-1"
UPLOAD_URL = "https://upload.example.sharepoint.com/session/abc"

FILE_ITEM = {
    "id": "item-a",
    "name": "a.txt",
    "size": 3,
    "eTag": '"{A},1"',
    "lastModifiedDateTime": "2026-03-01T10:00:00Z",
    "file": {"hashes": {"quickXorHash": "qx"}},
}
FOLDER_ITEM = {"id": "item-docs", "name": "docs", "folder": {"childCount": 1}}


async def credentials() -> Credential:
    return Credential(
        credential_id="cred-od",
        source_id="od",
        credential_type=CredentialType.MICROSOFT_OAUTH2,
        version=1,
        secrets={"access_token": SecretStr("tok-1")},
    )


@pytest.fixture
async def adapter() -> AsyncGenerator[OneDriveAdapter, None]:
    client = httpx.AsyncClient()
    source = make_source("od", provider_kind=ProviderKind.ONEDRIVE, root_scope="drive-1")
    yield OneDriveAdapter(source, credentials, client)
    await client.aclose()


@pytest.fixture
def graph():
    with respx.mock(assert_all_called=False) as mock:
        yield mock


class TestOneDriveListing:
    """Test listing and continuation."""

    async def test_list_root(self, adapter: OneDriveAdapter, graph) -> None:
        """Test children map to entries and nextLink becomes the native token."""
        next_link = f"{DRIVE}/root/children?$skiptoken=s1"
        route = graph.get(f"{DRIVE}/root/children").mock(
            return_value=httpx.Response(200, json={"value": [FOLDER_ITEM, FILE_ITEM], "@odata.nextLink": next_link})
        )

        page = await adapter.list_folder("/", 2)

        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer tok-1"
        assert request.url.params["$top"] == "2"
        assert [(e.path, e.kind) for e in page.entries] == [
            ("/docs", EntryKind.FOLDER),
            ("/a.txt", EntryKind.FILE),
        ]
        assert page.entries[1].content_hash == "qx"
        assert page.native_token == next_link

    async def test_follow_next_link(self, adapter: OneDriveAdapter, graph) -> None:
        next_link = f"{DRIVE}/root/children?$skiptoken=s1"
        graph.get(next_link).mock(return_value=httpx.Response(200, json={"value": [FILE_ITEM]}))

        page = await adapter.list_folder("/", 2, native_token=next_link)

        assert [e.name for e in page.entries] == ["a.txt"]
        assert page.native_token is None

    async def test_foreign_token_rejected(self, adapter: OneDriveAdapter, graph) -> None:
        """Test continuation tokens must point at Graph."""
        with pytest.raises(InvalidCursorError):
            await adapter.list_folder("/", 2, native_token="https://evil.example.com/steal")

    async def test_expired_token(self, adapter: OneDriveAdapter, graph) -> None:
        """Test a rejected continuation token maps to an invalid cursor."""
        next_link = f"{DRIVE}/root/children?$skiptoken=old"
        graph.get(next_link).mock(
            return_value=httpx.Response(410, json={"error": {"code": "resyncRequired", "message": "gone"}})
        )

        with pytest.raises(InvalidCursorError):
            await adapter.list_folder("/", 2, native_token=next_link)

    async def test_list_subfolder(self, adapter: OneDriveAdapter, graph) -> None:
        route = graph.get(f"{DRIVE}/root:/docs:/children").mock(
            return_value=httpx.Response(200, json={"value": [FILE_ITEM]})
        )

        page = await adapter.list_folder("/docs", 10)

        assert route.called
        assert page.entries[0].path == "/docs/a.txt"


class TestOneDriveErrors:
    """Test error classification."""

    async def test_not_found(self, adapter: OneDriveAdapter, graph) -> None:
        graph.get(f"{DRIVE}/root:/nope.txt:").mock(
            return_value=httpx.Response(404, json={"error": {"code": "itemNotFound", "message": "nope"}})
        )

        with pytest.raises(NotFoundError) as exc_info:
            await adapter.stat("/nope.txt")

        assert exc_info.value.provider_code == "itemNotFound"
        assert exc_info.value.source_id == "od"

    async def test_unauthorized(self, adapter: OneDriveAdapter, graph) -> None:
        graph.get(f"{DRIVE}/root").mock(
            return_value=httpx.Response(401, json={"error": {"code": "InvalidAuthenticationToken", "message": "expired"}})
        )

        with pytest.raises(AuthExpiredError):
            await adapter.stat("/")

    async def test_throttled(self, adapter: OneDriveAdapter, graph) -> None:
        """Test 429 responses carry Retry-After and record the signal."""
        graph.get(f"{DRIVE}/root").mock(
            return_value=httpx.Response(
                429,
                headers={"Retry-After": "9"},
                json={"error": {"code": "activityLimitReached", "message": "slow"}},
            )
        )

        with pytest.raises(ThrottledError) as exc_info:
            await adapter.stat("/")

        assert exc_info.value.retry_after == 9.0
        assert adapter.rate_limit_signal().retry_after == 9.0

    async def test_quota(self, adapter: OneDriveAdapter, graph) -> None:
        graph.put(f"{DRIVE}/root:/a.txt:/content").mock(
            return_value=httpx.Response(507, json={"error": {"code": "quotaLimitReached", "message": "full"}})
        )

        with pytest.raises(QuotaExceededError):
            await adapter.write("/a.txt", b"abc")

    async def test_name_conflict(self, adapter: OneDriveAdapter, graph) -> None:
        graph.post(f"{DRIVE}/root/children").mock(
            return_value=httpx.Response(409, json={"error": {"code": "nameAlreadyExists", "message": "exists"}})
        )

        with pytest.raises(ConflictError):
            await adapter.create_folder("/docs")


class TestOneDriveFiles:
    """Test file operations."""

    async def test_stat(self, adapter: OneDriveAdapter, graph) -> None:
        graph.get(f"{DRIVE}/root:/a.txt:").mock(return_value=httpx.Response(200, json=FILE_ITEM))

        entry = await adapter.stat("/a.txt")

        assert entry.native_id == "item-a"
        assert entry.size == 3
        assert entry.etag == '"{A},1"'
        assert entry.modified_at.year == 2026

    async def test_write_without_overwrite(self, adapter: OneDriveAdapter, graph) -> None:
        """Test overwrite=False asks Graph to fail on conflicts."""
        route = graph.put(f"{DRIVE}/root:/a.txt:/content").mock(return_value=httpx.Response(201, json=FILE_ITEM))

        await adapter.write("/a.txt", b"abc", overwrite=False, if_match='"{A},0"')

        request = route.calls.last.request
        assert request.url.params["@microsoft.graph.conflictBehavior"] == "fail"
        assert request.headers["If-Match"] == '"{A},0"'
        assert request.content == b"abc"

    async def test_read_range(self, adapter: OneDriveAdapter, graph) -> None:
        route = graph.get(f"{DRIVE}/root:/a.txt:/content").mock(return_value=httpx.Response(206, content=b"bc"))

        stream = await adapter.read("/a.txt", (1, 2))

        assert route.calls.last.request.headers["Range"] == "bytes=1-2"
        assert await stream.read() == b"bc"

    async def test_upload_session(self, adapter: OneDriveAdapter, graph) -> None:
        """Test upload sessions send byte ranges to the pre-authenticated URL."""
        graph.post(f"{DRIVE}/root:/big.bin:/createUploadSession").mock(
            return_value=httpx.Response(200, json={"uploadUrl": UPLOAD_URL, "expirationDateTime": "2026-03-02T00:00:00Z"})
        )
        put = graph.put(UPLOAD_URL).mock(
            side_effect=[
                httpx.Response(202, json={"nextExpectedRanges": ["4-"]}),
                httpx.Response(201, json={**FILE_ITEM, "size": 6}),
            ]
        )
        graph.get(f"{DRIVE}/root:/big.bin:").mock(return_value=httpx.Response(200, json={**FILE_ITEM, "size": 6}))

        upload = await adapter.initiate_multipart("/big.bin", total_size=6)
        await adapter.upload_part(upload, 0, b"abcd", offset=0)
        last = await adapter.upload_part(upload, 1, b"ef", offset=4, is_last=True)
        entry = await adapter.complete_multipart(upload, [])

        first_request, second_request = (call.request for call in put.calls)
        assert first_request.headers["Content-Range"] == "bytes 0-3/6"
        assert second_request.headers["Content-Range"] == "bytes 4-5/6"
        assert "Authorization" not in first_request.headers
        assert last.etag == FILE_ITEM["eTag"]
        assert entry.size == 6

    async def test_upload_session_needs_total(self, adapter: OneDriveAdapter, graph) -> None:
        with pytest.raises(ValueError):
            await adapter.initiate_multipart("/big.bin")

    async def test_incomplete_session(self, adapter: OneDriveAdapter, graph) -> None:
        """Test completion verifies the committed size."""
        graph.get(f"{DRIVE}/root:/big.bin:").mock(return_value=httpx.Response(200, json={**FILE_ITEM, "size": 2}))

        with pytest.raises(ConflictError):
            await adapter.complete_multipart(MultipartUpload(upload_id=UPLOAD_URL, path="/big.bin", total_size=6), [])

    async def test_move(self, adapter: OneDriveAdapter, graph) -> None:
        """Test moves patch the parent reference and name."""
        graph.get(f"{DRIVE}/root:/archive:").mock(return_value=httpx.Response(200, json={"id": "item-archive", "name": "archive", "folder": {}}))
        patch = graph.patch(f"{DRIVE}/root:/a.txt:").mock(return_value=httpx.Response(200, json={**FILE_ITEM, "name": "b.txt"}))

        entry = await adapter.move("/a.txt", "/archive/b.txt")

        assert b'"item-archive"' in patch.calls.last.request.content
        assert entry.path == "/archive/b.txt"

    async def test_share(self, adapter: OneDriveAdapter, graph) -> None:
        route = graph.post(f"{DRIVE}/root:/a.txt:/createLink").mock(
            return_value=httpx.Response(200, json={"link": {"webUrl": "https://1drv.ms/x"}})
        )

        link = await adapter.share("/a.txt", expires_in=3600)

        assert link.url == "https://1drv.ms/x"
        assert link.expires_at is not None
        assert b"expirationDateTime" in route.calls.last.request.content

    async def test_my_drive_when_no_scope(self) -> None:
        source = make_source("od", provider_kind=ProviderKind.ONEDRIVE, root_scope="")

        assert OneDriveAdapter(source, credentials).drive == "/me/drive"
