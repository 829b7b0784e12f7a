"""Tests for the Google Drive adapter against a mocked Drive v3 API."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import httpx
import pytest
import respx
from pydantic import SecretStr

from drivehub.security.credential_store import Credential, CredentialType
from drivehub.storage.base import EntryKind, MultipartUpload, PartReceipt, ProviderKind
from drivehub.storage.exceptions import (
    ConflictError,
    InvalidCursorError,
    NotFoundError,
    QuotaExceededError,
    ThrottledError,
    UnavailableError,
    UnknownError,
)
from drivehub.storage.gdrive import (
    DRIVE_BASE_URL,
    DRIVE_UPLOAD_URL,
    FOLDER_MIME_TYPE,
    GoogleDriveAdapter,
)
from tests.helpers import make_source

SESSION_URL = f"{DRIVE_UPLOAD_URL}/files?uploadType=resumable&upload_id=sess-1"

DOCS = {"id": "f-docs", "name": "docs", "mimeType": FOLDER_MIME_TYPE}
REPORT = {
    "id": "f-report",
    "name": "report.txt",
    "mimeType": "text/plain",
    "size": "11",
    "version": "7",
    "modifiedTime": "2026-03-01T10:00:00.000Z",
    "md5Checksum": "abc123",
}


async def credentials() -> Credential:
    return Credential(
        credential_id="cred-gd",
        source_id="gd",
        credential_type=CredentialType.GOOGLE_OAUTH2,
        version=1,
        secrets={"access_token": SecretStr("tok-g")},
    )


def drive_error(status: int, reason: str, headers: dict[str, str] | None = None) -> httpx.Response:
    return httpx.Response(
        status,
        headers=headers,
        json={"error": {"code": status, "message": reason, "errors": [{"reason": reason}]}},
    )


class FileIndex:
    """Answers Drive name lookups from a (parent id, name) table."""

    def __init__(self, items: dict[tuple[str, str], dict]) -> None:
        self.items = items
        self.queries: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        query = request.url.params["q"]
        self.queries.append(query)
        for (parent_id, name), item in self.items.items():
            if f"'{parent_id}' in parents and name = '{name}'" in query:
                return httpx.Response(200, json={"files": [item]})
        return httpx.Response(200, json={"files": []})


@pytest.fixture
async def adapter() -> AsyncGenerator[GoogleDriveAdapter, None]:
    client = httpx.AsyncClient()
    source = make_source("gd", provider_kind=ProviderKind.GOOGLE_DRIVE, root_scope="root-id")
    yield GoogleDriveAdapter(source, credentials, client)
    await client.aclose()


@pytest.fixture
def drive():
    with respx.mock(assert_all_called=False) as mock:
        yield mock


@pytest.fixture
def index(drive) -> FileIndex:
    lookup = FileIndex({("root-id", "docs"): DOCS, ("f-docs", "report.txt"): REPORT})
    drive.get(f"{DRIVE_BASE_URL}/files").mock(side_effect=lookup)
    return lookup


class TestPathResolution:
    """Test resolving logical paths to Drive file ids."""

    async def test_stat_nested_file(self, adapter: GoogleDriveAdapter, drive, index: FileIndex) -> None:
        route = drive.get(f"{DRIVE_BASE_URL}/files/f-report").mock(return_value=httpx.Response(200, json=REPORT))

        entry = await adapter.stat("/docs/report.txt")

        assert route.calls.last.request.headers["Authorization"] == "Bearer tok-g"
        assert len(index.queries) == 2
        assert entry.native_id == "f-report"
        assert entry.size == 11
        assert entry.etag == "7"
        assert entry.content_hash == "abc123"

    async def test_resolution_is_cached(self, adapter: GoogleDriveAdapter, drive, index: FileIndex) -> None:
        drive.get(f"{DRIVE_BASE_URL}/files/f-report").mock(return_value=httpx.Response(200, json=REPORT))

        await adapter.stat("/docs/report.txt")
        await adapter.stat("/docs/report.txt")

        assert len(index.queries) == 2

    async def test_missing_segment(self, adapter: GoogleDriveAdapter, drive, index: FileIndex) -> None:
        with pytest.raises(NotFoundError):
            await adapter.stat("/nope/report.txt")

        assert len(index.queries) == 1

    async def test_quotes_are_escaped(self, adapter: GoogleDriveAdapter, drive, index: FileIndex) -> None:
        with pytest.raises(NotFoundError):
            await adapter.stat("/it's.txt")

        assert "name = 'it\\'s.txt'" in index.queries[0]

    async def test_stale_cache_dropped(self, adapter: GoogleDriveAdapter, drive, index: FileIndex) -> None:
        """Test a deleted file is forgotten so the next call resolves again."""
        drive.get(f"{DRIVE_BASE_URL}/files/f-report").mock(return_value=drive_error(404, "notFound"))

        with pytest.raises(NotFoundError):
            await adapter.stat("/docs/report.txt")

        assert "/docs/report.txt" not in adapter._ids
        assert adapter._ids["/docs"] == "f-docs"

    async def test_read_of_deleted_file_forgets_id(self, adapter: GoogleDriveAdapter, drive, index: FileIndex) -> None:
        """Test a read hitting a deleted file drops its cached id."""
        drive.get(f"{DRIVE_BASE_URL}/files/f-report").mock(return_value=drive_error(404, "notFound"))

        with pytest.raises(NotFoundError):
            await adapter.read("/docs/report.txt")

        assert "/docs/report.txt" not in adapter._ids
        assert adapter._ids["/docs"] == "f-docs"


class TestListing:
    """Test folder listing."""

    async def test_list_root(self, adapter: GoogleDriveAdapter, drive) -> None:
        route = drive.get(f"{DRIVE_BASE_URL}/files").mock(
            return_value=httpx.Response(200, json={"files": [DOCS, REPORT], "nextPageToken": "p2"})
        )

        page = await adapter.list_folder("/", 2)

        params = route.calls.last.request.url.params
        assert params["q"] == "'root-id' in parents and trashed = false"
        assert params["pageSize"] == "2"
        assert "pageToken" not in params
        assert [(e.path, e.kind) for e in page.entries] == [
            ("/docs", EntryKind.FOLDER),
            ("/report.txt", EntryKind.FILE),
        ]
        assert page.native_token == "p2"
        assert adapter._ids["/docs"] == "f-docs"

    async def test_continuation(self, adapter: GoogleDriveAdapter, drive) -> None:
        route = drive.get(f"{DRIVE_BASE_URL}/files").mock(return_value=httpx.Response(200, json={"files": [REPORT]}))

        page = await adapter.list_folder("/", 2, native_token="p2")

        assert route.calls.last.request.url.params["pageToken"] == "p2"
        assert page.native_token is None

    async def test_rejected_token(self, adapter: GoogleDriveAdapter, drive) -> None:
        drive.get(f"{DRIVE_BASE_URL}/files").mock(return_value=drive_error(400, "invalid"))

        with pytest.raises(InvalidCursorError):
            await adapter.list_folder("/", 2, native_token="stale")

    async def test_bad_request_without_token(self, adapter: GoogleDriveAdapter, drive) -> None:
        """Test a 400 outside pagination is not reported as a cursor problem."""
        drive.get(f"{DRIVE_BASE_URL}/files").mock(return_value=drive_error(400, "invalid"))

        with pytest.raises(UnknownError):
            await adapter.list_folder("/", 2)


class TestErrorReasons:
    """Test Drive reason codes override the HTTP status."""

    async def test_rate_limit_reason(self, adapter: GoogleDriveAdapter, drive) -> None:
        drive.get(f"{DRIVE_BASE_URL}/files/root-id").mock(
            return_value=drive_error(403, "userRateLimitExceeded", headers={"Retry-After": "4"})
        )

        with pytest.raises(ThrottledError) as exc_info:
            await adapter.stat("/")

        assert exc_info.value.status_code == 403
        assert exc_info.value.retry_after == 4.0
        assert adapter.rate_limit_signal().retry_after == 4.0

    async def test_storage_quota_reason(self, adapter: GoogleDriveAdapter, drive) -> None:
        drive.get(f"{DRIVE_BASE_URL}/files/root-id").mock(return_value=drive_error(403, "storageQuotaExceeded"))

        with pytest.raises(QuotaExceededError) as exc_info:
            await adapter.stat("/")

        assert exc_info.value.provider_code == "storageQuotaExceeded"

    async def test_transport_failure(self, adapter: GoogleDriveAdapter, drive) -> None:
        drive.get(f"{DRIVE_BASE_URL}/files/root-id").mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(UnavailableError):
            await adapter.stat("/")


class TestUploads:
    """Test resumable uploads."""

    async def test_write_new_file(self, adapter: GoogleDriveAdapter, drive, index: FileIndex) -> None:
        """Test a small write opens a session under the parent and sends one range."""
        created = {**REPORT, "id": "f-new", "name": "new.txt", "size": "5", "version": "1"}
        opened = drive.post(f"{DRIVE_UPLOAD_URL}/files").mock(
            return_value=httpx.Response(200, headers={"Location": SESSION_URL})
        )
        put = drive.put(SESSION_URL).mock(return_value=httpx.Response(200, json=created))
        drive.get(f"{DRIVE_BASE_URL}/files/f-new").mock(return_value=httpx.Response(200, json=created))

        entry = await adapter.write("/docs/new.txt", b"hello")

        open_request = opened.calls.last.request
        assert open_request.url.params["uploadType"] == "resumable"
        assert open_request.headers["X-Upload-Content-Length"] == "5"
        assert b'"f-docs"' in open_request.content
        assert put.calls.last.request.headers["Content-Range"] == "bytes 0-4/5"
        assert entry.native_id == "f-new"
        assert entry.etag == "1"

    async def test_write_existing_without_overwrite(self, adapter: GoogleDriveAdapter, drive, index: FileIndex) -> None:
        drive.get(f"{DRIVE_BASE_URL}/files/f-report").mock(return_value=httpx.Response(200, json=REPORT))

        with pytest.raises(ConflictError):
            await adapter.write("/docs/report.txt", b"x", overwrite=False)

    async def test_write_if_match_mismatch(self, adapter: GoogleDriveAdapter, drive, index: FileIndex) -> None:
        drive.get(f"{DRIVE_BASE_URL}/files/f-report").mock(return_value=httpx.Response(200, json=REPORT))

        with pytest.raises(ConflictError) as exc_info:
            await adapter.write("/docs/report.txt", b"x", if_match="6")

        assert exc_info.value.status_code == 412

    async def test_overwrite_patches_existing(self, adapter: GoogleDriveAdapter, drive, index: FileIndex) -> None:
        drive.get(f"{DRIVE_BASE_URL}/files/f-report").mock(return_value=httpx.Response(200, json=REPORT))
        patched = drive.patch(f"{DRIVE_UPLOAD_URL}/files/f-report").mock(
            return_value=httpx.Response(200, headers={"Location": SESSION_URL})
        )
        drive.put(SESSION_URL).mock(return_value=httpx.Response(200, json=REPORT))

        await adapter.write("/docs/report.txt", b"hello world", if_match="7")

        assert patched.called

    async def test_unknown_total_parts(self, adapter: GoogleDriveAdapter, drive) -> None:
        """Test parts of an unsized upload declare the total only on the last range."""
        put = drive.put(SESSION_URL).mock(
            side_effect=[
                httpx.Response(308, headers={"Range": "bytes=0-3"}),
                httpx.Response(200, json={**REPORT, "size": "6"}),
            ]
        )
        upload = MultipartUpload(upload_id=SESSION_URL, path="/report.txt")

        first = await adapter.upload_part(upload, 0, b"abcd", offset=0)
        last = await adapter.upload_part(upload, 1, b"ef", offset=4, is_last=True)

        ranges = [call.request.headers["Content-Range"] for call in put.calls]
        assert ranges == ["bytes 0-3/*", "bytes 4-5/6"]
        assert first.etag is None
        assert last.etag == "7"
        assert adapter._ids["/report.txt"] == "f-report"

    async def test_complete_checks_size(self, adapter: GoogleDriveAdapter, drive, index: FileIndex) -> None:
        drive.get(f"{DRIVE_BASE_URL}/files/f-report").mock(return_value=httpx.Response(200, json=REPORT))
        upload = MultipartUpload(upload_id=SESSION_URL, path="/docs/report.txt")

        entry = await adapter.complete_multipart(
            upload, [PartReceipt(part_index=0, size=6), PartReceipt(part_index=1, size=5)]
        )
        assert entry.size == 11

        with pytest.raises(ConflictError):
            await adapter.complete_multipart(upload, [PartReceipt(part_index=0, size=6)])

    async def test_abort_accepts_cancelled_status(self, adapter: GoogleDriveAdapter, drive) -> None:
        route = drive.delete(SESSION_URL).mock(return_value=httpx.Response(499))

        await adapter.abort_multipart(MultipartUpload(upload_id=SESSION_URL, path="/report.txt"))

        assert route.called


class TestFileOperations:
    """Test delete, folders and sharing."""

    async def test_delete_root_refused(self, adapter: GoogleDriveAdapter, drive) -> None:
        with pytest.raises(NotFoundError):
            await adapter.delete("/")

    async def test_delete_forgets_subtree(self, adapter: GoogleDriveAdapter, drive, index: FileIndex) -> None:
        drive.get(f"{DRIVE_BASE_URL}/files/f-report").mock(return_value=httpx.Response(200, json=REPORT))
        drive.delete(f"{DRIVE_BASE_URL}/files/f-docs").mock(return_value=httpx.Response(204))
        await adapter.stat("/docs/report.txt")

        await adapter.delete("/docs")

        assert set(adapter._ids) == {"/"}

    async def test_create_folder(self, adapter: GoogleDriveAdapter, drive, index: FileIndex) -> None:
        route = drive.post(f"{DRIVE_BASE_URL}/files").mock(
            return_value=httpx.Response(200, json={"id": "f-new", "name": "new", "mimeType": FOLDER_MIME_TYPE})
        )

        entry = await adapter.create_folder("/docs/new")

        assert entry.is_folder
        assert FOLDER_MIME_TYPE.encode() in route.calls.last.request.content
        assert adapter._ids["/docs/new"] == "f-new"

    async def test_create_existing_folder(self, adapter: GoogleDriveAdapter, drive, index: FileIndex) -> None:
        drive.get(f"{DRIVE_BASE_URL}/files/f-docs").mock(return_value=httpx.Response(200, json=DOCS))

        with pytest.raises(ConflictError):
            await adapter.create_folder("/docs")

    async def test_share(self, adapter: GoogleDriveAdapter, drive, index: FileIndex) -> None:
        grant = drive.post(f"{DRIVE_BASE_URL}/files/f-report/permissions").mock(
            return_value=httpx.Response(200, json={"id": "anyoneWithLink"})
        )
        drive.get(f"{DRIVE_BASE_URL}/files/f-report").mock(
            return_value=httpx.Response(200, json={"webViewLink": "https://drive.google.com/file/d/f-report/view"})
        )

        link = await adapter.share("/docs/report.txt", expires_in=60)

        assert b'"anyone"' in grant.calls.last.request.content
        assert link.url.endswith("/f-report/view")
        assert link.expires_at is None
