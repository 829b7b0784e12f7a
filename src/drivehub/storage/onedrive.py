"""OneDrive storage adapter implementation.

Microsoft Graph v1.0 driveItem API over httpx. Items are addressed by path
relative to the drive root; large files go through upload sessions.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from drivehub.storage.base import (
    ByteStream,
    CredentialProvider,
    EntryKind,
    FileEntry,
    ListPage,
    MultipartUpload,
    PartReceipt,
    ProviderKind,
    ShareLink,
    StorageSource,
    normalize_path,
    split_path,
)
from drivehub.storage.exceptions import (
    ConflictError,
    InvalidCursorError,
    NotFoundError,
    QuotaExceededError,
    StorageError,
    ThrottledError,
)
from drivehub.storage.http import HTTPProviderAdapter

logger = structlog.get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
UPLOAD_CHUNK_ALIGNMENT = 320 * 1024


class OneDriveAdapter(HTTPProviderAdapter):
    """OneDrive / SharePoint document library adapter.

    ``root_scope`` is the drive id; empty means the signed-in user's drive.
    Upload sessions require parts in order, aligned to 320 KiB, with the
    total size declared up front.
    """

    kind = ProviderKind.ONEDRIVE
    base_url = GRAPH_BASE_URL
    min_part_size = UPLOAD_CHUNK_ALIGNMENT
    max_part_size = 192 * UPLOAD_CHUNK_ALIGNMENT
    max_parts = 10_000
    part_alignment = UPLOAD_CHUNK_ALIGNMENT
    supports_out_of_order_parts = False
    requires_total_size = True

    def __init__(
        self,
        source: StorageSource,
        credentials: CredentialProvider,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(source, credentials, http_client)
        self.drive = f"/drives/{source.root_scope}" if source.root_scope else "/me/drive"

        logger.info(
            "onedrive_adapter_initialized",
            source_id=source.source_id,
            drive=self.drive,
        )

    def _item(self, path: str) -> str:
        path = normalize_path(path)
        if path == "/":
            return f"{self.drive}/root"
        return f"{self.drive}/root:{quote(path)}:"

    def _children(self, path: str) -> str:
        path = normalize_path(path)
        if path == "/":
            return f"{self.drive}/root/children"
        return f"{self.drive}/root:{quote(path)}:/children"

    def _classify(self, response: httpx.Response, paged: bool = False) -> StorageError:
        error = super()._classify(response, paged)
        code = error.provider_code
        if code == "nameAlreadyExists":
            return ConflictError(error.message, source_id=self.source_id, status_code=409, provider_code=code)
        if code in ("quotaLimitReached", "insufficientStorage"):
            return QuotaExceededError(error.message, source_id=self.source_id, status_code=response.status_code, provider_code=code)
        if code == "activityLimitReached":
            return ThrottledError(
                error.message,
                source_id=self.source_id,
                status_code=response.status_code,
                provider_code=code,
                retry_after=error.retry_after,
            )
        return error

    def _entry(self, item: dict[str, Any], path: str, marker: str | None = None) -> FileEntry:
        is_folder = "folder" in item or "root" in item
        hashes = item.get("file", {}).get("hashes", {})
        modified = item.get("lastModifiedDateTime")
        return FileEntry(
            native_id=item["id"],
            path=path,
            name=split_path(path)[1],
            kind=EntryKind.FOLDER if is_folder else EntryKind.FILE,
            size=None if is_folder else item.get("size", 0),
            modified_at=datetime.fromisoformat(modified.replace("Z", "+00:00")) if modified else None,
            etag=item.get("eTag"),
            content_hash=hashes.get("sha256Hash") or hashes.get("quickXorHash"),
            marker=marker,
        )

    async def list_folder(
        self,
        path: str,
        page_size: int,
        native_token: str | None = None,
    ) -> ListPage:
        path = normalize_path(path)

        if native_token:
            # Graph continuation tokens are complete @odata.nextLink URLs
            if not native_token.startswith(GRAPH_BASE_URL):
                raise InvalidCursorError("Foreign continuation token", source_id=self.source_id)
            body = await self._json("GET", native_token, paged=True)
        else:
            body = await self._json(
                "GET",
                self._children(path),
                params={"$top": page_size},
            )

        next_token = body.get("@odata.nextLink")
        entries = [
            self._entry(item, normalize_path(f"{path}/{item['name']}"), next_token)
            for item in body.get("value", [])
        ]

        return ListPage(entries=entries, native_token=next_token)

    async def stat(self, path: str) -> FileEntry:
        path = normalize_path(path)
        item = await self._json("GET", self._item(path))
        return self._entry(item, path)

    async def read(
        self,
        path: str,
        byte_range: tuple[int, int] | None = None,
    ) -> ByteStream:
        return await self._stream(f"{self._item(path)}/content", byte_range)

    async def write(
        self,
        path: str,
        content: bytes,
        overwrite: bool = True,
        if_match: str | None = None,
    ) -> FileEntry:
        path = normalize_path(path)
        headers = {"Content-Type": "application/octet-stream"}
        if if_match is not None:
            headers["If-Match"] = if_match

        item = await self._json(
            "PUT",
            f"{self._item(path)}/content",
            params={"@microsoft.graph.conflictBehavior": "replace" if overwrite else "fail"},
            headers=headers,
            content=content,
        )

        logger.info(
            "onedrive_file_written",
            source_id=self.source_id,
            path=path,
            size=len(content),
        )

        return self._entry(item, path)

    async def initiate_multipart(
        self,
        path: str,
        total_size: int | None = None,
    ) -> MultipartUpload:
        if total_size is None:
            raise ValueError("OneDrive upload sessions require the total size")

        path = normalize_path(path)
        body = await self._json(
            "POST",
            f"{self._item(path)}/createUploadSession",
            json={"item": {"@microsoft.graph.conflictBehavior": "replace"}},
        )

        logger.info(
            "onedrive_upload_session_created",
            source_id=self.source_id,
            path=path,
            expires=body.get("expirationDateTime"),
        )

        return MultipartUpload(
            upload_id=body["uploadUrl"],
            path=path,
            total_size=total_size,
            provider_state={"expires_at": body.get("expirationDateTime")},
        )

    async def upload_part(
        self,
        upload: MultipartUpload,
        part_index: int,
        content: bytes,
        offset: int,
        is_last: bool = False,
    ) -> PartReceipt:
        end = offset + len(content) - 1
        # uploadUrl is pre-authenticated; Graph rejects an Authorization header
        response = await self._send(
            "PUT",
            upload.upload_id,
            authenticated=False,
            headers={
                "Content-Range": f"bytes {offset}-{end}/{upload.total_size}",
                "Content-Length": str(len(content)),
            },
            content=content,
        )

        etag = None
        if response.status_code in (200, 201):
            etag = response.json().get("eTag")

        return PartReceipt(part_index=part_index, size=len(content), etag=etag)

    async def complete_multipart(
        self,
        upload: MultipartUpload,
        parts: list[PartReceipt],
    ) -> FileEntry:
        # The session commits when the final byte range lands
        entry = await self.stat(upload.path)
        if entry.size != upload.total_size:
            raise ConflictError(
                f"Upload session for {upload.path} is incomplete",
                source_id=self.source_id,
            )
        return entry

    async def abort_multipart(self, upload: MultipartUpload) -> None:
        try:
            await self._send("DELETE", upload.upload_id, authenticated=False)
        except NotFoundError:
            return

    async def delete(self, path: str) -> None:
        await self._send("DELETE", self._item(path))

        logger.info(
            "onedrive_item_deleted",
            source_id=self.source_id,
            path=normalize_path(path),
        )

    async def move(
        self,
        from_path: str,
        to_path: str,
        overwrite: bool = False,
    ) -> FileEntry:
        to_path = normalize_path(to_path)
        parent, name = split_path(to_path)
        parent_entry = await self.stat(parent)

        item = await self._json(
            "PATCH",
            self._item(from_path),
            params={"@microsoft.graph.conflictBehavior": "replace" if overwrite else "fail"},
            json={"parentReference": {"id": parent_entry.native_id}, "name": name},
        )

        return self._entry(item, to_path)

    async def create_folder(self, path: str) -> FileEntry:
        path = normalize_path(path)
        parent, name = split_path(path)

        item = await self._json(
            "POST",
            self._children(parent),
            json={
                "name": name,
                "folder": {},
                "@microsoft.graph.conflictBehavior": "fail",
            },
        )

        return self._entry(item, path)

    async def share(
        self,
        path: str,
        expires_in: int | None = None,
    ) -> ShareLink:
        payload: dict[str, Any] = {"type": "view", "scope": "anonymous"}
        expires_at = None
        if expires_in:
            expires_at = datetime.now(UTC) + timedelta(seconds=expires_in)
            payload["expirationDateTime"] = expires_at.strftime("%Y-%m-%dT%H:%M:%SZ")

        body = await self._json("POST", f"{self._item(path)}/createLink", json=payload)

        return ShareLink(url=body["link"]["webUrl"], expires_at=expires_at)
