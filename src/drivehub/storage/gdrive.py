"""Google Drive storage adapter implementation.

Drive v3 REST API over httpx. Drive addresses files by id, so logical paths
are resolved segment by segment and cached per adapter.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

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
    NotFoundError,
    QuotaExceededError,
    StorageError,
    ThrottledError,
)
from drivehub.storage.http import HTTPProviderAdapter

logger = structlog.get_logger(__name__)

DRIVE_BASE_URL = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
FILE_FIELDS = "id,name,mimeType,size,modifiedTime,version,md5Checksum"
RESUMABLE_ALIGNMENT = 256 * 1024

THROTTLE_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})
QUOTA_REASONS = frozenset({"storageQuotaExceeded", "quotaExceeded"})


def _escape(name: str) -> str:
    return name.replace("\\", "\\\\").replace("'", "\\'")


class GoogleDriveAdapter(HTTPProviderAdapter):
    """Google Drive adapter.

    ``root_scope`` is the id of the folder acting as the source root; empty
    means "My Drive". The file ``version`` is used as the etag.
    """

    kind = ProviderKind.GOOGLE_DRIVE
    base_url = DRIVE_BASE_URL
    min_part_size = RESUMABLE_ALIGNMENT
    max_part_size = 5 * 1024**3
    max_parts = 100_000
    part_alignment = RESUMABLE_ALIGNMENT
    supports_out_of_order_parts = False

    def __init__(
        self,
        source: StorageSource,
        credentials: CredentialProvider,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(source, credentials, http_client)
        self.root_id = source.root_scope or "root"
        self._ids: dict[str, str] = {"/": self.root_id}

    def _error_details(self, response: httpx.Response) -> tuple[str, str | None, str | None]:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase, None, None

        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            return super()._error_details(response)

        reasons = [e.get("reason") for e in error.get("errors", []) if e.get("reason")]
        reason = reasons[0] if reasons else error.get("status")
        return error.get("message", response.text), reason, reason

    def _classify(self, response: httpx.Response, paged: bool = False) -> StorageError:
        error = super()._classify(response, paged)
        reason = error.provider_code

        # Drive reports rate limits and quota as 403 with a reason code
        if reason in THROTTLE_REASONS:
            return ThrottledError(
                error.message,
                source_id=self.source_id,
                status_code=response.status_code,
                provider_code=reason,
                retry_after=error.retry_after,
            )
        if reason in QUOTA_REASONS:
            return QuotaExceededError(
                error.message,
                source_id=self.source_id,
                status_code=response.status_code,
                provider_code=reason,
            )
        return error

    def _entry(self, item: dict[str, Any], path: str, marker: str | None = None) -> FileEntry:
        is_folder = item.get("mimeType") == FOLDER_MIME_TYPE
        modified = item.get("modifiedTime")
        return FileEntry(
            native_id=item["id"],
            path=path,
            name=split_path(path)[1],
            kind=EntryKind.FOLDER if is_folder else EntryKind.FILE,
            size=None if is_folder else int(item.get("size", 0)),
            modified_at=datetime.fromisoformat(modified.replace("Z", "+00:00")) if modified else None,
            etag=str(item["version"]) if item.get("version") is not None else None,
            content_hash=item.get("md5Checksum"),
            marker=marker,
        )

    async def _lookup(self, parent_id: str, name: str) -> dict[str, Any] | None:
        body = await self._json(
            "GET",
            "/files",
            params={
                "q": f"'{parent_id}' in parents and name = '{_escape(name)}' and trashed = false",
                "fields": f"files({FILE_FIELDS})",
                "pageSize": 1,
            },
        )
        files = body.get("files", [])
        return files[0] if files else None

    async def _resolve(self, path: str) -> str:
        """Resolve a logical path to a Drive file id.

        Raises:
            NotFoundError: If any segment does not exist
        """
        path = normalize_path(path)
        if path in self._ids:
            return self._ids[path]

        parent, name = split_path(path)
        parent_id = await self._resolve(parent)
        item = await self._lookup(parent_id, name)
        if item is None:
            raise NotFoundError(f"No entry at {path}", source_id=self.source_id)

        self._ids[path] = item["id"]
        return item["id"]

    def _forget(self, path: str) -> None:
        prefix = path.rstrip("/") + "/"
        for key in [k for k in self._ids if k == path or k.startswith(prefix)]:
            if key != "/":
                del self._ids[key]

    async def _find(self, path: str) -> dict[str, Any] | None:
        try:
            return await self._get(path)
        except NotFoundError:
            return None

    async def _get(self, path: str) -> dict[str, Any]:
        file_id = await self._resolve(path)
        try:
            return await self._json("GET", f"/files/{file_id}", params={"fields": FILE_FIELDS})
        except NotFoundError:
            self._forget(normalize_path(path))
            raise

    async def list_folder(
        self,
        path: str,
        page_size: int,
        native_token: str | None = None,
    ) -> ListPage:
        path = normalize_path(path)
        folder_id = await self._resolve(path)

        params: dict[str, Any] = {
            "q": f"'{folder_id}' in parents and trashed = false",
            "fields": f"nextPageToken,files({FILE_FIELDS})",
            "pageSize": page_size,
            "orderBy": "folder,name",
        }
        if native_token:
            params["pageToken"] = native_token

        body = await self._json("GET", "/files", params=params, paged=bool(native_token))

        next_token = body.get("nextPageToken")
        entries = []
        for item in body.get("files", []):
            child = normalize_path(f"{path}/{item['name']}")
            self._ids.setdefault(child, item["id"])
            entries.append(self._entry(item, child, next_token))

        return ListPage(entries=entries, native_token=next_token)

    async def stat(self, path: str) -> FileEntry:
        path = normalize_path(path)
        return self._entry(await self._get(path), path)

    async def read(
        self,
        path: str,
        byte_range: tuple[int, int] | None = None,
    ) -> ByteStream:
        file_id = await self._resolve(path)
        try:
            return await self._stream(f"/files/{file_id}?alt=media", byte_range)
        except NotFoundError:
            self._forget(normalize_path(path))
            raise

    async def _open_session(self, path: str, total_size: int | None, overwrite: bool) -> str:
        parent, name = split_path(path)
        existing = await self._find(path)
        headers = {"X-Upload-Content-Type": "application/octet-stream"}
        if total_size is not None:
            headers["X-Upload-Content-Length"] = str(total_size)

        if existing is not None:
            if not overwrite:
                raise ConflictError(f"{path} already exists", source_id=self.source_id)
            response = await self._send(
                "PATCH",
                f"{DRIVE_UPLOAD_URL}/files/{existing['id']}",
                params={"uploadType": "resumable"},
                headers=headers,
                json={},
            )
        else:
            parent_id = await self._resolve(parent)
            response = await self._send(
                "POST",
                f"{DRIVE_UPLOAD_URL}/files",
                params={"uploadType": "resumable"},
                headers=headers,
                json={"name": name, "parents": [parent_id]},
            )

        return response.headers["Location"]

    async def _put_range(
        self,
        session_url: str,
        content: bytes,
        offset: int,
        total: int | None,
    ) -> httpx.Response:
        total_label = str(total) if total is not None else "*"
        if content:
            content_range = f"bytes {offset}-{offset + len(content) - 1}/{total_label}"
        else:
            content_range = f"bytes */{total_label}"

        return await self._send(
            "PUT",
            session_url,
            expected=(308,),
            headers={"Content-Range": content_range},
            content=content,
        )

    async def write(
        self,
        path: str,
        content: bytes,
        overwrite: bool = True,
        if_match: str | None = None,
    ) -> FileEntry:
        path = normalize_path(path)

        if if_match is not None:
            current = await self._find(path)
            if current is None or str(current.get("version")) != if_match:
                raise ConflictError(
                    f"Precondition failed for {path}",
                    source_id=self.source_id,
                    status_code=412,
                )

        session_url = await self._open_session(path, len(content), overwrite)
        response = await self._put_range(session_url, content, 0, len(content))
        item = response.json()
        self._ids[path] = item["id"]

        logger.info(
            "gdrive_file_written",
            source_id=self.source_id,
            path=path,
            size=len(content),
        )

        return await self.stat(path)

    async def initiate_multipart(
        self,
        path: str,
        total_size: int | None = None,
    ) -> MultipartUpload:
        path = normalize_path(path)
        session_url = await self._open_session(path, total_size, overwrite=True)

        logger.info(
            "gdrive_resumable_session_created",
            source_id=self.source_id,
            path=path,
        )

        return MultipartUpload(
            upload_id=session_url,
            path=path,
            total_size=total_size,
        )

    async def upload_part(
        self,
        upload: MultipartUpload,
        part_index: int,
        content: bytes,
        offset: int,
        is_last: bool = False,
    ) -> PartReceipt:
        total = upload.total_size
        if total is None and is_last:
            total = offset + len(content)

        response = await self._put_range(upload.upload_id, content, offset, total)

        etag = None
        if response.status_code in (200, 201):
            item = response.json()
            self._ids[upload.path] = item["id"]
            etag = str(item["version"]) if item.get("version") is not None else None

        return PartReceipt(part_index=part_index, size=len(content), etag=etag)

    async def complete_multipart(
        self,
        upload: MultipartUpload,
        parts: list[PartReceipt],
    ) -> FileEntry:
        # The resumable session finalizes on the last byte range
        entry = await self.stat(upload.path)
        expected = sum(p.size for p in parts)
        if entry.size != expected:
            raise ConflictError(
                f"Resumable upload for {upload.path} is incomplete",
                source_id=self.source_id,
            )
        return entry

    async def abort_multipart(self, upload: MultipartUpload) -> None:
        try:
            # Drive answers a cancelled session with 499
            await self._send("DELETE", upload.upload_id, expected=(499,))
        except NotFoundError:
            return

    async def delete(self, path: str) -> None:
        path = normalize_path(path)
        if path == "/":
            raise NotFoundError("Cannot delete the source root", source_id=self.source_id)

        file_id = await self._resolve(path)
        await self._send("DELETE", f"/files/{file_id}")
        self._forget(path)

        logger.info(
            "gdrive_item_deleted",
            source_id=self.source_id,
            path=path,
        )

    async def move(
        self,
        from_path: str,
        to_path: str,
        overwrite: bool = False,
    ) -> FileEntry:
        from_path = normalize_path(from_path)
        to_path = normalize_path(to_path)

        file_id = await self._resolve(from_path)
        old_parent_id = await self._resolve(split_path(from_path)[0])
        new_parent, name = split_path(to_path)
        new_parent_id = await self._resolve(new_parent)

        existing = await self._find(to_path)
        if existing is not None:
            if not overwrite:
                raise ConflictError(f"{to_path} already exists", source_id=self.source_id)
            await self.delete(to_path)

        params = {"fields": FILE_FIELDS}
        if new_parent_id != old_parent_id:
            params["addParents"] = new_parent_id
            params["removeParents"] = old_parent_id

        item = await self._json(
            "PATCH",
            f"/files/{file_id}",
            params=params,
            json={"name": name},
        )

        self._forget(from_path)
        self._ids[to_path] = item["id"]
        return self._entry(item, to_path)

    async def create_folder(self, path: str) -> FileEntry:
        path = normalize_path(path)
        if await self._find(path) is not None:
            raise ConflictError(f"{path} already exists", source_id=self.source_id)

        parent, name = split_path(path)
        parent_id = await self._resolve(parent)
        item = await self._json(
            "POST",
            "/files",
            params={"fields": FILE_FIELDS},
            json={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]},
        )

        self._ids[path] = item["id"]
        return self._entry(item, path)

    async def share(
        self,
        path: str,
        expires_in: int | None = None,
    ) -> ShareLink:
        """Grant anyone-with-link read access.

        Drive only supports expiring permissions for user and group grants,
        so ``expires_in`` is not applied to link shares.
        """
        file_id = await self._resolve(path)
        await self._send(
            "POST",
            f"/files/{file_id}/permissions",
            json={"role": "reader", "type": "anyone"},
        )
        body = await self._json("GET", f"/files/{file_id}", params={"fields": "webViewLink"})

        return ShareLink(url=body["webViewLink"])
