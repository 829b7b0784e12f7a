"""In-memory storage adapter.

Implements the full capability set over a process local ``MemoryBackend``.
Used to exercise the gateway without network access; supports failure
injection so retry and partial-failure paths can be driven from tests.
"""

from __future__ import annotations

import asyncio
import hashlib
import secrets
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import structlog

from drivehub.storage.base import (
    ByteStream,
    CredentialProvider,
    EntryKind,
    FileEntry,
    ListPage,
    MultipartUpload,
    PartReceipt,
    ProviderAdapter,
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
    StorageError,
    ThrottledError,
)

logger = structlog.get_logger(__name__)


@dataclass
class _Blob:
    content: bytes
    modified_at: datetime
    etag: str


@dataclass
class MemoryBackend:
    """Shared state for in-memory adapters of one root scope."""

    files: dict[str, _Blob] = field(default_factory=dict)
    folders: set[str] = field(default_factory=lambda: {"/"})
    uploads: dict[str, dict[int, bytes]] = field(default_factory=dict)


class InMemoryAdapter(ProviderAdapter):
    """Storage adapter backed by a ``MemoryBackend``.

    Listing tokens are plain offsets; parts may arrive in any order.
    """

    kind = ProviderKind.MEMORY

    def __init__(
        self,
        source: StorageSource,
        credentials: CredentialProvider,
        backend: MemoryBackend | None = None,
        latency: float = 0.0,
        min_part_size: int = 1,
    ) -> None:
        """Initialize in-memory adapter.

        Args:
            source: Storage source
            credentials: Credential provider (resolved on connect)
            backend: Shared backend state (a fresh one if None)
            latency: Artificial delay per call in seconds
            min_part_size: Minimum size of non-final multipart parts
        """
        super().__init__(source, credentials)
        self.backend = backend or MemoryBackend()
        self.latency = latency
        self.min_part_size = min_part_size
        self.calls: list[str] = []
        self._failures: dict[str, deque[StorageError]] = {}

    def inject_failures(self, operation: str, *errors: StorageError) -> None:
        """Queue errors raised by the next calls of ``operation``.

        Args:
            operation: Adapter method name ("read", "list_folder", ...) or "*"
            *errors: Errors raised in order, one per call
        """
        self._failures.setdefault(operation, deque()).extend(errors)

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if self.latency:
            await asyncio.sleep(self.latency)

        for key in (operation, "*"):
            queue = self._failures.get(key)
            if queue:
                error = queue.popleft()
                if isinstance(error, ThrottledError) and error.retry_after is not None:
                    self._record_signal(error.retry_after)
                raise error

    async def connect(self) -> None:
        if self._connected:
            return
        await self._credentials()
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    def _entry(self, path: str) -> FileEntry:
        if path in self.backend.files:
            blob = self.backend.files[path]
            return FileEntry(
                native_id=path,
                path=path,
                name=split_path(path)[1],
                kind=EntryKind.FILE,
                size=len(blob.content),
                modified_at=blob.modified_at,
                etag=blob.etag,
                content_hash=hashlib.md5(blob.content).hexdigest(),
            )
        if path in self.backend.folders:
            return FileEntry(
                native_id=path,
                path=path,
                name=split_path(path)[1],
                kind=EntryKind.FOLDER,
            )
        raise NotFoundError(f"No entry at {path}", source_id=self.source_id)

    def _exists(self, path: str) -> bool:
        return path in self.backend.files or path in self.backend.folders

    def _children(self, path: str) -> list[str]:
        prefix = path.rstrip("/") + "/"
        names = {
            p
            for p in list(self.backend.files) + list(self.backend.folders)
            if p != "/" and p.startswith(prefix) and "/" not in p[len(prefix) :]
        }
        return sorted(names)

    def _put(self, path: str, content: bytes) -> FileEntry:
        parent, _ = split_path(path)
        if parent not in self.backend.folders:
            self._make_parents(parent)
        self.backend.files[path] = _Blob(
            content=content,
            modified_at=datetime.now(UTC),
            etag=secrets.token_hex(8),
        )
        return self._entry(path)

    def _make_parents(self, folder: str) -> None:
        current = ""
        for segment in folder.strip("/").split("/"):
            if not segment:
                continue
            current = f"{current}/{segment}"
            if current in self.backend.files:
                raise ConflictError(
                    f"{current} is a file",
                    source_id=self.source_id,
                )
            self.backend.folders.add(current)

    async def list_folder(
        self,
        path: str,
        page_size: int,
        native_token: str | None = None,
    ) -> ListPage:
        await self._enter("list_folder")
        path = normalize_path(path)

        if path not in self.backend.folders:
            raise NotFoundError(f"No folder at {path}", source_id=self.source_id)

        try:
            offset = int(native_token) if native_token else 0
        except ValueError as e:
            raise InvalidCursorError(
                "Malformed continuation token",
                source_id=self.source_id,
            ) from e

        children = self._children(path)
        window = children[offset : offset + page_size]
        next_offset = offset + len(window)
        next_token = str(next_offset) if next_offset < len(children) else None

        entries = []
        for child in window:
            entry = self._entry(child)
            entry.marker = next_token
            entries.append(entry)

        return ListPage(entries=entries, native_token=next_token)

    async def stat(self, path: str) -> FileEntry:
        await self._enter("stat")
        return self._entry(normalize_path(path))

    async def read(
        self,
        path: str,
        byte_range: tuple[int, int] | None = None,
    ) -> ByteStream:
        await self._enter("read")
        path = normalize_path(path)
        blob = self.backend.files.get(path)
        if blob is None:
            raise NotFoundError(f"No file at {path}", source_id=self.source_id)

        content = blob.content
        if byte_range:
            content = content[byte_range[0] : byte_range[1] + 1]

        return ByteStream.from_bytes(content, chunk_size=64 * 1024)

    async def write(
        self,
        path: str,
        content: bytes,
        overwrite: bool = True,
        if_match: str | None = None,
    ) -> FileEntry:
        await self._enter("write")
        path = normalize_path(path)

        if path in self.backend.folders:
            raise ConflictError(f"{path} is a folder", source_id=self.source_id)

        existing = self.backend.files.get(path)
        if existing is not None and not overwrite:
            raise ConflictError(f"{path} already exists", source_id=self.source_id)
        if if_match is not None and (existing is None or existing.etag != if_match):
            raise ConflictError(
                f"Precondition failed for {path}",
                source_id=self.source_id,
                status_code=412,
            )

        return self._put(path, content)

    async def initiate_multipart(
        self,
        path: str,
        total_size: int | None = None,
    ) -> MultipartUpload:
        await self._enter("initiate_multipart")
        upload_id = secrets.token_hex(12)
        self.backend.uploads[upload_id] = {}
        return MultipartUpload(
            upload_id=upload_id,
            path=normalize_path(path),
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
        await self._enter("upload_part")
        parts = self.backend.uploads.get(upload.upload_id)
        if parts is None:
            raise NotFoundError(
                f"Unknown upload {upload.upload_id}",
                source_id=self.source_id,
            )

        parts[part_index] = content
        return PartReceipt(
            part_index=part_index,
            size=len(content),
            etag=hashlib.md5(content).hexdigest(),
        )

    async def complete_multipart(
        self,
        upload: MultipartUpload,
        parts: list[PartReceipt],
    ) -> FileEntry:
        await self._enter("complete_multipart")
        stored = self.backend.uploads.get(upload.upload_id)
        if stored is None:
            raise NotFoundError(
                f"Unknown upload {upload.upload_id}",
                source_id=self.source_id,
            )

        ordered = sorted(parts, key=lambda p: p.part_index)
        missing = [p.part_index for p in ordered if p.part_index not in stored]
        if missing:
            raise ConflictError(
                f"Parts never uploaded: {missing}",
                source_id=self.source_id,
            )

        for receipt in ordered[:-1]:
            if receipt.size < self.min_part_size:
                raise ConflictError(
                    f"Part {receipt.part_index} smaller than {self.min_part_size} bytes",
                    source_id=self.source_id,
                )

        content = b"".join(stored[p.part_index] for p in ordered)
        del self.backend.uploads[upload.upload_id]
        return self._put(upload.path, content)

    async def abort_multipart(self, upload: MultipartUpload) -> None:
        await self._enter("abort_multipart")
        self.backend.uploads.pop(upload.upload_id, None)

    async def delete(self, path: str) -> None:
        await self._enter("delete")
        path = normalize_path(path)

        if path in self.backend.files:
            del self.backend.files[path]
            return

        if path not in self.backend.folders or path == "/":
            raise NotFoundError(f"No entry at {path}", source_id=self.source_id)

        prefix = path + "/"
        for key in [k for k in self.backend.files if k.startswith(prefix)]:
            del self.backend.files[key]
        self.backend.folders = {
            f for f in self.backend.folders if f != path and not f.startswith(prefix)
        }

    async def move(
        self,
        from_path: str,
        to_path: str,
        overwrite: bool = False,
    ) -> FileEntry:
        await self._enter("move")
        from_path = normalize_path(from_path)
        to_path = normalize_path(to_path)

        if not self._exists(from_path):
            raise NotFoundError(f"No entry at {from_path}", source_id=self.source_id)
        if self._exists(to_path) and not overwrite:
            raise ConflictError(f"{to_path} already exists", source_id=self.source_id)

        if from_path in self.backend.files:
            blob = self.backend.files.pop(from_path)
            self._make_parents(split_path(to_path)[0])
            self.backend.files[to_path] = blob
            return self._entry(to_path)

        prefix = from_path + "/"
        self._make_parents(split_path(to_path)[0])
        for key in [k for k in self.backend.files if k.startswith(prefix)]:
            self.backend.files[to_path + key[len(from_path) :]] = self.backend.files.pop(key)
        moved = {f for f in self.backend.folders if f == from_path or f.startswith(prefix)}
        self.backend.folders -= moved
        self.backend.folders |= {to_path + f[len(from_path) :] for f in moved}
        return self._entry(to_path)

    async def create_folder(self, path: str) -> FileEntry:
        await self._enter("create_folder")
        path = normalize_path(path)
        if self._exists(path):
            raise ConflictError(f"{path} already exists", source_id=self.source_id)
        self._make_parents(path)
        return self._entry(path)

    async def share(
        self,
        path: str,
        expires_in: int | None = None,
    ) -> ShareLink:
        await self._enter("share")
        path = normalize_path(path)
        self._entry(path)
        expires_at = (
            datetime.now(UTC) + timedelta(seconds=expires_in) if expires_in else None
        )
        return ShareLink(
            url=f"memory://{self.source.root_scope or self.source_id}{path}?token={secrets.token_urlsafe(8)}",
            expires_at=expires_at,
        )
