"""Base provider adapter interface and models.

Defines the capability interface every storage provider adapter implements
(list, stat, read, write, multipart, delete, move, create-folder, share) and
the uniform models adapters translate provider responses into.
"""

from __future__ import annotations

import math
import posixpath
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from drivehub.security.credential_store import Credential

CredentialProvider = Callable[[], Awaitable["Credential"]]


class ProviderKind(str, Enum):
    """Supported storage provider families."""

    S3_COMPATIBLE = "s3_compatible"
    ONEDRIVE = "onedrive"
    GOOGLE_DRIVE = "google_drive"
    MEMORY = "memory"


class EntryKind(str, Enum):
    """File entry kinds."""

    FILE = "file"
    FOLDER = "folder"


class StorageSource(BaseModel):
    """One configured backend connection owned by a user.

    The provider kind is fixed at creation; only the display name and the
    enabled flag change afterwards.
    """

    source_id: str = Field(
        description="Unique storage source identifier",
    )
    provider_kind: ProviderKind = Field(
        description="Provider family (immutable after creation)",
        frozen=True,
    )
    display_name: str = Field(
        description="User facing name",
        min_length=1,
        max_length=255,
    )
    root_scope: str = Field(
        default="",
        description="Bucket name, drive id or root folder id",
    )
    owner_id: str = Field(
        description="Owning user id",
    )
    credential_ref: str = Field(
        description="Credential Store reference (by id, never the secret)",
    )
    enabled: bool = Field(
        default=True,
        description="Disabled sources reject all operations",
    )
    settings: dict[str, Any] = Field(
        default_factory=dict,
        description="Provider options (endpoint_url, region, addressing_style, ...)",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Creation timestamp",
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Last update timestamp",
    )


class FileEntry(BaseModel):
    """Uniform representation of a remote object or folder."""

    native_id: str = Field(
        description="Provider native identifier (key, item id, file id)",
    )
    path: str = Field(
        description="Normalized logical path",
    )
    name: str = Field(
        description="Last path segment",
    )
    kind: EntryKind = Field(
        description="File or folder",
    )
    size: int | None = Field(
        default=None,
        description="Size in bytes (None for folders)",
        ge=0,
    )
    modified_at: datetime | None = Field(
        default=None,
        description="Last modification timestamp",
    )
    etag: str | None = Field(
        default=None,
        description="Entity tag / version identifier",
    )
    content_hash: str | None = Field(
        default=None,
        description="Provider content hash (md5, sha1, quickXor ...)",
    )
    source_id: str | None = Field(
        default=None,
        description="Originating source (set on federated listings)",
    )
    marker: str | None = Field(
        default=None,
        description="Provider continuation marker when part of a paged listing",
    )

    @property
    def is_folder(self) -> bool:
        return self.kind == EntryKind.FOLDER


class ListPage(BaseModel):
    """One page of an adapter listing with the provider native token."""

    entries: list[FileEntry] = Field(default_factory=list)
    native_token: str | None = Field(
        default=None,
        description="Provider continuation token (None when exhausted)",
    )


class MultipartUpload(BaseModel):
    """Provider handle for an in-progress multipart upload."""

    upload_id: str = Field(
        description="Provider upload id or session URL",
    )
    path: str = Field(
        description="Normalized target path",
    )
    total_size: int | None = Field(
        default=None,
        ge=0,
        description="Declared total size in bytes",
    )
    provider_state: dict[str, Any] = Field(
        default_factory=dict,
        description="Adapter private state needed to resume (key, upload URL ...)",
    )


class PartReceipt(BaseModel):
    """Acknowledgement for one uploaded part."""

    part_index: int = Field(ge=0)
    size: int = Field(ge=0)
    etag: str | None = None


class ShareLink(BaseModel):
    """Shareable link for an entry."""

    url: str
    expires_at: datetime | None = None


class RateLimitSignal(BaseModel):
    """Provider native throttle signal parsed from the last response."""

    retry_after: float | None = Field(
        default=None,
        ge=0,
        description="Seconds the provider asked us to wait",
    )
    remaining: int | None = Field(
        default=None,
        description="Remaining requests in the provider window",
    )
    limit: int | None = Field(
        default=None,
        description="Provider window size",
    )
    observed_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
    )


class ByteStream:
    """Async byte stream returned by reads.

    Wraps a provider chunk iterator together with the close hook that releases
    the underlying connection.
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        size: int | None = None,
        close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.size = size
        self._chunks = chunks
        self._close = close
        self._closed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._chunks:
                if chunk:
                    yield chunk
        finally:
            await self.aclose()

    async def read(self) -> bytes:
        """Read the remaining stream into memory."""
        buffer = bytearray()
        async for chunk in self:
            buffer.extend(chunk)
        return bytes(buffer)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._close is not None:
            await self._close()

    async def __aenter__(self) -> ByteStream:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    @classmethod
    def from_bytes(cls, data: bytes, chunk_size: int = 1024 * 1024) -> ByteStream:
        """Build a stream over an in-memory buffer."""

        async def chunks() -> AsyncIterator[bytes]:
            for offset in range(0, len(data), chunk_size):
                yield data[offset : offset + chunk_size]

        return cls(chunks(), size=len(data))


def normalize_path(path: str) -> str:
    """Normalize a logical path.

    Result always starts with "/", has no duplicate or trailing slashes
    (except the root itself) and no "." segments.

    Args:
        path: Caller supplied path

    Returns:
        Normalized path

    Raises:
        ValueError: If the path escapes the root via ".."
    """
    raw = (path or "/").replace("\\", "/")
    segments = [s for s in raw.split("/") if s not in ("", ".")]
    if ".." in segments:
        raise ValueError(f"Path must not contain '..' segments: {path!r}")
    return "/" + "/".join(segments)


def split_path(path: str) -> tuple[str, str]:
    """Split a normalized path into (parent, name)."""
    parent, name = posixpath.split(normalize_path(path))
    return parent or "/", name


def negotiate_part_size(
    total_size: int | None,
    requested: int,
    min_part_size: int,
    max_part_size: int,
    max_parts: int,
    alignment: int = 1,
) -> int:
    """Pick a part size satisfying provider limits.

    The result is at least the provider minimum, aligned to the provider
    alignment, and large enough to fit ``total_size`` in ``max_parts`` parts.

    Args:
        total_size: Declared total size (None when streaming)
        requested: Caller preferred part size
        min_part_size: Provider minimum for non-final parts
        max_part_size: Provider maximum part size
        max_parts: Provider maximum part count
        alignment: Required multiple for non-final parts

    Returns:
        Negotiated part size in bytes

    Raises:
        ValueError: If no part size can fit the total within limits
    """
    size = max(requested, min_part_size, 1)

    if total_size:
        size = max(size, math.ceil(total_size / max_parts))

    if alignment > 1:
        size = math.ceil(size / alignment) * alignment

    if size > max_part_size:
        raise ValueError(
            f"Cannot fit {total_size} bytes into {max_parts} parts "
            f"of at most {max_part_size} bytes"
        )

    return size


class ProviderAdapter(ABC):
    """Abstract base class for storage provider adapters.

    Translates the uniform operation set into provider specific calls. Every
    failure must be raised as a classified ``StorageError`` so the governor
    can tell transient failures from permanent ones.
    """

    kind: ProviderKind
    min_part_size: int = 1
    max_part_size: int = 5 * 1024**3
    max_parts: int = 10_000
    part_alignment: int = 1
    supports_out_of_order_parts: bool = True
    requires_total_size: bool = False

    def __init__(
        self,
        source: StorageSource,
        credentials: CredentialProvider,
    ) -> None:
        """Initialize provider adapter.

        Args:
            source: Storage source this adapter serves
            credentials: Async callable returning the current credential
        """
        self.source = source
        self._credentials = credentials
        self._client: Any = None
        self._connected = False
        self._signal: RateLimitSignal | None = None

    @property
    def source_id(self) -> str:
        return self.source.source_id

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to the provider."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Release connections and resources."""
        ...

    @abstractmethod
    async def list_folder(
        self,
        path: str,
        page_size: int,
        native_token: str | None = None,
    ) -> ListPage:
        """List the direct children of a folder.

        Args:
            path: Normalized folder path
            page_size: Maximum entries to return
            native_token: Provider continuation token from a previous page

        Returns:
            Page of entries plus the next native token

        Raises:
            InvalidCursorError: If the provider rejects an expired token
        """
        ...

    @abstractmethod
    async def stat(self, path: str) -> FileEntry:
        """Get entry metadata.

        Raises:
            NotFoundError: If no entry exists at path
        """
        ...

    @abstractmethod
    async def read(
        self,
        path: str,
        byte_range: tuple[int, int] | None = None,
    ) -> ByteStream:
        """Open a file for reading.

        Args:
            path: Normalized file path
            byte_range: Optional inclusive (start, end) byte range

        Returns:
            Byte stream over the file content
        """
        ...

    @abstractmethod
    async def write(
        self,
        path: str,
        content: bytes,
        overwrite: bool = True,
        if_match: str | None = None,
    ) -> FileEntry:
        """Write a file in a single request.

        Args:
            path: Normalized file path
            content: File content
            overwrite: Replace an existing file
            if_match: Only write if the current etag matches

        Raises:
            ConflictError: If the entry exists and overwrite is False, or
                the etag precondition fails
        """
        ...

    @abstractmethod
    async def initiate_multipart(
        self,
        path: str,
        total_size: int | None = None,
    ) -> MultipartUpload:
        """Start a multipart upload."""
        ...

    @abstractmethod
    async def upload_part(
        self,
        upload: MultipartUpload,
        part_index: int,
        content: bytes,
        offset: int,
        is_last: bool = False,
    ) -> PartReceipt:
        """Upload one part.

        Args:
            upload: Multipart handle
            part_index: Zero based part index
            content: Part bytes
            offset: Byte offset of the part in the final object
            is_last: Whether this is the final part
        """
        ...

    @abstractmethod
    async def complete_multipart(
        self,
        upload: MultipartUpload,
        parts: list[PartReceipt],
    ) -> FileEntry:
        """Commit a multipart upload from its ordered parts."""
        ...

    @abstractmethod
    async def abort_multipart(self, upload: MultipartUpload) -> None:
        """Discard a multipart upload and its parts."""
        ...

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete a file or folder (recursively).

        Raises:
            NotFoundError: If no entry exists at path
        """
        ...

    @abstractmethod
    async def move(
        self,
        from_path: str,
        to_path: str,
        overwrite: bool = False,
    ) -> FileEntry:
        """Move or rename an entry.

        Raises:
            ConflictError: If the destination exists and overwrite is False
        """
        ...

    @abstractmethod
    async def create_folder(self, path: str) -> FileEntry:
        """Create a folder.

        Raises:
            ConflictError: If an entry already exists at path
        """
        ...

    @abstractmethod
    async def share(
        self,
        path: str,
        expires_in: int | None = None,
    ) -> ShareLink:
        """Create a shareable link for an entry."""
        ...

    async def health_check(self) -> bool:
        """Check the provider is reachable with the current credential."""
        try:
            await self.stat("/")
            return True
        except Exception:
            return False

    def rate_limit_signal(self) -> RateLimitSignal | None:
        """Get the last provider throttle signal observed by this adapter."""
        return self._signal

    def clear_rate_limit_signal(self) -> None:
        self._signal = None

    def is_connected(self) -> bool:
        return self._connected

    def _record_signal(
        self,
        retry_after: float | None,
        remaining: int | None = None,
        limit: int | None = None,
    ) -> None:
        if retry_after is None and remaining is None:
            return
        self._signal = RateLimitSignal(
            retry_after=retry_after,
            remaining=remaining,
            limit=limit,
        )


def parts_count(total_size: int, part_size: int) -> int:
    """Number of parts needed for total_size (at least one)."""
    if total_size <= 0:
        return 1
    return math.ceil(total_size / part_size)
