"""Storage provider adapters.

Uniform capability interface over S3-compatible object stores, OneDrive and
Google Drive, plus an in-memory adapter, with a shared error taxonomy.
"""

from drivehub.storage.base import (
    ByteStream,
    EntryKind,
    FileEntry,
    ListPage,
    MultipartUpload,
    PartReceipt,
    ProviderAdapter,
    ProviderKind,
    RateLimitSignal,
    ShareLink,
    StorageSource,
    negotiate_part_size,
    normalize_path,
)
from drivehub.storage.exceptions import (
    AuthExpiredError,
    ConflictError,
    ErrorKind,
    InvalidCursorError,
    NotFoundError,
    OperationCancelledError,
    PermissionDeniedError,
    QuotaExceededError,
    SourceDisabledError,
    StorageError,
    StorageTimeoutError,
    ThrottledError,
    UnavailableError,
    UnknownError,
)
from drivehub.storage.factory import AdapterFactory
from drivehub.storage.gdrive import GoogleDriveAdapter
from drivehub.storage.memory import InMemoryAdapter, MemoryBackend
from drivehub.storage.onedrive import OneDriveAdapter
from drivehub.storage.s3 import S3CompatibleAdapter

__all__ = [
    "ByteStream",
    "EntryKind",
    "FileEntry",
    "ListPage",
    "MultipartUpload",
    "PartReceipt",
    "ProviderAdapter",
    "ProviderKind",
    "RateLimitSignal",
    "ShareLink",
    "StorageSource",
    "negotiate_part_size",
    "normalize_path",
    "AuthExpiredError",
    "ConflictError",
    "ErrorKind",
    "InvalidCursorError",
    "NotFoundError",
    "OperationCancelledError",
    "PermissionDeniedError",
    "QuotaExceededError",
    "SourceDisabledError",
    "StorageError",
    "StorageTimeoutError",
    "ThrottledError",
    "UnavailableError",
    "UnknownError",
    "AdapterFactory",
    "GoogleDriveAdapter",
    "InMemoryAdapter",
    "MemoryBackend",
    "OneDriveAdapter",
    "S3CompatibleAdapter",
]
