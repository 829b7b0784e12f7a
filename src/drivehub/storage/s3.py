"""S3-compatible storage adapter implementation.

Provides listing, ranged reads, conditional writes and multipart uploads
against AWS S3 and S3-compatible services (MinIO, R2, Wasabi ...) using
aioboto3. Folders are "/" delimited key prefixes under the bucket.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

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
    PermissionDeniedError,
    QuotaExceededError,
    StorageError,
    ThrottledError,
    UnavailableError,
    UnknownError,
    error_from_http_status,
    parse_retry_after,
)

logger = structlog.get_logger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404", "NoSuchUpload"}
_DENIED_CODES = {"AccessDenied", "AllAccessDisabled", "InvalidAccessKeyId", "SignatureDoesNotMatch", "403"}
_THROTTLE_CODES = {"SlowDown", "Throttling", "ThrottlingException", "RequestLimitExceeded", "TooManyRequests"}
_CONFLICT_CODES = {"PreconditionFailed", "ConditionalRequestConflict", "412", "409"}
_QUOTA_CODES = {"QuotaExceeded", "EntityTooLarge", "InsufficientStorage"}
_TRANSIENT_CODES = {"InternalError", "ServiceUnavailable", "RequestTimeout", "503", "500"}
_CURSOR_CODES = {"InvalidArgument", "InvalidToken"}


def classify_s3_error(
    error: Exception,
    source_id: str | None = None,
    paged: bool = False,
) -> StorageError:
    """Map a botocore exception to a normalized storage error.

    Args:
        error: Exception raised by the aioboto3 client
        source_id: Originating source id
        paged: Whether the request carried a continuation token

    Returns:
        Normalized storage error (not raised)
    """
    if isinstance(error, StorageError):
        return error

    if isinstance(error, ClientError):
        err = error.response.get("Error", {})
        code = str(err.get("Code", ""))
        message = err.get("Message") or str(error)
        metadata = error.response.get("ResponseMetadata", {})
        status = metadata.get("HTTPStatusCode")
        retry_after = parse_retry_after(
            metadata.get("HTTPHeaders", {}).get("retry-after")
        )
        kwargs: dict[str, Any] = {
            "source_id": source_id,
            "status_code": status,
            "provider_code": code,
            "retry_after": retry_after,
        }

        if paged and code in _CURSOR_CODES:
            return InvalidCursorError(
                f"Continuation token rejected: {message}",
                source_id=source_id,
                status_code=status,
                provider_code=code,
            )
        if code in _NOT_FOUND_CODES:
            return NotFoundError(message, **kwargs)
        if code in _DENIED_CODES:
            return PermissionDeniedError(message, **kwargs)
        if code in _THROTTLE_CODES:
            return ThrottledError(message, **kwargs)
        if code in _CONFLICT_CODES:
            return ConflictError(message, **kwargs)
        if code in _QUOTA_CODES:
            return QuotaExceededError(message, **kwargs)
        if code in _TRANSIENT_CODES:
            return UnavailableError(message, **kwargs)
        if status:
            mapped = error_from_http_status(status, message, retry_after, code)
            mapped.source_id = source_id
            return mapped
        return UnknownError(message, **kwargs)

    if isinstance(
        error,
        (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError),
    ):
        return UnavailableError(f"S3 endpoint unreachable: {error}", source_id=source_id)

    if isinstance(error, (BotoCoreError, OSError)):
        return UnavailableError(f"S3 transport error: {error}", source_id=source_id)

    return UnknownError(f"Unexpected S3 error: {error}", source_id=source_id)


class S3CompatibleAdapter(ProviderAdapter):
    """S3-compatible storage adapter with aioboto3.

    Source settings:
        endpoint_url: Custom endpoint for S3-compatible services
        region: Bucket region
        addressing_style: "path", "virtual" or "auto" (default)
        use_ssl: Enable TLS (default True)
        prefix: Optional key prefix acting as the source root
    """

    kind = ProviderKind.S3_COMPATIBLE
    min_part_size = 5 * 1024 * 1024
    max_part_size = 5 * 1024**3
    max_parts = 10_000

    def __init__(
        self,
        source: StorageSource,
        credentials: CredentialProvider,
    ) -> None:
        """Initialize S3 adapter.

        Args:
            source: Storage source (root_scope is the bucket name)
            credentials: Credential provider returning access key credentials
        """
        super().__init__(source, credentials)
        self.bucket = source.root_scope
        self.prefix = str(source.settings.get("prefix", "")).strip("/")
        self.addressing_style = source.settings.get("addressing_style", "auto")
        self._client_cm: Any = None
        self._credential_version: int | None = None

        if self.addressing_style not in ("path", "virtual", "auto"):
            raise ValueError(f"Unsupported addressing style: {self.addressing_style}")

        logger.info(
            "s3_adapter_initialized",
            source_id=source.source_id,
            bucket=self.bucket,
            endpoint=source.settings.get("endpoint_url"),
            addressing_style=self.addressing_style,
        )

    def _key(self, path: str) -> str:
        relative = normalize_path(path).lstrip("/")
        if self.prefix:
            return f"{self.prefix}/{relative}" if relative else self.prefix
        return relative

    def _folder_key(self, path: str) -> str:
        key = self._key(path)
        return f"{key}/" if key else ""

    def _path(self, key: str) -> str:
        if self.prefix:
            key = key[len(self.prefix) :]
        return normalize_path(key)

    async def connect(self) -> None:
        credential = await self._credentials()
        if self._connected and credential.version == self._credential_version:
            return

        if self._connected:
            await self.disconnect()

        import aioboto3

        session = aioboto3.Session(
            aws_access_key_id=credential.value("access_key_id"),
            aws_secret_access_key=credential.value("secret_access_key"),
            aws_session_token=credential.value("session_token"),
            region_name=self.source.settings.get("region"),
        )

        # Retries are owned by the governor
        boto_config = BotoConfig(
            s3={"addressing_style": self.addressing_style},
            retries={"max_attempts": 1, "mode": "standard"},
            connect_timeout=self.source.settings.get("connect_timeout", 10),
            read_timeout=self.source.settings.get("read_timeout", 60),
        )

        client_kwargs: dict[str, Any] = {
            "config": boto_config,
            "use_ssl": self.source.settings.get("use_ssl", True),
        }
        if self.source.settings.get("endpoint_url"):
            client_kwargs["endpoint_url"] = self.source.settings["endpoint_url"]

        self._client_cm = session.client("s3", **client_kwargs)
        self._client = await self._client_cm.__aenter__()
        self._credential_version = credential.version
        self._connected = True

        logger.info(
            "s3_connected",
            source_id=self.source_id,
            bucket=self.bucket,
        )

    async def disconnect(self) -> None:
        if self._client_cm is not None:
            await self._client_cm.__aexit__(None, None, None)
        self._client_cm = None
        self._client = None
        self._connected = False

        logger.info(
            "s3_disconnected",
            source_id=self.source_id,
            bucket=self.bucket,
        )

    async def _call(self, method: str, paged: bool = False, **params: Any) -> Any:
        if not self._connected or self._client is None:
            await self.connect()

        try:
            return await getattr(self._client, method)(Bucket=self.bucket, **params)
        except Exception as e:
            error = classify_s3_error(e, self.source_id, paged=paged)
            if error.retry_after is not None:
                self._record_signal(error.retry_after)
            logger.warning(
                "s3_call_failed",
                source_id=self.source_id,
                method=method,
                kind=error.kind.value,
                code=error.provider_code,
            )
            raise error from e

    def _object_entry(self, key: str, obj: dict[str, Any], marker: str | None = None) -> FileEntry:
        path = self._path(key)
        etag = obj.get("ETag", "").strip('"') or None
        return FileEntry(
            native_id=key,
            path=path,
            name=split_path(path)[1],
            kind=EntryKind.FILE,
            size=obj.get("Size", obj.get("ContentLength")),
            modified_at=obj.get("LastModified"),
            etag=etag,
            content_hash=etag if etag and "-" not in etag else None,
            marker=marker,
        )

    def _folder_entry(self, key: str, marker: str | None = None) -> FileEntry:
        path = self._path(key.rstrip("/"))
        return FileEntry(
            native_id=key,
            path=path,
            name=split_path(path)[1],
            kind=EntryKind.FOLDER,
            marker=marker,
        )

    async def list_folder(
        self,
        path: str,
        page_size: int,
        native_token: str | None = None,
    ) -> ListPage:
        prefix = self._folder_key(path)
        params: dict[str, Any] = {
            "Prefix": prefix,
            "Delimiter": "/",
            "MaxKeys": page_size,
        }
        if native_token:
            params["ContinuationToken"] = native_token

        response = await self._call("list_objects_v2", paged="ContinuationToken" in params, **params)

        next_token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        entries: list[FileEntry] = []

        for common in response.get("CommonPrefixes", []):
            entries.append(self._folder_entry(common["Prefix"], next_token))

        for obj in response.get("Contents", []):
            if obj["Key"] == prefix:
                # Folder placeholder object
                continue
            entries.append(self._object_entry(obj["Key"], obj, next_token))

        if not entries and not native_token and normalize_path(path) != "/":
            # Empty prefix: distinguish an empty folder from a missing one
            await self.stat(path)

        logger.debug(
            "s3_folder_listed",
            source_id=self.source_id,
            prefix=prefix,
            count=len(entries),
            truncated=next_token is not None,
        )

        return ListPage(entries=entries, native_token=next_token)

    async def stat(self, path: str) -> FileEntry:
        path = normalize_path(path)
        if path == "/":
            return FileEntry(native_id=self._folder_key(path), path="/", name="", kind=EntryKind.FOLDER)

        key = self._key(path)
        try:
            response = await self._call("head_object", Key=key)
            return self._object_entry(key, response)
        except NotFoundError:
            pass

        probe = await self._call(
            "list_objects_v2",
            Prefix=self._folder_key(path),
            MaxKeys=1,
        )
        if probe.get("KeyCount", len(probe.get("Contents", []))) > 0:
            return self._folder_entry(self._folder_key(path))

        raise NotFoundError(f"No entry at {path}", source_id=self.source_id)

    async def read(
        self,
        path: str,
        byte_range: tuple[int, int] | None = None,
    ) -> ByteStream:
        params: dict[str, Any] = {"Key": self._key(path)}
        if byte_range:
            params["Range"] = f"bytes={byte_range[0]}-{byte_range[1]}"

        response = await self._call("get_object", **params)
        body = response["Body"]

        async def chunks() -> AsyncIterator[bytes]:
            try:
                async for chunk in body.iter_chunks(1024 * 1024):
                    yield chunk
            except Exception as e:
                raise classify_s3_error(e, self.source_id) from e

        async def close() -> None:
            body.close()

        return ByteStream(chunks(), size=response.get("ContentLength"), close=close)

    async def write(
        self,
        path: str,
        content: bytes,
        overwrite: bool = True,
        if_match: str | None = None,
    ) -> FileEntry:
        key = self._key(path)
        params: dict[str, Any] = {"Key": key, "Body": content}
        if if_match is not None:
            params["IfMatch"] = f'"{if_match}"'
        elif not overwrite:
            params["IfNoneMatch"] = "*"

        response = await self._call("put_object", **params)

        logger.info(
            "s3_object_written",
            source_id=self.source_id,
            key=key,
            size=len(content),
        )

        return self._object_entry(
            key,
            {
                "ETag": response.get("ETag", ""),
                "Size": len(content),
                "LastModified": datetime.now(UTC),
            },
        )

    async def initiate_multipart(
        self,
        path: str,
        total_size: int | None = None,
    ) -> MultipartUpload:
        key = self._key(path)
        response = await self._call("create_multipart_upload", Key=key)

        logger.info(
            "s3_multipart_initiated",
            source_id=self.source_id,
            key=key,
            upload_id=response["UploadId"],
        )

        return MultipartUpload(
            upload_id=response["UploadId"],
            path=normalize_path(path),
            total_size=total_size,
            provider_state={"key": key},
        )

    async def upload_part(
        self,
        upload: MultipartUpload,
        part_index: int,
        content: bytes,
        offset: int,
        is_last: bool = False,
    ) -> PartReceipt:
        if not is_last and len(content) < self.min_part_size:
            raise ConflictError(
                f"Part {part_index} is {len(content)} bytes, "
                f"minimum for non-final parts is {self.min_part_size}",
                source_id=self.source_id,
            )

        response = await self._call(
            "upload_part",
            Key=upload.provider_state["key"],
            UploadId=upload.upload_id,
            PartNumber=part_index + 1,
            Body=content,
        )

        return PartReceipt(
            part_index=part_index,
            size=len(content),
            etag=response["ETag"],
        )

    async def complete_multipart(
        self,
        upload: MultipartUpload,
        parts: list[PartReceipt],
    ) -> FileEntry:
        key = upload.provider_state["key"]
        ordered = sorted(parts, key=lambda p: p.part_index)

        response = await self._call(
            "complete_multipart_upload",
            Key=key,
            UploadId=upload.upload_id,
            MultipartUpload={
                "Parts": [
                    {"PartNumber": p.part_index + 1, "ETag": p.etag} for p in ordered
                ]
            },
        )

        logger.info(
            "s3_multipart_completed",
            source_id=self.source_id,
            key=key,
            parts=len(ordered),
        )

        return self._object_entry(
            key,
            {
                "ETag": response.get("ETag", ""),
                "Size": sum(p.size for p in ordered),
                "LastModified": datetime.now(UTC),
            },
        )

    async def abort_multipart(self, upload: MultipartUpload) -> None:
        try:
            await self._call(
                "abort_multipart_upload",
                Key=upload.provider_state["key"],
                UploadId=upload.upload_id,
            )
        except NotFoundError:
            # Already aborted or completed provider side
            return

    async def delete(self, path: str) -> None:
        entry = await self.stat(path)

        if entry.kind == EntryKind.FILE:
            await self._call("delete_object", Key=entry.native_id)
            return

        token: str | None = None
        while True:
            params: dict[str, Any] = {"Prefix": self._folder_key(path), "MaxKeys": 1000}
            if token:
                params["ContinuationToken"] = token
            page = await self._call("list_objects_v2", **params)
            keys = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
            if keys:
                await self._call("delete_objects", Delete={"Objects": keys, "Quiet": True})
            if not page.get("IsTruncated"):
                break
            token = page.get("NextContinuationToken")

        logger.info(
            "s3_prefix_deleted",
            source_id=self.source_id,
            prefix=self._folder_key(path),
        )

    async def _exists(self, path: str) -> bool:
        try:
            await self.stat(path)
            return True
        except NotFoundError:
            return False

    async def move(
        self,
        from_path: str,
        to_path: str,
        overwrite: bool = False,
    ) -> FileEntry:
        entry = await self.stat(from_path)
        if not overwrite and await self._exists(to_path):
            raise ConflictError(f"{normalize_path(to_path)} already exists", source_id=self.source_id)

        if entry.kind == EntryKind.FILE:
            await self._copy(entry.native_id, self._key(to_path))
            await self._call("delete_object", Key=entry.native_id)
            return await self.stat(to_path)

        source_prefix = self._folder_key(from_path)
        target_prefix = self._folder_key(to_path)
        token: str | None = None
        while True:
            params: dict[str, Any] = {"Prefix": source_prefix, "MaxKeys": 1000}
            if token:
                params["ContinuationToken"] = token
            page = await self._call("list_objects_v2", **params)
            for obj in page.get("Contents", []):
                target = target_prefix + obj["Key"][len(source_prefix) :]
                await self._copy(obj["Key"], target)
                await self._call("delete_object", Key=obj["Key"])
            if not page.get("IsTruncated"):
                break
            token = page.get("NextContinuationToken")

        return self._folder_entry(target_prefix)

    async def _copy(self, source_key: str, target_key: str) -> None:
        await self._call(
            "copy_object",
            Key=target_key,
            CopySource={"Bucket": self.bucket, "Key": source_key},
        )

    async def create_folder(self, path: str) -> FileEntry:
        if await self._exists(path):
            raise ConflictError(f"{normalize_path(path)} already exists", source_id=self.source_id)

        key = self._folder_key(path)
        await self._call("put_object", Key=key, Body=b"")
        return self._folder_entry(key)

    async def share(
        self,
        path: str,
        expires_in: int | None = None,
    ) -> ShareLink:
        if not self._connected or self._client is None:
            await self.connect()

        expires_in = expires_in or 3600
        key = self._key(path)
        await self.stat(path)

        url = await self._client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

        logger.info(
            "s3_share_link_generated",
            source_id=self.source_id,
            key=key,
            expiry_seconds=expires_in,
        )

        return ShareLink(
            url=url,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
        )

    async def health_check(self) -> bool:
        try:
            await self._call("head_bucket")
            return True
        except StorageError as e:
            logger.warning(
                "s3_health_check_failed",
                source_id=self.source_id,
                error=str(e),
            )
            return False
