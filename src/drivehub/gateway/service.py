"""Storage gateway service.

Single entry point for every storage operation. Each call resolves the
caller's source, obtains a cached adapter, runs the provider call through the
governor and enforces the operation timeout and cancellation signal.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime
from functools import partial
from typing import Any, TypeVar

import structlog

from drivehub.gateway.cursor import CursorManager, operation_signature
from drivehub.gateway.metrics import credential_refreshes_total, record_operation
from drivehub.gateway.models import (
    FederatedListing,
    GatewayConfig,
    ListingPage,
    SourceFailure,
)
from drivehub.gateway.registry import SourceRegistry
from drivehub.resilience.governor import Governor
from drivehub.resilience.models import RateLimitConfig
from drivehub.security.credential_store import CredentialStore
from drivehub.storage.base import (
    ByteStream,
    FileEntry,
    ProviderAdapter,
    ShareLink,
    StorageSource,
    normalize_path,
)
from drivehub.storage.exceptions import (
    AuthExpiredError,
    ConflictError,
    NotFoundError,
    OperationCancelledError,
    PermissionDeniedError,
    SourceDisabledError,
    StorageError,
    StorageTimeoutError,
    UnknownError,
)
from drivehub.storage.factory import AdapterFactory
from drivehub.transfer.coordinator import TransferCoordinator
from drivehub.transfer.store import InMemoryTransferSessionStore, TransferSessionStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

AdapterCall = Callable[[ProviderAdapter], Awaitable[T]]


class StorageGateway:
    """Uniform operations over every configured storage source.

    All operations take the authenticated user id first; a user never
    resolves another user's source (reported as ``NotFoundError``). Every
    operation accepts ``timeout`` (seconds, overriding the configured
    per-operation timeout) and ``cancel`` (an ``asyncio.Event``).
    """

    def __init__(
        self,
        registry: SourceRegistry,
        credentials: CredentialStore,
        governor: Governor | None = None,
        cursors: CursorManager | None = None,
        adapter_factory: AdapterFactory | None = None,
        config: GatewayConfig | None = None,
        session_store: TransferSessionStore | None = None,
    ) -> None:
        """Initialize storage gateway.

        Args:
            registry: Storage source registry
            credentials: Credential store
            governor: Rate/retry governor (default: retries only, no limiter)
            cursors: Cursor manager (default: random key, single instance)
            adapter_factory: Adapter factory
            config: Gateway configuration
            session_store: Transfer session persistence
        """
        self.config = config or GatewayConfig()
        self.registry = registry
        self.credentials = credentials
        self.governor = governor or Governor(self.config.retry)
        self.cursors = cursors or CursorManager()
        self.adapter_factory = adapter_factory or AdapterFactory()
        self.transfers = TransferCoordinator(
            self,
            session_store or InMemoryTransferSessionStore(),
            self.config.transfer,
        )

        self._adapters: dict[str, ProviderAdapter] = {}
        self._adapter_locks: dict[str, asyncio.Lock] = {}

        self.credentials.add_revocation_listener(self._on_revoked)

        logger.info(
            "storage_gateway_initialized",
            supported_providers=self.adapter_factory.supported_kinds(),
            multipart_threshold=self.config.transfer.multipart_threshold,
        )

    # Source resolution

    async def _owned_source(self, user_id: str, source_id: str) -> StorageSource:
        source = await self.registry.get(source_id)
        if source is None or source.owner_id != user_id:
            raise NotFoundError(f"Source {source_id} not found", source_id=source_id)
        return source

    async def _resolve(self, user_id: str, source_id: str) -> tuple[StorageSource, ProviderAdapter]:
        source = await self._owned_source(user_id, source_id)

        if not source.enabled:
            raise SourceDisabledError("Source is disabled", source_id=source_id)
        if not self.credentials.has_credential(source.credential_ref):
            raise SourceDisabledError(
                "Source credential is missing or revoked",
                source_id=source_id,
            )

        lock = self._adapter_locks.setdefault(source_id, asyncio.Lock())
        async with lock:
            adapter = self._adapters.get(source_id)
            if adapter is None:
                adapter = self.adapter_factory.create(
                    source,
                    partial(self.credentials.get, source_id),
                )
                self._adapters[source_id] = adapter
                self.governor.configure_source(
                    source_id,
                    self.config.rate_limits.get(source.provider_kind, RateLimitConfig()),
                )

        return source, adapter

    async def adapter_for(self, user_id: str, source_id: str) -> ProviderAdapter:
        """Get the cached adapter for a source the user owns.

        Raises:
            NotFoundError: If the source does not exist or belongs to another user
            SourceDisabledError: If the source is disabled or its credential is gone
        """
        _, adapter = await self._resolve(user_id, source_id)
        return adapter

    async def _invalidate(self, source_id: str) -> None:
        adapter = self._adapters.pop(source_id, None)
        if adapter is not None:
            await adapter.disconnect()
            logger.info("storage_adapter_invalidated", source_id=source_id)

    async def _on_revoked(self, source_id: str) -> None:
        await self._invalidate(source_id)

    # Dispatch

    async def _call(
        self,
        adapter: ProviderAdapter,
        operation: str,
        fn: AdapterCall[T],
    ) -> T:
        async def attempt() -> T:
            if not adapter.is_connected():
                await adapter.connect()
            return await fn(adapter)

        source_id = adapter.source_id

        try:
            return await self.governor.execute(
                source_id, operation, attempt, signal=adapter.rate_limit_signal
            )
        except AuthExpiredError:
            logger.info("credential_expired_refreshing", source_id=source_id, operation=operation)

        credential_refreshes_total.labels(provider=adapter.kind.value).inc()
        await self.credentials.refresh(source_id)
        await adapter.disconnect()

        try:
            return await self.governor.execute(
                source_id, operation, attempt, signal=adapter.rate_limit_signal
            )
        except AuthExpiredError as e:
            raise PermissionDeniedError(
                "Provider rejected the refreshed credential",
                source_id=source_id,
                status_code=e.status_code,
                provider_code=e.provider_code,
            ) from e

    async def _guard(
        self,
        factory: Callable[[], Awaitable[T]],
        operation: str,
        source_id: str,
        timeout: float | None,
        cancel: asyncio.Event | None,
    ) -> T:
        """Run a call under a timeout and an optional cancellation event."""
        if cancel is not None and cancel.is_set():
            raise OperationCancelledError(f"Operation '{operation}' cancelled", source_id=source_id)

        if timeout is None:
            timeout = self.config.timeouts.for_operation(operation)

        task = asyncio.ensure_future(factory())
        waiters: set[asyncio.Future[Any]] = {task}
        cancel_waiter = None
        if cancel is not None:
            cancel_waiter = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        if task in done:
            return task.result()

        if cancel_waiter is not None and cancel_waiter in done:
            logger.info("operation_cancelled", source_id=source_id, operation=operation)
            raise OperationCancelledError(f"Operation '{operation}' cancelled", source_id=source_id)

        logger.warning(
            "operation_timeout",
            source_id=source_id,
            operation=operation,
            timeout_seconds=timeout,
        )
        raise StorageTimeoutError(operation, timeout, source_id)

    async def dispatch(
        self,
        user_id: str,
        source_id: str,
        operation: str,
        fn: AdapterCall[T],
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> T:
        """Run an adapter call on the shared dispatch path.

        Resolves the source for the user, then runs ``fn(adapter)`` through
        the governor under the operation timeout and cancellation signal.

        Args:
            user_id: Caller
            source_id: Target source
            operation: Operation name (metrics, logging, timeout lookup)
            fn: Coroutine function taking the adapter

        Returns:
            Result of ``fn``

        Raises:
            StorageError: Classified failure with ``source_id`` set
        """
        source, adapter = await self._resolve(user_id, source_id)
        started = time.perf_counter()
        error: StorageError | None = None

        try:
            return await self._guard(
                lambda: self._call(adapter, operation, fn),
                operation,
                source_id,
                timeout,
                cancel,
            )
        except StorageError as e:
            e.source_id = e.source_id or source_id
            error = e
            raise
        finally:
            record_operation(
                source.provider_kind.value,
                operation,
                time.perf_counter() - started,
                error,
            )

    # Operations

    async def list_folder(
        self,
        user_id: str,
        source_id: str,
        path: str = "/",
        cursor: str | None = None,
        page_size: int | None = None,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ListingPage:
        """List one page of a folder.

        Args:
            user_id: Caller
            source_id: Source to list
            path: Folder path
            cursor: Cursor from the previous page of the same listing
            page_size: Maximum entries (clamped to the configured maximum)

        Returns:
            Page of entries and the cursor for the next page

        Raises:
            InvalidCursorError: If the cursor is tampered, expired or belongs
                to another source or listing
        """
        path = normalize_path(path)
        size = self.config.page_size(page_size)
        signature = operation_signature("list_folder", path)

        async def run(adapter: ProviderAdapter) -> Any:
            native_token = None
            if cursor is not None:
                native_token = self.cursors.resolve(cursor, source_id, signature)
            return await adapter.list_folder(path, size, native_token)

        page = await self.dispatch(
            user_id, source_id, "list_folder", run, timeout=timeout, cancel=cancel
        )

        for entry in page.entries:
            entry.source_id = source_id

        next_cursor = None
        if page.native_token:
            next_cursor = self.cursors.issue(source_id, signature, page.native_token)

        return ListingPage(entries=page.entries, next_cursor=next_cursor)

    async def list_federated(
        self,
        user_id: str,
        source_ids: list[str],
        path: str = "/",
        page_size: int | None = None,
        cursors: dict[str, str] | None = None,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> FederatedListing:
        """List the same path across several sources concurrently.

        A failing source is reported in ``failures`` and never fails the
        listing as a whole.

        Args:
            user_id: Caller
            source_ids: Sources to list
            path: Folder path
            page_size: Page size per source
            cursors: ``next_cursors`` of a previous federated page; when given,
                only the sources present in it are continued

        Returns:
            Merged entries tagged with their source id
        """
        path = normalize_path(path)

        if cursors is None:
            targets: dict[str, str | None] = dict.fromkeys(source_ids)
        else:
            targets = {sid: cursors[sid] for sid in dict.fromkeys(source_ids) if sid in cursors}

        results = await asyncio.gather(
            *(
                self.list_folder(
                    user_id,
                    sid,
                    path,
                    cursor=cursor,
                    page_size=page_size,
                    timeout=timeout,
                    cancel=cancel,
                )
                for sid, cursor in targets.items()
            ),
            return_exceptions=True,
        )

        listing = FederatedListing()

        for sid, result in zip(targets, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                error = result if isinstance(result, StorageError) else UnknownError(str(result), source_id=sid)
                listing.failures.append(
                    SourceFailure(source_id=sid, kind=error.kind, message=error.message)
                )
                logger.warning(
                    "federated_source_failed",
                    source_id=sid,
                    kind=error.kind.value,
                    error=error.message,
                )
                continue

            listing.entries.extend(result.entries)
            if result.next_cursor is not None:
                listing.next_cursors[sid] = result.next_cursor

        listing.partial = bool(listing.failures)
        return listing

    async def stat_entry(
        self,
        user_id: str,
        source_id: str,
        path: str,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> FileEntry:
        path = normalize_path(path)
        entry = await self.dispatch(
            user_id, source_id, "stat", lambda a: a.stat(path), timeout=timeout, cancel=cancel
        )
        entry.source_id = source_id
        return entry

    async def read_file(
        self,
        user_id: str,
        source_id: str,
        path: str,
        byte_range: tuple[int, int] | None = None,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ByteStream:
        """Open a file for reading.

        The timeout covers opening the stream; consuming it is up to the caller.

        Args:
            byte_range: Optional inclusive (start, end) byte range
        """
        path = normalize_path(path)
        if byte_range is not None:
            start, end = byte_range
            if start < 0 or end < start:
                raise ValueError(f"Invalid byte range: {byte_range}")

        return await self.dispatch(
            user_id,
            source_id,
            "read",
            lambda a: a.read(path, byte_range),
            timeout=timeout,
            cancel=cancel,
        )

    async def write_file(
        self,
        user_id: str,
        source_id: str,
        path: str,
        content: bytes | AsyncIterator[bytes],
        size: int | None = None,
        overwrite: bool = True,
        if_match: str | None = None,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> FileEntry:
        """Write a file.

        Content up to the multipart threshold is written in one request;
        larger content, or a stream of unknown size, goes through a
        multipart transfer session.

        Args:
            content: File bytes or an async iterator of byte chunks
            size: Total size when ``content`` is a stream (if known)
            overwrite: Replace an existing file
            if_match: Only write if the current etag matches

        Raises:
            ConflictError: If the file exists and overwrite is False, or the
                etag precondition fails
        """
        path = normalize_path(path)
        threshold = self.config.transfer.multipart_threshold

        if not isinstance(content, (bytes, bytearray)):
            adapter = await self.adapter_for(user_id, source_id)
            if (size is not None and size <= threshold) or (
                size is None and adapter.requires_total_size
            ):
                # Small streams, and streams for providers that need the size up front
                content = b"".join([chunk async for chunk in content])
                if size is not None and len(content) != size:
                    raise ValueError(f"Declared size {size} but received {len(content)} bytes")

        if isinstance(content, (bytes, bytearray)) and len(content) <= threshold:
            data = bytes(content)
            entry = await self.dispatch(
                user_id,
                source_id,
                "write",
                lambda a: a.write(path, data, overwrite, if_match),
                timeout=timeout,
                cancel=cancel,
            )
            entry.source_id = source_id
            return entry

        if not overwrite or if_match is not None:
            await self._check_write_precondition(
                user_id, source_id, path, overwrite, if_match, timeout=timeout, cancel=cancel
            )

        entry = await self.transfers.upload_stream(
            user_id, source_id, path, content, size, timeout=timeout, cancel=cancel
        )
        entry.source_id = source_id
        return entry

    async def _check_write_precondition(
        self,
        user_id: str,
        source_id: str,
        path: str,
        overwrite: bool,
        if_match: str | None,
        *,
        timeout: float | None,
        cancel: asyncio.Event | None,
    ) -> None:
        # Multipart commits cannot carry preconditions on every provider
        try:
            current = await self.stat_entry(user_id, source_id, path, timeout=timeout, cancel=cancel)
        except NotFoundError:
            if if_match is not None:
                raise ConflictError(
                    f"{path} does not exist; etag precondition failed",
                    source_id=source_id,
                ) from None
            return

        if not overwrite:
            raise ConflictError(f"{path} already exists", source_id=source_id)
        if if_match is not None and current.etag != if_match:
            raise ConflictError(f"Etag precondition failed for {path}", source_id=source_id)

    async def delete_entry(
        self,
        user_id: str,
        source_id: str,
        path: str,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        path = normalize_path(path)
        if path == "/":
            raise ValueError("Cannot delete the root of a source")

        await self.dispatch(
            user_id, source_id, "delete", lambda a: a.delete(path), timeout=timeout, cancel=cancel
        )

        logger.info("storage_entry_deleted", source_id=source_id, path=path)

    async def move_entry(
        self,
        user_id: str,
        source_id: str,
        from_path: str,
        to_path: str,
        overwrite: bool = False,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> FileEntry:
        """Move or rename an entry within a source.

        Raises:
            ConflictError: If the destination exists and overwrite is False
        """
        from_path = normalize_path(from_path)
        to_path = normalize_path(to_path)
        if "/" in (from_path, to_path):
            raise ValueError("Cannot move the root of a source")
        if to_path.startswith(from_path + "/"):
            raise ValueError(f"Cannot move {from_path} into itself")

        entry = await self.dispatch(
            user_id,
            source_id,
            "move",
            lambda a: a.move(from_path, to_path, overwrite),
            timeout=timeout,
            cancel=cancel,
        )
        entry.source_id = source_id
        return entry

    async def create_folder(
        self,
        user_id: str,
        source_id: str,
        path: str,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> FileEntry:
        path = normalize_path(path)
        entry = await self.dispatch(
            user_id,
            source_id,
            "create_folder",
            lambda a: a.create_folder(path),
            timeout=timeout,
            cancel=cancel,
        )
        entry.source_id = source_id
        return entry

    async def share_entry(
        self,
        user_id: str,
        source_id: str,
        path: str,
        expires_in: int | None = None,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ShareLink:
        """Create a shareable link.

        Args:
            expires_in: Link lifetime in seconds, where the provider supports it
        """
        path = normalize_path(path)
        if expires_in is not None and expires_in <= 0:
            raise ValueError("expires_in must be positive")

        return await self.dispatch(
            user_id,
            source_id,
            "share",
            lambda a: a.share(path, expires_in),
            timeout=timeout,
            cancel=cancel,
        )

    # Source lifecycle

    async def register_source(self, source: StorageSource) -> StorageSource:
        """Register a new storage source.

        Raises:
            ValueError: If the provider kind is unsupported or the id is taken
        """
        if source.provider_kind.value not in self.adapter_factory.supported_kinds():
            raise ValueError(f"Unsupported provider kind: {source.provider_kind.value}")

        await self.registry.add(source)

        logger.info(
            "storage_source_registered",
            source_id=source.source_id,
            provider=source.provider_kind.value,
            owner_id=source.owner_id,
        )

        return source

    async def list_sources(self, user_id: str) -> list[StorageSource]:
        return await self.registry.list_for_owner(user_id)

    async def rename_source(self, user_id: str, source_id: str, display_name: str) -> StorageSource:
        await self._owned_source(user_id, source_id)
        updated = await self.registry.update(source_id, display_name=display_name)
        if updated is None:
            raise NotFoundError(f"Source {source_id} not found", source_id=source_id)
        return updated

    async def set_source_enabled(self, user_id: str, source_id: str, enabled: bool) -> StorageSource:
        """Enable or disable a source; disabling drops its cached adapter."""
        await self._owned_source(user_id, source_id)
        updated = await self.registry.update(source_id, enabled=enabled)
        if updated is None:
            raise NotFoundError(f"Source {source_id} not found", source_id=source_id)

        if not enabled:
            await self._invalidate(source_id)

        logger.info("storage_source_toggled", source_id=source_id, enabled=enabled)
        return updated

    async def remove_source(self, user_id: str, source_id: str) -> None:
        """Remove a source, aborting its open transfer sessions first."""
        await self._owned_source(user_id, source_id)

        aborted = await self.transfers.abort_for_source(source_id)
        await self._invalidate(source_id)
        await self.registry.remove(source_id)
        self._adapter_locks.pop(source_id, None)
        self.governor.forget_source(source_id)
        if self.governor.limiter is not None:
            await self.governor.limiter.reset(source_id)

        logger.info(
            "storage_source_removed",
            source_id=source_id,
            aborted_transfers=aborted,
        )

    async def health_check(self, user_id: str, source_id: str) -> bool:
        adapter = await self.adapter_for(user_id, source_id)
        return await adapter.health_check()

    async def run_maintenance(self, now: datetime | None = None) -> dict[str, Any]:
        """Collect idle transfer sessions and purge expired rate limit state."""
        result = await self.transfers.collect_garbage(now)
        result["buckets_purged"] = (
            await self.governor.limiter.purge() if self.governor.limiter is not None else 0
        )
        return result

    async def close(self) -> None:
        """Disconnect every cached adapter."""
        for source_id in list(self._adapters):
            await self._invalidate(source_id)
