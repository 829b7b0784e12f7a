"""Transfer coordinator for multipart uploads and resumable downloads.

Owns the transfer session state machine. Every state change happens under the
session's lock and is persisted before the lock is released; provider calls
for individual parts run outside the lock through the gateway dispatch path,
so they share its ownership checks, governor, timeouts and cancellation.
"""

from __future__ import annotations

import asyncio
import hashlib
import uuid
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from drivehub.gateway.metrics import record_transition, transfer_bytes_total
from drivehub.storage.base import (
    FileEntry,
    PartReceipt,
    ProviderAdapter,
    negotiate_part_size,
    normalize_path,
    parts_count,
)
from drivehub.storage.exceptions import (
    ConflictError,
    ErrorKind,
    NotFoundError,
    StorageError,
)
from drivehub.transfer.models import (
    TRANSITIONS,
    PartDescriptor,
    TransferConfig,
    TransferDirection,
    TransferSession,
    TransferState,
)
from drivehub.transfer.store import TransferSessionStore

if TYPE_CHECKING:
    from drivehub.gateway.service import StorageGateway

logger = structlog.get_logger(__name__)

# Errors that leave a session usable: the caller may retry the part
_RECOVERABLE_KINDS = frozenset(
    {ErrorKind.THROTTLED, ErrorKind.UNAVAILABLE, ErrorKind.TIMEOUT, ErrorKind.CANCELLED}
)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class TransferCoordinator:
    """Multipart upload and resumable download sessions.

    State machine: initiated -> in_progress -> completing -> completed, with
    aborted reachable from every non-terminal state and failed reachable from
    in_progress/completing on a permanent provider error.
    """

    def __init__(
        self,
        gateway: StorageGateway,
        store: TransferSessionStore,
        config: TransferConfig | None = None,
    ) -> None:
        """Initialize transfer coordinator.

        Args:
            gateway: Gateway used to resolve adapters and dispatch part calls
            store: Session persistence
            config: Transfer configuration
        """
        self.gateway = gateway
        self.store = store
        self.config = config or TransferConfig()
        self._locks: dict[str, asyncio.Lock] = {}
        self._pending: dict[str, set[int]] = {}

    def _lock(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    def _release(self, session_id: str, part_index: int) -> None:
        pending = self._pending.get(session_id)
        if pending is None:
            return
        pending.discard(part_index)
        if not pending:
            del self._pending[session_id]

    async def _load(self, user_id: str, session_id: str) -> TransferSession:
        session = await self.store.get(session_id)
        if session is None or session.owner_id != user_id:
            raise NotFoundError(f"Transfer session {session_id} not found")
        return session

    async def _transition(self, session: TransferSession, state: TransferState) -> None:
        if state not in TRANSITIONS[session.state]:
            raise ConflictError(
                f"Transfer session {session.session_id} cannot move from "
                f"{session.state.value} to {state.value}",
                source_id=session.source_id,
            )

        previous = session.state
        session.state = state
        session.touch()
        await self.store.save(session)
        record_transition(session.direction.value, state.value)

        logger.info(
            "transfer_state_changed",
            session_id=session.session_id,
            source_id=session.source_id,
            from_state=previous.value,
            to_state=state.value,
        )

    async def _fail(self, session_id: str, error: StorageError) -> None:
        async with self._lock(session_id):
            session = await self.store.get(session_id)
            if session is None or TransferState.FAILED not in TRANSITIONS[session.state]:
                return
            session.error_kind = error.kind.value
            await self._transition(session, TransferState.FAILED)

        logger.error(
            "transfer_failed",
            session_id=session_id,
            kind=error.kind.value,
            error=error.message,
        )

    async def get_session(self, user_id: str, session_id: str) -> TransferSession:
        """Get a session owned by the user.

        Raises:
            NotFoundError: If the session does not exist or belongs to another user
        """
        return await self._load(user_id, session_id)

    async def missing_parts(self, user_id: str, session_id: str) -> list[int]:
        """Indices still required before the session can complete."""
        session = await self._load(user_id, session_id)
        return session.missing_parts()

    async def start_upload(
        self,
        user_id: str,
        source_id: str,
        path: str,
        total_size: int | None = None,
        part_size: int | None = None,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> TransferSession:
        """Start a multipart upload session.

        Args:
            user_id: Caller
            source_id: Target source
            path: Target file path
            total_size: Declared total size (required by some providers)
            part_size: Preferred part size, negotiated against provider limits

        Returns:
            New session in state ``initiated``

        Raises:
            ValueError: If the provider needs a total size and none was given,
                or the total cannot fit within provider part limits
        """
        path = normalize_path(path)
        adapter = await self.gateway.adapter_for(user_id, source_id)

        if total_size is None and adapter.requires_total_size:
            raise ValueError(f"{adapter.kind.value} uploads require the total size up front")

        size = negotiate_part_size(
            total_size,
            part_size or self.config.default_part_size,
            adapter.min_part_size,
            adapter.max_part_size,
            adapter.max_parts,
            adapter.part_alignment,
        )

        upload = await self.gateway.dispatch(
            user_id,
            source_id,
            "initiate_multipart",
            lambda a: a.initiate_multipart(path, total_size),
            timeout=timeout,
            cancel=cancel,
        )

        session = TransferSession(
            session_id=str(uuid.uuid4()),
            owner_id=user_id,
            source_id=source_id,
            path=path,
            direction=TransferDirection.UPLOAD,
            total_size=total_size,
            part_size=size,
            expected_parts=parts_count(total_size, size) if total_size is not None else None,
            upload=upload,
        )
        await self.store.save(session)
        record_transition(session.direction.value, session.state.value)

        logger.info(
            "transfer_upload_started",
            session_id=session.session_id,
            source_id=source_id,
            path=path,
            total_size=total_size,
            part_size=size,
            expected_parts=session.expected_parts,
        )

        return session

    def _check_part(
        self,
        session: TransferSession,
        adapter: ProviderAdapter,
        part_index: int,
        data: bytes,
        last: bool,
    ) -> bool:
        """Validate a part against the session; returns whether it is the final part."""
        if part_index < 0:
            raise ValueError("part_index must be >= 0")

        final = session.final_index
        if final is not None and part_index > final:
            raise ConflictError(
                f"Part {part_index} is beyond the final part {final}",
                source_id=session.source_id,
            )
        if last and final is not None and part_index != final:
            raise ConflictError(
                f"Part {part_index} flagged last but the final part is {final}",
                source_id=session.source_id,
            )

        is_final = last or part_index == final
        offset = part_index * session.part_size

        if not is_final and len(data) != session.part_size:
            raise ConflictError(
                f"Part {part_index} is {len(data)} bytes, expected {session.part_size}",
                source_id=session.source_id,
            )
        if is_final:
            if session.total_size is not None and len(data) != session.total_size - offset:
                raise ConflictError(
                    f"Final part {part_index} is {len(data)} bytes, "
                    f"expected {session.total_size - offset}",
                    source_id=session.source_id,
                )
            if len(data) > session.part_size:
                raise ConflictError(
                    f"Final part {part_index} exceeds the part size {session.part_size}",
                    source_id=session.source_id,
                )

        pending = self._pending.get(session.session_id, set())
        if part_index in pending:
            raise ConflictError(
                f"Part {part_index} is already being uploaded",
                source_id=session.source_id,
            )

        if last and final is None:
            beyond = sorted(i for i in (*session.completed_parts, *pending) if i > part_index)
            if beyond:
                raise ConflictError(
                    f"Part {part_index} flagged last but parts {beyond} lie beyond it",
                    source_id=session.source_id,
                )

        if not adapter.supports_out_of_order_parts:
            next_index = max(session.completed_parts, default=-1) + 1
            if pending or part_index != next_index:
                raise ConflictError(
                    f"{adapter.kind.value} requires parts in order; next part is {next_index}",
                    source_id=session.source_id,
                )

        return is_final

    async def upload_part(
        self,
        user_id: str,
        session_id: str,
        part_index: int,
        data: bytes,
        checksum: str | None = None,
        last: bool = False,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> PartDescriptor:
        """Upload one part of a session.

        Args:
            user_id: Caller
            session_id: Upload session
            part_index: Zero based part index
            data: Part bytes (exactly ``part_size`` except for the final part)
            checksum: Optional hex SHA-256 the caller computed
            last: Marks the final part when the total size is unknown

        Returns:
            Descriptor of the stored part

        Raises:
            ConflictError: On checksum mismatch, a part that does not fit the
                session, a session not accepting parts, or out-of-order parts
                for providers that need them in order
        """
        computed = sha256_hex(data)
        if checksum is not None and checksum.lower() != computed:
            raise ConflictError(f"Checksum mismatch for part {part_index}")

        async with self._lock(session_id):
            session = await self._load(user_id, session_id)

            if session.direction != TransferDirection.UPLOAD:
                raise ConflictError(f"Transfer session {session_id} is not an upload")
            if session.state not in (TransferState.INITIATED, TransferState.IN_PROGRESS):
                raise ConflictError(
                    f"Transfer session {session_id} is {session.state.value}",
                    source_id=session.source_id,
                )

            existing = session.completed_parts.get(part_index)
            if existing is not None:
                if existing.checksum == computed:
                    return existing
                raise ConflictError(
                    f"Part {part_index} was already received with different content",
                    source_id=session.source_id,
                )

            adapter = await self.gateway.adapter_for(user_id, session.source_id)
            is_final = self._check_part(session, adapter, part_index, data, last)
            self._pending.setdefault(session_id, set()).add(part_index)

        offset = part_index * session.part_size
        upload = session.upload

        try:
            receipt = await self.gateway.dispatch(
                user_id,
                session.source_id,
                "upload_part",
                lambda a: a.upload_part(upload, part_index, data, offset, is_last=is_final),
                timeout=timeout,
                cancel=cancel,
            )
        except StorageError as e:
            self._release(session_id, part_index)
            if e.kind not in _RECOVERABLE_KINDS:
                await self._fail(session_id, e)
            raise

        async with self._lock(session_id):
            self._release(session_id, part_index)
            session = await self._load(user_id, session_id)

            if session.state not in (TransferState.INITIATED, TransferState.IN_PROGRESS):
                raise ConflictError(
                    f"Transfer session {session_id} became {session.state.value} "
                    f"while part {part_index} was uploading",
                    source_id=session.source_id,
                )

            final = session.final_index
            if final is not None and part_index > final:
                raise ConflictError(
                    f"Part {part_index} is beyond the final part {final}",
                    source_id=session.source_id,
                )
            if is_final and final is None and any(i > part_index for i in session.completed_parts):
                raise ConflictError(
                    f"Part {part_index} flagged last but later parts were received",
                    source_id=session.source_id,
                )

            descriptor = PartDescriptor(
                index=part_index,
                offset=offset,
                size=len(data),
                checksum=computed,
                etag=receipt.etag,
            )
            session.completed_parts[part_index] = descriptor

            if is_final and session.expected_parts is None:
                session.last_part_index = part_index
                session.expected_parts = part_index + 1
                session.total_size = offset + len(data)

            if session.state == TransferState.INITIATED:
                await self._transition(session, TransferState.IN_PROGRESS)
            else:
                session.touch()
                await self.store.save(session)

        transfer_bytes_total.labels(direction=TransferDirection.UPLOAD.value).inc(len(data))

        logger.debug(
            "transfer_part_uploaded",
            session_id=session_id,
            part_index=part_index,
            size=len(data),
            received=len(session.completed_parts),
            received_bytes=session.received_bytes,
            expected=session.expected_parts,
        )

        return descriptor

    async def complete_upload(
        self,
        user_id: str,
        session_id: str,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> FileEntry:
        """Commit an upload once every part is present.

        Exactly one call succeeds per session; later calls raise ``ConflictError``.

        Raises:
            ConflictError: If parts are missing or in flight, or the session
                is not in a completable state
        """
        async with self._lock(session_id):
            session = await self._load(user_id, session_id)

            if session.direction != TransferDirection.UPLOAD:
                raise ConflictError(f"Transfer session {session_id} is not an upload")
            if session.state not in (TransferState.INITIATED, TransferState.IN_PROGRESS):
                raise ConflictError(
                    f"Transfer session {session_id} is {session.state.value}",
                    source_id=session.source_id,
                )
            if self._pending.get(session_id):
                raise ConflictError(
                    f"Parts still uploading: {sorted(self._pending[session_id])}",
                    source_id=session.source_id,
                )
            if not session.is_complete():
                raise ConflictError(
                    f"Transfer session {session_id} is missing parts {session.missing_parts()}",
                    source_id=session.source_id,
                )

            await self._transition(session, TransferState.COMPLETING)

        receipts = [
            PartReceipt(part_index=p.index, size=p.size, etag=p.etag)
            for p in sorted(session.completed_parts.values(), key=lambda p: p.index)
            if p.index <= session.final_index
        ]
        upload = session.upload

        try:
            entry = await self.gateway.dispatch(
                user_id,
                session.source_id,
                "complete_multipart",
                lambda a: a.complete_multipart(upload, receipts),
                timeout=timeout,
                cancel=cancel,
            )
        except StorageError as e:
            if e.kind in _RECOVERABLE_KINDS:
                async with self._lock(session_id):
                    current = await self.store.get(session_id)
                    if current is not None and current.state == TransferState.COMPLETING:
                        await self._transition(current, TransferState.IN_PROGRESS)
            else:
                await self._fail(session_id, e)
            raise

        async with self._lock(session_id):
            session = await self._load(user_id, session_id)
            if session.state != TransferState.COMPLETING:
                raise ConflictError(
                    f"Transfer session {session_id} became {session.state.value} during completion",
                    source_id=session.source_id,
                )
            await self._transition(session, TransferState.COMPLETED)

        self._pending.pop(session_id, None)

        logger.info(
            "transfer_upload_completed",
            session_id=session_id,
            source_id=session.source_id,
            path=session.path,
            size=session.received_bytes,
            parts=len(receipts),
        )

        entry.source_id = session.source_id
        return entry

    async def abort_upload(
        self,
        user_id: str,
        session_id: str,
        *,
        timeout: float | None = None,
    ) -> TransferSession:
        """Abort a session (uploads and downloads alike).

        Idempotent: aborting an aborted session returns it unchanged. The
        provider side multipart upload is discarded best effort.

        Raises:
            ConflictError: If the session already completed
        """
        async with self._lock(session_id):
            session = await self._load(user_id, session_id)

            if session.state == TransferState.ABORTED:
                return session
            if session.state == TransferState.COMPLETED:
                raise ConflictError(
                    f"Transfer session {session_id} already completed",
                    source_id=session.source_id,
                )

            await self._transition(session, TransferState.ABORTED)

        self._pending.pop(session_id, None)

        if session.upload is not None:
            upload = session.upload
            try:
                await self.gateway.dispatch(
                    user_id,
                    session.source_id,
                    "abort_multipart",
                    lambda a: a.abort_multipart(upload),
                    timeout=timeout,
                )
            except StorageError as e:
                # Providers expire abandoned multipart uploads on their own
                logger.warning(
                    "transfer_abort_cleanup_failed",
                    session_id=session_id,
                    source_id=session.source_id,
                    kind=e.kind.value,
                    error=e.message,
                )

        logger.info(
            "transfer_aborted",
            session_id=session_id,
            source_id=session.source_id,
        )

        return session

    async def upload_stream(
        self,
        user_id: str,
        source_id: str,
        path: str,
        content: bytes | AsyncIterator[bytes],
        total_size: int | None = None,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> FileEntry:
        """Upload a whole payload through a multipart session.

        Splits the content into negotiated parts, uploads them in order and
        completes the session; aborts the session if anything fails.
        """
        if isinstance(content, (bytes, bytearray)):
            total_size = len(content)
            content = _chunked(bytes(content), self.config.default_part_size)

        session = await self.start_upload(
            user_id, source_id, path, total_size, timeout=timeout, cancel=cancel
        )

        try:
            buffer = bytearray()
            index = 0
            async for chunk in content:
                buffer.extend(chunk)
                # Keep at least one byte back so the final part is known
                while len(buffer) > session.part_size:
                    part = bytes(buffer[: session.part_size])
                    del buffer[: session.part_size]
                    await self.upload_part(
                        user_id, session.session_id, index, part, timeout=timeout, cancel=cancel
                    )
                    index += 1

            await self.upload_part(
                user_id, session.session_id, index, bytes(buffer), last=True, timeout=timeout, cancel=cancel
            )
            return await self.complete_upload(user_id, session.session_id, timeout=timeout, cancel=cancel)
        except BaseException:
            await self.abort_upload(user_id, session.session_id)
            raise

    async def start_download(
        self,
        user_id: str,
        source_id: str,
        path: str,
        part_size: int | None = None,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> TransferSession:
        """Start a resumable download session for a file.

        Raises:
            ConflictError: If the path is a folder
        """
        entry = await self.gateway.stat_entry(user_id, source_id, path, timeout=timeout, cancel=cancel)
        if entry.is_folder:
            raise ConflictError(f"{entry.path} is a folder", source_id=source_id)

        size = part_size or self.config.default_part_size
        total = entry.size or 0

        session = TransferSession(
            session_id=str(uuid.uuid4()),
            owner_id=user_id,
            source_id=source_id,
            path=entry.path,
            direction=TransferDirection.DOWNLOAD,
            total_size=total,
            part_size=size,
            expected_parts=parts_count(total, size),
        )
        await self.store.save(session)
        record_transition(session.direction.value, session.state.value)

        logger.info(
            "transfer_download_started",
            session_id=session.session_id,
            source_id=source_id,
            path=entry.path,
            total_size=total,
            expected_parts=session.expected_parts,
        )

        return session

    async def download_part(
        self,
        user_id: str,
        session_id: str,
        part_index: int,
        *,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> bytes:
        """Fetch one byte range of a download session.

        Parts may be fetched in any order and re-fetched; the session
        completes once every part has been served.
        """
        async with self._lock(session_id):
            session = await self._load(user_id, session_id)

            if session.direction != TransferDirection.DOWNLOAD:
                raise ConflictError(f"Transfer session {session_id} is not a download")
            if session.state not in (TransferState.INITIATED, TransferState.IN_PROGRESS):
                raise ConflictError(
                    f"Transfer session {session_id} is {session.state.value}",
                    source_id=session.source_id,
                )
            if part_index < 0:
                raise ValueError("part_index must be >= 0")
            if part_index > session.final_index:
                raise ConflictError(
                    f"Part {part_index} is beyond the final part {session.final_index}",
                    source_id=session.source_id,
                )

        offset = part_index * session.part_size
        end = min(offset + session.part_size, session.total_size) - 1
        path = session.path

        async def fetch(adapter: ProviderAdapter) -> bytes:
            if end < offset:
                return b""
            stream = await adapter.read(path, (offset, end))
            return await stream.read()

        try:
            data = await self.gateway.dispatch(
                user_id,
                session.source_id,
                "download_part",
                fetch,
                timeout=timeout,
                cancel=cancel,
            )
        except StorageError as e:
            if e.kind not in _RECOVERABLE_KINDS:
                await self._fail(session_id, e)
            raise

        if len(data) != end - offset + 1:
            raise ConflictError(
                f"{path} changed during download: part {part_index} returned {len(data)} bytes",
                source_id=session.source_id,
            )

        async with self._lock(session_id):
            session = await self._load(user_id, session_id)
            if session.state in (TransferState.INITIATED, TransferState.IN_PROGRESS):
                session.completed_parts[part_index] = PartDescriptor(
                    index=part_index,
                    offset=offset,
                    size=len(data),
                    checksum=sha256_hex(data),
                )
                if session.state == TransferState.INITIATED:
                    await self._transition(session, TransferState.IN_PROGRESS)
                if session.is_complete():
                    await self._transition(session, TransferState.COMPLETING)
                    await self._transition(session, TransferState.COMPLETED)
                else:
                    session.touch()
                    await self.store.save(session)

        transfer_bytes_total.labels(direction=TransferDirection.DOWNLOAD.value).inc(len(data))
        return data

    async def recover(self) -> list[TransferSession]:
        """Reload non-terminal sessions after a restart.

        Sessions caught mid-completion go back to in_progress so the caller
        can retry the commit.
        """
        sessions = await self.store.list_active()
        self._pending.clear()

        for session in sessions:
            if session.state == TransferState.COMPLETING:
                async with self._lock(session.session_id):
                    await self._transition(session, TransferState.IN_PROGRESS)

        logger.info("transfer_sessions_recovered", count=len(sessions))
        return sessions

    async def collect_garbage(self, now: datetime | None = None) -> dict[str, Any]:
        """Abort idle sessions and purge old finished ones.

        Args:
            now: Reference time (defaults to current UTC time)

        Returns:
            Counts of aborted and purged sessions
        """
        now = now or datetime.now(UTC)
        idle_cutoff = now - timedelta(seconds=self.config.session_ttl_seconds)
        aborted = 0

        for session in await self.store.list_active():
            if session.updated_at < idle_cutoff and not self._pending.get(session.session_id):
                await self.abort_upload(session.owner_id, session.session_id)
                aborted += 1

        retention_cutoff = now - timedelta(seconds=self.config.retention_seconds)
        finished = await self.store.list_finished_before(retention_cutoff)
        for session in finished:
            await self.store.delete(session.session_id)
            self._locks.pop(session.session_id, None)

        logger.info(
            "transfer_garbage_collected",
            aborted=aborted,
            purged=len(finished),
        )

        return {"aborted": aborted, "purged": len(finished)}

    async def abort_for_source(self, source_id: str) -> int:
        """Abort every non-terminal session targeting a source."""
        sessions = await self.store.list_active(source_id)
        for session in sessions:
            await self.abort_upload(session.owner_id, session.session_id)
        return len(sessions)


async def _chunked(data: bytes, chunk_size: int) -> AsyncIterator[bytes]:
    for offset in range(0, len(data), chunk_size):
        yield data[offset : offset + chunk_size]
