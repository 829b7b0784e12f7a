"""
Database Repositories

Repository pattern for database operations on storage sources, transfer
sessions and rate limit counters.
"""

from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import case, delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from drivehub.database.models import (
    RateLimitAttemptDB,
    StorageSourceDB,
    TransferSessionDB,
)
from drivehub.storage.base import MultipartUpload, StorageSource
from drivehub.transfer.models import (
    TERMINAL_STATES,
    PartDescriptor,
    TransferSession,
    TransferState,
)

logger = structlog.get_logger()

# Count written by a block so every attempt in the window is rejected
BLOCKED_COUNT = 1_000_000_000


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; every stored timestamp is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")


class StorageSourceRepository:
    """Repository for storage source database operations."""

    @staticmethod
    async def create(session: AsyncSession, source: StorageSource) -> StorageSourceDB:
        """Create source from StorageSource."""
        source_db = StorageSourceDB(
            id=source.source_id,
            owner_id=source.owner_id,
            provider_kind=source.provider_kind,
            display_name=source.display_name,
            root_scope=source.root_scope,
            credential_ref=source.credential_ref,
            enabled=source.enabled,
            settings=source.settings,
            created_at=source.created_at,
            updated_at=source.updated_at,
        )
        session.add(source_db)
        await session.flush()
        return source_db

    @staticmethod
    async def get_by_id(session: AsyncSession, source_id: str) -> StorageSourceDB | None:
        """Get source by ID."""
        result = await session.execute(
            select(StorageSourceDB).where(StorageSourceDB.id == source_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_owner(session: AsyncSession, owner_id: str) -> list[StorageSourceDB]:
        """Get all sources owned by a user."""
        result = await session.execute(
            select(StorageSourceDB)
            .where(StorageSourceDB.owner_id == owner_id)
            .order_by(StorageSourceDB.created_at)
        )
        return list(result.scalars().all())

    @staticmethod
    async def update(
        session: AsyncSession,
        source_id: str,
        display_name: str | None = None,
        enabled: bool | None = None,
    ) -> bool:
        """Update the mutable fields of a source."""
        values: dict = {"updated_at": datetime.now(UTC)}
        if display_name is not None:
            values["display_name"] = display_name
        if enabled is not None:
            values["enabled"] = enabled

        result = await session.execute(
            update(StorageSourceDB).where(StorageSourceDB.id == source_id).values(**values)
        )
        return result.rowcount > 0

    @staticmethod
    async def delete(session: AsyncSession, source_id: str) -> bool:
        """Delete source."""
        result = await session.execute(
            delete(StorageSourceDB).where(StorageSourceDB.id == source_id)
        )
        return result.rowcount > 0

    @staticmethod
    def to_model(source_db: StorageSourceDB) -> StorageSource:
        """Convert a database row to a StorageSource."""
        return StorageSource(
            source_id=source_db.id,
            provider_kind=source_db.provider_kind,
            display_name=source_db.display_name,
            root_scope=source_db.root_scope,
            owner_id=source_db.owner_id,
            credential_ref=source_db.credential_ref,
            enabled=source_db.enabled,
            settings=source_db.settings or {},
            created_at=_aware(source_db.created_at),
            updated_at=_aware(source_db.updated_at),
        )


class TransferSessionRepository:
    """Repository for transfer session database operations."""

    @staticmethod
    async def save(session: AsyncSession, transfer: TransferSession) -> TransferSessionDB:
        """Insert or replace a transfer session snapshot."""
        transfer_db = TransferSessionDB(
            id=transfer.session_id,
            owner_id=transfer.owner_id,
            source_id=transfer.source_id,
            path=transfer.path,
            direction=transfer.direction,
            state=transfer.state,
            total_size=transfer.total_size,
            part_size=transfer.part_size,
            expected_parts=transfer.expected_parts,
            last_part_index=transfer.last_part_index,
            completed_parts={
                str(index): part.model_dump(mode="json")
                for index, part in transfer.completed_parts.items()
            },
            upload=transfer.upload.model_dump(mode="json") if transfer.upload else None,
            error_kind=transfer.error_kind,
            created_at=transfer.created_at,
            updated_at=transfer.updated_at,
        )
        merged = await session.merge(transfer_db)
        await session.flush()
        return merged

    @staticmethod
    async def get_by_id(session: AsyncSession, session_id: str) -> TransferSessionDB | None:
        """Get transfer session by ID."""
        result = await session.execute(
            select(TransferSessionDB).where(TransferSessionDB.id == session_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_active(
        session: AsyncSession,
        source_id: str | None = None,
    ) -> list[TransferSessionDB]:
        """Get non-terminal sessions, optionally for one source."""
        query = select(TransferSessionDB).where(
            TransferSessionDB.state.not_in(list(TERMINAL_STATES))
        )
        if source_id is not None:
            query = query.where(TransferSessionDB.source_id == source_id)
        result = await session.execute(query.order_by(TransferSessionDB.created_at))
        return list(result.scalars().all())

    @staticmethod
    async def get_finished_before(
        session: AsyncSession,
        cutoff: datetime,
    ) -> list[TransferSessionDB]:
        """Get terminal sessions last updated before cutoff."""
        result = await session.execute(
            select(TransferSessionDB).where(
                TransferSessionDB.state.in_(list(TERMINAL_STATES)),
                TransferSessionDB.updated_at < cutoff,
            )
        )
        return list(result.scalars().all())

    @staticmethod
    async def delete(session: AsyncSession, session_id: str) -> bool:
        """Delete transfer session."""
        result = await session.execute(
            delete(TransferSessionDB).where(TransferSessionDB.id == session_id)
        )
        return result.rowcount > 0

    @staticmethod
    def to_model(transfer_db: TransferSessionDB) -> TransferSession:
        """Convert a database row to a TransferSession."""
        return TransferSession(
            session_id=transfer_db.id,
            owner_id=transfer_db.owner_id,
            source_id=transfer_db.source_id,
            path=transfer_db.path,
            direction=transfer_db.direction,
            state=TransferState(transfer_db.state),
            total_size=transfer_db.total_size,
            part_size=transfer_db.part_size,
            expected_parts=transfer_db.expected_parts,
            last_part_index=transfer_db.last_part_index,
            completed_parts={
                int(index): PartDescriptor.model_validate(part)
                for index, part in (transfer_db.completed_parts or {}).items()
            },
            upload=MultipartUpload.model_validate(transfer_db.upload) if transfer_db.upload else None,
            error_kind=transfer_db.error_kind,
            created_at=_aware(transfer_db.created_at),
            updated_at=_aware(transfer_db.updated_at),
        )


class RateLimitAttemptRepository:
    """Repository for the fixed-window rate limit counter."""

    @staticmethod
    async def hit(
        session: AsyncSession,
        identifier: str,
        window_seconds: float,
        now: datetime | None = None,
    ) -> tuple[int, datetime]:
        """Record one attempt and return the window's (count, expires_at).

        A single upsert either starts a new window (row missing or expired)
        or increments the live one, so concurrent instances never lose counts.
        """
        now = now or datetime.now(UTC)
        new_expiry = now + timedelta(seconds=window_seconds)
        expired = RateLimitAttemptDB.expires_at <= now

        insert = _insert_for(session)
        stmt = insert(RateLimitAttemptDB).values(
            identifier=identifier,
            count=1,
            expires_at=new_expiry,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[RateLimitAttemptDB.identifier],
            set_={
                "count": case((expired, 1), else_=RateLimitAttemptDB.count + 1),
                "expires_at": case((expired, new_expiry), else_=RateLimitAttemptDB.expires_at),
            },
        ).returning(RateLimitAttemptDB.count, RateLimitAttemptDB.expires_at)

        result = await session.execute(stmt)
        count, expires_at = result.one()
        return count, _aware(expires_at)

    @staticmethod
    async def block(
        session: AsyncSession,
        identifier: str,
        until: datetime,
    ) -> None:
        """Exhaust the identifier's window until the given time."""
        insert = _insert_for(session)
        stmt = insert(RateLimitAttemptDB).values(
            identifier=identifier,
            count=BLOCKED_COUNT,
            expires_at=until,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[RateLimitAttemptDB.identifier],
            set_={
                "count": BLOCKED_COUNT,
                "expires_at": case(
                    (RateLimitAttemptDB.expires_at > until, RateLimitAttemptDB.expires_at),
                    else_=until,
                ),
            },
        )
        await session.execute(stmt)

    @staticmethod
    async def reset(session: AsyncSession, identifier: str) -> bool:
        """Drop the counter for an identifier."""
        result = await session.execute(
            delete(RateLimitAttemptDB).where(RateLimitAttemptDB.identifier == identifier)
        )
        return result.rowcount > 0

    @staticmethod
    async def purge_expired(session: AsyncSession, now: datetime | None = None) -> int:
        """Delete expired counters."""
        now = now or datetime.now(UTC)
        result = await session.execute(
            delete(RateLimitAttemptDB).where(RateLimitAttemptDB.expires_at <= now)
        )
        return result.rowcount
