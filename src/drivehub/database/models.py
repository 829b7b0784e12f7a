"""
Database Models

SQLAlchemy ORM models for storage sources, transfer sessions and the
rate limit attempt counter.
"""

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy import Enum as SQLEnum

from drivehub.database.connection import Base
from drivehub.storage.base import ProviderKind
from drivehub.transfer.models import TransferDirection, TransferState


def _values(enum_cls):
    return [member.value for member in enum_cls]


class StorageSourceDB(Base):
    """Storage source database model."""

    __tablename__ = "storage_sources"

    id = Column(String(255), primary_key=True, index=True)
    owner_id = Column(String(255), nullable=False, index=True)
    provider_kind = Column(
        SQLEnum(ProviderKind, name="providerkind", native_enum=False, values_callable=_values),
        nullable=False,
    )
    display_name = Column(String(255), nullable=False)
    root_scope = Column(String(1024), nullable=False, default="")

    # Reference into the credential store, never the secret itself
    credential_ref = Column(String(255), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    settings = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return f"<StorageSourceDB(id={self.id}, kind={self.provider_kind}, owner={self.owner_id})>"


class TransferSessionDB(Base):
    """Transfer session database model."""

    __tablename__ = "transfer_sessions"

    id = Column(String(255), primary_key=True, index=True)
    owner_id = Column(String(255), nullable=False, index=True)
    source_id = Column(String(255), nullable=False, index=True)
    path = Column(Text, nullable=False)
    direction = Column(
        SQLEnum(TransferDirection, name="transferdirection", native_enum=False, values_callable=_values),
        nullable=False,
    )
    state = Column(
        SQLEnum(TransferState, name="transferstate", native_enum=False, values_callable=_values),
        nullable=False,
        index=True,
    )

    total_size = Column(BigInteger, nullable=True)
    part_size = Column(BigInteger, nullable=False)
    expected_parts = Column(Integer, nullable=True)
    last_part_index = Column(Integer, nullable=True)

    # Part index -> descriptor, stored as JSON object
    completed_parts = Column(JSON, nullable=False, default=dict)

    # Provider multipart handle
    upload = Column(JSON, nullable=True)
    error_kind = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), index=True)

    __table_args__ = (
        Index("idx_transfer_source_state", "source_id", "state"),
    )

    def __repr__(self) -> str:
        return f"<TransferSessionDB(id={self.id}, source={self.source_id}, state={self.state})>"


class RateLimitAttemptDB(Base):
    """Fixed-window attempt counter shared by all gateway instances."""

    __tablename__ = "rate_limit_attempts"

    identifier = Column(Text, primary_key=True)
    count = Column(Integer, nullable=False, default=1)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<RateLimitAttemptDB(identifier={self.identifier}, count={self.count})>"
