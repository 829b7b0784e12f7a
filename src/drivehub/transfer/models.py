"""Transfer session data models.

Pydantic models for multipart upload and resumable download sessions.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from drivehub.storage.base import MultipartUpload


class TransferState(str, Enum):
    """Transfer session state enumeration.

    States:
        INITIATED: Session created, no part received yet
        IN_PROGRESS: At least one part received
        COMPLETING: Commit handed to the provider
        COMPLETED: Object committed (terminal)
        ABORTED: Session discarded (terminal)
        FAILED: Permanent provider error; only abort leaves this state
    """

    INITIATED = "initiated"
    IN_PROGRESS = "in_progress"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class TransferDirection(str, Enum):
    """Transfer direction."""

    UPLOAD = "upload"
    DOWNLOAD = "download"


TERMINAL_STATES = frozenset({TransferState.COMPLETED, TransferState.ABORTED})

# Allowed state transitions
TRANSITIONS: dict[TransferState, frozenset[TransferState]] = {
    TransferState.INITIATED: frozenset(
        {TransferState.IN_PROGRESS, TransferState.COMPLETING, TransferState.ABORTED, TransferState.FAILED}
    ),
    TransferState.IN_PROGRESS: frozenset(
        {TransferState.COMPLETING, TransferState.ABORTED, TransferState.FAILED}
    ),
    TransferState.COMPLETING: frozenset(
        {TransferState.COMPLETED, TransferState.IN_PROGRESS, TransferState.ABORTED, TransferState.FAILED}
    ),
    TransferState.FAILED: frozenset({TransferState.ABORTED}),
    TransferState.COMPLETED: frozenset(),
    TransferState.ABORTED: frozenset(),
}


class PartDescriptor(BaseModel):
    """One received (or downloaded) part."""

    index: int = Field(ge=0, description="Zero based part index")
    offset: int = Field(ge=0, description="Byte offset in the object")
    size: int = Field(ge=0, description="Part size in bytes")
    checksum: str = Field(description="Hex SHA-256 of the part bytes")
    etag: str | None = Field(default=None, description="Provider part etag")


class TransferSession(BaseModel):
    """Persisted state of a multipart upload or resumable download."""

    session_id: str = Field(description="Unique session identifier")
    owner_id: str = Field(description="User that started the session")
    source_id: str = Field(description="Target storage source")
    path: str = Field(description="Normalized target path")
    direction: TransferDirection = Field(default=TransferDirection.UPLOAD)
    total_size: int | None = Field(
        default=None,
        ge=0,
        description="Declared total size (None until the last part for streaming uploads)",
    )
    part_size: int = Field(gt=0, description="Negotiated part size in bytes")
    expected_parts: int | None = Field(
        default=None,
        ge=1,
        description="Number of parts (known when total_size is known)",
    )
    completed_parts: dict[int, PartDescriptor] = Field(default_factory=dict)
    last_part_index: int | None = Field(
        default=None,
        ge=0,
        description="Index of the part flagged as last",
    )
    state: TransferState = Field(default=TransferState.INITIATED)
    upload: MultipartUpload | None = Field(
        default=None,
        description="Provider multipart handle (uploads only)",
    )
    error_kind: str | None = Field(
        default=None,
        description="Error kind that moved the session to FAILED",
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def final_index(self) -> int | None:
        """Index of the final part, if known."""
        if self.expected_parts is not None:
            return self.expected_parts - 1
        return self.last_part_index

    @property
    def received_bytes(self) -> int:
        return sum(part.size for part in self.completed_parts.values())

    def missing_parts(self) -> list[int]:
        """Indices still required before the session can complete.

        When the final index is unknown, only gaps below the highest received
        index are reported.
        """
        final = self.final_index
        if final is None:
            final = max(self.completed_parts, default=-1)
            if final < 0:
                return [0]
        return [i for i in range(final + 1) if i not in self.completed_parts]

    def is_complete(self) -> bool:
        return self.final_index is not None and not self.missing_parts()

    def touch(self) -> None:
        self.updated_at = datetime.now(UTC)


class TransferConfig(BaseModel):
    """Transfer coordinator configuration."""

    multipart_threshold: int = Field(
        default=8 * 1024 * 1024,
        ge=1,
        description="Writes above this size go through a multipart session",
    )
    default_part_size: int = Field(
        default=8 * 1024 * 1024,
        ge=1,
        description="Preferred part size before provider negotiation",
    )
    session_ttl_seconds: float = Field(
        default=24 * 3600,
        gt=0,
        description="Idle time after which a non-terminal session is aborted",
    )
    retention_seconds: float = Field(
        default=7 * 24 * 3600,
        ge=0,
        description="How long completed or aborted sessions are kept",
    )

    model_config = {"frozen": True}
