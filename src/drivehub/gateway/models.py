"""Gateway result and configuration models."""

from __future__ import annotations

from pydantic import BaseModel, Field

from drivehub.resilience.models import RateLimitConfig, RetryPolicy, TimeoutConfig
from drivehub.storage.base import FileEntry, ProviderKind
from drivehub.storage.exceptions import ErrorKind
from drivehub.transfer.models import TransferConfig


class ListingPage(BaseModel):
    """One page of a single-source listing."""

    entries: list[FileEntry] = Field(default_factory=list)
    next_cursor: str | None = Field(
        default=None,
        description="Opaque cursor for the next page (None when exhausted)",
    )


class SourceFailure(BaseModel):
    """Failure of one source within a federated listing."""

    source_id: str
    kind: ErrorKind
    message: str


class FederatedListing(BaseModel):
    """Merged listing across several sources.

    Entries carry their ``source_id``. A failing source contributes a
    ``SourceFailure`` instead of failing the listing.
    """

    entries: list[FileEntry] = Field(default_factory=list)
    next_cursors: dict[str, str] = Field(
        default_factory=dict,
        description="Per-source cursors for sources with more pages",
    )
    failures: list[SourceFailure] = Field(default_factory=list)
    partial: bool = Field(
        default=False,
        description="True when at least one source failed",
    )


class GatewayConfig(BaseModel):
    """Storage gateway configuration."""

    default_page_size: int = Field(default=100, ge=1)
    max_page_size: int = Field(default=1000, ge=1)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    rate_limits: dict[ProviderKind, RateLimitConfig] = Field(
        default_factory=lambda: {
            ProviderKind.S3_COMPATIBLE: RateLimitConfig(requests_per_window=100),
            ProviderKind.ONEDRIVE: RateLimitConfig(requests_per_window=10),
            ProviderKind.GOOGLE_DRIVE: RateLimitConfig(requests_per_window=10),
            ProviderKind.MEMORY: RateLimitConfig(requests_per_window=1000),
        },
        description="Token bucket limits per provider kind",
    )
    transfer: TransferConfig = Field(default_factory=TransferConfig)

    model_config = {"frozen": True}

    def page_size(self, requested: int | None) -> int:
        if requested is None:
            return self.default_page_size
        return max(1, min(requested, self.max_page_size))
