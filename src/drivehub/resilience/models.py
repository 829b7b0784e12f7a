"""Resilience data models.

Pydantic models for the retry policy, per-source rate limits and
per-operation timeouts.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class RateLimitBackendKind(str, Enum):
    """Token bucket storage backends."""

    LOCAL = "local"
    REDIS = "redis"
    DATABASE = "database"


class RetryPolicy(BaseModel):
    """Retry policy configuration.

    Exponential backoff with jitter; a provider Retry-After hint replaces the
    computed delay when present.
    """

    max_attempts: int = Field(
        default=5,
        ge=1,
        description="Maximum attempts including the first call",
    )

    initial_backoff_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Delay before the first retry",
    )

    max_backoff_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound on computed backoff",
    )

    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Backoff growth factor per attempt",
    )

    jitter: bool = Field(
        default=True,
        description="Add up to 10% random jitter to each delay",
    )

    max_retry_after_seconds: float = Field(
        default=120.0,
        ge=0,
        description="Cap applied to provider Retry-After hints",
    )

    model_config = {"frozen": True}

    def backoff_for(self, attempt: int) -> float:
        """Computed backoff before retry number ``attempt`` (1 based), without jitter."""
        delay = self.initial_backoff_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_backoff_seconds)


class RateLimitConfig(BaseModel):
    """Token bucket configuration for one provider kind.

    Tokens refill at ``requests_per_window / window_seconds`` per second up to
    ``burst_size``; each provider call consumes one token.
    """

    enabled: bool = Field(default=True, description="Enable rate limiting")
    requests_per_window: int = Field(default=100, ge=1, description="Maximum requests per window")
    window_seconds: float = Field(default=1.0, gt=0, description="Time window in seconds")
    burst_size: int | None = Field(
        default=None,
        ge=1,
        description="Maximum burst size (defaults to requests_per_window)",
    )
    max_wait_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Longest a call waits for a token before failing as throttled",
    )

    model_config = {"frozen": True}

    @property
    def tokens_per_second(self) -> float:
        return self.requests_per_window / self.window_seconds

    @property
    def max_tokens(self) -> int:
        return self.burst_size or self.requests_per_window


class TimeoutConfig(BaseModel):
    """Per-operation timeouts for gateway calls."""

    default_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for operations without an override",
    )

    per_operation: dict[str, float] = Field(
        default_factory=lambda: {
            "list_folder": 20.0,
            "stat": 10.0,
            "read": 60.0,
            "write": 120.0,
            "upload_part": 300.0,
            "download_part": 300.0,
            "complete_multipart": 120.0,
        },
        description="Operation name to timeout in seconds",
    )

    model_config = {"frozen": True}

    def for_operation(self, operation: str) -> float:
        return self.per_operation.get(operation, self.default_seconds)
