"""Rate limiting and retry for provider calls.

Provides the per-source token bucket limiter with local, Redis and database
backends, and the governor that retries transient provider failures.
"""

from drivehub.resilience.governor import Governor
from drivehub.resilience.models import (
    RateLimitBackendKind,
    RateLimitConfig,
    RetryPolicy,
    TimeoutConfig,
)
from drivehub.resilience.rate_limiter import (
    BucketBackend,
    DatabaseBucketBackend,
    LocalBucketBackend,
    RedisBucketBackend,
    TokenBucketLimiter,
)

__all__ = [
    "Governor",
    "RateLimitBackendKind",
    "RateLimitConfig",
    "RetryPolicy",
    "TimeoutConfig",
    "BucketBackend",
    "DatabaseBucketBackend",
    "LocalBucketBackend",
    "RedisBucketBackend",
    "TokenBucketLimiter",
]
