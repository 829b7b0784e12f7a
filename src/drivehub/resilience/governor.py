"""Rate/retry governor for provider calls.

Wraps every adapter call with per-source token bucket admission and a
bounded retry loop: exponential backoff with jitter, provider Retry-After
preferred over the computed delay, and retries only for retryable errors.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

import structlog

from drivehub.resilience.models import RateLimitConfig, RetryPolicy
from drivehub.resilience.rate_limiter import TokenBucketLimiter
from drivehub.storage.base import RateLimitSignal
from drivehub.storage.exceptions import (
    StorageError,
    ThrottledError,
    UnknownError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

OnRetry = Callable[[str, str, StorageError, int, float], None]


class Governor:
    """Admission control and retry loop keyed by source id.

    Example:
        >>> governor = Governor(RetryPolicy(max_attempts=5))
        >>> entry = await governor.execute(
        ...     "src-1", "stat", lambda: adapter.stat("/a.txt"),
        ...     signal=adapter.rate_limit_signal,
        ... )
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        limiter: TokenBucketLimiter | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
        on_retry: OnRetry | None = None,
    ) -> None:
        """Initialize governor.

        Args:
            policy: Retry policy
            limiter: Per-source token bucket limiter (None disables admission control)
            sleep: Async sleep used for backoff (injectable for tests)
            rng: Random source for jitter (injectable for tests)
            on_retry: Callback (source_id, operation, error, attempt, delay) per retry
        """
        self.policy = policy or RetryPolicy()
        self.limiter = limiter
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._on_retry = on_retry
        self._limits: dict[str, RateLimitConfig] = {}

        logger.info(
            "governor_initialized",
            max_attempts=self.policy.max_attempts,
            rate_limited=limiter is not None,
        )

    def configure_source(self, source_id: str, config: RateLimitConfig) -> None:
        """Set the bucket limits for a source."""
        self._limits[source_id] = config

    def forget_source(self, source_id: str) -> None:
        self._limits.pop(source_id, None)

    def compute_delay(
        self,
        attempt: int,
        error: StorageError,
        signal: RateLimitSignal | None = None,
    ) -> float:
        """Delay before retry number ``attempt``.

        A provider Retry-After (on the error or the adapter's last signal)
        wins over computed backoff, capped by ``max_retry_after_seconds``.
        """
        retry_after = error.retry_after
        if retry_after is None and signal is not None:
            retry_after = signal.retry_after

        if retry_after is not None:
            return min(retry_after, self.policy.max_retry_after_seconds)

        delay = self.policy.backoff_for(attempt)
        if self.policy.jitter:
            delay += self._rng.uniform(0, delay * 0.1)
        return delay

    async def execute(
        self,
        source_id: str,
        operation: str,
        call: Callable[[], Awaitable[T]],
        signal: Callable[[], RateLimitSignal | None] | None = None,
    ) -> T:
        """Execute a provider call with admission control and retries.

        Args:
            source_id: Source the call targets (bucket key)
            operation: Operation name for logging
            call: Zero-argument coroutine factory; invoked once per attempt
            signal: Returns the adapter's last rate limit signal

        Returns:
            Call result

        Raises:
            StorageError: Last error when not retryable or attempts are exhausted,
                with ``attempts`` set to the number of calls made
        """
        attempt = 0

        while True:
            attempt += 1

            if self.limiter is not None:
                await self.limiter.acquire(source_id, self._limits.get(source_id))

            started = datetime.now(UTC)
            try:
                return await call()
            except StorageError as e:
                error = e
            except Exception as e:
                error = UnknownError(f"Unexpected error in {operation}: {e}", source_id=source_id)
                error.__cause__ = e

            error.source_id = error.source_id or source_id
            error.attempts = attempt

            if not error.retryable:
                raise error

            if attempt >= self.policy.max_attempts:
                logger.warning(
                    "governor_attempts_exhausted",
                    source_id=source_id,
                    operation=operation,
                    attempts=attempt,
                    kind=error.kind.value,
                )
                raise error

            current_signal = signal() if signal is not None else None
            # Only hints observed during this attempt apply to it
            if current_signal is not None and current_signal.observed_at < started:
                current_signal = None
            delay = self.compute_delay(attempt, error, current_signal)

            if isinstance(error, ThrottledError) and self.limiter is not None:
                await self.limiter.block(source_id, delay)

            logger.warning(
                "governor_retry",
                source_id=source_id,
                operation=operation,
                attempt=attempt,
                max_attempts=self.policy.max_attempts,
                kind=error.kind.value,
                delay=round(delay, 3),
            )

            if self._on_retry is not None:
                self._on_retry(source_id, operation, error, attempt, delay)

            await self._sleep(delay)
