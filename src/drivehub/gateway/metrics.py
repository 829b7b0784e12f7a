"""
Prometheus metrics for the storage gateway.

Tracks gateway operations by provider and outcome, governor retries and
transfer session transitions.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

from drivehub.storage.exceptions import StorageError

gateway_operations_total = Counter(
    "drivehub_gateway_operations_total",
    "Total gateway operations",
    ["provider", "operation", "outcome"],  # outcome: ok or an error kind
)

gateway_operation_duration_seconds = Histogram(
    "drivehub_gateway_operation_duration_seconds",
    "Duration of gateway operations in seconds",
    ["provider", "operation"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0],
)

governor_retries_total = Counter(
    "drivehub_governor_retries_total",
    "Provider calls retried by the governor",
    ["operation", "kind"],
)

credential_refreshes_total = Counter(
    "drivehub_credential_refreshes_total",
    "Credential refreshes triggered by auth-expired responses",
    ["provider"],
)

transfer_transitions_total = Counter(
    "drivehub_transfer_transitions_total",
    "Transfer session state transitions",
    ["direction", "state"],
)

transfer_bytes_total = Counter(
    "drivehub_transfer_bytes_total",
    "Bytes moved through transfer sessions",
    ["direction"],
)


def record_operation(
    provider: str,
    operation: str,
    duration_seconds: float,
    error: StorageError | None = None,
) -> None:
    """
    Record metrics for a completed gateway operation.

    Args:
        provider: Provider kind value
        operation: Operation name
        duration_seconds: Wall time including retries
        error: Error the operation surfaced, if any
    """
    outcome = error.kind.value if error is not None else "ok"
    gateway_operations_total.labels(provider=provider, operation=operation, outcome=outcome).inc()
    gateway_operation_duration_seconds.labels(provider=provider, operation=operation).observe(
        duration_seconds
    )


def record_retry(
    source_id: str,
    operation: str,
    error: StorageError,
    attempt: int,
    delay: float,
) -> None:
    """Governor ``on_retry`` hook."""
    governor_retries_total.labels(operation=operation, kind=error.kind.value).inc()


def record_transition(direction: str, state: str) -> None:
    transfer_transitions_total.labels(direction=direction, state=state).inc()
