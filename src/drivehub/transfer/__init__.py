"""Multipart upload and resumable download sessions.

The coordinator lives in ``drivehub.transfer.coordinator``.
"""

from drivehub.transfer.models import (
    TERMINAL_STATES,
    PartDescriptor,
    TransferConfig,
    TransferDirection,
    TransferSession,
    TransferState,
)
from drivehub.transfer.store import InMemoryTransferSessionStore, TransferSessionStore

__all__ = [
    "TERMINAL_STATES",
    "PartDescriptor",
    "TransferConfig",
    "TransferDirection",
    "TransferSession",
    "TransferState",
    "InMemoryTransferSessionStore",
    "TransferSessionStore",
]
