"""Database persistence for storage sources, transfer sessions and rate limits."""

from drivehub.database.connection import (
    Base,
    check_db_health,
    close_db,
    get_session,
    init_db,
)
from drivehub.database.models import RateLimitAttemptDB, StorageSourceDB, TransferSessionDB

__all__ = [
    "Base",
    "check_db_health",
    "close_db",
    "get_session",
    "init_db",
    "RateLimitAttemptDB",
    "StorageSourceDB",
    "TransferSessionDB",
]
