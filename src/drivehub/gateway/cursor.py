"""Pagination cursor manager.

Cursors are opaque to callers: a Fernet token over ``{src, sig, tok, exp}``
binding the provider continuation token to the source and the listing that
produced it. Fernet's authenticated encryption makes tampering detectable.
"""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Callable
from typing import Any

import structlog
from cryptography.fernet import Fernet, InvalidToken

from drivehub.storage.exceptions import InvalidCursorError

logger = structlog.get_logger(__name__)


def operation_signature(
    operation: str,
    path: str,
    filters: dict[str, Any] | None = None,
) -> str:
    """Stable signature of a listing request.

    Args:
        operation: Operation name (e.g. "list_folder")
        path: Normalized path
        filters: Optional listing parameters that change the result set

    Returns:
        Hex SHA-256 digest
    """
    canonical = json.dumps(
        {"op": operation, "path": path, "filters": filters or {}},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


class CursorManager:
    """Issues and resolves opaque, expiring listing cursors."""

    def __init__(
        self,
        secret: str | bytes | None = None,
        ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize cursor manager.

        Args:
            secret: Fernet key (url-safe base64, 32 bytes); generated if None.
                Instances sharing a key accept each other's cursors.
            ttl_seconds: Cursor lifetime
            clock: Wall clock in epoch seconds (injectable for tests)
        """
        self._fernet = Fernet(secret or Fernet.generate_key())
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, source_id: str, signature: str, native_token: str) -> str:
        """Wrap a provider continuation token into a cursor.

        Args:
            source_id: Source the listing ran against
            signature: Listing signature from ``operation_signature``
            native_token: Provider continuation token

        Returns:
            Opaque cursor string
        """
        now = int(self._clock())
        payload = json.dumps(
            {
                "src": source_id,
                "sig": signature,
                "tok": native_token,
                "exp": now + self.ttl_seconds,
            },
            separators=(",", ":"),
        ).encode()
        return self._fernet.encrypt_at_time(payload, now).decode()

    def resolve(self, cursor: str, source_id: str, signature: str) -> str:
        """Validate a cursor and return the provider continuation token.

        Args:
            cursor: Cursor previously returned by ``issue``
            source_id: Source the caller is listing now
            signature: Signature of the listing the caller is running now

        Returns:
            Provider continuation token

        Raises:
            InvalidCursorError: If the cursor is malformed, tampered, expired,
                or was issued for another source or listing
        """
        now = int(self._clock())

        try:
            raw = self._fernet.decrypt_at_time(cursor.encode(), self.ttl_seconds, now)
            payload = json.loads(raw)
        except (InvalidToken, ValueError, TypeError) as e:
            logger.info("cursor_rejected", source_id=source_id, reason="invalid_or_expired")
            raise InvalidCursorError(
                "Cursor is invalid or expired; restart the listing",
                source_id=source_id,
            ) from e

        if payload.get("exp", 0) < now:
            raise InvalidCursorError("Cursor has expired; restart the listing", source_id=source_id)

        if payload.get("src") != source_id or payload.get("sig") != signature:
            logger.info("cursor_rejected", source_id=source_id, reason="mismatch")
            raise InvalidCursorError(
                "Cursor was issued for a different listing",
                source_id=source_id,
            )

        return payload["tok"]
