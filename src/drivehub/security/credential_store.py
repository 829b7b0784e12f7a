"""Credential storage with encryption at rest and single-flight refresh.

Holds one credential per storage source. Secret payloads are encrypted with
Fernet using a PBKDF2 derived key. Refresh is serialized per source: any
number of concurrent callers resolving the same expired credential share a
single underlying refresh call.
"""

from __future__ import annotations

import asyncio
import base64
import json
import secrets
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from enum import Enum

import structlog
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, Field, SecretStr

from drivehub.storage.exceptions import (
    PermissionDeniedError,
    SourceDisabledError,
    StorageError,
)

logger = structlog.get_logger(__name__)

RevocationListener = Callable[[str], Awaitable[None]]


class CredentialType(str, Enum):
    """Supported credential types."""

    ACCESS_KEY = "access_key"
    OAUTH2 = "oauth2"
    MICROSOFT_OAUTH2 = "microsoft_oauth2"
    GOOGLE_OAUTH2 = "google_oauth2"


class CredentialStatus(str, Enum):
    """Credential lifecycle status."""

    ACTIVE = "active"
    REVOKED = "revoked"


class EncryptedCredential(BaseModel):
    """Encrypted credential record as kept by the store."""

    credential_id: str = Field(
        description="Unique credential identifier",
    )
    source_id: str = Field(
        description="Storage source this credential belongs to",
    )
    credential_type: CredentialType = Field(
        description="Type of credential",
    )
    encrypted_value: str = Field(
        description="Base64 salt + Fernet token of the JSON secret payload",
    )
    version: int = Field(
        default=1,
        ge=1,
        description="Incremented on every refresh",
    )
    status: CredentialStatus = Field(
        default=CredentialStatus.ACTIVE,
    )
    expires_at: datetime | None = Field(
        default=None,
        description="Access token expiry (None = does not expire)",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
    )
    refreshed_at: datetime | None = Field(
        default=None,
    )


class Credential(BaseModel):
    """Decrypted credential view handed to adapters.

    Opaque to the gateway beyond its expiry and version.
    """

    credential_id: str
    source_id: str
    credential_type: CredentialType
    version: int
    expires_at: datetime | None = None
    secrets: dict[str, SecretStr] = Field(default_factory=dict)

    def value(self, name: str) -> str | None:
        """Get a secret value by name."""
        secret = self.secrets.get(name)
        return secret.get_secret_value() if secret is not None else None

    def is_expired(self, now: datetime | None = None, skew_seconds: float = 0.0) -> bool:
        """Check whether the credential expires within ``skew_seconds``."""
        if self.expires_at is None:
            return False
        now = now or datetime.now(UTC)
        return now + timedelta(seconds=skew_seconds) >= self.expires_at

    @property
    def access_token(self) -> str | None:
        return self.value("access_token")


class RefreshedToken(BaseModel):
    """Result of a token refresh."""

    secrets: dict[str, str]
    expires_at: datetime | None = None


class TokenRefresher(ABC):
    """Obtains a new access token for an expiring credential."""

    @abstractmethod
    async def refresh(self, credential: Credential) -> RefreshedToken:
        """Refresh the credential.

        Raises:
            StorageError: If the provider rejects the refresh
        """
        ...


class CredentialStore(ABC):
    """Credential Store interface consumed by the gateway."""

    @abstractmethod
    async def get(self, source_id: str) -> Credential:
        """Get a usable credential, refreshing it first if expired."""
        ...

    @abstractmethod
    async def refresh(self, source_id: str) -> Credential:
        """Force a refresh (idempotent under concurrent calls)."""
        ...

    @abstractmethod
    async def revoke(self, source_id: str) -> None:
        """Revoke the credential for a source."""
        ...

    @abstractmethod
    def has_credential(self, credential_ref: str) -> bool:
        """Check a credential reference resolves to an active credential."""
        ...

    @abstractmethod
    def add_revocation_listener(self, listener: RevocationListener) -> None:
        """Register a callback invoked with the source id on revocation."""
        ...


class EncryptedCredentialStore(CredentialStore):
    """In-process credential store with encryption at rest.

    Credentials are keyed by source id. Refresh is single-flight per source:
    concurrent refresh requests await the same in-flight task.
    """

    def __init__(
        self,
        master_key: str | None = None,
        refreshers: dict[CredentialType, TokenRefresher] | None = None,
        pbkdf2_iterations: int = 600000,
        refresh_skew_seconds: float = 60.0,
    ) -> None:
        """Initialize credential store.

        Args:
            master_key: Base64 encoded 32 byte master key (generated if None)
            refreshers: Token refreshers by credential type
            pbkdf2_iterations: PBKDF2 iterations for key derivation
            refresh_skew_seconds: Refresh this long before actual expiry
        """
        if master_key:
            self._master_key = base64.urlsafe_b64decode(master_key)
        else:
            self._master_key = secrets.token_bytes(32)

        self._pbkdf2_iterations = pbkdf2_iterations
        self._refreshers = refreshers or {}
        self._refresh_skew = refresh_skew_seconds
        self._credentials: dict[str, EncryptedCredential] = {}
        self._by_ref: dict[str, str] = {}
        self._inflight: dict[str, asyncio.Task[Credential]] = {}
        self._listeners: list[RevocationListener] = []
        self._fernets: dict[bytes, Fernet] = {}

        logger.info(
            "credential_store_initialized",
            pbkdf2_iterations=pbkdf2_iterations,
            refreshable_types=[t.value for t in self._refreshers],
        )

    @staticmethod
    def generate_master_key() -> str:
        """Generate a new base64 encoded master key."""
        return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode()

    def add_revocation_listener(self, listener: RevocationListener) -> None:
        """Register a callback invoked with the source id on revocation."""
        self._listeners.append(listener)

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self._pbkdf2_iterations,
        )
        return kdf.derive(self._master_key)

    def _get_fernet(self, salt: bytes) -> Fernet:
        fernet = self._fernets.get(salt)
        if fernet is None:
            fernet = Fernet(base64.urlsafe_b64encode(self._derive_key(salt)))
            self._fernets[salt] = fernet
        return fernet

    def _encrypt(self, payload: dict[str, str]) -> str:
        salt = secrets.token_bytes(16)
        fernet = self._get_fernet(salt)
        token = fernet.encrypt(json.dumps(payload).encode())
        return base64.urlsafe_b64encode(salt + token).decode()

    def _decrypt(self, encrypted_value: str) -> dict[str, str]:
        combined = base64.urlsafe_b64decode(encrypted_value)
        salt, token = combined[:16], combined[16:]
        fernet = self._get_fernet(salt)
        return json.loads(fernet.decrypt(token))

    def store(
        self,
        source_id: str,
        credential_type: CredentialType,
        secret_values: dict[str, str],
        expires_at: datetime | None = None,
        credential_id: str | None = None,
    ) -> EncryptedCredential:
        """Encrypt and store the credential for a source.

        Replaces any existing credential for the source.

        Args:
            source_id: Storage source id
            credential_type: Type of credential
            secret_values: Plain-text secret values (keys, tokens)
            expires_at: Optional access token expiry
            credential_id: Optional explicit credential id

        Returns:
            Encrypted credential record
        """
        credential_id = credential_id or f"cred-{secrets.token_hex(8)}"

        record = EncryptedCredential(
            credential_id=credential_id,
            source_id=source_id,
            credential_type=credential_type,
            encrypted_value=self._encrypt(secret_values),
            expires_at=expires_at,
        )

        previous = self._credentials.get(source_id)
        if previous is not None:
            self._by_ref.pop(previous.credential_id, None)

        self._credentials[source_id] = record
        self._by_ref[credential_id] = source_id

        logger.info(
            "credential_stored",
            credential_id=credential_id,
            source_id=source_id,
            credential_type=credential_type.value,
            has_expiration=expires_at is not None,
        )

        return record

    def has_credential(self, credential_ref: str) -> bool:
        source_id = self._by_ref.get(credential_ref)
        if source_id is None:
            return False
        return self._credentials[source_id].status == CredentialStatus.ACTIVE

    def _record(self, source_id: str) -> EncryptedCredential:
        record = self._credentials.get(source_id)
        if record is None:
            raise SourceDisabledError(
                "No credential configured for source",
                source_id=source_id,
            )
        if record.status == CredentialStatus.REVOKED:
            raise SourceDisabledError(
                "Credential has been revoked",
                source_id=source_id,
            )
        return record

    def _view(self, record: EncryptedCredential) -> Credential:
        try:
            payload = self._decrypt(record.encrypted_value)
        except InvalidToken as e:
            logger.error(
                "credential_decryption_failed",
                credential_id=record.credential_id,
                source_id=record.source_id,
            )
            raise PermissionDeniedError(
                "Credential could not be decrypted",
                source_id=record.source_id,
            ) from e

        return Credential(
            credential_id=record.credential_id,
            source_id=record.source_id,
            credential_type=record.credential_type,
            version=record.version,
            expires_at=record.expires_at,
            secrets={k: SecretStr(v) for k, v in payload.items()},
        )

    async def get(self, source_id: str) -> Credential:
        record = self._record(source_id)
        credential = self._view(record)

        if credential.is_expired(skew_seconds=self._refresh_skew):
            if record.credential_type in self._refreshers:
                return await self.refresh(source_id)
            logger.warning(
                "credential_expired_not_refreshable",
                source_id=source_id,
                credential_type=record.credential_type.value,
            )

        return credential

    async def refresh(self, source_id: str) -> Credential:
        task = self._inflight.get(source_id)
        if task is None:
            record = self._record(source_id)
            task = asyncio.ensure_future(self._do_refresh(source_id, record.version))
            self._inflight[source_id] = task
            task.add_done_callback(lambda _: self._inflight.pop(source_id, None))

        # Shield so one cancelled waiter does not cancel the shared refresh
        return await asyncio.shield(task)

    async def _do_refresh(self, source_id: str, version: int) -> Credential:
        record = self._record(source_id)

        if record.version != version:
            # Another refresh landed while this one was being scheduled
            return self._view(record)

        refresher = self._refreshers.get(record.credential_type)
        if refresher is None:
            return self._view(record)

        current = self._view(record)

        try:
            refreshed = await refresher.refresh(current)
        except StorageError as e:
            e.source_id = e.source_id or source_id
            logger.error(
                "credential_refresh_failed",
                source_id=source_id,
                error=str(e),
            )
            raise

        payload = {k: v.get_secret_value() for k, v in current.secrets.items()}
        payload.update(refreshed.secrets)

        record.encrypted_value = self._encrypt(payload)
        record.expires_at = refreshed.expires_at
        record.version += 1
        record.refreshed_at = datetime.now(UTC)

        logger.info(
            "credential_refreshed",
            source_id=source_id,
            credential_id=record.credential_id,
            version=record.version,
        )

        return self._view(record)

    async def revoke(self, source_id: str) -> None:
        record = self._credentials.get(source_id)
        if record is None or record.status == CredentialStatus.REVOKED:
            return

        record.status = CredentialStatus.REVOKED

        logger.warning(
            "credential_revoked",
            credential_id=record.credential_id,
            source_id=source_id,
        )

        for listener in self._listeners:
            await listener(source_id)
