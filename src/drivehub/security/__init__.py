"""Credential management for storage sources.

Encrypted per-source credentials with single-flight refresh and revocation
notification, plus the OAuth2 refresh-token grant.
"""

from drivehub.security.credential_store import (
    Credential,
    CredentialStatus,
    CredentialStore,
    CredentialType,
    EncryptedCredential,
    EncryptedCredentialStore,
    RefreshedToken,
    TokenRefresher,
)
from drivehub.security.oauth import (
    GOOGLE_TOKEN_URL,
    MICROSOFT_TOKEN_URL,
    OAuth2ClientConfig,
    OAuth2TokenRefresher,
)

__all__ = [
    "Credential",
    "CredentialStatus",
    "CredentialStore",
    "CredentialType",
    "EncryptedCredential",
    "EncryptedCredentialStore",
    "RefreshedToken",
    "TokenRefresher",
    "GOOGLE_TOKEN_URL",
    "MICROSOFT_TOKEN_URL",
    "OAuth2ClientConfig",
    "OAuth2TokenRefresher",
]
