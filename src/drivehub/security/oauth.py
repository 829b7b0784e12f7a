"""OAuth2 refresh-token grant for OneDrive and Google Drive credentials."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field, SecretStr

from drivehub.security.credential_store import (
    Credential,
    RefreshedToken,
    TokenRefresher,
)
from drivehub.storage.exceptions import (
    PermissionDeniedError,
    UnavailableError,
    error_from_http_status,
    parse_retry_after,
)

logger = structlog.get_logger(__name__)

MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


class OAuth2ClientConfig(BaseModel):
    """OAuth2 client registration used for refresh-token grants."""

    token_url: str = Field(description="Token endpoint URL")
    client_id: str = Field(description="OAuth2 client id")
    client_secret: SecretStr | None = Field(
        default=None,
        description="OAuth2 client secret (public clients omit it)",
    )
    scope: str | None = Field(default=None, description="Requested scope")
    timeout_seconds: float = Field(default=30.0, gt=0)


class OAuth2TokenRefresher(TokenRefresher):
    """Refreshes access tokens with the ``refresh_token`` grant.

    The credential must carry a ``refresh_token`` secret. Providers that
    rotate refresh tokens return a new one, which replaces the stored value.
    """

    def __init__(
        self,
        config: OAuth2ClientConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.timeout_seconds),
        )

    async def refresh(self, credential: Credential) -> RefreshedToken:
        refresh_token = credential.value("refresh_token")
        if not refresh_token:
            raise PermissionDeniedError(
                "Credential has no refresh token",
                source_id=credential.source_id,
            )

        data: dict[str, Any] = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
        }
        if self.config.client_secret is not None:
            data["client_secret"] = self.config.client_secret.get_secret_value()
        if self.config.scope:
            data["scope"] = self.config.scope

        try:
            response = await self._client.post(self.config.token_url, data=data)
        except httpx.HTTPError as e:
            raise UnavailableError(
                f"Token endpoint unreachable: {e}",
                source_id=credential.source_id,
            ) from e

        if response.status_code != 200:
            try:
                body = response.json()
                message = body.get("error_description") or body.get("error") or response.text
            except ValueError:
                message = response.text

            # invalid_grant comes back as 400: the refresh token is dead
            status = 401 if response.status_code == 400 else response.status_code
            error = error_from_http_status(
                status,
                f"Token refresh rejected: {message}",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
            error.source_id = credential.source_id
            raise error

        token_data = response.json()
        secrets = {"access_token": token_data["access_token"]}
        if token_data.get("refresh_token"):
            secrets["refresh_token"] = token_data["refresh_token"]

        expires_in = token_data.get("expires_in", 3600)

        logger.info(
            "oauth2_token_refreshed",
            source_id=credential.source_id,
            expires_in=expires_in,
        )

        return RefreshedToken(
            secrets=secrets,
            expires_at=datetime.now(UTC) + timedelta(seconds=int(expires_in)),
        )

    async def close(self) -> None:
        await self._client.aclose()
