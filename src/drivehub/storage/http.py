"""Shared httpx plumbing for REST based provider adapters.

Handles bearer authentication, response classification into normalized
storage errors, and recording of provider throttle signals.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from drivehub.storage.base import (
    ByteStream,
    CredentialProvider,
    ProviderAdapter,
    StorageSource,
)
from drivehub.storage.exceptions import (
    InvalidCursorError,
    StorageError,
    UnavailableError,
    UnknownError,
    error_from_http_status,
    parse_retry_after,
)

logger = structlog.get_logger(__name__)


class HTTPProviderAdapter(ProviderAdapter):
    """Base class for adapters talking to a JSON REST API over httpx."""

    base_url: str = ""

    def __init__(
        self,
        source: StorageSource,
        credentials: CredentialProvider,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize HTTP adapter.

        Args:
            source: Storage source
            credentials: Credential provider returning OAuth2 credentials
            http_client: Optional shared httpx client
        """
        super().__init__(source, credentials)
        self._client = http_client
        self._owns_client = http_client is None

    async def connect(self) -> None:
        if self._connected:
            return

        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.source.settings.get("http_timeout", 60.0)),
                follow_redirects=True,
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
            self._owns_client = True

        self._connected = True

    async def disconnect(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._connected = False

    async def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        credential = await self._credentials()
        headers = {"Authorization": f"Bearer {credential.access_token}"}
        if extra:
            headers.update(extra)
        return headers

    def _error_details(self, response: httpx.Response) -> tuple[str, str | None, str | None]:
        """Extract (message, code, reason) from an error response.

        Subclasses override for provider specific error envelopes.
        """
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase, None, None

        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return error.get("message", response.text), error.get("code"), None
        if isinstance(error, str):
            return body.get("error_description", error), error, None
        return response.text, None, None

    def _classify(
        self,
        response: httpx.Response,
        paged: bool = False,
    ) -> StorageError:
        """Map an error response to a normalized storage error.

        Args:
            response: Non-2xx response
            paged: Whether the request carried a provider continuation token

        Returns:
            Normalized storage error (not raised)
        """
        message, code, _ = self._error_details(response)
        retry_after = parse_retry_after(response.headers.get("Retry-After"))

        if paged and response.status_code in (400, 410):
            return InvalidCursorError(
                f"Continuation token rejected: {message}",
                source_id=self.source_id,
                status_code=response.status_code,
                provider_code=code,
            )

        error = error_from_http_status(response.status_code, message, retry_after, code)
        error.source_id = self.source_id
        return error

    def _observe(self, response: httpx.Response) -> None:
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        remaining = response.headers.get("RateLimit-Remaining") or response.headers.get(
            "X-RateLimit-Remaining"
        )
        limit = response.headers.get("RateLimit-Limit") or response.headers.get(
            "X-RateLimit-Limit"
        )
        self._record_signal(
            retry_after,
            remaining=int(remaining) if remaining and remaining.isdigit() else None,
            limit=int(limit) if limit and limit.isdigit() else None,
        )

    async def _send(
        self,
        method: str,
        url: str,
        *,
        paged: bool = False,
        authenticated: bool = True,
        stream: bool = False,
        expected: tuple[int, ...] = (),
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and raise a classified error on failure.

        Args:
            method: HTTP method
            url: Absolute URL or path relative to ``base_url``
            paged: Request carries a continuation token
            authenticated: Attach the bearer token
            stream: Return an unread streaming response
            expected: Extra non-2xx statuses treated as success (e.g. 308)
            headers: Extra request headers
            **kwargs: Passed to ``httpx.AsyncClient.build_request``

        Returns:
            Successful response
        """
        if not self._connected or self._client is None:
            await self.connect()

        if not url.startswith(("http://", "https://")):
            url = f"{self.base_url}{url}"

        request_headers = await self._headers(headers) if authenticated else dict(headers or {})
        request = self._client.build_request(method, url, headers=request_headers, **kwargs)

        try:
            response = await self._client.send(request, stream=stream)
        except httpx.TimeoutException as e:
            raise UnavailableError(
                f"{method} {request.url.path} timed out",
                source_id=self.source_id,
            ) from e
        except httpx.TransportError as e:
            raise UnavailableError(
                f"{method} {request.url.path} failed: {e}",
                source_id=self.source_id,
            ) from e
        except httpx.HTTPError as e:
            raise UnknownError(f"HTTP error: {e}", source_id=self.source_id) from e

        self._observe(response)

        if response.is_success or response.status_code in expected:
            return response

        if stream:
            await response.aread()
            await response.aclose()

        error = self._classify(response, paged=paged)
        logger.warning(
            "provider_request_failed",
            source_id=self.source_id,
            provider=self.kind.value,
            method=method,
            status_code=response.status_code,
            kind=error.kind.value,
            code=error.provider_code,
        )
        raise error

    async def _json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._send(method, url, **kwargs)
        if not response.content:
            return {}
        return response.json()

    async def _stream(
        self,
        url: str,
        byte_range: tuple[int, int] | None = None,
    ) -> ByteStream:
        headers = {}
        if byte_range:
            headers["Range"] = f"bytes={byte_range[0]}-{byte_range[1]}"

        response = await self._send("GET", url, stream=True, headers=headers)
        length = response.headers.get("Content-Length")

        async def chunks() -> AsyncIterator[bytes]:
            try:
                async for chunk in response.aiter_bytes():
                    yield chunk
            except httpx.TransportError as e:
                raise UnavailableError(
                    f"Stream interrupted: {e}",
                    source_id=self.source_id,
                ) from e

        return ByteStream(
            chunks(),
            size=int(length) if length and length.isdigit() else None,
            close=response.aclose,
        )
