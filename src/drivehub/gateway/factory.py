"""Assembly of a storage gateway from settings."""

from __future__ import annotations

import httpx
import redis.asyncio as aioredis
import structlog
from pydantic import SecretStr
from redis.asyncio.connection import ConnectionPool

from drivehub.config import Settings, get_settings
from drivehub.gateway.cursor import CursorManager
from drivehub.gateway.metrics import record_retry
from drivehub.gateway.models import GatewayConfig
from drivehub.gateway.registry import InMemorySourceRegistry, SourceRegistry
from drivehub.gateway.service import StorageGateway
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
from drivehub.security.credential_store import (
    CredentialType,
    EncryptedCredentialStore,
    TokenRefresher,
)
from drivehub.security.oauth import OAuth2ClientConfig, OAuth2TokenRefresher
from drivehub.storage.base import ProviderKind
from drivehub.storage.factory import AdapterFactory
from drivehub.transfer.models import TransferConfig
from drivehub.transfer.store import InMemoryTransferSessionStore, TransferSessionStore

logger = structlog.get_logger(__name__)


def _secret_or_none(secret: SecretStr) -> SecretStr | None:
    return secret if secret.get_secret_value() else None


def gateway_config_from_settings(settings: Settings) -> GatewayConfig:
    """Build the gateway configuration from settings."""

    def limit(requests_per_second: int) -> RateLimitConfig:
        return RateLimitConfig(
            requests_per_window=requests_per_second,
            window_seconds=1.0,
            max_wait_seconds=settings.RATE_LIMIT_MAX_WAIT_SECONDS,
        )

    return GatewayConfig(
        default_page_size=settings.DEFAULT_PAGE_SIZE,
        max_page_size=settings.MAX_PAGE_SIZE,
        retry=RetryPolicy(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            initial_backoff_seconds=settings.RETRY_INITIAL_BACKOFF_SECONDS,
            max_backoff_seconds=settings.RETRY_MAX_BACKOFF_SECONDS,
            max_retry_after_seconds=settings.RETRY_MAX_RETRY_AFTER_SECONDS,
        ),
        timeouts=TimeoutConfig(
            default_seconds=settings.OPERATION_TIMEOUT_SECONDS,
            per_operation=settings.OPERATION_TIMEOUTS,
        ),
        rate_limits={
            ProviderKind.S3_COMPATIBLE: limit(settings.S3_REQUESTS_PER_SECOND),
            ProviderKind.ONEDRIVE: limit(settings.ONEDRIVE_REQUESTS_PER_SECOND),
            ProviderKind.GOOGLE_DRIVE: limit(settings.GOOGLE_DRIVE_REQUESTS_PER_SECOND),
            ProviderKind.MEMORY: limit(settings.MEMORY_REQUESTS_PER_SECOND),
        },
        transfer=TransferConfig(
            multipart_threshold=settings.MULTIPART_THRESHOLD_BYTES,
            default_part_size=settings.DEFAULT_PART_SIZE_BYTES,
            session_ttl_seconds=settings.TRANSFER_SESSION_TTL_SECONDS,
            retention_seconds=settings.TRANSFER_RETENTION_SECONDS,
        ),
    )


def create_credential_store(
    settings: Settings,
    http_client: httpx.AsyncClient | None = None,
) -> EncryptedCredentialStore:
    """Build the credential store with OAuth2 refreshers for configured clients."""
    refreshers: dict[CredentialType, TokenRefresher] = {}

    if settings.MICROSOFT_CLIENT_ID:
        refreshers[CredentialType.MICROSOFT_OAUTH2] = OAuth2TokenRefresher(
            OAuth2ClientConfig(
                token_url=settings.MICROSOFT_TOKEN_URL,
                client_id=settings.MICROSOFT_CLIENT_ID,
                client_secret=_secret_or_none(settings.MICROSOFT_CLIENT_SECRET),
                scope="offline_access Files.ReadWrite.All",
            ),
            http_client,
        )

    if settings.GOOGLE_CLIENT_ID:
        refreshers[CredentialType.GOOGLE_OAUTH2] = OAuth2TokenRefresher(
            OAuth2ClientConfig(
                token_url=settings.GOOGLE_TOKEN_URL,
                client_id=settings.GOOGLE_CLIENT_ID,
                client_secret=_secret_or_none(settings.GOOGLE_CLIENT_SECRET),
            ),
            http_client,
        )

    master_key = settings.CREDENTIAL_MASTER_KEY.get_secret_value()
    if not master_key:
        logger.warning("credential_master_key_missing", detail="using a per-process key")

    return EncryptedCredentialStore(
        master_key=master_key or None,
        refreshers=refreshers,
        pbkdf2_iterations=settings.PBKDF2_ITERATIONS,
        refresh_skew_seconds=settings.CREDENTIAL_REFRESH_SKEW_SECONDS,
    )


def create_bucket_backend(
    settings: Settings,
    redis_client: aioredis.Redis | None = None,
) -> BucketBackend:
    """Build the token bucket backend selected by ``RATE_LIMIT_BACKEND``."""
    kind = RateLimitBackendKind(settings.RATE_LIMIT_BACKEND)
    local = LocalBucketBackend(max_keys=settings.RATE_LIMIT_LOCAL_MAX_KEYS)

    if kind == RateLimitBackendKind.REDIS:
        if redis_client is None:
            pool = ConnectionPool.from_url(
                settings.REDIS_URL,
                decode_responses=False,
                max_connections=20,
            )
            redis_client = aioredis.Redis(connection_pool=pool)
        return RedisBucketBackend(redis_client, fallback=local)

    if kind == RateLimitBackendKind.DATABASE:
        return DatabaseBucketBackend()

    return local


def create_gateway(
    settings: Settings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    redis_client: aioredis.Redis | None = None,
) -> StorageGateway:
    """Create a storage gateway from settings.

    With ``PERSISTENCE=database`` (or the database rate limit backend) the
    caller must run ``drivehub.database.connection.init_db()`` before use.

    Args:
        settings: Settings (defaults to ``get_settings()``)
        http_client: Shared httpx client for REST adapters and token refresh
        redis_client: Redis client for the redis rate limit backend

    Returns:
        Configured storage gateway
    """
    settings = settings or get_settings()
    config = gateway_config_from_settings(settings)

    registry: SourceRegistry
    session_store: TransferSessionStore
    if settings.PERSISTENCE == "database":
        from drivehub.database.stores import SQLSourceRegistry, SQLTransferSessionStore

        registry = SQLSourceRegistry()
        session_store = SQLTransferSessionStore()
    else:
        registry = InMemorySourceRegistry()
        session_store = InMemoryTransferSessionStore()

    limiter = TokenBucketLimiter(backend=create_bucket_backend(settings, redis_client))
    governor = Governor(config.retry, limiter=limiter, on_retry=record_retry)

    cursor_secret = settings.CURSOR_SECRET.get_secret_value()
    cursors = CursorManager(cursor_secret or None, ttl_seconds=settings.CURSOR_TTL_SECONDS)

    gateway = StorageGateway(
        registry=registry,
        credentials=create_credential_store(settings, http_client),
        governor=governor,
        cursors=cursors,
        adapter_factory=AdapterFactory(http_client),
        config=config,
        session_store=session_store,
    )

    logger.info(
        "storage_gateway_created",
        persistence=settings.PERSISTENCE,
        rate_limit_backend=settings.RATE_LIMIT_BACKEND,
    )

    return gateway
