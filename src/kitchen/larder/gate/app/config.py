"""
Configuration Module for Larder Gate

This module defines the configuration system for the Larder authentication service, using Pydantic
for settings validation and dependency injection through AppKeys.

The Settings class is loaded from environment variables with defaults suitable for development
environments. Application components access settings, shared resources and the authentication
services through typed AppKeys rather than module globals.

Key configuration areas include:
- Service networking and CORS
- Database and cache connections
- Session token signing
- Identity provider client registration and verification tolerances
- Background processing and monitoring
"""

import asyncio
import base64
import logging
from typing import Annotated, Final, List, Optional
from aiohttp import ClientSession, web
from jwcrypto import jwk
from pydantic import (
    AliasChoices,
    Field,
    PostgresDsn,
    RedisDsn,
    field_validator,
)
from pydantic_settings import BaseSettings, NoDecode
from redis import asyncio as redis
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)

from kitchen.larder.gate.app.metrics import MetricsClient
from kitchen.larder.gate.auth.authenticator import RequestAuthenticator
from kitchen.larder.gate.auth.denylist import TokenDenylist
from kitchen.larder.gate.auth.exchange import AuthorizationCodeExchanger
from kitchen.larder.gate.auth.id_token import IdTokenVerifier
from kitchen.larder.gate.auth.keyset import RemoteKeySetCache
from kitchen.larder.gate.auth.linker import FederatedAccountLinker
from kitchen.larder.gate.auth.nonce import NonceStore
from kitchen.larder.gate.auth.outbox import ConfirmationOutbox
from kitchen.larder.gate.auth.passwords import LocalAccounts
from kitchen.larder.gate.auth.refresh import RefreshRotator
from kitchen.larder.gate.auth.session_token import SessionTokenIssuer
from kitchen.larder.gate.model.health import HealthGauge

logger = logging.getLogger(__name__)


def generate_session_signing_key() -> jwk.JWK:
    return jwk.JWK.generate(kty="oct", size=256)


class Settings(BaseSettings):
    """
    Application settings for Larder Gate.

    Environment variables are mapped to settings fields automatically, with aliases for the
    variable names used by existing deployments. For example, the database connection string can
    be set with either PG_DSN or DATABASE_URL.
    """

    debug: bool = False
    """
    Enable debug mode for verbose logging and development features.
    Set with DEBUG=true environment variable.
    """

    allowed_domains: str = "https://larder.app, https://www.larder.app"
    """
    Comma-separated list of origins allowed for CORS.
    Set with ALLOWED_DOMAINS environment variable.
    """

    http_port: int = Field(alias="port", default=5100)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string for the nonce store and the key set cache.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    pg_dsn: PostgresDsn = Field(
        "postgresql+asyncpg://postgres:password@db/larder",
        validation_alias=AliasChoices("pg_dsn", "database_url"),
    )  # type: ignore
    """
    PostgreSQL connection string for users, external identities and the token denylist.
    Set with PG_DSN or DATABASE_URL environment variables.
    """

    session_signing_key: Annotated[jwk.JWK, NoDecode] = Field(
        default_factory=generate_session_signing_key
    )
    """
    Symmetric (kty=oct) key used to sign session tokens.
    Accepts a JWK JSON document or a base64url encoded secret of at least 32 bytes.
    A random key is generated when unset, which invalidates every token on restart.
    Set with SESSION_SIGNING_KEY environment variable.
    """

    session_token_expiry: int = 3600
    """
    Lifetime of an issued session token in seconds.
    Set with SESSION_TOKEN_EXPIRY environment variable.
    """

    idp_name: str = "line"
    """Provider name recorded on users provisioned by a federated login."""

    idp_client_id: Optional[str] = None
    """
    Client (channel) id registered with the identity provider. Identity tokens must carry it as
    their audience.
    Set with IDP_CLIENT_ID environment variable.
    """

    idp_client_secret: Optional[str] = None
    """
    Client secret used for the authorization code exchange.
    Set with IDP_CLIENT_SECRET environment variable.
    """

    idp_issuer: str = "https://access.line.me"
    idp_jwks_uri: str = "https://api.line.me/oauth2/v2.1/certs"
    idp_token_endpoint: str = "https://api.line.me/oauth2/v2.1/token"

    idp_algorithms: Annotated[List[str], NoDecode] = ["RS256", "ES256"]
    """
    Signature algorithms accepted on identity tokens.
    Set with IDP_ALGORITHMS environment variable as comma-separated values.
    """

    id_token_clock_skew: int = 300
    """Allowed clock difference in seconds when checking identity token exp and iat."""

    key_set_cache_ttl: int = 86400  # 24 hours
    """
    How long the provider key set is cached before it is fetched again.
    Set with KEY_SET_CACHE_TTL environment variable.
    """

    nonce_ttl: int = 600  # 10 minutes
    """Lifetime of a login nonce in seconds."""

    outbound_timeout: float = 10
    """
    Total timeout in seconds for calls to the identity provider. Timeouts are not retried.
    Set with OUTBOUND_TIMEOUT environment variable.
    """

    confirmation_required: bool = False
    """
    When enabled, new local accounts start unconfirmed, sign-up queues confirmation instructions
    instead of returning a token and unconfirmed accounts cannot sign in.
    Set with CONFIRMATION_REQUIRED environment variable.
    """

    confirmation_token_ttl: int = 259200  # 3 days
    """
    Lifetime of an email confirmation token in seconds.
    Set with CONFIRMATION_TOKEN_TTL environment variable.
    """

    denylist_sweep_interval: int = 3600
    """
    Seconds between sweeps that delete expired denylist entries.
    Set with DENYLIST_SWEEP_INTERVAL environment variable.
    """

    metrics_backend: str = "telegraf"
    """
    Metrics backend, either 'telegraf' or 'none'.
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    @field_validator("session_signing_key", mode="before")
    @classmethod
    def decode_session_signing_key(cls, v) -> jwk.JWK:
        """
        Validate and process the session_signing_key setting.

        This validator accepts either:
        - An existing JWK object (for programmatic configuration)
        - A JWK JSON document
        - A base64url encoded secret

        Raises:
            ValueError: If the value is not a symmetric key of at least 256 bits
        """
        if isinstance(v, jwk.JWK):
            key = v
        elif isinstance(v, str) and v.strip().startswith("{"):
            key = jwk.JWK.from_json(v.strip())
        elif isinstance(v, str) and v.strip():
            secret = v.strip()
            padded = secret + "=" * (-len(secret) % 4)
            if len(base64.urlsafe_b64decode(padded)) < 32:
                raise ValueError("session_signing_key must be at least 256 bits")
            key = jwk.JWK(kty="oct", k=secret.rstrip("="))
        else:
            raise ValueError(
                "session_signing_key must be a JWK object, a JWK JSON document or a base64url secret"
            )

        if key.get("kty") != "oct":
            raise ValueError("session_signing_key must be a symmetric (oct) key")
        return key

    @field_validator("idp_algorithms", mode="before")
    @classmethod
    def decode_idp_algorithms(cls, v) -> List[str]:
        if isinstance(v, str):
            v = [value.strip() for value in v.split(",") if value.strip()]
        if not v:
            raise ValueError("idp_algorithms must name at least one algorithm")
        return list(v)

    @field_validator("metrics_backend", mode="before")
    @classmethod
    def decode_metrics_backend(cls, v) -> str:
        value = str(v).strip().lower()
        if value not in ("telegraf", "none"):
            raise ValueError("metrics_backend must be 'telegraf' or 'none'")
        return value


SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy async database engine"""

DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
"""AppKey for accessing the SQLAlchemy async session factory"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisPoolAppKey: Final = web.AppKey("redis_pool", redis.ConnectionPool)
"""AppKey for accessing the Redis connection pool"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that decays the health gauge"""

DenylistSweepTaskAppKey: Final = web.AppKey("denylist_sweep_task", asyncio.Task[None])
"""AppKey for the background task that deletes expired denylist entries"""

NonceStoreAppKey: Final = web.AppKey("nonce_store", NonceStore)
KeySetCacheAppKey: Final = web.AppKey("key_set_cache", RemoteKeySetCache)
IdTokenVerifierAppKey: Final = web.AppKey("id_token_verifier", IdTokenVerifier)
CodeExchangerAppKey: Final = web.AppKey("code_exchanger", AuthorizationCodeExchanger)
AccountLinkerAppKey: Final = web.AppKey("account_linker", FederatedAccountLinker)
SessionTokenIssuerAppKey: Final = web.AppKey("session_token_issuer", SessionTokenIssuer)
TokenDenylistAppKey: Final = web.AppKey("token_denylist", TokenDenylist)
RequestAuthenticatorAppKey: Final = web.AppKey(
    "request_authenticator", RequestAuthenticator
)
RefreshRotatorAppKey: Final = web.AppKey("refresh_rotator", RefreshRotator)
LocalAccountsAppKey: Final = web.AppKey("local_accounts", LocalAccounts)
ConfirmationOutboxAppKey: Final = web.AppKey("confirmation_outbox", ConfirmationOutbox)
