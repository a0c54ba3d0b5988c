"""
Shared test configuration and fixtures for Larder Gate tests.

Persistence tests run against a SQLite database file per test, so that concurrent sessions use
separate connections. Redis is replaced by fakeredis. Identity provider keys are generated once
per test session and published through a pre-populated key set cache.
"""

from typing import Any, Optional
from unittest.mock import AsyncMock

from aiohttp import ClientSession
from argon2 import PasswordHasher
import fakeredis.aioredis
from jwcrypto import jwk
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from kitchen.larder.gate.auth.denylist import TokenDenylist
from kitchen.larder.gate.auth.id_token import IdTokenVerifier
from kitchen.larder.gate.auth.keyset import KEY_SET_CACHE_KEY, RemoteKeySetCache
from kitchen.larder.gate.auth.session_token import SessionTokenIssuer
from kitchen.larder.gate.model.base import Base
from kitchen.larder.gate.model.denylist import RevokedToken  # noqa: F401
from kitchen.larder.gate.model.external_identity import ExternalIdentity  # noqa: F401
from kitchen.larder.gate.model.users import User  # noqa: F401
from tests.test_helpers import ISSUER, JWKS_URI, FixedClock, id_token_claims, mint_token


@pytest.fixture(scope="session")
def idp_rsa_key() -> jwk.JWK:
    return jwk.JWK.generate(kty="RSA", size=2048, kid="rsa-1")


@pytest.fixture(scope="session")
def idp_ec_key() -> jwk.JWK:
    return jwk.JWK.generate(kty="EC", crv="P-256", kid="ec-1")


@pytest.fixture(scope="session")
def idp_key_set_json(idp_rsa_key, idp_ec_key) -> str:
    key_set = jwk.JWKSet()
    key_set.add(idp_rsa_key)
    key_set.add(idp_ec_key)
    return key_set.export(private_keys=False)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def mint_id_token(idp_ec_key, clock):
    """Mint an ES256 identity token signed by the provider key unless told otherwise."""

    def _mint(
        key: Optional[jwk.JWK] = None,
        alg: str = "ES256",
        kid: Optional[str] = "ec-1",
        **claim_overrides: Any,
    ) -> str:
        return mint_token(
            key or idp_ec_key, id_token_claims(clock(), **claim_overrides), alg, kid
        )

    return _mint


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def mock_http_session():
    return AsyncMock(spec=ClientSession)


@pytest_asyncio.fixture
async def key_set_cache(fake_redis_client, mock_http_session, idp_key_set_json):
    """Key set cache that already holds the provider keys, so no fetch happens."""
    await fake_redis_client.set(KEY_SET_CACHE_KEY, idp_key_set_json, ex=86400)
    return RemoteKeySetCache(mock_http_session, fake_redis_client, JWKS_URI)


@pytest.fixture
def verifier(key_set_cache, clock) -> IdTokenVerifier:
    return IdTokenVerifier(key_set_cache, ISSUER, clock_skew=300, clock=clock)


@pytest.fixture(scope="session")
def session_signing_key() -> jwk.JWK:
    return jwk.JWK.generate(kty="oct", size=256)


@pytest.fixture
def issuer(session_signing_key) -> SessionTokenIssuer:
    return SessionTokenIssuer(session_signing_key, expiry=3600)


@pytest.fixture
def denylist() -> TokenDenylist:
    return TokenDenylist()


@pytest.fixture(scope="session")
def fast_password_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Create async SQLAlchemy engine backed by a SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(session_maker):
    """Create async database session for testing."""
    async with session_maker() as session:
        yield session
