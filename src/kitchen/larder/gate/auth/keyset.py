"""Identity provider signing key cache.

The provider publishes its public signing keys as a JWK Set. The raw document is cached in Redis so
every server instance shares one copy, and is refetched only after the TTL evicts it. Rotated keys
therefore become visible within one TTL window at worst.

An unknown key id inside a fresh cache is a hard failure. Verification is never skipped.
"""

import asyncio
import logging
from typing import Any, Optional
import aiohttp
from aiohttp import ClientSession
from jwcrypto import jwk
from jwcrypto.common import JWException
import redis.asyncio as redis

from kitchen.larder.gate.auth.errors import AuthError

logger = logging.getLogger(__name__)

KEY_SET_CACHE_KEY = "auth:idp:jwks"


def normalize_redis_string(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


class RemoteKeySetCache:
    def __init__(
        self,
        http_session: ClientSession,
        redis_client: redis.Redis,
        jwks_uri: str,
        ttl: int = 86400,
        timeout: float = 10,
    ) -> None:
        self.http_session = http_session
        self.redis_client = redis_client
        self.jwks_uri = jwks_uri
        self.ttl = ttl
        self.timeout = timeout
        # Collapses concurrent misses in this process into a single fetch.
        self._fetch_lock = asyncio.Lock()

    async def key_for(self, key_id: str) -> jwk.JWK:
        """
        Return the provider public key with the given key id.

        Raises:
            AuthError: `key_fetch_failed` when the key set cannot be fetched or parsed,
                `key_not_found` when the key set does not contain `key_id`.
        """
        key_set = await self.key_set()
        key = key_set.get_key(key_id)
        if key is None:
            logger.warning("Key id %s not present in provider key set", key_id)
            raise AuthError.key_not_found(key_id)
        return key

    async def key_set(self) -> jwk.JWKSet:
        document = await self._cached_document()
        if document is None:
            async with self._fetch_lock:
                document = await self._cached_document()
                if document is None:
                    document = await self._fetch_document()
        return _parse_key_set(document)

    async def _cached_document(self) -> Optional[str]:
        cached = await self.redis_client.get(KEY_SET_CACHE_KEY)
        if cached is None:
            return None
        return normalize_redis_string(cached)

    async def _fetch_document(self) -> str:
        logger.info("Fetching provider key set from %s", self.jwks_uri)
        try:
            async with self.http_session.get(
                self.jwks_uri, timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status != 200:
                    raise AuthError.key_fetch_failed(
                        {"status": response.status, "uri": self.jwks_uri}
                    )
                document = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AuthError.key_fetch_failed(
                {"error": f"{type(e).__name__}: {e}", "uri": self.jwks_uri}
            ) from e

        # Only documents that parse are cached.
        _parse_key_set(document)
        await self.redis_client.set(KEY_SET_CACHE_KEY, document, ex=self.ttl)
        return document

    async def invalidate(self) -> None:
        await self.redis_client.delete(KEY_SET_CACHE_KEY)


def _parse_key_set(document: Optional[str]) -> jwk.JWKSet:
    if not document:
        raise AuthError.key_fetch_failed({"error": "empty key set document"})
    try:
        return jwk.JWKSet.from_json(document)
    except (JWException, ValueError, TypeError) as e:
        raise AuthError.key_fetch_failed(
            {"error": f"unparseable key set: {type(e).__name__}: {e}"}
        ) from e
