"""Anti-replay nonces for federated login attempts.

A nonce is issued per login attempt and embedded in the identity provider login request. The
provider echoes it inside the identity token. Every federated login or link request must present a
nonce issued here: the handler consumes it before the token is verified, and the verifier then
compares the token's nonce claim against it.

Nonces are stored under their own value, so concurrent attempts never overwrite each other. The
session handle issued alongside a nonce is stored with it and, when the client sends it back, must
match.
"""

import logging
import secrets
from typing import Optional
import redis.asyncio as redis

logger = logging.getLogger(__name__)

NONCE_KEY_PREFIX = "auth:nonce:"


def nonce_key(nonce: str) -> str:
    return f"{NONCE_KEY_PREFIX}{nonce}"


class NonceStore:
    def __init__(self, redis_client: redis.Redis, ttl: int = 600) -> None:
        self.redis_client = redis_client
        self.ttl = ttl

    async def generate_and_store(self, session_handle: str) -> str:
        """Create a random nonce for the login attempt identified by `session_handle`."""
        nonce = secrets.token_urlsafe(32)
        await self.redis_client.set(nonce_key(nonce), session_handle, ex=self.ttl)
        logger.debug("Issued nonce for session %s", session_handle)
        return nonce

    async def consume(self, nonce: str, session_handle: Optional[str] = None) -> bool:
        """
        Burn `nonce` and report whether it was issued here and had not been used or expired.

        When `session_handle` is given it must be the handle the nonce was issued for. The nonce is
        burned either way.
        """
        if not nonce:
            return False

        stored = await self.redis_client.getdel(nonce_key(nonce))
        if stored is None:
            logger.info("Rejected unknown or reused nonce")
            return False

        if session_handle is None:
            return True

        if isinstance(stored, bytes):
            stored = stored.decode()
        return secrets.compare_digest(str(stored).encode(), session_handle.encode())
