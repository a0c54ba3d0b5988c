"""Bearer token authentication for protected endpoints.

Every failure (missing token, bad signature, expired, unknown user, denylisted jti) is reported to
the caller as the same `unauthenticated` error. The underlying reason is only logged.
"""

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kitchen.larder.gate.auth.denylist import TokenDenylist
from kitchen.larder.gate.auth.errors import AuthError
from kitchen.larder.gate.auth.session_token import SessionTokenIssuer
from kitchen.larder.gate.model.users import User

logger = logging.getLogger(__name__)


@dataclass(repr=False, eq=False)
class AuthenticatedSession:
    """The user behind a request, plus the token that proved it."""

    user: User
    jti: str
    expires_at: datetime
    token: str


class RequestAuthenticator:
    def __init__(self, issuer: SessionTokenIssuer, denylist: TokenDenylist) -> None:
        self.issuer = issuer
        self.denylist = denylist

    async def authenticate(
        self, database_session: AsyncSession, serialized_token: Optional[str]
    ) -> AuthenticatedSession:
        try:
            return await self._authenticate(database_session, serialized_token)
        except AuthError as e:
            logger.info(
                "Rejected bearer token: kind=%s message=%s detail=%s",
                e.kind.value,
                e.message,
                e.detail,
            )
            raise AuthError.unauthenticated({"cause": e.kind.value}) from e

    async def _authenticate(
        self, database_session: AsyncSession, serialized_token: Optional[str]
    ) -> AuthenticatedSession:
        if not serialized_token:
            raise AuthError.token_malformed(detail={"reason": "missing bearer token"})

        claims = self.issuer.decode(serialized_token)

        try:
            user_id = int(claims.subject)
        except ValueError as e:
            raise AuthError.token_malformed(detail={"reason": "subject is not a user id"}) from e

        async with database_session.begin():
            user = (
                await database_session.scalars(select(User).where(User.id == user_id))
            ).first()
        if user is None:
            raise AuthError.unauthenticated({"reason": "unknown user", "sub": user_id})

        if await self.denylist.is_revoked(database_session, claims.jti):
            raise AuthError.unauthenticated({"reason": "denylisted", "jti": claims.jti})

        return AuthenticatedSession(
            user=user,
            jti=claims.jti,
            expires_at=claims.expires_at,
            token=serialized_token,
        )
