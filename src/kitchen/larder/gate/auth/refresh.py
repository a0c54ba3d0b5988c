"""Session token rotation.

A refresh closes the presented token before minting its replacement. The denylist write is
committed before `issue` is called, so a client can never hold two live tokens from one refresh.
Other sessions of the same user are untouched because revocation is per jti.
"""

from dataclasses import dataclass
import logging
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kitchen.larder.gate.auth.authenticator import RequestAuthenticator
from kitchen.larder.gate.auth.denylist import TokenDenylist
from kitchen.larder.gate.auth.errors import AuthError
from kitchen.larder.gate.auth.session_token import SessionTokenIssuer
from kitchen.larder.gate.model.users import User

logger = logging.getLogger(__name__)


@dataclass(repr=False, eq=False)
class RotatedSession:
    token: str
    user: User
    revoked_jti: str


class RefreshRotator:
    def __init__(
        self,
        authenticator: RequestAuthenticator,
        denylist: TokenDenylist,
        issuer: SessionTokenIssuer,
    ) -> None:
        self.authenticator = authenticator
        self.denylist = denylist
        self.issuer = issuer

    async def refresh(
        self, database_session: AsyncSession, current_token: Optional[str]
    ) -> RotatedSession:
        """
        Exchange a valid session token for a new one.

        Raises:
            AuthError: `unauthenticated` when the presented token does not authenticate or was
                rotated concurrently, `internal_failure` when the old token cannot be denylisted or
                the new one cannot be issued.
        """
        session = await self.authenticator.authenticate(database_session, current_token)

        try:
            revoked = await self.denylist.revoke(
                database_session, session.jti, session.expires_at
            )
        except SQLAlchemyError as e:
            logger.exception("Unable to denylist token %s during refresh", session.jti)
            raise AuthError.internal_failure({"stage": "denylist", "jti": session.jti}) from e

        if not revoked:
            raise AuthError.unauthenticated({"reason": "token already rotated", "jti": session.jti})

        try:
            new_token = self.issuer.issue(session.user)
        except AuthError:
            raise
        except Exception as e:
            logger.exception("Unable to issue replacement for token %s", session.jti)
            raise AuthError.internal_failure({"stage": "issue", "jti": session.jti}) from e

        logger.info("Rotated token %s for user %s", session.jti, session.user.id)
        return RotatedSession(token=new_token, user=session.user, revoked_jti=session.jti)
