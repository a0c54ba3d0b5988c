"""Persisted session token revocation.

Every authenticated request consults the denylist, so it lives in the shared database where all
server instances agree on it. Rows are kept until the revoked token would have expired anyway.
"""

from datetime import datetime, timezone
import logging
from typing import Optional
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from kitchen.larder.gate.model.base import dialect_insert
from kitchen.larder.gate.model.denylist import RevokedToken

logger = logging.getLogger(__name__)


class TokenDenylist:
    async def revoke(
        self,
        database_session: AsyncSession,
        jti: str,
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Denylist `jti` until `expires_at`.

        The write is insert-if-absent and commits before returning. Returns False when the jti was
        already denylisted, which callers rotating a token must treat as a replayed token.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        async with database_session.begin():
            stmt = (
                dialect_insert(database_session, RevokedToken)
                .values(jti=jti, expires_at=expires_at, created_at=now)
                .on_conflict_do_nothing(index_elements=["jti"])
                .returning(RevokedToken.jti)
            )
            inserted = (await database_session.execute(stmt)).scalar_one_or_none()

        if inserted is None:
            logger.info("Token %s was already denylisted", jti)
            return False
        return True

    async def is_revoked(self, database_session: AsyncSession, jti: str) -> bool:
        async with database_session.begin():
            stmt = select(RevokedToken.jti).where(RevokedToken.jti == jti)
            found = (await database_session.scalars(stmt)).first()
        return found is not None

    async def sweep(
        self, database_session: AsyncSession, now: Optional[datetime] = None
    ) -> int:
        """Delete entries whose token has expired and return how many were removed."""
        if now is None:
            now = datetime.now(timezone.utc)

        async with database_session.begin():
            result = await database_session.execute(
                delete(RevokedToken).where(RevokedToken.expires_at < now)
            )
        removed = result.rowcount or 0
        if removed:
            logger.info("Swept %d expired denylist entries", removed)
        return removed
