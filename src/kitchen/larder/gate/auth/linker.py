"""Federated account linking.

Maps a verified identity provider subject onto a local user. The mapping is one-to-one and is
enforced by the unique indexes on `external_identities.subject` and `external_identities.user_id`
together with conditional writes:

* The identity row is recorded with `INSERT ... ON CONFLICT (subject) DO UPDATE`, which also
  refreshes the mirrored display name and avatar.
* A link is a compare-and-set `UPDATE ... WHERE user_id IS NULL` (or already this user). When two
  requests race for one subject, exactly one update matches a row.

Nothing here reads a row and then writes based on what it saw without the write re-checking it.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable, Optional
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from ulid import ULID

from kitchen.larder.gate.auth.errors import AuthError
from kitchen.larder.gate.auth.id_token import IdTokenClaims, IdTokenVerifier
from kitchen.larder.gate.model.base import dialect_insert
from kitchen.larder.gate.model.external_identity import ExternalIdentity
from kitchen.larder.gate.model.users import User

logger = logging.getLogger(__name__)

USER_NAME_MAX_LENGTH = 50


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(repr=False, eq=False)
class LinkResult:
    user: User
    identity: ExternalIdentity
    created_user: bool = False


def placeholder_domain(provider_name: str) -> str:
    """Email domain reserved for accounts provisioned by a federated login."""
    return f"{provider_name}.local"


def placeholder_email(provider_name: str, subject: str) -> str:
    return f"{provider_name}_{subject.lower()}@{placeholder_domain(provider_name)}"


def display_name_for(claims: IdTokenClaims, provider_name: str) -> str:
    name = (claims.name or "").strip()
    if not name:
        name = f"{provider_name} user"
    return name[:USER_NAME_MAX_LENGTH]


class FederatedAccountLinker:
    def __init__(
        self,
        verifier: IdTokenVerifier,
        client_id: Optional[str],
        provider_name: str = "line",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.verifier = verifier
        self.client_id = client_id
        self.provider_name = provider_name
        self.clock = clock

    async def verify(self, id_token: str, nonce: Optional[str]) -> IdTokenClaims:
        if not self.client_id:
            raise AuthError.invalid_request(
                "Identity provider client id is not configured"
            )
        return await self.verifier.verify(id_token, self.client_id, nonce)

    async def authenticate_with_id_token(
        self, database_session: AsyncSession, id_token: str, nonce: Optional[str]
    ) -> LinkResult:
        """
        Resolve an identity token to a local user, provisioning one on first login.

        A linked subject returns its user. An unknown or unlinked subject gets a new confirmed
        user without a password. If another request links the subject first, its user wins and
        the one provisioned here is rolled back.
        """
        claims = await self.verify(id_token, nonce)
        now = self.clock()
        created_user = False

        async with database_session.begin():
            identity = await self._record_identity(database_session, claims, now)

            if identity.user_id is None:
                created_user = await self._provision_user(database_session, claims, now)
                identity = await self._select_identity(database_session, claims.sub)

            if identity.user_id is None:
                raise AuthError.internal_failure(
                    {"reason": "identity left unlinked", "subject": claims.sub}
                )

            user = (
                await database_session.scalars(
                    select(User).where(User.id == identity.user_id)
                )
            ).one()

        logger.info(
            "Federated login for subject %s resolved to user %s (created=%s)",
            claims.sub,
            user.id,
            created_user,
        )
        return LinkResult(user=user, identity=identity, created_user=created_user)

    async def link_existing_user(
        self,
        database_session: AsyncSession,
        user: User,
        id_token: str,
        nonce: Optional[str],
    ) -> ExternalIdentity:
        """
        Link the identity token's subject to an already authenticated user.

        Raises:
            AuthError: `already_linked` when the subject belongs to a different user, or when
                `user` is already linked to a different subject.
        """
        claims = await self.verify(id_token, nonce)
        now = self.clock()

        try:
            async with database_session.begin():
                current = (
                    await database_session.scalars(
                        select(ExternalIdentity).where(
                            ExternalIdentity.user_id == user.id
                        )
                    )
                ).first()
                if current is not None and current.subject != claims.sub:
                    raise AuthError.already_linked(
                        "This user is already linked to another account"
                    )

                await self._record_identity(database_session, claims, now)

                result = await database_session.execute(
                    update(ExternalIdentity)
                    .where(
                        ExternalIdentity.subject == claims.sub,
                        or_(
                            ExternalIdentity.user_id.is_(None),
                            ExternalIdentity.user_id == user.id,
                        ),
                    )
                    .values(
                        user_id=user.id,
                        linked_at=func.coalesce(ExternalIdentity.linked_at, now),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise AuthError.already_linked()

                identity = await self._select_identity(database_session, claims.sub)
        except IntegrityError as e:
            logger.info("Concurrent link rejected for subject %s: %s", claims.sub, e)
            raise AuthError.already_linked() from e

        logger.info("Linked subject %s to user %s", claims.sub, user.id)
        return identity

    async def _record_identity(
        self, database_session: AsyncSession, claims: IdTokenClaims, now: datetime
    ) -> ExternalIdentity:
        stmt = dialect_insert(database_session, ExternalIdentity).values(
            guid=str(ULID()),
            subject=claims.sub,
            display_name=claims.name,
            avatar_url=claims.picture,
            created_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["subject"],
            set_={
                "display_name": stmt.excluded.display_name,
                "avatar_url": stmt.excluded.avatar_url,
            },
        )
        await database_session.execute(stmt)
        return await self._select_identity(database_session, claims.sub)

    async def _select_identity(
        self, database_session: AsyncSession, subject: str
    ) -> ExternalIdentity:
        stmt = (
            select(ExternalIdentity)
            .where(ExternalIdentity.subject == subject)
            .execution_options(populate_existing=True)
        )
        return (await database_session.scalars(stmt)).one()

    async def _provision_user(
        self, database_session: AsyncSession, claims: IdTokenClaims, now: datetime
    ) -> bool:
        """Create a user and claim the unlinked identity for it. Returns False if the claim lost."""
        savepoint = await database_session.begin_nested()
        try:
            user = User(
                email=placeholder_email(self.provider_name, claims.sub),
                password_hash=None,
                name=display_name_for(claims, self.provider_name),
                provider=self.provider_name,
                confirmed_at=now,
                created_at=now,
            )
            database_session.add(user)
            await database_session.flush()

            result = await database_session.execute(
                update(ExternalIdentity)
                .where(
                    ExternalIdentity.subject == claims.sub,
                    ExternalIdentity.user_id.is_(None),
                )
                .values(user_id=user.id, linked_at=now)
                .execution_options(synchronize_session=False)
            )
        except IntegrityError as e:
            logger.info("Provisioning for subject %s lost a race: %s", claims.sub, e)
            await savepoint.rollback()
            return False

        if result.rowcount != 1:
            await savepoint.rollback()
            return False

        await savepoint.commit()
        return True
