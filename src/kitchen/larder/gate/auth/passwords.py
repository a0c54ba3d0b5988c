"""Local email and password accounts."""

from datetime import datetime, timedelta, timezone
import hashlib
import logging
import re
import secrets
from typing import Callable, Iterable, Optional, Tuple
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kitchen.larder.gate.auth.errors import AuthError
from kitchen.larder.gate.model.users import EMAIL_PROVIDER, User

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
NAME_MAX_LENGTH = 50
PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 128
CONFIRMATION_TOKEN_TTL = 259200  # 3 days


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def confirmation_digest(confirmation_token: str) -> str:
    return hashlib.sha256(confirmation_token.encode()).hexdigest()


class LocalAccounts:
    def __init__(
        self,
        confirmation_required: bool = False,
        hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], datetime] = utc_now,
        reserved_email_domains: Iterable[str] = (),
        confirmation_token_ttl: int = CONFIRMATION_TOKEN_TTL,
    ) -> None:
        self.confirmation_required = confirmation_required
        self.reserved_email_domains = frozenset(
            domain.lower() for domain in reserved_email_domains
        )
        self.confirmation_token_ttl = confirmation_token_ttl
        self.hasher = hasher or PasswordHasher(type=Type.ID)
        self.clock = clock
        self._unknown_user_hash: Optional[str] = None

    def hash_password(self, password: str) -> str:
        return self.hasher.hash(password)

    def verify_password(self, password_hash: Optional[str], password: str) -> bool:
        if not password_hash:
            return False
        try:
            return self.hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def sign_up(
        self, database_session: AsyncSession, name: str, email: str, password: str
    ) -> User:
        """
        Create a local account.

        The account is confirmed immediately unless `confirmation_required` is set.

        Raises:
            AuthError: `invalid_request` for a bad name, email or password or an email in a
                reserved domain, `email_taken` when the email is already registered.
        """
        name = (name or "").strip()
        email = normalize_email(email or "")
        password = password or ""

        if not name or len(name) > NAME_MAX_LENGTH:
            raise AuthError.invalid_request(
                f"name must be between 1 and {NAME_MAX_LENGTH} characters"
            )
        if not EMAIL_PATTERN.match(email):
            raise AuthError.invalid_request("email is invalid")
        if email.rsplit("@", 1)[1] in self.reserved_email_domains:
            raise AuthError.invalid_request("email domain is reserved")
        if not PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH:
            raise AuthError.invalid_request(
                f"password must be between {PASSWORD_MIN_LENGTH} and {PASSWORD_MAX_LENGTH} characters"
            )

        now = self.clock()
        user = User(
            email=email,
            password_hash=self.hash_password(password),
            name=name,
            provider=EMAIL_PROVIDER,
            confirmed_at=None if self.confirmation_required else now,
            created_at=now,
        )

        try:
            async with database_session.begin():
                database_session.add(user)
        except IntegrityError as e:
            raise AuthError.email_taken() from e

        logger.info("Created local user %s", user.id)
        return user

    async def sign_in(
        self, database_session: AsyncSession, email: str, password: str
    ) -> User:
        """
        Check an email and password.

        Unknown emails, wrong passwords and accounts without a password all fail the same way.
        """
        async with database_session.begin():
            user = (
                await database_session.scalars(
                    select(User).where(User.email == normalize_email(email or ""))
                )
            ).first()

        if user is None or not user.password_hash:
            # Keep the response time close to a real mismatch.
            self.verify_password(self._placeholder_hash(), password or "")
            raise AuthError.invalid_credentials()

        if not self.verify_password(user.password_hash, password or ""):
            raise AuthError.invalid_credentials()

        if self.confirmation_required and not user.confirmed:
            raise AuthError.unconfirmed()

        return user

    async def issue_confirmation(
        self, database_session: AsyncSession, user: User
    ) -> Optional[str]:
        """
        Replace the user's pending confirmation token with a fresh one and return it.

        Returns None when the user is already confirmed.
        """
        confirmation_token = secrets.token_urlsafe(32)
        async with database_session.begin():
            result = await database_session.execute(
                update(User)
                .where(User.id == user.id, User.confirmed_at.is_(None))
                .values(
                    confirmation_token_digest=confirmation_digest(confirmation_token),
                    confirmation_sent_at=self.clock(),
                )
                .execution_options(synchronize_session=False)
            )

        if result.rowcount != 1:
            return None

        logger.info("Issued confirmation token for user %s", user.id)
        return confirmation_token

    async def resend_confirmation(
        self, database_session: AsyncSession, email: str
    ) -> Optional[Tuple[User, str]]:
        """
        Issue a new confirmation token for an unconfirmed local account.

        Returns None for unknown emails, federated accounts and confirmed accounts so that callers
        can answer every request the same way.
        """
        async with database_session.begin():
            user = (
                await database_session.scalars(
                    select(User).where(User.email == normalize_email(email or ""))
                )
            ).first()

        if user is None or user.confirmed or not user.password_hash:
            return None

        confirmation_token = await self.issue_confirmation(database_session, user)
        if confirmation_token is None:
            return None
        return user, confirmation_token

    async def confirm(self, database_session: AsyncSession, confirmation_token: str) -> User:
        """
        Confirm the account that `confirmation_token` was issued for.

        Tokens are single use and expire `confirmation_token_ttl` seconds after they were issued.

        Raises:
            AuthError: `confirmation_invalid` for unknown, used or expired tokens.
        """
        if not confirmation_token:
            raise AuthError.confirmation_invalid()

        digest = confirmation_digest(confirmation_token)
        now = self.clock()
        not_before = now - timedelta(seconds=self.confirmation_token_ttl)

        async with database_session.begin():
            user = (
                await database_session.scalars(
                    select(User).where(User.confirmation_token_digest == digest)
                )
            ).first()
            if user is None:
                raise AuthError.confirmation_invalid()

            result = await database_session.execute(
                update(User)
                .where(
                    User.id == user.id,
                    User.confirmation_token_digest == digest,
                    User.confirmed_at.is_(None),
                    User.confirmation_sent_at >= not_before,
                )
                .values(confirmed_at=now, confirmation_token_digest=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise AuthError.confirmation_invalid({"user_id": user.id})

            await database_session.refresh(user)

        logger.info("Confirmed user %s", user.id)
        return user

    def _placeholder_hash(self) -> str:
        if self._unknown_user_hash is None:
            self._unknown_user_hash = self.hasher.hash(secrets.token_urlsafe(16))
        return self._unknown_user_hash
