"""
Common testing utilities for Larder Gate tests.

Provides identity token minting, a settable clock and user creation helpers shared by the unit
and handler tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from jwcrypto import jwk, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from kitchen.larder.gate.model.users import EMAIL_PROVIDER, User

ISSUER = "https://correct-issuer"
CLIENT_ID = "client-123"
JWKS_URI = "https://idp.example/oauth2/v2.1/certs"
TOKEN_ENDPOINT = "https://idp.example/oauth2/v2.1/token"


class FixedClock:
    """A settable clock for code that accepts a `clock` callable."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def mint_token(
    key: jwk.JWK, claims: Dict[str, Any], alg: str, kid: Optional[str]
) -> str:
    header: Dict[str, Any] = {"alg": alg, "typ": "JWT"}
    if kid is not None:
        header["kid"] = kid
    token = jwt.JWT(header=header, claims=claims)
    token.make_signed_token(key)
    return token.serialize()


def id_token_claims(now: datetime, **overrides: Any) -> Dict[str, Any]:
    """Claims of a valid identity token. Overriding a claim with None removes it."""
    claims: Dict[str, Any] = {
        "iss": ISSUER,
        "sub": "U4af4980629",
        "aud": CLIENT_ID,
        "iat": int(now.timestamp()),
        "exp": int(now.timestamp()) + 60,
        "nonce": "n1",
        "name": "Taro Yamada",
        "picture": "https://profile.example/taro.png",
    }
    claims.update(overrides)
    return {key: value for key, value in claims.items() if value is not None}


async def create_user(
    database_session: AsyncSession,
    email: str = "cook@example.com",
    name: str = "Cook",
    user_id: Optional[int] = None,
    password_hash: Optional[str] = None,
    confirmed: bool = True,
) -> User:
    now = datetime.now(timezone.utc)
    user = User(
        email=email,
        name=name,
        provider=EMAIL_PROVIDER,
        password_hash=password_hash,
        confirmed_at=now if confirmed else None,
        created_at=now,
    )
    if user_id is not None:
        user.id = user_id
    async with database_session.begin():
        database_session.add(user)
    return user
