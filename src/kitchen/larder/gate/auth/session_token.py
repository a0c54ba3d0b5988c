"""Local session tokens.

Session tokens are HS256 JWTs signed with a server-held symmetric JWK. The algorithm is fixed here
and never read from configuration or from the token itself. Each issuance gets a fresh ULID `jti`,
which is the unit the denylist revokes.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable, Dict
from jwcrypto import jwk, jwt
from jwcrypto.common import JWException, json_decode
from ulid import ULID

from kitchen.larder.gate.auth.errors import AuthError
from kitchen.larder.gate.model.users import User

logger = logging.getLogger(__name__)

SESSION_TOKEN_ALGORITHM = "HS256"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionTokenClaims:
    subject: str
    jti: str
    issued_at: datetime
    expires_at: datetime


class SessionTokenIssuer:
    def __init__(
        self,
        signing_key: jwk.JWK,
        expiry: int = 3600,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.signing_key = signing_key
        self.expiry = expiry
        self.clock = clock

    def issue(self, user: User) -> str:
        """Mint a signed session token for `user` with a new jti."""
        if user.id is None:
            raise AuthError.internal_failure({"reason": "user has no id"})

        now = self.clock()
        expires_at = now + timedelta(seconds=self.expiry)

        session_token = jwt.JWT(
            header={"alg": SESSION_TOKEN_ALGORITHM, "typ": "JWT"},
            claims={
                "sub": str(user.id),
                "jti": str(ULID()),
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
            },
        )
        session_token.make_signed_token(self.signing_key)
        return session_token.serialize()

    def decode(self, serialized_token: str) -> SessionTokenClaims:
        """
        Verify the signature and expiry of a session token.

        Raises:
            AuthError: `token_malformed` for a bad signature or missing claims, `token_expired` when
                `exp` has passed.
        """
        if not serialized_token:
            raise AuthError.token_malformed(detail={"reason": "empty token"})

        try:
            verified_token = jwt.JWT(
                jwt=serialized_token,
                key=self.signing_key,
                algs=[SESSION_TOKEN_ALGORITHM],
                check_claims=False,
                expected_type="JWS",
            )
            claims: Dict[str, Any] = json_decode(verified_token.claims)
        except (JWException, ValueError, TypeError) as e:
            raise AuthError.token_malformed(
                detail={"reason": f"signature: {type(e).__name__}"}
            ) from e

        if not isinstance(claims, dict):
            raise AuthError.token_malformed(detail={"reason": "claims are not an object"})

        subject = claims.get("sub")
        jti = claims.get("jti")
        expires_at = claims.get("exp")
        issued_at = claims.get("iat", 0)
        if not isinstance(subject, str) or not isinstance(jti, str) or not jti:
            raise AuthError.token_malformed(detail={"reason": "missing sub or jti"})
        if not isinstance(expires_at, int) or not isinstance(issued_at, int):
            raise AuthError.token_malformed(detail={"reason": "bad exp or iat"})

        if int(self.clock().timestamp()) >= expires_at:
            raise AuthError.token_expired({"jti": jti, "exp": expires_at})

        return SessionTokenClaims(
            subject=subject,
            jti=jti,
            issued_at=datetime.fromtimestamp(issued_at, timezone.utc),
            expires_at=datetime.fromtimestamp(expires_at, timezone.utc),
        )
