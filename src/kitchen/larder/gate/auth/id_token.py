"""Identity token verification.

Identity tokens are compact JWS documents signed by the identity provider with one of its published
asymmetric keys. Verification runs in a fixed order and stops at the first failure:

1. Parse the protected header without checking the signature and read `kid`.
2. Resolve the public key through `RemoteKeySetCache`.
3. Verify the signature with jwcrypto, restricted to the configured algorithms.
4. Check `iss`, `aud`, `exp` and `iat`, allowing `clock_skew` seconds in both directions.
5. Compare `nonce` against the caller's expected value.

jwcrypto's own claim checks are disabled so that each failure maps to exactly one `ErrorKind`.
"""

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from jwcrypto import jwt
from jwcrypto.common import JWException, base64url_decode, json_decode
from pydantic import BaseModel, ConfigDict, ValidationError

from kitchen.larder.gate.auth.errors import AuthError
from kitchen.larder.gate.auth.keyset import RemoteKeySetCache

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHMS = ("RS256", "ES256")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IdTokenClaims(BaseModel):
    """Verified identity token claims.

    Provider specific claims that are not modelled here remain available through `model_extra`.
    """

    model_config = ConfigDict(extra="allow")

    iss: str
    sub: str
    aud: Union[str, List[str]]
    exp: int
    iat: Optional[int] = None
    nonce: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    email: Optional[str] = None


def unverified_header(serialized_token: str) -> Dict[str, Any]:
    """Decode the protected header of a compact JWS without checking its signature."""
    parts = serialized_token.split(".")
    if len(parts) != 3:
        raise AuthError.token_malformed(detail={"reason": "not a compact JWS"})
    try:
        header = json_decode(base64url_decode(parts[0]))
    except (ValueError, TypeError) as e:
        raise AuthError.token_malformed(
            detail={"reason": f"unreadable header: {type(e).__name__}"}
        ) from e
    if not isinstance(header, dict):
        raise AuthError.token_malformed(detail={"reason": "header is not an object"})
    return header


def _numeric_claim(claims: Dict[str, Any], name: str) -> Optional[int]:
    value = claims.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise AuthError.token_malformed(detail={"reason": f"{name} is not numeric"})
    return int(value)


class IdTokenVerifier:
    def __init__(
        self,
        key_set: RemoteKeySetCache,
        issuer: str,
        algorithms: Sequence[str] = DEFAULT_ALGORITHMS,
        clock_skew: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.key_set = key_set
        self.issuer = issuer
        self.algorithms = list(algorithms)
        self.clock_skew = clock_skew
        self.clock = clock

    async def verify(
        self,
        serialized_token: str,
        expected_audience: str,
        expected_nonce: Optional[str] = None,
    ) -> IdTokenClaims:
        """
        Verify an identity token and return its claims.

        Args:
            serialized_token: Compact JWS as received from the client or the token endpoint
            expected_audience: The client id this token must have been issued to
            expected_nonce: The nonce bound to this login attempt; skipped when None

        Raises:
            AuthError: one of `token_malformed`, `key_not_found`, `key_fetch_failed`,
                `issuer_mismatch`, `audience_mismatch`, `token_expired`, `nonce_mismatch`.
        """
        if not serialized_token:
            raise AuthError.token_malformed(detail={"reason": "empty token"})

        header = unverified_header(serialized_token)

        key_id = header.get("kid")
        if not isinstance(key_id, str) or not key_id:
            raise AuthError.token_malformed(detail={"reason": "header missing kid"})

        algorithm = header.get("alg")
        if algorithm not in self.algorithms:
            raise AuthError.token_malformed(
                detail={"reason": "algorithm not allowed", "alg": algorithm}
            )

        key = await self.key_set.key_for(key_id)

        try:
            verified_token = jwt.JWT(
                jwt=serialized_token,
                key=key,
                algs=self.algorithms,
                check_claims=False,
                expected_type="JWS",
            )
            claims = json_decode(verified_token.claims)
        except (JWException, ValueError, TypeError) as e:
            logger.debug("Identity token signature rejected: %s", e)
            raise AuthError.token_malformed(
                detail={"reason": f"signature: {type(e).__name__}", "kid": key_id}
            ) from e

        if not isinstance(claims, dict):
            raise AuthError.token_malformed(detail={"reason": "claims are not an object"})

        self._check_issuer(claims)
        self._check_audience(claims, expected_audience)
        self._check_time_window(claims)
        if expected_nonce is not None:
            self._check_nonce(claims, expected_nonce)

        try:
            return IdTokenClaims.model_validate(claims)
        except ValidationError as e:
            raise AuthError.token_malformed(detail={"reason": str(e)}) from e

    def _check_issuer(self, claims: Dict[str, Any]) -> None:
        if claims.get("iss") != self.issuer:
            raise AuthError.issuer_mismatch(
                {"expected": self.issuer, "actual": claims.get("iss")}
            )

    def _check_audience(self, claims: Dict[str, Any], expected_audience: str) -> None:
        audience = claims.get("aud")
        if isinstance(audience, str):
            audiences = [audience]
        elif isinstance(audience, list):
            audiences = [value for value in audience if isinstance(value, str)]
        else:
            audiences = []

        if expected_audience not in audiences:
            raise AuthError.audience_mismatch(
                {"expected": expected_audience, "actual": audience}
            )

    def _check_time_window(self, claims: Dict[str, Any]) -> None:
        now = int(self.clock().timestamp())

        expires_at = _numeric_claim(claims, "exp")
        if expires_at is None:
            raise AuthError.token_malformed(detail={"reason": "missing exp"})
        if now > expires_at + self.clock_skew:
            raise AuthError.token_expired({"exp": expires_at, "now": now})

        issued_at = _numeric_claim(claims, "iat")
        if issued_at is not None and issued_at > now + self.clock_skew:
            raise AuthError.token_malformed(
                detail={"reason": "issued in the future", "iat": issued_at, "now": now}
            )

    def _check_nonce(self, claims: Dict[str, Any], expected_nonce: str) -> None:
        nonce = claims.get("nonce")
        if not isinstance(nonce, str) or nonce != expected_nonce:
            raise AuthError.nonce_mismatch({"present": nonce is not None})
