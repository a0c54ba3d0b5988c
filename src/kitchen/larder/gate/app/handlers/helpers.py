import logging
from typing import Any, Dict, Optional
from aiohttp import web
from sqlalchemy.ext.asyncio import AsyncSession

from kitchen.larder.gate.app.config import (
    NonceStoreAppKey,
    RequestAuthenticatorAppKey,
)
from kitchen.larder.gate.auth.authenticator import AuthenticatedSession
from kitchen.larder.gate.auth.errors import AuthError
from kitchen.larder.gate.model.external_identity import ExternalIdentity
from kitchen.larder.gate.model.users import User

logger = logging.getLogger(__name__)

# Older clients post camel case field names.
FIELD_ALIASES = {
    "id_token": "idToken",
    "redirect_uri": "redirectUri",
}


def bearer_token(request: web.Request) -> Optional[str]:
    """Return the bearer token from the Authorization header, if one is present."""
    authorization: Optional[str] = request.headers.getone("Authorization", None)
    if (
        authorization is None
        or not authorization.startswith("Bearer ")
        or len(authorization) < 8
    ):
        return None
    return authorization[7:].strip()


async def authenticated_session(
    request: web.Request, database_session: AsyncSession
) -> AuthenticatedSession:
    authenticator = request.app[RequestAuthenticatorAppKey]
    return await authenticator.authenticate(database_session, bearer_token(request))


async def json_body(request: web.Request) -> Dict[str, Any]:
    """Decode the request body as a JSON object. An empty body is an empty object."""
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError as e:
        raise AuthError.invalid_request("Invalid JSON") from e
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise AuthError.invalid_request("Request body must be a JSON object")
    return body


def optional_field(body: Dict[str, Any], name: str) -> Optional[str]:
    value = body.get(name)
    if value is None and name in FIELD_ALIASES:
        value = body.get(FIELD_ALIASES[name])
    if value is None:
        return None
    if not isinstance(value, str):
        raise AuthError.invalid_request(f"{name} must be a string")
    return value


def required_field(body: Dict[str, Any], name: str) -> str:
    value = optional_field(body, name)
    if not value:
        raise AuthError.invalid_request(f"{name} is required")
    return value


async def consume_nonce(
    request: web.Request, body: Dict[str, Any], nonce: str
) -> None:
    """
    Burn a nonce issued by the nonce endpoint.

    Unknown, expired or reused nonces are rejected. When the client sends back the session handle
    it was given, the nonce must have been issued for that handle.
    """
    session_handle = optional_field(body, "session") or None
    nonce_store = request.app[NonceStoreAppKey]
    if not await nonce_store.consume(nonce, session_handle):
        raise AuthError.nonce_mismatch({"session": session_handle})


def user_response(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "provider": user.provider,
        "confirmed": user.confirmed,
    }


def account_response(identity: ExternalIdentity) -> Dict[str, Any]:
    return {
        "subject": identity.subject,
        "display_name": identity.display_name,
        "avatar_url": identity.avatar_url,
        "linked_at": identity.linked_at.isoformat() if identity.linked_at else None,
    }


def token_response(
    token: str, data: Dict[str, Any], status: int = 200
) -> web.Response:
    """Render `data` with the session token in both the body and the Authorization header."""
    return web.json_response(
        {"token": token, **data},
        status=status,
        headers={"Authorization": f"Bearer {token}"},
    )
