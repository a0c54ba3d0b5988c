import logging
from aiohttp import web

from kitchen.larder.gate.app.config import (
    ConfirmationOutboxAppKey,
    DatabaseSessionMakerAppKey,
    LocalAccountsAppKey,
    MetricsClientAppKey,
    RefreshRotatorAppKey,
    SessionTokenIssuerAppKey,
    TokenDenylistAppKey,
)
from kitchen.larder.gate.app.handlers.helpers import (
    authenticated_session,
    bearer_token,
    json_body,
    required_field,
    token_response,
    user_response,
)
from kitchen.larder.gate.auth.errors import AuthError

logger = logging.getLogger(__name__)


async def handle_sign_up(request: web.Request):
    body = await json_body(request)
    name = required_field(body, "name")
    email = required_field(body, "email")
    password = required_field(body, "password")

    accounts = request.app[LocalAccountsAppKey]
    async with request.app[DatabaseSessionMakerAppKey]() as database_session:
        user = await accounts.sign_up(database_session, name, email, password)
        confirmation_token = None
        if accounts.confirmation_required:
            confirmation_token = await accounts.issue_confirmation(database_session, user)

    request.app[MetricsClientAppKey].increment("larder.gate.auth.sign_up", 1)

    # Unconfirmed accounts get no token until they confirm their email address.
    if accounts.confirmation_required:
        if confirmation_token is not None:
            await request.app[ConfirmationOutboxAppKey].publish(
                user, confirmation_token, accounts.confirmation_token_ttl
            )
        return web.json_response({"user": user_response(user)}, status=201)

    token = request.app[SessionTokenIssuerAppKey].issue(user)
    return token_response(token, {"user": user_response(user)}, status=201)


async def handle_sign_in(request: web.Request):
    body = await json_body(request)
    email = required_field(body, "email")
    password = required_field(body, "password")

    async with request.app[DatabaseSessionMakerAppKey]() as database_session:
        user = await request.app[LocalAccountsAppKey].sign_in(
            database_session, email, password
        )

    request.app[MetricsClientAppKey].increment(
        "larder.gate.auth.login", 1, tag_dict={"method": "password", "created": "false"}
    )
    token = request.app[SessionTokenIssuerAppKey].issue(user)
    return token_response(token, {"user": user_response(user)})


async def handle_sign_out(request: web.Request):
    async with request.app[DatabaseSessionMakerAppKey]() as database_session:
        session = await authenticated_session(request, database_session)
        await request.app[TokenDenylistAppKey].revoke(
            database_session, session.jti, session.expires_at
        )

    logger.info("User %s signed out token %s", session.user.id, session.jti)
    return web.json_response({"signed_out": True})


async def handle_refresh(request: web.Request):
    async with request.app[DatabaseSessionMakerAppKey]() as database_session:
        rotated = await request.app[RefreshRotatorAppKey].refresh(
            database_session, bearer_token(request)
        )

    request.app[MetricsClientAppKey].increment("larder.gate.auth.refresh", 1)
    return token_response(rotated.token, {"user": user_response(rotated.user)})


async def handle_confirmation(request: web.Request):
    confirmation_token = request.query.get("confirmation_token")
    if not confirmation_token:
        raise AuthError.invalid_request("confirmation_token is required")

    async with request.app[DatabaseSessionMakerAppKey]() as database_session:
        user = await request.app[LocalAccountsAppKey].confirm(
            database_session, confirmation_token
        )

    request.app[MetricsClientAppKey].increment("larder.gate.auth.confirmation", 1)
    return web.json_response({"user": user_response(user)})


async def handle_confirmation_resend(request: web.Request):
    """
    Queue new confirmation instructions for an unconfirmed account.

    The response is the same whether or not the email belongs to an unconfirmed account.
    """
    body = await json_body(request)
    if isinstance(body.get("user"), dict):
        body = body["user"]
    email = required_field(body, "email")

    accounts = request.app[LocalAccountsAppKey]
    async with request.app[DatabaseSessionMakerAppKey]() as database_session:
        pending = await accounts.resend_confirmation(database_session, email)

    if pending is not None:
        user, confirmation_token = pending
        await request.app[ConfirmationOutboxAppKey].publish(
            user, confirmation_token, accounts.confirmation_token_ttl
        )

    return web.json_response({"sent": True})
