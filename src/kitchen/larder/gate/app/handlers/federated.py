"""Federated login handlers.

The client first asks for a nonce, signs in with the identity provider using it, then posts either
the identity token (`/auth/federated/login`) or the authorization code (`/auth/federated/exchange`).
Both paths end with a session token for the resolved local user.
"""

import logging
from aiohttp import web
from sqlalchemy import select
from ulid import ULID

from kitchen.larder.gate.app.config import (
    AccountLinkerAppKey,
    CodeExchangerAppKey,
    DatabaseSessionMakerAppKey,
    MetricsClientAppKey,
    NonceStoreAppKey,
    SessionTokenIssuerAppKey,
)
from kitchen.larder.gate.app.handlers.helpers import (
    account_response,
    authenticated_session,
    consume_nonce,
    json_body,
    required_field,
    token_response,
    user_response,
)
from kitchen.larder.gate.model.external_identity import ExternalIdentity

logger = logging.getLogger(__name__)


async def handle_federated_nonce(request: web.Request):
    session_handle = str(ULID())

    nonce = await request.app[NonceStoreAppKey].generate_and_store(session_handle)
    return web.json_response({"nonce": nonce, "session": session_handle})


async def handle_federated_login(request: web.Request):
    body = await json_body(request)
    id_token = required_field(body, "id_token")
    nonce = required_field(body, "nonce")
    await consume_nonce(request, body, nonce)

    async with request.app[DatabaseSessionMakerAppKey]() as database_session:
        result = await request.app[AccountLinkerAppKey].authenticate_with_id_token(
            database_session, id_token, nonce
        )

    request.app[MetricsClientAppKey].increment(
        "larder.gate.auth.login",
        1,
        tag_dict={"method": "id_token", "created": str(result.created_user).lower()},
    )
    token = request.app[SessionTokenIssuerAppKey].issue(result.user)
    return token_response(
        token,
        {"user": user_response(result.user), "account": account_response(result.identity)},
        status=201 if result.created_user else 200,
    )


async def handle_federated_exchange(request: web.Request):
    body = await json_body(request)
    code = required_field(body, "code")
    nonce = required_field(body, "nonce")
    redirect_uri = required_field(body, "redirect_uri")
    await consume_nonce(request, body, nonce)

    exchanged = await request.app[CodeExchangerAppKey].exchange(code, redirect_uri)

    async with request.app[DatabaseSessionMakerAppKey]() as database_session:
        result = await request.app[AccountLinkerAppKey].authenticate_with_id_token(
            database_session, exchanged.id_token, nonce
        )

    request.app[MetricsClientAppKey].increment(
        "larder.gate.auth.login",
        1,
        tag_dict={"method": "code", "created": str(result.created_user).lower()},
    )
    token = request.app[SessionTokenIssuerAppKey].issue(result.user)
    return token_response(
        token,
        {"user": user_response(result.user), "account": account_response(result.identity)},
        status=201 if result.created_user else 200,
    )


async def handle_federated_exchange_link(request: web.Request):
    body = await json_body(request)
    code = required_field(body, "code")
    nonce = required_field(body, "nonce")
    redirect_uri = required_field(body, "redirect_uri")

    async with request.app[DatabaseSessionMakerAppKey]() as database_session:
        session = await authenticated_session(request, database_session)
        await consume_nonce(request, body, nonce)

        exchanged = await request.app[CodeExchangerAppKey].exchange(code, redirect_uri)
        identity = await request.app[AccountLinkerAppKey].link_existing_user(
            database_session, session.user, exchanged.id_token, nonce
        )

    token = request.app[SessionTokenIssuerAppKey].issue(session.user)
    return token_response(
        token,
        {"user": user_response(session.user), "account": account_response(identity)},
    )


async def handle_federated_link(request: web.Request):
    body = await json_body(request)
    id_token = required_field(body, "id_token")
    nonce = required_field(body, "nonce")

    async with request.app[DatabaseSessionMakerAppKey]() as database_session:
        session = await authenticated_session(request, database_session)
        await consume_nonce(request, body, nonce)

        identity = await request.app[AccountLinkerAppKey].link_existing_user(
            database_session, session.user, id_token, nonce
        )

    return web.json_response({"account": account_response(identity)})


async def handle_federated_profile(request: web.Request):
    async with request.app[DatabaseSessionMakerAppKey]() as database_session:
        session = await authenticated_session(request, database_session)

        async with database_session.begin():
            identity = (
                await database_session.scalars(
                    select(ExternalIdentity).where(
                        ExternalIdentity.user_id == session.user.id
                    )
                )
            ).first()

    if identity is None:
        return web.json_response(
            status=404,
            data={
                "error": {
                    "code": "account_not_found",
                    "message": "No linked account found",
                }
            },
        )

    return web.json_response(
        {"user": user_response(session.user), "account": account_response(identity)}
    )
