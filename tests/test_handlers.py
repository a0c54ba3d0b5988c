"""
HTTP tests for the authentication endpoints.

The application is built with `create_app` and wired to the SQLite database, fakeredis and a mocked
client session instead of running `background_tasks`.
"""

import json
from unittest.mock import AsyncMock

from aiohttp import ClientResponse
import pytest
import pytest_asyncio

from kitchen.larder.gate.app.config import (
    DatabaseSessionMakerAppKey,
    LocalAccountsAppKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    SessionAppKey,
    Settings,
)
from kitchen.larder.gate.app.metrics import NoOpMetricsClient
from kitchen.larder.gate.app.server import create_app, install_services
from kitchen.larder.gate.auth.keyset import KEY_SET_CACHE_KEY
from kitchen.larder.gate.auth.outbox import CONFIRMATION_QUEUE_KEY
from tests.test_helpers import CLIENT_ID, ISSUER, JWKS_URI, TOKEN_ENDPOINT


@pytest.fixture
def make_client(
    aiohttp_client,
    session_maker,
    fake_redis_client,
    mock_http_session,
    idp_key_set_json,
    session_signing_key,
    fast_password_hasher,
):
    async def _make_client(**settings_overrides):
        settings = Settings(
            idp_client_id=CLIENT_ID,
            idp_client_secret="s3cret",
            idp_issuer=ISSUER,
            idp_jwks_uri=JWKS_URI,
            idp_token_endpoint=TOKEN_ENDPOINT,
            metrics_backend="none",
            session_signing_key=session_signing_key,
            **settings_overrides,
        )
        app = create_app(settings)
        app[DatabaseSessionMakerAppKey] = session_maker
        app[SessionAppKey] = mock_http_session
        app[RedisClientAppKey] = fake_redis_client
        app[MetricsClientAppKey] = NoOpMetricsClient()
        install_services(app)
        app[LocalAccountsAppKey].hasher = fast_password_hasher

        await fake_redis_client.set(KEY_SET_CACHE_KEY, idp_key_set_json, ex=86400)

        return await aiohttp_client(app)

    return _make_client


@pytest_asyncio.fixture
async def client(make_client):
    return await make_client()


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


async def sign_up(client, email="cook@example.com", name="Cook", password="hunter22"):
    resp = await client.post(
        "/auth/sign_up", json={"name": name, "email": email, "password": password}
    )
    assert resp.status == 201
    return await resp.json()


async def new_nonce(client):
    resp = await client.post("/auth/federated/nonce", json={})
    assert resp.status == 200
    return await resp.json()


async def federated_body(client, mint_id_token, **claims):
    """Issue a nonce and mint an identity token that carries it."""
    issued = await new_nonce(client)
    claims.setdefault("nonce", issued["nonce"])
    return {"id_token": mint_id_token(**claims), "nonce": issued["nonce"]}


async def exchange_body(client):
    issued = await new_nonce(client)
    return {
        "code": "auth-code",
        "nonce": issued["nonce"],
        "redirect_uri": "https://larder.app/cb",
    }


def mock_token_endpoint(mock_http_session, status, payload):
    mock_response = AsyncMock(spec=ClientResponse)
    mock_response.status = status
    mock_response.text.return_value = json.dumps(payload)
    mock_http_session.post.return_value.__aenter__.return_value = mock_response


class TestFederatedNonce:
    async def test_issue(self, client):
        issued = await new_nonce(client)

        assert len(issued["nonce"]) >= 32
        assert len(issued["session"]) == 26

    async def test_posted_session_ignored(self, client):
        resp = await client.post("/auth/federated/nonce", json={"session": "chosen-by-client"})

        assert resp.status == 200
        issued = await resp.json()
        assert issued["session"] != "chosen-by-client"

    async def test_empty_body(self, client):
        resp = await client.post("/auth/federated/nonce")

        assert resp.status == 200
        assert (await resp.json())["nonce"]


class TestFederatedLogin:
    async def test_login_with_session_nonce(self, client, mint_id_token):
        issued = await new_nonce(client)

        resp = await client.post(
            "/auth/federated/login",
            json={
                "id_token": mint_id_token(nonce=issued["nonce"]),
                "nonce": issued["nonce"],
                "session": issued["session"],
            },
        )

        assert resp.status == 201
        data = await resp.json()
        assert resp.headers["Authorization"] == f"Bearer {data['token']}"
        assert data["user"]["provider"] == "line"
        assert data["user"]["name"] == "Taro Yamada"
        assert data["account"]["subject"] == "U4af4980629"
        assert data["account"]["linked_at"] is not None

    async def test_second_login_same_user(self, client, mint_id_token):
        first = await client.post(
            "/auth/federated/login", json=await federated_body(client, mint_id_token)
        )
        body = await federated_body(client, mint_id_token)
        second = await client.post(
            "/auth/federated/login",
            json={"idToken": body["id_token"], "nonce": body["nonce"]},
        )

        assert first.status == 201
        assert second.status == 200
        assert (await first.json())["user"]["id"] == (await second.json())["user"]["id"]

    async def test_replay_without_session(self, client, mint_id_token):
        body = await federated_body(client, mint_id_token)

        assert (await client.post("/auth/federated/login", json=body)).status == 201

        resp = await client.post("/auth/federated/login", json=body)
        assert resp.status == 401
        assert (await resp.json())["error"]["code"] == "nonce_mismatch"

    async def test_session_nonce_single_use(self, client, mint_id_token):
        issued = await new_nonce(client)
        body = {
            "id_token": mint_id_token(nonce=issued["nonce"]),
            "nonce": issued["nonce"],
            "session": issued["session"],
        }

        assert (await client.post("/auth/federated/login", json=body)).status == 201

        resp = await client.post("/auth/federated/login", json=body)
        assert resp.status == 401
        assert (await resp.json())["error"]["code"] == "nonce_mismatch"

    async def test_nonce_not_issued(self, client, mint_id_token):
        resp = await client.post(
            "/auth/federated/login",
            json={"id_token": mint_id_token(nonce="chosen"), "nonce": "chosen"},
        )

        assert resp.status == 401
        assert await resp.json() == {
            "error": {"code": "nonce_mismatch", "message": "Nonce mismatch"}
        }

    async def test_nonce_from_other_session(self, client, mint_id_token):
        issued = await new_nonce(client)
        other = await new_nonce(client)

        resp = await client.post(
            "/auth/federated/login",
            json={
                "id_token": mint_id_token(nonce=issued["nonce"]),
                "nonce": issued["nonce"],
                "session": other["session"],
            },
        )

        assert resp.status == 401
        assert (await resp.json())["error"]["code"] == "nonce_mismatch"

    async def test_token_nonce_mismatch(self, client, mint_id_token):
        resp = await client.post(
            "/auth/federated/login",
            json=await federated_body(client, mint_id_token, nonce="n2"),
        )

        assert resp.status == 401
        assert await resp.json() == {
            "error": {"code": "nonce_mismatch", "message": "Nonce mismatch"}
        }

    async def test_wrong_audience(self, client, mint_id_token):
        resp = await client.post(
            "/auth/federated/login",
            json=await federated_body(client, mint_id_token, aud="other-client"),
        )

        assert resp.status == 401
        assert (await resp.json())["error"]["code"] == "aud_mismatch"
        assert resp.headers["WWW-Authenticate"] == 'Bearer error="aud_mismatch"'

    async def test_expired_token(self, client, mint_id_token, clock):
        now = int(clock().timestamp())
        resp = await client.post(
            "/auth/federated/login",
            json=await federated_body(
                client, mint_id_token, iat=now - 3600, exp=now - 1800
            ),
        )

        assert resp.status == 401
        assert (await resp.json())["error"]["code"] == "expired_token"

    async def test_garbage_token(self, client):
        issued = await new_nonce(client)
        resp = await client.post(
            "/auth/federated/login", json={"id_token": "garbage", "nonce": issued["nonce"]}
        )

        assert resp.status == 401
        assert (await resp.json())["error"]["code"] == "invalid_token"

    @pytest.mark.parametrize("body", [{}, {"id_token": "x"}, {"nonce": "n1"}, {"id_token": 1, "nonce": "n1"}])
    async def test_missing_fields(self, client, body):
        resp = await client.post("/auth/federated/login", json=body)

        assert resp.status == 400
        assert (await resp.json())["error"]["code"] == "invalid_request"

    async def test_invalid_json(self, client):
        resp = await client.post(
            "/auth/federated/login",
            data="{not json",
            headers={"Content-Type": "application/json"},
        )

        assert resp.status == 400
        assert (await resp.json())["error"]["code"] == "invalid_request"


class TestFederatedExchange:
    async def test_exchange_code(self, client, mock_http_session, mint_id_token):
        body = await exchange_body(client)
        mock_token_endpoint(
            mock_http_session,
            200,
            {"access_token": "access", "id_token": mint_id_token(nonce=body["nonce"])},
        )

        resp = await client.post(
            "/auth/federated/exchange",
            json={
                "code": body["code"],
                "nonce": body["nonce"],
                "redirectUri": body["redirect_uri"],
            },
        )

        assert resp.status == 201
        data = await resp.json()
        assert data["account"]["subject"] == "U4af4980629"
        assert mock_http_session.post.call_args.kwargs["data"]["code"] == "auth-code"

    async def test_exchange_rejected(self, client, mock_http_session):
        mock_token_endpoint(mock_http_session, 400, {"error": "invalid_grant"})

        resp = await client.post("/auth/federated/exchange", json=await exchange_body(client))

        assert resp.status == 401
        data = await resp.json()
        assert data["error"]["code"] == "token_exchange_failed"
        assert "invalid_grant" not in json.dumps(data)

    async def test_exchange_nonce_not_issued(self, client, mock_http_session):
        resp = await client.post(
            "/auth/federated/exchange",
            json={"code": "auth-code", "nonce": "n1", "redirect_uri": "https://larder.app/cb"},
        )

        assert resp.status == 401
        assert (await resp.json())["error"]["code"] == "nonce_mismatch"
        mock_http_session.post.assert_not_called()

    async def test_exchange_link(self, client, mock_http_session, mint_id_token):
        signed_up = await sign_up(client)
        body = await exchange_body(client)
        mock_token_endpoint(
            mock_http_session, 200, {"id_token": mint_id_token(nonce=body["nonce"])}
        )

        resp = await client.post(
            "/auth/federated/exchange/link",
            json=body,
            headers=bearer(signed_up["token"]),
        )

        assert resp.status == 200
        data = await resp.json()
        assert data["user"]["id"] == signed_up["user"]["id"]
        assert data["account"]["subject"] == "U4af4980629"

    async def test_exchange_link_requires_session(self, client, mock_http_session):
        resp = await client.post(
            "/auth/federated/exchange/link", json=await exchange_body(client)
        )

        assert resp.status == 401
        mock_http_session.post.assert_not_called()


class TestFederatedLink:
    async def test_link_then_profile(self, client, mint_id_token):
        signed_up = await sign_up(client)
        headers = bearer(signed_up["token"])

        resp = await client.get("/auth/federated/profile", headers=headers)
        assert resp.status == 404
        assert (await resp.json())["error"]["code"] == "account_not_found"

        resp = await client.post(
            "/auth/federated/link",
            json=await federated_body(client, mint_id_token),
            headers=headers,
        )
        assert resp.status == 200
        assert (await resp.json())["account"]["display_name"] == "Taro Yamada"

        resp = await client.get("/auth/federated/profile", headers=headers)
        assert resp.status == 200
        data = await resp.json()
        assert data["user"]["id"] == signed_up["user"]["id"]
        assert data["account"]["avatar_url"] == "https://profile.example/taro.png"

        resp = await client.post(
            "/auth/federated/login", json=await federated_body(client, mint_id_token)
        )
        assert resp.status == 200
        assert (await resp.json())["user"]["id"] == signed_up["user"]["id"]

    async def test_link_replay(self, client, mint_id_token):
        signed_up = await sign_up(client)
        headers = bearer(signed_up["token"])
        body = await federated_body(client, mint_id_token)

        assert (
            await client.post("/auth/federated/link", json=body, headers=headers)
        ).status == 200

        resp = await client.post("/auth/federated/link", json=body, headers=headers)
        assert resp.status == 401
        assert (await resp.json())["error"]["code"] == "nonce_mismatch"

    async def test_link_already_owned(self, client, mint_id_token):
        resp = await client.post(
            "/auth/federated/login", json=await federated_body(client, mint_id_token)
        )
        assert resp.status == 201
        signed_up = await sign_up(client)

        resp = await client.post(
            "/auth/federated/link",
            json=await federated_body(client, mint_id_token),
            headers=bearer(signed_up["token"]),
        )

        assert resp.status == 409
        assert (await resp.json())["error"]["code"] == "already_linked"

    async def test_link_unauthenticated(self, client, mint_id_token):
        resp = await client.post(
            "/auth/federated/link", json=await federated_body(client, mint_id_token)
        )

        assert resp.status == 401
        assert (await resp.json())["error"]["code"] == "unauthenticated"


class TestLocalSessions:
    async def test_sign_up_and_me(self, client):
        signed_up = await sign_up(client)

        resp = await client.get("/internal/api/me", headers=bearer(signed_up["token"]))

        assert resp.status == 200
        data = await resp.json()
        assert data["user"]["email"] == "cook@example.com"
        assert data["user"]["confirmed"] is True
        assert data["jti"]

    async def test_sign_up_duplicate(self, client):
        await sign_up(client)

        resp = await client.post(
            "/auth/sign_up",
            json={"name": "Other", "email": "COOK@example.com", "password": "hunter23"},
        )

        assert resp.status == 422
        assert (await resp.json())["error"]["code"] == "email_taken"

    async def test_sign_up_with_placeholder_email(self, client, mint_id_token):
        resp = await client.post(
            "/auth/sign_up",
            json={"name": "Squatter", "email": "line_u4af4980629@line.local", "password": "hunter22"},
        )

        assert resp.status == 400
        assert (await resp.json())["error"]["code"] == "invalid_request"

        resp = await client.post(
            "/auth/federated/login", json=await federated_body(client, mint_id_token)
        )
        assert resp.status == 201
        assert (await resp.json())["user"]["email"] == "line_u4af4980629@line.local"

    async def test_sign_in(self, client):
        await sign_up(client)

        resp = await client.post(
            "/auth/sign_in", json={"email": "cook@example.com", "password": "hunter22"}
        )

        assert resp.status == 200
        assert resp.headers["Authorization"].startswith("Bearer ")

    async def test_sign_in_wrong_password(self, client):
        await sign_up(client)

        resp = await client.post(
            "/auth/sign_in", json={"email": "cook@example.com", "password": "wrong-password"}
        )

        assert resp.status == 401
        assert (await resp.json())["error"]["code"] == "invalid_credentials"

    async def test_sign_out(self, client):
        signed_up = await sign_up(client)
        headers = bearer(signed_up["token"])

        resp = await client.delete("/auth/sign_out", headers=headers)
        assert resp.status == 200
        assert await resp.json() == {"signed_out": True}

        resp = await client.get("/internal/api/me", headers=headers)
        assert resp.status == 401

    async def test_refresh(self, client):
        signed_up = await sign_up(client)
        old_headers = bearer(signed_up["token"])

        resp = await client.post("/auth/refresh", headers=old_headers)
        assert resp.status == 200
        new_token = (await resp.json())["token"]
        assert new_token != signed_up["token"]

        assert (await client.get("/internal/api/me", headers=bearer(new_token))).status == 200
        assert (await client.get("/internal/api/me", headers=old_headers)).status == 401

        resp = await client.post("/auth/refresh", headers=old_headers)
        assert resp.status == 401
        assert (await resp.json())["error"]["code"] == "unauthenticated"

    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": "Bearer"}, {"Authorization": "Basic abc"}, {"Authorization": "Bearer garbage"}],
    )
    async def test_me_unauthenticated(self, client, headers):
        resp = await client.get("/internal/api/me", headers=headers)

        assert resp.status == 401
        assert await resp.json() == {
            "error": {"code": "unauthenticated", "message": "Not Authorized"}
        }
        assert resp.headers["WWW-Authenticate"] == 'Bearer error="unauthenticated"'


class TestInternal:
    async def test_alive_and_ready(self, client):
        assert (await client.get("/internal/alive")).status == 200
        assert (await client.get("/internal/ready")).status == 200


class TestCors:
    async def test_preflight_allowed_origin(self, client):
        resp = await client.options(
            "/auth/sign_in", headers={"Origin": "https://larder.app"}
        )

        assert resp.status == 204
        assert resp.headers["Access-Control-Allow-Origin"] == "https://larder.app"
        assert "Authorization" in resp.headers["Access-Control-Allow-Headers"]

    async def test_preflight_unknown_origin(self, client):
        resp = await client.options(
            "/auth/sign_in", headers={"Origin": "https://evil.example"}
        )

        assert resp.status == 204
        assert "Access-Control-Allow-Origin" not in resp.headers

    async def test_error_responses_carry_cors_headers(self, client):
        resp = await client.get(
            "/internal/api/me", headers={"Origin": "https://larder.app"}
        )

        assert resp.status == 401
        assert resp.headers["Access-Control-Allow-Origin"] == "https://larder.app"


class TestConfirmation:
    @pytest_asyncio.fixture
    async def client(self, make_client):
        return await make_client(confirmation_required=True)

    async def queued(self, fake_redis_client):
        messages = await fake_redis_client.lrange(CONFIRMATION_QUEUE_KEY, 0, -1)
        return [json.loads(message) for message in messages]

    async def test_sign_up_confirm_sign_in(self, client, fake_redis_client):
        resp = await client.post(
            "/auth/sign_up",
            json={"name": "Cook", "email": "cook@example.com", "password": "hunter22"},
        )
        assert resp.status == 201
        data = await resp.json()
        assert "token" not in data
        assert data["user"]["confirmed"] is False

        credentials = {"email": "cook@example.com", "password": "hunter22"}
        resp = await client.post("/auth/sign_in", json=credentials)
        assert resp.status == 401
        assert (await resp.json())["error"]["code"] == "unconfirmed"

        [message] = await self.queued(fake_redis_client)
        assert message["user_id"] == data["user"]["id"]
        assert message["email"] == "cook@example.com"
        assert message["expires_in"] == 259200

        resp = await client.get(
            "/auth/confirmation",
            params={"confirmation_token": message["confirmation_token"]},
        )
        assert resp.status == 200
        assert (await resp.json())["user"]["confirmed"] is True

        assert (await client.post("/auth/sign_in", json=credentials)).status == 200

        resp = await client.get(
            "/auth/confirmation",
            params={"confirmation_token": message["confirmation_token"]},
        )
        assert resp.status == 422
        assert (await resp.json())["error"]["code"] == "invalid_confirmation_token"

    async def test_missing_token(self, client):
        resp = await client.get("/auth/confirmation")

        assert resp.status == 400
        assert (await resp.json())["error"]["code"] == "invalid_request"

    async def test_resend(self, client, fake_redis_client):
        await client.post(
            "/auth/sign_up",
            json={"name": "Cook", "email": "cook@example.com", "password": "hunter22"},
        )

        resp = await client.post(
            "/auth/confirmation", json={"user": {"email": "cook@example.com"}}
        )
        assert resp.status == 200
        assert await resp.json() == {"sent": True}

        first, second = await self.queued(fake_redis_client)
        assert first["confirmation_token"] != second["confirmation_token"]

        resp = await client.get(
            "/auth/confirmation",
            params={"confirmation_token": first["confirmation_token"]},
        )
        assert resp.status == 422

        resp = await client.get(
            "/auth/confirmation",
            params={"confirmation_token": second["confirmation_token"]},
        )
        assert resp.status == 200

    async def test_resend_unknown_email(self, client, fake_redis_client):
        resp = await client.post("/auth/confirmation", json={"email": "nobody@example.com"})

        assert resp.status == 200
        assert await resp.json() == {"sent": True}
        assert await self.queued(fake_redis_client) == []
