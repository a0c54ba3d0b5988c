import asyncio
import contextlib
import logging
from time import time
from typing import Optional
from aiohttp import web
import aiohttp
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from kitchen.larder.gate.app.config import (
    AccountLinkerAppKey,
    CodeExchangerAppKey,
    ConfirmationOutboxAppKey,
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    DenylistSweepTaskAppKey,
    HealthGaugeAppKey,
    IdTokenVerifierAppKey,
    KeySetCacheAppKey,
    LocalAccountsAppKey,
    MetricsClientAppKey,
    NonceStoreAppKey,
    RedisClientAppKey,
    RedisPoolAppKey,
    RefreshRotatorAppKey,
    RequestAuthenticatorAppKey,
    SessionAppKey,
    SessionTokenIssuerAppKey,
    Settings,
    SettingsAppKey,
    TickHealthTaskAppKey,
    TokenDenylistAppKey,
)
from kitchen.larder.gate.app.cors import get_cors_headers, parse_allowed_origins
from kitchen.larder.gate.app.handlers.federated import (
    handle_federated_exchange,
    handle_federated_exchange_link,
    handle_federated_link,
    handle_federated_login,
    handle_federated_nonce,
    handle_federated_profile,
)
from kitchen.larder.gate.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_me,
    handle_internal_ready,
)
from kitchen.larder.gate.app.handlers.sessions import (
    handle_confirmation,
    handle_confirmation_resend,
    handle_refresh,
    handle_sign_in,
    handle_sign_out,
    handle_sign_up,
)
from kitchen.larder.gate.app.metrics import create_metrics_client
from kitchen.larder.gate.app.tasks import denylist_sweep_task, tick_health_task
from kitchen.larder.gate.auth.authenticator import RequestAuthenticator
from kitchen.larder.gate.auth.denylist import TokenDenylist
from kitchen.larder.gate.auth.errors import AuthError, ErrorKind
from kitchen.larder.gate.auth.exchange import AuthorizationCodeExchanger
from kitchen.larder.gate.auth.id_token import IdTokenVerifier
from kitchen.larder.gate.auth.keyset import RemoteKeySetCache
from kitchen.larder.gate.auth.linker import FederatedAccountLinker, placeholder_domain
from kitchen.larder.gate.auth.nonce import NonceStore
from kitchen.larder.gate.auth.outbox import ConfirmationOutbox
from kitchen.larder.gate.auth.passwords import LocalAccounts
from kitchen.larder.gate.auth.refresh import RefreshRotator
from kitchen.larder.gate.auth.session_token import SessionTokenIssuer
from kitchen.larder.gate.model.health import HealthGauge

logger = logging.getLogger(__name__)


def install_services(app: web.Application) -> None:
    """
    Build the authentication services from settings and the shared resources.

    Requires SettingsAppKey, SessionAppKey and RedisClientAppKey to be populated.
    """
    settings = app[SettingsAppKey]

    key_set_cache = RemoteKeySetCache(
        app[SessionAppKey],
        app[RedisClientAppKey],
        settings.idp_jwks_uri,
        ttl=settings.key_set_cache_ttl,
        timeout=settings.outbound_timeout,
    )
    verifier = IdTokenVerifier(
        key_set_cache,
        settings.idp_issuer,
        algorithms=settings.idp_algorithms,
        clock_skew=settings.id_token_clock_skew,
    )
    issuer = SessionTokenIssuer(
        settings.session_signing_key, expiry=settings.session_token_expiry
    )
    denylist = TokenDenylist()
    authenticator = RequestAuthenticator(issuer, denylist)

    app[KeySetCacheAppKey] = key_set_cache
    app[IdTokenVerifierAppKey] = verifier
    app[NonceStoreAppKey] = NonceStore(app[RedisClientAppKey], ttl=settings.nonce_ttl)
    app[CodeExchangerAppKey] = AuthorizationCodeExchanger(
        app[SessionAppKey],
        settings.idp_token_endpoint,
        settings.idp_client_id,
        settings.idp_client_secret,
        timeout=settings.outbound_timeout,
    )
    app[AccountLinkerAppKey] = FederatedAccountLinker(
        verifier, settings.idp_client_id, provider_name=settings.idp_name
    )
    app[SessionTokenIssuerAppKey] = issuer
    app[TokenDenylistAppKey] = denylist
    app[RequestAuthenticatorAppKey] = authenticator
    app[RefreshRotatorAppKey] = RefreshRotator(authenticator, denylist, issuer)
    app[LocalAccountsAppKey] = LocalAccounts(
        confirmation_required=settings.confirmation_required,
        reserved_email_domains=(placeholder_domain(settings.idp_name),),
        confirmation_token_ttl=settings.confirmation_token_ttl,
    )
    app[ConfirmationOutboxAppKey] = ConfirmationOutbox(app[RedisClientAppKey])


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(str(settings.pg_dsn))
    app[DatabaseAppKey] = engine
    database_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app[DatabaseSessionMakerAppKey] = database_session

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s", params)

        async def on_request_end(session, trace_config_ctx, params):
            logging.info("Ending request: %s", params)

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(trace_configs=[trace_config])

    app[RedisPoolAppKey] = redis.ConnectionPool.from_url(str(settings.redis_dsn))
    app[RedisClientAppKey] = redis.Redis(connection_pool=app[RedisPoolAppKey])

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    install_services(app)

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))
    app[DenylistSweepTaskAppKey] = asyncio.create_task(denylist_sweep_task(app))

    yield

    logger.info("Shutting down background tasks")

    app[TickHealthTaskAppKey].cancel()
    app[DenylistSweepTaskAppKey].cancel()

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[TickHealthTaskAppKey]

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[DenylistSweepTaskAppKey]

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[RedisPoolAppKey].aclose()
    await app[MetricsClientAppKey].close()


@web.middleware
async def cors_middleware(request: web.Request, handler):
    settings = request.app[SettingsAppKey]
    headers = get_cors_headers(
        request.headers.get("Origin"),
        parse_allowed_origins(settings.allowed_domains),
        settings.debug,
    )

    if request.method == "OPTIONS":
        return web.Response(status=204, headers=headers)

    try:
        response = await handler(request)
    except web.HTTPException as e:
        e.headers.update(headers)
        raise e

    response.headers.update(headers)
    return response


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        metrics_client.increment(
            "larder.gate.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "larder.gate.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "larder.gate.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


@web.middleware
async def error_middleware(request: web.Request, handler):
    """
    Render authentication failures as `{"error": {"code", "message"}}` responses.

    Any other exception is reported to Sentry, counted against the health gauge and rendered as a
    generic 500 so that internal details never reach the client.
    """
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except AuthError as e:
        logger.info(
            "%s %s failed: kind=%s message=%s detail=%s",
            request.method,
            request.path,
            e.kind.value,
            e.message,
            e.detail,
        )
        request.app[MetricsClientAppKey].increment(
            "larder.gate.auth.failure",
            1,
            tag_dict={"kind": e.kind.value, "path": request.path},
        )

        if e.kind == ErrorKind.internal_failure:
            sentry_sdk.capture_exception(e)
            await request.app[HealthGaugeAppKey].record_failure()

        headers = {}
        if e.kind.http_status == 401:
            headers["WWW-Authenticate"] = f'Bearer error="{e.kind.public_code}"'
        return web.json_response(e.to_dict(), status=e.kind.http_status, headers=headers)
    except Exception as e:
        logger.exception("Unexpected error in %s %s", request.method, request.path)
        sentry_sdk.capture_exception(e)
        await request.app[HealthGaugeAppKey].record_failure()
        return web.json_response(AuthError.internal_failure().to_dict(), status=500)


def add_routes(app: web.Application) -> None:
    app.add_routes(
        [
            web.post("/auth/federated/nonce", handle_federated_nonce),
            web.post("/auth/federated/login", handle_federated_login),
            web.post("/auth/federated/exchange", handle_federated_exchange),
            web.post("/auth/federated/exchange/link", handle_federated_exchange_link),
            web.post("/auth/federated/link", handle_federated_link),
            web.get("/auth/federated/profile", handle_federated_profile),
        ]
    )

    app.add_routes(
        [
            web.post("/auth/sign_up", handle_sign_up),
            web.post("/auth/sign_in", handle_sign_in),
            web.delete("/auth/sign_out", handle_sign_out),
            web.post("/auth/refresh", handle_refresh),
            web.get("/auth/confirmation", handle_confirmation),
            web.post("/auth/confirmation", handle_confirmation_resend),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
            web.get("/internal/api/me", handle_internal_me),
        ]
    )


def create_app(settings: Settings) -> web.Application:
    """Create the application with its routes and middlewares but no live resources."""
    app = web.Application(
        middlewares=[cors_middleware, statsd_middleware, error_middleware]
    )

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()

    add_routes(app)
    return app


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )

    app = create_app(settings)
    app.cleanup_ctx.append(background_tasks)

    return app
