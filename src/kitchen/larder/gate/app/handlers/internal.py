import logging
from aiohttp import web

from kitchen.larder.gate.app.config import (
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
)
from kitchen.larder.gate.app.handlers.helpers import authenticated_session, user_response

logger = logging.getLogger(__name__)


async def handle_internal_me(request: web.Request):
    async with request.app[DatabaseSessionMakerAppKey]() as database_session:
        session = await authenticated_session(request, database_session)

    return web.json_response(
        {
            "user": user_response(session.user),
            "jti": session.jti,
            "expires_at": session.expires_at.isoformat(),
        }
    )


async def handle_internal_ready(request: web.Request):
    health_gauge = request.app[HealthGaugeAppKey]
    if await health_gauge.is_healthy():
        return web.Response(status=200)
    return web.Response(status=503)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)
