import asyncio
from datetime import datetime, timezone
import logging
from time import time
from typing import NoReturn, Optional
from aiohttp import web
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import sentry_sdk

from kitchen.larder.gate.app.config import (
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    SettingsAppKey,
    TokenDenylistAppKey,
)
from kitchen.larder.gate.app.metrics import MetricsClient
from kitchen.larder.gate.auth.denylist import TokenDenylist

logger = logging.getLogger(__name__)


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Tick the health gauge every 30 seconds, reducing the failure level by 1 each time.
    """

    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    while True:
        await health_gauge.decay()
        await asyncio.sleep(30)


async def sweep_denylist_once(
    database_session_maker: async_sessionmaker[AsyncSession],
    denylist: TokenDenylist,
    metrics_client: MetricsClient,
    now: Optional[datetime] = None,
) -> int:
    """Delete expired denylist entries once and report how many were removed."""
    if now is None:
        now = datetime.now(timezone.utc)

    start_time = time()
    async with database_session_maker() as database_session:
        removed = await denylist.sweep(database_session, now)

    metrics_client.timer("larder.gate.denylist.sweep.time", time() - start_time)
    metrics_client.increment("larder.gate.denylist.sweep.removed", removed)
    return removed


async def denylist_sweep_task(app: web.Application) -> NoReturn:
    """
    Periodically delete denylist entries whose tokens have expired.

    A failed sweep is reported and counted against the health gauge. The next tick retries.
    """

    logger.info("Starting denylist sweep task")

    settings = app[SettingsAppKey]
    health_gauge = app[HealthGaugeAppKey]

    while True:
        try:
            await sweep_denylist_once(
                app[DatabaseSessionMakerAppKey],
                app[TokenDenylistAppKey],
                app[MetricsClientAppKey],
            )
        except SQLAlchemyError as e:
            logger.exception("Denylist sweep failed")
            sentry_sdk.capture_exception(e)
            await health_gauge.record_failure()

        await asyncio.sleep(settings.denylist_sweep_interval)
