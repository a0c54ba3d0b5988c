import argparse
import asyncio
import logging
from jwcrypto import jwk
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from ulid import ULID

from kitchen.larder.gate.app.config import Settings
from kitchen.larder.gate.app.metrics import NoOpMetricsClient
from kitchen.larder.gate.app.tasks import sweep_denylist_once
from kitchen.larder.gate.auth.denylist import TokenDenylist

logger = logging.getLogger(__name__)


async def genSessionKey() -> None:
    key = jwk.JWK.generate(kty="oct", size=256, kid=str(ULID()), alg="HS256")
    print(key.export(private_key=True))


async def pruneDenylist(pg_dsn: str) -> None:
    engine = create_async_engine(pg_dsn)
    try:
        database_session_maker = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        removed = await sweep_denylist_once(
            database_session_maker, TokenDenylist(), NoOpMetricsClient()
        )
        print(f"Removed {removed} expired denylist entries")
    finally:
        await engine.dispose()


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="larder-gate-util", description="Larder Gate utilities"
    )

    parser.add_argument(
        "--pg-dsn",
        default=None,
        help="Database to operate on. Defaults to the PG_DSN setting.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser(
        "gen-session-key", help="Generate a SESSION_SIGNING_KEY value"
    )
    _ = subparsers.add_parser(
        "prune-denylist", help="Delete denylist entries for expired tokens"
    )

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-session-key":
        await genSessionKey()
    elif command == "prune-denylist":
        pg_dsn = args.get("pg_dsn") or str(Settings().pg_dsn)  # type: ignore
        await pruneDenylist(pg_dsn)


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
