import asyncio
import sys
from dataclasses import replace

import redis.asyncio as redis

from lifegate.config import Settings
from lifegate.helpers import to_iso
from lifegate.infra.sql import make_async_engine
from lifegate.model.ledger import create_schema, new_ledger


async def init_pg(settings: Settings):
    sql = make_async_engine(settings.require("database_url"))
    try:
        async with sql.engine.begin() as conn:
            await create_schema(conn)
        print('✅ schema created')
        async with sql.SessionAsync() as session:
            ledger = new_ledger(settings, db=session, gated=sql.gated)
            return await ledger.ensure_campaign()
    finally:
        await sql.dispose()


async def init_redis(settings: Settings):
    r = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        ledger = new_ledger(settings, r=r)
        return await ledger.ensure_campaign()
    finally:
        await r.aclose()


async def main():
    # always create here, regardless of CAMPAIGN_AUTO_CREATE
    settings = Settings.from_env()
    settings = replace(settings, campaign_auto_create=True)

    if settings.ledger_backend == "pg":
        stats = await init_pg(settings)
    elif settings.ledger_backend == "redis":
        stats = await init_redis(settings)
    else:
        print(f"unknown LEDGER_BACKEND {settings.ledger_backend!r}")
        sys.exit(1)

    print(f"✅ campaign '{stats.campaign_id}' ready: "
          f"total={stats.total_minor} count={stats.donation_count} "
          f"goal={stats.goal_minor} updated={to_iso(stats.updated_at)}")


if __name__ == '__main__':
    asyncio.run(main())
