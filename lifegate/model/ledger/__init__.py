# model/ledger/__init__.py
from typing import Optional, Union

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from ...config import Settings
from ...infra.sql import Gated
from ._postgres import LedgerStore as SqlLedgerStore, create_schema
from ._redis import LedgerStore as RedisLedgerStore

LedgerStore = Union[SqlLedgerStore, RedisLedgerStore]

BACKENDS = ("pg", "redis")


# Factory keeps server.py simple and constructor-agnostic:
def new_ledger(settings: Settings, *,
               db: Optional[AsyncSession] = None,
               gated: Optional[Gated] = None,
               r: Optional[redis.Redis] = None) -> LedgerStore:
    common = dict(
        campaign_id=settings.campaign_id,
        goal_minor=settings.campaign_goal_minor,
        auto_create=settings.campaign_auto_create,
        max_attempts=settings.ledger_max_attempts,
    )
    if settings.ledger_backend == "pg":
        if db is None:
            raise RuntimeError("LedgerStore(pg) requires db=AsyncSession")
        if gated is None:
            raise RuntimeError("LedgerStore(pg) requires gated=Gated")
        return SqlLedgerStore(db=db, gated=gated, **common)
    if settings.ledger_backend == "redis":
        if r is None:
            raise RuntimeError("LedgerStore(redis) requires r=redis.Redis")
        return RedisLedgerStore(r=r, **common)
    raise RuntimeError(
        f"unknown LEDGER_BACKEND {settings.ledger_backend!r}, "
        f"expected one of {BACKENDS}"
    )


__all__ = [
    "LedgerStore", "SqlLedgerStore", "RedisLedgerStore", "new_ledger",
    "create_schema", "BACKENDS",
]
