import os
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from .record import PendingPayment

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = os.getenv("PENDING_BACKEND", "sql").lower()  # 'sql' | 'redis'


# Factory keeps server.py simple and constructor-agnostic
def new_store(*, backend: str = BACKEND,
              db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 3600,
              gated: Optional[Gated] = None):
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "PendingPaymentStore(redis) requires r=redis.Redis"
            )
        from ._redis import PendingPaymentStore
        return PendingPaymentStore(r=r, ttl_seconds=ttl_seconds)
    if db is None:
        raise RuntimeError(
            "PendingPaymentStore(sql) requires db=AsyncSession"
        )
    if gated is None:
        raise RuntimeError("PendingPaymentStore(sql) requires gated=Gated")
    from ._sql import PendingPaymentStore
    return PendingPaymentStore(db=db, ttl_seconds=ttl_seconds, gated=gated)


__all__ = ["PendingPayment", "new_store", "BACKEND"]
