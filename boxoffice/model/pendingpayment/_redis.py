from __future__ import annotations
from typing import List, Optional, Tuple
import redis.asyncio as redis

from .record import PendingPayment


# ---- keys
def k_pp(payment_id: str) -> str: return f"pp:{payment_id}"


PENDING_INDEX = "pendings"


class PendingPaymentStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def save(self, record: PendingPayment) -> None:
        # values are strings for decode_responses=True
        key = k_pp(record.payment_id)
        pipe = self.r.pipeline(transaction=True)
        pipe.delete(key)
        pipe.hset(key, mapping=record.to_mapping())
        pipe.expire(key, self.ttl)
        pipe.zadd(PENDING_INDEX, {record.payment_id: record.created_at})
        await pipe.execute()

    async def get(self, payment_id: str) -> Optional[PendingPayment]:
        h = await self.r.hgetall(k_pp(payment_id))
        if not h:
            return None
        return PendingPayment.from_mapping(h)

    async def remove(self, payment_id: str) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.zrem(PENDING_INDEX, payment_id)
        pipe.delete(k_pp(payment_id))
        await pipe.execute()

    async def recent(self, limit: int = 100
                     ) -> Tuple[int, List[PendingPayment]]:
        total = await self.r.zcard(PENDING_INDEX)
        ids = await self.r.zrevrange(PENDING_INDEX, 0, max(0, limit - 1))

        pipe = self.r.pipeline()
        for payment_id in ids:
            pipe.hgetall(k_pp(payment_id))
        rows = await pipe.execute()

        items = []
        for payment_id, h in zip(ids, rows):
            # house-keeping: the hash expired, drop it from the index
            if not h:
                await self.r.zrem(PENDING_INDEX, payment_id)
                total -= 1
                continue
            items.append(PendingPayment.from_mapping(h))
        return int(total), items
