from __future__ import annotations
from typing import List, Optional, Tuple
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection
from typing import Callable, AsyncContextManager

from ...helpers import now_ts
from .record import PendingPayment


# ------------------------------------------------------------------------------
# DDL (idempotent); portable between PostgreSQL and SQLite
# ------------------------------------------------------------------------------
SQL_CREATE_PENDING_PAYMENTS = r"""
CREATE TABLE IF NOT EXISTS pending_payments (
  payment_id        TEXT PRIMARY KEY,
  provider          TEXT NOT NULL,
  reference         TEXT NOT NULL,
  cart              TEXT NOT NULL,
  billing_email     TEXT NOT NULL,
  billing_name      TEXT NOT NULL,
  user_id           INTEGER NOT NULL,
  authorization_url TEXT NOT NULL,
  created_at        DOUBLE PRECISION NOT NULL,
  expires_at        DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDX_PENDING_CREATED_AT = r"""
CREATE INDEX IF NOT EXISTS idx_pending_payments_created_at
  ON pending_payments (created_at DESC);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_PENDING_PAYMENTS))
    await exec_(text(SQL_CREATE_IDX_PENDING_CREATED_AT))


class PendingPaymentStore:
    def __init__(
        self, *, db: AsyncSession, ttl_seconds: int,
        gated: Callable[[], AsyncContextManager[None]]
    ) -> None:
        self.db = db
        self.ttl = ttl_seconds
        self.gated = gated

    async def save(self, record: PendingPayment) -> None:
        m = record.to_mapping()
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO pending_payments(
                    payment_id, provider, reference, cart, billing_email,
                    billing_name, user_id, authorization_url, created_at,
                    expires_at
                  ) VALUES (
                    :payment_id, :provider, :reference, :cart,
                    :billing_email, :billing_name, :user_id,
                    :authorization_url, :created_at, :expires_at
                  )
                  ON CONFLICT (payment_id) DO UPDATE SET
                    provider=EXCLUDED.provider,
                    reference=EXCLUDED.reference,
                    cart=EXCLUDED.cart,
                    billing_email=EXCLUDED.billing_email,
                    billing_name=EXCLUDED.billing_name,
                    user_id=EXCLUDED.user_id,
                    authorization_url=EXCLUDED.authorization_url,
                    created_at=EXCLUDED.created_at,
                    expires_at=EXCLUDED.expires_at
                """), {
                    **m,
                    "user_id": record.user_id,
                    "created_at": float(record.created_at),
                    "expires_at": float(record.created_at) + self.ttl,
                })

    async def get(self, payment_id: str) -> Optional[PendingPayment]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT * FROM pending_payments
                  WHERE payment_id=:payment_id AND expires_at > :now
                """), {"payment_id": payment_id, "now": now_ts()}
                )).mappings().first()
        return PendingPayment.from_mapping(dict(row)) if row else None

    async def remove(self, payment_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text(
                        "DELETE FROM pending_payments "
                        "WHERE payment_id=:payment_id"
                    ),
                    {"payment_id": payment_id}
                )

    async def recent(self, limit: int = 100
                     ) -> Tuple[int, List[PendingPayment]]:
        now = now_ts()
        async with self.gated():
            async with self.db.begin():
                # house-keeping: expired rows go first
                await self.db.execute(
                    text("DELETE FROM pending_payments WHERE expires_at <= :now"),
                    {"now": now},
                )
                total = (await self.db.execute(
                    text("SELECT COUNT(*) FROM pending_payments")
                )).scalar_one()
                rows = (await self.db.execute(text("""
                    SELECT * FROM pending_payments
                    ORDER BY created_at DESC
                    LIMIT :lim
                """), {"lim": int(limit)})).mappings().all()
        return int(total), [PendingPayment.from_mapping(dict(r)) for r in rows]
