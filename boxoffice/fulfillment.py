"""Order fulfillment: one payment id, one order, one ticket batch.

Two guards make ``complete`` idempotent under retries and under true
concurrency (browser callback racing the provider notification):

1. ``orders.payment_id`` is UNIQUE, so only one order row can ever be
   created for a payment; the loser of the insert race reloads the
   winner's row.
2. Tickets are issued in the same transaction that flips the order from
   ``pending``/``failed`` to ``completed`` with a conditional UPDATE. Only
   the caller whose UPDATE matched a row writes tickets; everyone else
   sees rowcount 0 and returns the order as it stands.
"""
from __future__ import annotations
from typing import AsyncContextManager, Callable, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import FulfillmentError
from .gateway import BillingInfo
from .helpers import now_ts, ticket_code, order_number
from .infra.timings import timeit
from .model.cart import Cart
from .model.db import (
    Order, Ticket, ORDER_PENDING, ORDER_COMPLETED, ORDER_FAILED,
    TICKET_ACTIVE,
)

logger = structlog.get_logger(__name__)

Gated = Callable[[], AsyncContextManager[None]]
CodeFactory = Callable[[int, int], str]

ORDER_NUMBER_ATTEMPTS = 5


class OrderFulfillment:
    def __init__(self, sessions: async_sessionmaker[AsyncSession],
                 gated: Gated,
                 code_factory: CodeFactory = ticket_code) -> None:
        self.sessions = sessions
        self.gated = gated
        self.code_factory = code_factory

    async def complete(self, payment_id: str, cart: Cart,
                       billing: BillingInfo, user_id: int) -> Order:
        if not payment_id:
            raise FulfillmentError("payment id is required",
                                   payment_id=payment_id)
        if cart.is_empty() or cart.event_id is None:
            raise FulfillmentError("cart snapshot is empty",
                                   payment_id=payment_id)

        log = logger.bind(payment_id=payment_id)
        order = await self._create_or_load(payment_id, cart, billing, user_id)
        log = log.bind(order_id=order.id)

        if order.status == ORDER_COMPLETED:
            log.info("fulfillment.duplicate")
            return order
        if order.status not in (ORDER_PENDING, ORDER_FAILED):
            # cancelled: nothing to issue
            log.info("fulfillment.skipped", status=order.status)
            return order

        claimed = await self._issue_tickets(order, cart, log)
        current = await self.find_by_payment_id(payment_id)
        if claimed:
            log.info("fulfillment.completed", tickets=cart.ticket_count(),
                     total_amount=order.total_amount)
        else:
            log.info("fulfillment.duplicate", status=current.status)
        return current

    async def _create_or_load(self, payment_id: str, cart: Cart,
                              billing: BillingInfo, user_id: int) -> Order:
        for _ in range(ORDER_NUMBER_ATTEMPTS):
            ts = now_ts()
            order = Order(
                user_id=user_id,
                event_id=cart.event_id,
                order_number=order_number(ts),
                # fixed here, never recomputed from tickets
                total_amount=cart.total_amount,
                status=ORDER_PENDING,
                payment_id=payment_id,
                billing_email=billing.email,
                billing_name=billing.name,
                created_at=ts,
                updated_at=ts,
            )
            try:
                async with timeit("db.add_order"):
                    async with self.gated():
                        async with self.sessions() as db:
                            async with db.begin():
                                db.add(order)
                logger.info("fulfillment.order_created",
                            payment_id=payment_id, order_id=order.id,
                            order_number=order.order_number)
                return order
            except IntegrityError:
                # another attempt for this payment won the insert, or the
                # order number collided
                existing = await self.find_by_payment_id(payment_id)
                if existing is not None:
                    return existing
        raise FulfillmentError("could not allocate an order number",
                               payment_id=payment_id)

    async def _issue_tickets(self, order: Order, cart: Cart, log) -> bool:
        try:
            async with timeit("db.issue_tickets"):
                async with self.gated():
                    async with self.sessions() as db:
                        async with db.begin():
                            res = await db.execute(
                                update(Order)
                                .where(Order.id == order.id)
                                .where(Order.status.in_(
                                    (ORDER_PENDING, ORDER_FAILED)
                                ))
                                .values(status=ORDER_COMPLETED,
                                        updated_at=now_ts())
                            )
                            if res.rowcount != 1:
                                return False
                            ts = now_ts()
                            tickets: List[Ticket] = []
                            for item in cart.items:
                                for _ in range(item.quantity):
                                    tickets.append(Ticket(
                                        order_id=order.id,
                                        ticket_type_id=item.ticket_type_id,
                                        code=self.code_factory(
                                            order.id, item.ticket_type_id
                                        ),
                                        status=TICKET_ACTIVE,
                                        created_at=ts,
                                    ))
                            db.add_all(tickets)
                            await db.flush()
        except Exception as e:
            # the transaction rolled back: no tickets, status untouched
            log.error("fulfillment.failed", error=str(e))
            await self._mark_failed(order.id)
            raise FulfillmentError(
                f"ticket issuance failed: {e}",
                payment_id=order.payment_id, order_id=order.id,
            ) from e
        return True

    async def _mark_failed(self, order_id: int) -> None:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    await db.execute(
                        update(Order)
                        .where(Order.id == order_id)
                        .where(Order.status == ORDER_PENDING)
                        .values(status=ORDER_FAILED, updated_at=now_ts())
                    )

    # ----------------------------
    # Lookups
    # ----------------------------
    async def find_by_payment_id(self, payment_id: str) -> Optional[Order]:
        async with self.gated():
            async with self.sessions() as db:
                return (await db.execute(
                    select(Order).where(Order.payment_id == payment_id)
                )).scalar_one_or_none()

    async def get_order(self, order_id: int) -> Optional[Order]:
        async with self.gated():
            async with self.sessions() as db:
                return await db.get(Order, order_id)

    async def tickets(self, order_id: int) -> List[Ticket]:
        async with self.gated():
            async with self.sessions() as db:
                rows = (await db.execute(
                    select(Ticket)
                    .where(Ticket.order_id == order_id)
                    .order_by(Ticket.id)
                )).scalars().all()
        return list(rows)
