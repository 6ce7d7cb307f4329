"""Reconciliation of payment outcomes.

Two untrusted channels report on the same payment, in any order, any
number of times: the payer's browser coming back from the provider and
the provider's server-to-server notification. Neither is believed on
its own; both re-query the provider and both funnel into the same
idempotent fulfillment, keyed by payment id.

    unknown --success--> fulfilling --ok--> completed
    unknown --failed---> failed
    unknown --pending--> pending (no-op, re-checked on the next trigger)
    completed --any----> completed (no-op)
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Mapping, MutableMapping, Optional
from urllib.parse import quote

import structlog

from .checkout import PENDING_KEY
from .errors import FulfillmentError, GatewayError, SnapshotMissing
from .fulfillment import OrderFulfillment
from .gateway import (
    BillingInfo, GatewayEntry, GatewayRegistry, PaymentStatus,
    SUCCESS, FAILED, UNKNOWN, STATUSES,
)
from .infra.timings import timeit
from .model.cart import CartStore
from .model.db import Order, ORDER_COMPLETED
from .model.pendingpayment import PendingPayment

logger = structlog.get_logger(__name__)

CALLBACK = "callback"
NOTIFICATION = "notification"


@dataclass
class Reconciliation:
    outcome: str  # success | failed | pending | unknown
    payment_id: str
    order: Optional[Order] = None
    error: str = ""
    # fulfillment was attempted and did not finish; retryable
    fulfillment_failed: bool = False

    @property
    def redirect_url(self) -> str:
        return f"/payment/{self.outcome}?payment_id={quote(self.payment_id)}"


class Reconciler:
    def __init__(self, registry: GatewayRegistry, pending,
                 fulfillment: OrderFulfillment, carts: CartStore,
                 status_timeout: float = 10.0) -> None:
        self.registry = registry
        self.pending = pending
        self.fulfillment = fulfillment
        self.carts = carts
        self.status_timeout = status_timeout

    # ----------------------------
    # Entry points
    # ----------------------------
    async def from_callback(self, provider: str, query: Mapping[str, str],
                            session: MutableMapping) -> Reconciliation:
        entry = self.registry.get(provider)
        payment_id, merchant_ref = entry.gateway.callback_ids(query)
        log = logger.bind(provider=entry.name, payment_id=payment_id,
                          channel=CALLBACK)
        log.info("reconcile.callback_received", merchant_reference=merchant_ref)
        if not payment_id:
            log.warning("reconcile.missing_payment_id")
            return Reconciliation(outcome=UNKNOWN, payment_id="",
                                  error="missing payment id")

        pointer = session.get(PENDING_KEY)
        if pointer and pointer != payment_id:
            # stale tab or switched session: never complete another cart
            log.warning("reconcile.mismatch", session_payment_id=pointer)
            return Reconciliation(outcome=UNKNOWN, payment_id=payment_id,
                                  error="payment id does not match session")

        result = await self._reconcile(entry, payment_id, CALLBACK)
        if result.outcome == SUCCESS and pointer == payment_id:
            self.carts.clear(session)
            session.pop(PENDING_KEY, None)
        return result

    async def from_notification(self, provider: str, payload: bytes,
                                headers: Mapping[str, str]
                                ) -> Reconciliation:
        entry = self.registry.get(provider)
        # raises NotificationError on a bad signature or body
        note = entry.gateway.parse_notification(payload, headers)
        logger.info("reconcile.notification_received", provider=entry.name,
                    payment_id=note.payment_id, kind=note.kind,
                    event_id=note.event_id, channel=NOTIFICATION)
        return await self._reconcile(entry, note.payment_id, NOTIFICATION)

    # ----------------------------
    # State machine
    # ----------------------------
    async def _reconcile(self, entry: GatewayEntry, payment_id: str,
                         channel: str) -> Reconciliation:
        log = logger.bind(provider=entry.name, payment_id=payment_id,
                          channel=channel)
        try:
            status = await self._query_status(entry, payment_id)
        except asyncio.TimeoutError:
            log.warning("reconcile.status_timeout",
                        timeout=self.status_timeout)
            return Reconciliation(outcome=UNKNOWN, payment_id=payment_id,
                                  error="status query timed out")
        except GatewayError as e:
            log.warning("reconcile.status_failed", error=str(e))
            return Reconciliation(outcome=UNKNOWN, payment_id=payment_id,
                                  error=str(e))

        outcome = status.status if status.status in STATUSES else UNKNOWN
        log.info("reconcile.status_verified", status=outcome,
                 amount=status.amount)
        if outcome != SUCCESS:
            # failed/pending/unknown: pending record and cart stay as they are
            return Reconciliation(outcome=outcome, payment_id=payment_id)

        try:
            order = await self._fulfill(entry, payment_id, status, log)
        except SnapshotMissing as e:
            log.error("reconcile.snapshot_missing", error=str(e))
            return Reconciliation(outcome=FAILED, payment_id=payment_id,
                                  error=str(e), fulfillment_failed=True)
        except FulfillmentError as e:
            # record kept: the same payment id can be retried
            log.error("reconcile.fulfillment_failed", error=str(e),
                      order_id=e.order_id)
            return Reconciliation(outcome=FAILED, payment_id=payment_id,
                                  error=str(e), fulfillment_failed=True)
        if order is None:
            return Reconciliation(outcome=UNKNOWN, payment_id=payment_id,
                                  error="payment does not match its record")

        if order.status != ORDER_COMPLETED:
            log.warning("reconcile.order_not_completed", order_id=order.id,
                        status=order.status)
            return Reconciliation(outcome=FAILED, payment_id=payment_id,
                                  order=order,
                                  error=f"order is {order.status}")
        return Reconciliation(outcome=SUCCESS, payment_id=payment_id,
                              order=order)

    async def _query_status(self, entry: GatewayEntry,
                            payment_id: str) -> PaymentStatus:
        async with timeit("gateway.query_status"):
            return await asyncio.wait_for(
                entry.gateway.query_status(payment_id),
                timeout=self.status_timeout,
            )

    async def _fulfill(self, entry: GatewayEntry, payment_id: str,
                       status: PaymentStatus, log) -> Optional[Order]:
        async with timeit("pendingpayment.get"):
            record = await self.pending.get(payment_id)

        if record is None:
            # consumed by the other channel, or expired
            existing = await self.fulfillment.find_by_payment_id(payment_id)
            if existing is not None and existing.status == ORDER_COMPLETED:
                log.info("reconcile.already_fulfilled", order_id=existing.id)
                return existing
            raise SnapshotMissing(
                "payment succeeded but no pending payment record survives",
                payment_id=payment_id,
                order_id=existing.id if existing is not None else None,
            )

        if not self._matches(record, entry, status, log):
            return None

        order = await self.fulfillment.complete(
            payment_id,
            record.cart,
            BillingInfo(email=record.billing_email, name=record.billing_name,
                        payment_type=record.provider),
            record.user_id,
        )
        if order.status == ORDER_COMPLETED:
            async with timeit("pendingpayment.remove"):
                await self.pending.remove(payment_id)
        return order

    def _matches(self, record: PendingPayment, entry: GatewayEntry,
                 status: PaymentStatus, log) -> bool:
        if record.provider != entry.name:
            log.warning("reconcile.mismatch", recorded_provider=record.provider)
            return False
        if status.amount is not None and \
                status.amount != record.cart.total_amount:
            log.warning("reconcile.amount_mismatch", paid=status.amount,
                        expected=record.cart.total_amount)
            return False
        return True

