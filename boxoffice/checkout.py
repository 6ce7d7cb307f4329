"""Checkout: turn a session cart into a payment attempt.

Redirect providers get a durable pending payment record and hand the
payer an authorization URL. Synchronous providers settle inline and go
straight to fulfillment.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, MutableMapping, Optional

import structlog

from .errors import FulfillmentError, GatewayError
from .fulfillment import OrderFulfillment
from .gateway import (
    BillingInfo, GatewayEntry, GatewayRegistry, new_reference,
    retry_reference,
)
from .helpers import is_valid_email, now_ts
from .infra.timings import timeit
from .model.cart import Cart, CartStore
from .model.db import Order
from .model.pendingpayment import PendingPayment

logger = structlog.get_logger(__name__)

# session pointer to the live pending payment record
PENDING_KEY = "pending_payment_id"

REDIRECT = "redirect"
CONFIRMATION = "confirmation"
INVALID = "invalid"


@dataclass
class CheckoutResult:
    kind: str  # redirect | confirmation | invalid
    redirect_url: str = ""
    errors: Dict[str, List[str]] = field(default_factory=dict)
    payment_id: str = ""
    order: Optional[Order] = None

    @property
    def ok(self) -> bool:
        return self.kind != INVALID


def _invalid(errors: Dict[str, List[str]]) -> CheckoutResult:
    return CheckoutResult(kind=INVALID, errors=errors)


class CheckoutOrchestrator:
    def __init__(self, registry: GatewayRegistry, pending,
                 fulfillment: OrderFulfillment, carts: CartStore) -> None:
        self.registry = registry
        self.pending = pending
        self.fulfillment = fulfillment
        self.carts = carts

    def validate(self, cart: Cart, billing: BillingInfo,
                 provider_name: str) -> Dict[str, List[str]]:
        errors: Dict[str, List[str]] = {}
        if cart.is_empty() or cart.is_expired(now_ts()):
            errors["cart"] = ["Your cart is empty or has expired"]
        if not billing.email:
            errors["billing_email"] = ["Billing email is required"]
        elif not is_valid_email(billing.email):
            errors["billing_email"] = ["Please enter a valid email address"]
        if not billing.name:
            errors["billing_name"] = ["Billing name is required"]
        if not provider_name:
            errors["payment_method"] = ["Payment method is required"]
        elif provider_name not in self.registry:
            errors["payment_method"] = ["Unsupported payment method"]
        return errors

    async def checkout(self, session: MutableMapping, cart: Cart,
                       billing: BillingInfo, provider_name: str,
                       user_id: int) -> CheckoutResult:
        billing = BillingInfo(
            email=(billing.email or "").strip(),
            name=(billing.name or "").strip(),
            payment_type=billing.payment_type or provider_name,
        )
        errors = self.validate(cart, billing, provider_name)
        if errors:
            logger.info("checkout.invalid", fields=sorted(errors))
            return _invalid(errors)

        entry = self.registry.get(provider_name)
        if entry.capabilities.redirect:
            return await self._redirect(session, entry, cart, billing,
                                        user_id)
        return await self._synchronous(session, entry, cart, billing,
                                       user_id)

    async def _redirect(self, session: MutableMapping, entry: GatewayEntry,
                        cart: Cart, billing: BillingInfo,
                        user_id: int) -> CheckoutResult:
        reference = new_reference()
        log = logger.bind(provider=entry.name, reference=reference)
        try:
            async with timeit("gateway.initiate"):
                init = await entry.gateway.initiate(
                    cart.total_amount, billing, reference
                )
        except GatewayError as e:
            # nothing written: no pending record, cart untouched
            log.warning("checkout.failed", error=str(e))
            return _invalid(
                {"general": [f"Payment initiation failed: {e}"]}
            )

        record = PendingPayment(
            payment_id=init.payment_id,
            provider=entry.name,
            reference=init.reference,
            cart=cart,
            billing_email=billing.email,
            billing_name=billing.name,
            user_id=user_id,
            authorization_url=init.authorization_url,
            created_at=now_ts(),
        )
        await self._replace_pending(session, record)
        log.info("checkout.initiated", payment_id=init.payment_id,
                 amount=cart.total_amount)

        url = init.authorization_url or (
            f"/payment/redirect?payment_id={init.payment_id}"
        )
        return CheckoutResult(kind=REDIRECT, redirect_url=url,
                              payment_id=init.payment_id)

    async def _synchronous(self, session: MutableMapping,
                           entry: GatewayEntry, cart: Cart,
                           billing: BillingInfo,
                           user_id: int) -> CheckoutResult:
        reference = new_reference()
        log = logger.bind(provider=entry.name, reference=reference)
        try:
            async with timeit("gateway.purchase"):
                status = await entry.gateway.purchase(
                    cart.total_amount, billing, reference
                )
        except GatewayError as e:
            log.warning("checkout.failed", error=str(e))
            return _invalid({"general": [f"Purchase failed: {e}"]})

        if not status.succeeded:
            log.warning("checkout.failed", status=status.status)
            return _invalid(
                {"general": [f"Purchase failed: payment {status.status}"]}
            )

        try:
            order = await self.fulfillment.complete(
                status.payment_id, cart, billing, user_id
            )
        except FulfillmentError as e:
            log.error("checkout.fulfillment_failed",
                      payment_id=status.payment_id, error=str(e))
            return CheckoutResult(
                kind=REDIRECT,
                redirect_url=f"/payment/failed?payment_id={status.payment_id}",
                payment_id=status.payment_id,
            )

        self.carts.clear(session)
        log.info("checkout.completed", payment_id=status.payment_id,
                 order_id=order.id)
        return CheckoutResult(
            kind=CONFIRMATION,
            redirect_url=f"/orders/{order.id}/confirmation",
            payment_id=status.payment_id,
            order=order,
        )

    async def _replace_pending(self, session: MutableMapping,
                               record: PendingPayment) -> None:
        previous = session.get(PENDING_KEY)
        async with timeit("pendingpayment.save"):
            await self.pending.save(record)
        # one live pending record per session
        if previous and previous != record.payment_id:
            await self.pending.remove(previous)
        session[PENDING_KEY] = record.payment_id

    # ----------------------------
    # Stale redirect: resend or re-initialize
    # ----------------------------
    async def resume(self, session: MutableMapping, payment_id: str,
                     reinitialize: bool = False) -> CheckoutResult:
        if not payment_id:
            return _invalid({"general": ["Missing payment ID"]})
        pointer = session.get(PENDING_KEY)
        if not pointer:
            return _invalid(
                {"general": ["No pending payment found in session"]}
            )
        if pointer != payment_id:
            logger.warning("checkout.resume_mismatch",
                           payment_id=payment_id, session_payment_id=pointer)
            return _invalid({"general": ["Payment ID mismatch"]})

        record = await self.pending.get(payment_id)
        if record is None:
            return _invalid({"general": ["No pending payment found"]})

        if record.authorization_url and not reinitialize:
            return CheckoutResult(kind=REDIRECT,
                                  redirect_url=record.authorization_url,
                                  payment_id=payment_id)

        if record.provider not in self.registry:
            return _invalid({"general": ["Payment service not available"]})
        entry = self.registry.get(record.provider)
        if not entry.capabilities.reinitialize:
            if record.authorization_url:
                return CheckoutResult(kind=REDIRECT,
                                      redirect_url=record.authorization_url,
                                      payment_id=payment_id)
            return _invalid({"general": ["Payment service not available"]})

        # providers reject a reused reference
        reference = retry_reference(record.reference)
        billing = BillingInfo(email=record.billing_email,
                              name=record.billing_name,
                              payment_type=record.provider)
        try:
            async with timeit("gateway.initiate"):
                init = await entry.gateway.initiate(
                    record.cart.total_amount, billing, reference
                )
        except GatewayError as e:
            logger.warning("checkout.reinitialize_failed",
                           payment_id=payment_id, provider=entry.name,
                           error=str(e))
            return _invalid(
                {"general": [f"Failed to initialize payment: {e}"]}
            )

        fresh = PendingPayment(
            payment_id=init.payment_id,
            provider=entry.name,
            reference=init.reference,
            cart=record.cart,
            billing_email=record.billing_email,
            billing_name=record.billing_name,
            user_id=record.user_id,
            authorization_url=init.authorization_url,
            created_at=now_ts(),
        )
        await self._replace_pending(session, fresh)
        logger.info("checkout.reinitialized", provider=entry.name,
                    payment_id=init.payment_id, previous=payment_id)
        return CheckoutResult(
            kind=REDIRECT,
            redirect_url=init.authorization_url or (
                f"/payment/redirect?payment_id={init.payment_id}"
            ),
            payment_id=init.payment_id,
        )
