"""Reconciliation: callback and notification converge on one order."""

import asyncio

import pytest
from sqlalchemy import func, select

from boxoffice.checkout import PENDING_KEY, CheckoutOrchestrator
from boxoffice.errors import NotificationError
from boxoffice.gateway import (
    BillingInfo, Capabilities, GatewayRegistry, Initiation, PaymentGateway,
    PaymentStatus, SUCCESS, FAILED, PENDING, UNKNOWN,
)
from boxoffice.gateway.mockpay import SIGNATURE_HEADER, MockPay, sign
from boxoffice.model.cart import CartStore
from boxoffice.model.db import Order, Ticket
from boxoffice.reconcile import Reconciler

SECRET = "secret"
BILLING = BillingInfo(email="jane@example.com", name="Jane Doe")


class SlowGateway(PaymentGateway):
    name = "slow"
    capabilities = Capabilities(redirect=True)

    async def initiate(self, amount, billing, reference):
        return Initiation(payment_id="slow_1", reference=reference,
                          authorization_url="https://slow/pay")

    async def query_status(self, payment_id):
        await asyncio.sleep(5)
        return PaymentStatus(payment_id=payment_id, status=SUCCESS)

    def parse_notification(self, payload, headers):
        raise NotificationError("unsupported", provider=self.name)

    def callback_ids(self, query):
        return query.get("id", ""), ""


class FixedAmountGateway(MockPay):
    """MockPay that reports a different captured amount."""
    name = "shortpay"

    async def query_status(self, payment_id):
        status = await super().query_status(payment_id)
        return PaymentStatus(payment_id=payment_id, status=status.status,
                             amount=1)


@pytest.fixture()
def carts():
    return CartStore(ttl_seconds=900)


@pytest.fixture()
def registry():
    reg = GatewayRegistry()
    reg.register(MockPay(SECRET))
    reg.register(SlowGateway())
    reg.register(FixedAmountGateway(SECRET))
    return reg


@pytest.fixture()
def mockpay(registry):
    return registry.get("mockpay").gateway


@pytest.fixture()
def orchestrator(registry, pending, fulfillment, carts):
    return CheckoutOrchestrator(registry, pending, fulfillment, carts)


@pytest.fixture()
def reconciler(registry, pending, fulfillment, carts):
    return Reconciler(registry, pending, fulfillment, carts,
                      status_timeout=0.2)


async def start_checkout(orchestrator, carts, provider="mockpay"):
    session = {"user_id": 7}
    carts.add(session, 5, 2, 2500, event_id=2, ticket_name="Early Bird")
    result = await orchestrator.checkout(
        session, carts.get(session), BILLING, provider, 7
    )
    assert result.kind == "redirect", result.errors
    return session, result.payment_id


async def count(db, model):
    SessionAsync, _ = db
    async with SessionAsync() as s:
        return (await s.execute(select(func.count()).select_from(model))
                ).scalar_one()


def signed(body):
    return {SIGNATURE_HEADER: sign(SECRET, body)}


class TestCallback:
    async def test_success_fulfills_and_clears_cart(
            self, orchestrator, reconciler, carts, mockpay, pending, db):
        session, pid = await start_checkout(orchestrator, carts)
        mockpay.settle(pid, SUCCESS)

        result = await reconciler.from_callback(
            "mockpay", {"payment_id": pid}, session
        )
        assert result.outcome == SUCCESS
        assert result.redirect_url == f"/payment/success?payment_id={pid}"
        assert result.order.status == "completed"
        assert result.order.total_amount == 5000
        assert await count(db, Ticket) == 2

        assert carts.get(session).is_empty()
        assert PENDING_KEY not in session
        assert await pending.get(pid) is None

    async def test_failed_status_leaves_everything(
            self, orchestrator, reconciler, carts, mockpay, pending, db):
        session, pid = await start_checkout(orchestrator, carts)
        mockpay.settle(pid, FAILED)

        result = await reconciler.from_callback(
            "mockpay", {"payment_id": pid}, session
        )
        assert result.outcome == FAILED
        assert result.redirect_url == f"/payment/failed?payment_id={pid}"
        assert await count(db, Order) == 0
        assert carts.get(session).total_amount == 5000
        assert session[PENDING_KEY] == pid
        assert await pending.get(pid) is not None

    async def test_pending_status_is_a_no_op(
            self, orchestrator, reconciler, carts, pending, db):
        session, pid = await start_checkout(orchestrator, carts)
        result = await reconciler.from_callback(
            "mockpay", {"payment_id": pid}, session
        )
        assert result.outcome == PENDING
        assert await count(db, Order) == 0
        assert await pending.get(pid) is not None

    async def test_mismatched_session_fails_closed(
            self, orchestrator, reconciler, carts, mockpay, db):
        session, pid = await start_checkout(orchestrator, carts)
        other = await mockpay.initiate(5000, BILLING, "TIX-other")
        mockpay.settle(other.payment_id, SUCCESS)

        result = await reconciler.from_callback(
            "mockpay", {"payment_id": other.payment_id}, session
        )
        assert result.outcome == UNKNOWN
        assert await count(db, Order) == 0
        assert not carts.get(session).is_empty()

    async def test_missing_tracking_id(self, reconciler):
        result = await reconciler.from_callback("mockpay", {}, {})
        assert result.outcome == UNKNOWN

    async def test_status_timeout_reports_unknown(self, reconciler, db):
        result = await reconciler.from_callback("slow", {"id": "slow_1"}, {})
        assert result.outcome == UNKNOWN
        assert "timed out" in result.error
        assert await count(db, Order) == 0

    async def test_amount_mismatch_fails_closed(
            self, orchestrator, reconciler, carts, registry, db):
        session, pid = await start_checkout(orchestrator, carts,
                                            provider="shortpay")
        registry.get("shortpay").gateway.settle(pid, SUCCESS)
        result = await reconciler.from_callback(
            "shortpay", {"payment_id": pid}, session
        )
        assert result.outcome == UNKNOWN
        assert await count(db, Order) == 0

    async def test_callback_without_session_uses_durable_record(
            self, orchestrator, reconciler, carts, mockpay, db):
        # the payer came back in a different browser
        _, pid = await start_checkout(orchestrator, carts)
        mockpay.settle(pid, SUCCESS)
        result = await reconciler.from_callback(
            "mockpay", {"payment_id": pid}, {}
        )
        assert result.outcome == SUCCESS
        assert result.order.user_id == 7


class TestNotification:
    async def test_notification_first_then_callback(
            self, orchestrator, reconciler, carts, mockpay, db):
        session, pid = await start_checkout(orchestrator, carts)
        body = mockpay.settle(pid, SUCCESS)

        first = await reconciler.from_notification("mockpay", body,
                                                   signed(body))
        assert first.outcome == SUCCESS
        # the cart lives in the browser session; only the callback clears it
        assert not carts.get(session).is_empty()

        second = await reconciler.from_callback(
            "mockpay", {"payment_id": pid}, session
        )
        assert second.outcome == SUCCESS
        assert second.order.id == first.order.id
        assert carts.get(session).is_empty()
        assert await count(db, Order) == 1
        assert await count(db, Ticket) == 2

    async def test_repeated_notifications(
            self, orchestrator, reconciler, carts, mockpay, db):
        _, pid = await start_checkout(orchestrator, carts)
        body = mockpay.settle(pid, SUCCESS)
        for _ in range(3):
            result = await reconciler.from_notification("mockpay", body,
                                                        signed(body))
            assert result.outcome == SUCCESS
        assert await count(db, Order) == 1
        assert await count(db, Ticket) == 2

    async def test_concurrent_callback_and_notification(
            self, orchestrator, reconciler, carts, mockpay, db):
        session, pid = await start_checkout(orchestrator, carts)
        body = mockpay.settle(pid, SUCCESS)
        results = await asyncio.gather(
            reconciler.from_notification("mockpay", body, signed(body)),
            reconciler.from_callback("mockpay", {"payment_id": pid}, session),
            reconciler.from_notification("mockpay", body, signed(body)),
        )
        assert all(r.outcome == SUCCESS for r in results)
        assert len({r.order.id for r in results}) == 1
        assert await count(db, Order) == 1
        assert await count(db, Ticket) == 2

    async def test_bad_signature_rejected(
            self, orchestrator, reconciler, carts, mockpay, db):
        _, pid = await start_checkout(orchestrator, carts)
        body = mockpay.settle(pid, SUCCESS)
        with pytest.raises(NotificationError):
            await reconciler.from_notification(
                "mockpay", body, {SIGNATURE_HEADER: "forged"}
            )
        assert await count(db, Order) == 0

    async def test_success_without_snapshot_is_surfaced(
            self, reconciler, mockpay, db):
        init = await mockpay.initiate(5000, BILLING, "TIX-lost")
        body = mockpay.settle(init.payment_id, SUCCESS)
        result = await reconciler.from_notification("mockpay", body,
                                                    signed(body))
        assert result.outcome == FAILED
        assert result.fulfillment_failed
        assert "no pending payment record" in result.error
        assert await count(db, Order) == 0


class TestResume:
    async def test_resend_stored_authorization_url(
            self, orchestrator, carts):
        session, pid = await start_checkout(orchestrator, carts)
        result = await orchestrator.resume(session, pid)
        assert result.redirect_url == f"/mockpay/{pid}"

    async def test_reinitialize_mints_new_reference(
            self, orchestrator, carts, pending, mockpay):
        session, pid = await start_checkout(orchestrator, carts)
        old = await pending.get(pid)

        result = await orchestrator.resume(session, pid, reinitialize=True)
        assert result.kind == "redirect"
        assert result.payment_id != pid
        assert session[PENDING_KEY] == result.payment_id
        assert await pending.get(pid) is None

        fresh = await pending.get(result.payment_id)
        assert fresh.reference.startswith(f"{old.reference}-retry-")
        assert fresh.cart.total_amount == old.cart.total_amount
        assert mockpay.lookup(result.payment_id)["reference"] == \
            fresh.reference

    async def test_mismatch_refused(self, orchestrator, carts):
        session, pid = await start_checkout(orchestrator, carts)
        result = await orchestrator.resume(session, "mock_other")
        assert result.kind == "invalid"
        assert result.errors["general"] == ["Payment ID mismatch"]
