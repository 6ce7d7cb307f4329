"""Provider adapters: status mapping, signatures, callback parameters."""

import hashlib
import hmac
import json

import httpx
import pytest

from boxoffice.config import Settings
from boxoffice.errors import GatewayError, NotificationError, UnknownProvider
from boxoffice.gateway import (
    BillingInfo, GatewayRegistry, build_registry, new_reference,
    retry_reference, SUCCESS, FAILED, PENDING, UNKNOWN,
)
from boxoffice.gateway.instant import InstantPay
from boxoffice.gateway.mockpay import SIGNATURE_HEADER, MockPay, sign
from boxoffice.gateway.paystack import Paystack
from boxoffice.gateway.pesapal import Pesapal

BILLING = BillingInfo(email="jane@example.com", name="Jane Doe",
                      payment_type="card")


def client_for(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestReferences:
    def test_new_references_are_unique(self):
        refs = {new_reference() for _ in range(100)}
        assert len(refs) == 100
        assert all(r.startswith("TIX-") for r in refs)

    def test_retry_reference_is_new(self):
        ref = new_reference()
        retry = retry_reference(ref)
        assert retry != ref
        assert retry.startswith(f"{ref}-retry-")
        assert retry_reference(ref) != retry


class TestRegistry:
    def test_capabilities_resolved_at_registration(self):
        reg = GatewayRegistry()
        reg.register(MockPay("s"))
        reg.register(InstantPay())
        assert reg.get("mockpay").capabilities.redirect
        assert reg.get("mockpay").capabilities.reinitialize
        assert not reg.get("instant").capabilities.redirect
        assert reg.names() == ["mockpay", "instant"]
        assert "MockPay" in reg

    def test_unknown_provider(self):
        with pytest.raises(UnknownProvider):
            GatewayRegistry().get("stripe")

    async def test_build_from_settings(self):
        settings = Settings(providers=("mockpay", "instant", "paystack",
                                       "pesapal"),
                            public_base_url="https://tickets.example")
        async with httpx.AsyncClient() as http:
            reg = build_registry(settings, http)
        assert reg.names() == ["mockpay", "instant", "paystack", "pesapal"]
        assert not reg.get("pesapal").capabilities.reinitialize
        assert reg.get("paystack").gateway.callback_url == (
            "https://tickets.example/payment/callback/paystack"
        )

    async def test_build_rejects_unknown_name(self):
        async with httpx.AsyncClient() as http:
            with pytest.raises(UnknownProvider):
                build_registry(Settings(providers=("bogus",)), http)


class TestMockPay:
    async def test_initiate_then_settle(self):
        gw = MockPay("secret")
        init = await gw.initiate(5000, BILLING, "TIX-1")
        assert init.authorization_url == f"/mockpay/{init.payment_id}"
        assert (await gw.query_status(init.payment_id)).status == PENDING

        gw.settle(init.payment_id, SUCCESS)
        status = await gw.query_status(init.payment_id)
        assert status.succeeded
        assert status.amount == 5000

    async def test_settled_payment_never_changes(self):
        gw = MockPay("secret")
        init = await gw.initiate(5000, BILLING, "TIX-1")
        gw.settle(init.payment_id, FAILED)
        gw.settle(init.payment_id, SUCCESS)
        assert (await gw.query_status(init.payment_id)).status == FAILED

    async def test_unknown_payment(self):
        status = await MockPay("secret").query_status("mock_nope")
        assert status.status == UNKNOWN

    def test_settle_rejects_bad_outcome(self):
        with pytest.raises(GatewayError):
            MockPay("secret").settle("mock_nope", "maybe")

    async def test_notification_signature(self):
        gw = MockPay("secret")
        init = await gw.initiate(5000, BILLING, "TIX-1")
        body = gw.settle(init.payment_id, SUCCESS)
        note = gw.parse_notification(
            body, {SIGNATURE_HEADER: sign("secret", body)}
        )
        assert note.payment_id == init.payment_id
        assert note.merchant_reference == "TIX-1"
        assert note.kind == SUCCESS

    @pytest.mark.parametrize("headers", [
        {},
        {SIGNATURE_HEADER: "bogus"},
        {SIGNATURE_HEADER: sign("other-secret", b"{}")},
    ])
    def test_notification_rejected_without_valid_signature(self, headers):
        with pytest.raises(NotificationError):
            MockPay("secret").parse_notification(b"{}", headers)

    @pytest.mark.parametrize("body", [b"[]", b'"mock_1"', b"null"])
    def test_signed_non_object_rejected(self, body):
        with pytest.raises(NotificationError):
            MockPay("secret").parse_notification(
                body, {SIGNATURE_HEADER: sign("secret", body)}
            )

    async def test_oldest_payments_evicted(self):
        gw = MockPay("secret", max_payments=2)
        ids = [(await gw.initiate(5000, BILLING, f"TIX-{i}")).payment_id
               for i in range(3)]
        assert gw.lookup(ids[0]) is None
        assert (await gw.query_status(ids[0])).status == UNKNOWN
        assert gw.lookup(ids[1]) is not None
        assert gw.lookup(ids[2]) is not None

    async def test_deliver_posts_signed_body(self):
        seen = {}

        def handler(request):
            seen["sig"] = request.headers[SIGNATURE_HEADER]
            seen["body"] = request.content
            return httpx.Response(200, text="ok")

        async with client_for(handler) as http:
            gw = MockPay("secret", notify_url="http://shop/payment/notify",
                         http=http)
            assert await gw.deliver(b'{"payment_id": "x"}')
        assert seen["sig"] == sign("secret", seen["body"])

    async def test_deliver_failure_is_reported(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with client_for(handler) as http:
            gw = MockPay("secret", notify_url="http://shop/notify", http=http)
            assert await gw.deliver(b"{}") is False

    def test_callback_ids(self):
        assert MockPay("s").callback_ids(
            {"payment_id": "mock_1", "reference": "TIX-1"}
        ) == ("mock_1", "TIX-1")


class TestInstant:
    async def test_purchase_settles_immediately(self):
        gw = InstantPay()
        status = await gw.purchase(5000, BILLING, "TIX-1")
        assert status.succeeded
        assert (await gw.query_status(status.payment_id)).succeeded

    async def test_oldest_charges_evicted(self):
        gw = InstantPay(max_payments=1)
        first = await gw.purchase(5000, BILLING, "TIX-1")
        second = await gw.purchase(5000, BILLING, "TIX-2")
        assert (await gw.query_status(first.payment_id)).status == UNKNOWN
        assert (await gw.query_status(second.payment_id)).succeeded

    async def test_has_no_redirect_step(self):
        with pytest.raises(GatewayError):
            await InstantPay().initiate(5000, BILLING, "TIX-1")

    async def test_redirect_provider_cannot_purchase(self):
        with pytest.raises(GatewayError):
            await MockPay("s").purchase(5000, BILLING, "TIX-1")


class TestPaystack:
    async def test_initiate(self):
        sent = {}

        def handler(request):
            sent["auth"] = request.headers["authorization"]
            sent["path"] = request.url.path
            sent["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": "https://checkout.paystack.com/abc",
                    "access_code": "abc",
                    "reference": "TIX-1",
                },
            })

        async with client_for(handler) as http:
            gw = Paystack("sk_test", http,
                          callback_url="http://shop/payment/callback/paystack")
            init = await gw.initiate(5000, BILLING, "TIX-1")

        assert init.payment_id == "TIX-1"
        assert init.authorization_url == "https://checkout.paystack.com/abc"
        assert sent["auth"] == "Bearer sk_test"
        assert sent["path"] == "/transaction/initialize"
        assert sent["body"]["amount"] == 5000
        assert sent["body"]["currency"] == "KES"
        assert sent["body"]["reference"] == "TIX-1"
        assert sent["body"]["channels"] == ["card"]

    async def test_initiate_error_surfaces_message(self):
        def handler(request):
            return httpx.Response(400, json={
                "status": False, "message": "Duplicate Transaction Reference",
            })

        async with client_for(handler) as http:
            gw = Paystack("sk_test", http, callback_url="http://shop/cb")
            with pytest.raises(GatewayError) as exc:
                await gw.initiate(5000, BILLING, "TIX-1")
        assert "Duplicate Transaction Reference" in str(exc.value)
        assert exc.value.status_code == 400

    async def test_transport_error_is_gateway_error(self):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        async with client_for(handler) as http:
            gw = Paystack("sk_test", http, callback_url="http://shop/cb")
            with pytest.raises(GatewayError):
                await gw.query_status("TIX-1")

    @pytest.mark.parametrize("remote,expected", [
        ("success", SUCCESS),
        ("failed", FAILED),
        ("abandoned", FAILED),
        ("ongoing", PENDING),
        ("pending", PENDING),
    ])
    async def test_verify_mapping(self, remote, expected):
        def handler(request):
            assert request.url.path == "/transaction/verify/TIX-1"
            return httpx.Response(200, json={
                "status": True,
                "data": {"status": remote, "amount": 5000, "id": 42},
            })

        async with client_for(handler) as http:
            gw = Paystack("sk_test", http, callback_url="http://shop/cb")
            status = await gw.query_status("TIX-1")
        assert status.status == expected
        assert status.amount == 5000
        assert status.transaction_id == "42"

    def test_notification_signature(self):
        body = json.dumps({
            "event": "charge.success",
            "data": {"reference": "TIX-1", "id": 42},
        }).encode()
        sig = hmac.new(b"sk_test", body, hashlib.sha512).hexdigest()
        gw = Paystack("sk_test", None, callback_url="http://shop/cb")
        note = gw.parse_notification(body, {"x-paystack-signature": sig})
        assert note.payment_id == "TIX-1"
        assert note.kind == "charge.success"

        with pytest.raises(NotificationError):
            gw.parse_notification(body, {"x-paystack-signature": "00"})

    @pytest.mark.parametrize("body", [
        b"[]",
        b'"charge.success"',
        b'{"event": "charge.success", "data": ["TIX-1"]}',
    ])
    def test_signed_non_object_rejected(self, body):
        sig = hmac.new(b"sk_test", body, hashlib.sha512).hexdigest()
        gw = Paystack("sk_test", None, callback_url="http://shop/cb")
        with pytest.raises(NotificationError):
            gw.parse_notification(body, {"x-paystack-signature": sig})

    def test_callback_ids(self):
        gw = Paystack("sk_test", None, callback_url="http://shop/cb")
        assert gw.callback_ids({"reference": "TIX-1", "trxref": "TIX-1"})[0] \
            == "TIX-1"
        assert gw.callback_ids({"trxref": "TIX-2"})[0] == "TIX-2"


def pesapal_handler(status_body, calls=None):
    def handler(request):
        if calls is not None:
            calls.append(request.url.path)
        if request.url.path.endswith("/api/Auth/RequestToken"):
            return httpx.Response(200, json={"token": "tok", "status": "200"})
        if request.url.path.endswith("/SubmitOrderRequest"):
            body = json.loads(request.content)
            assert request.headers["authorization"] == "Bearer tok"
            assert body["amount"] == 50.0
            return httpx.Response(200, json={
                "order_tracking_id": "trk-1",
                "merchant_reference": body["id"],
                "redirect_url": "https://pay.pesapal.com/iframe/trk-1",
                "status": "200",
            })
        if request.url.path.endswith("/GetTransactionStatus"):
            assert request.url.params["orderTrackingId"] == "trk-1"
            return httpx.Response(200, json=status_body)
        return httpx.Response(404)
    return handler


class TestPesapal:
    async def test_initiate(self):
        async with client_for(pesapal_handler({})) as http:
            gw = Pesapal("key", "secret", http, callback_url="http://shop/cb")
            init = await gw.initiate(5000, BILLING, "TIX-1")
        assert init.payment_id == "trk-1"
        assert init.reference == "TIX-1"
        assert init.authorization_url.endswith("/trk-1")

    @pytest.mark.parametrize("code,expected", [
        (1, SUCCESS), (2, FAILED), (0, PENDING), (3, UNKNOWN),
    ])
    async def test_status_mapping(self, code, expected):
        body = {"status_code": code, "amount": 50.0,
                "confirmation_code": "CONF1"}
        async with client_for(pesapal_handler(body)) as http:
            gw = Pesapal("key", "secret", http, callback_url="http://shop/cb")
            status = await gw.query_status("trk-1")
        assert status.status == expected
        assert status.amount == 5000

    async def test_token_reused(self):
        calls = []
        body = {"status_code": 1, "amount": 50.0}
        async with client_for(pesapal_handler(body, calls)) as http:
            gw = Pesapal("key", "secret", http, callback_url="http://shop/cb")
            await gw.query_status("trk-1")
            await gw.query_status("trk-1")
        assert sum(p.endswith("RequestToken") for p in calls) == 1

    async def test_api_error(self):
        def handler(request):
            return httpx.Response(200, json={
                "error": {"code": "invalid_consumer_key_or_secret_provided",
                          "message": "Invalid consumer key"},
            })

        async with client_for(handler) as http:
            gw = Pesapal("key", "secret", http, callback_url="http://shop/cb")
            with pytest.raises(GatewayError):
                await gw.query_status("trk-1")

    def test_ipn(self):
        gw = Pesapal("key", "secret", None, callback_url="http://shop/cb")
        note = gw.parse_notification(json.dumps({
            "OrderTrackingId": "trk-1",
            "OrderMerchantReference": "TIX-1",
            "OrderNotificationType": "IPNCHANGE",
        }).encode(), {})
        assert note.payment_id == "trk-1"
        assert note.merchant_reference == "TIX-1"

        with pytest.raises(NotificationError):
            gw.parse_notification(b"not json", {})
        with pytest.raises(NotificationError):
            gw.parse_notification(b'{"OrderMerchantReference": "x"}', {})

    def test_callback_ids(self):
        gw = Pesapal("key", "secret", None, callback_url="http://shop/cb")
        assert gw.callback_ids({
            "OrderTrackingId": "trk-1", "OrderMerchantReference": "TIX-1",
        }) == ("trk-1", "TIX-1")
