from collections import OrderedDict
from typing import Dict, Mapping, Optional, Tuple
import uuid
import hmac
import hashlib
import base64
import json
import time

import httpx
import structlog

from ..errors import GatewayError, NotificationError
from .base import (
    PaymentGateway, Capabilities, BillingInfo, Initiation, PaymentStatus,
    Notification, SUCCESS, FAILED, PENDING, UNKNOWN, remember,
)

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-mockpay-signature"


def sign(secret: str, payload: bytes) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentGateway):
    """In-process redirect provider for development and tests.

    Payments live in memory until the payer settles them on the hosted
    page; settling posts a signed notification to ``notify_url``. Only
    the newest ``max_payments`` are kept.
    """
    name = "mockpay"
    capabilities = Capabilities(redirect=True, reinitialize=True)

    def __init__(self, secret: str, notify_url: str = "",
                 http: Optional[httpx.AsyncClient] = None,
                 max_payments: int = 10_000) -> None:
        self.secret = secret
        self.notify_url = notify_url
        self.http = http
        self.max_payments = max_payments
        # payment_id -> {"status", "amount", "reference", "email"}
        self._payments: OrderedDict[str, Dict] = OrderedDict()

    async def initiate(self, amount: int, billing: BillingInfo,
                       reference: str) -> Initiation:
        if amount <= 0:
            raise GatewayError("amount must be positive", provider=self.name)
        payment_id = f"mock_{uuid.uuid4().hex}"
        remember(self._payments, payment_id, {
            "status": PENDING,
            "amount": amount,
            "reference": reference,
            "email": billing.email,
        }, self.max_payments)
        return Initiation(
            payment_id=payment_id,
            reference=reference,
            authorization_url=f"/mockpay/{payment_id}",
        )

    async def query_status(self, payment_id: str) -> PaymentStatus:
        p = self._payments.get(payment_id)
        if p is None:
            return PaymentStatus(payment_id=payment_id, status=UNKNOWN)
        return PaymentStatus(
            payment_id=payment_id,
            status=p["status"],
            amount=p["amount"],
            transaction_id=p["reference"],
        )

    def lookup(self, payment_id: str) -> Optional[Dict]:
        return self._payments.get(payment_id)

    def settle(self, payment_id: str, outcome: str) -> bytes:
        """Record the payer's choice; returns the signed notification body."""
        if outcome not in (SUCCESS, FAILED):
            raise GatewayError(f"invalid outcome {outcome!r}",
                               provider=self.name)
        p = self._payments.get(payment_id)
        if p is None:
            raise GatewayError("payment not found", provider=self.name)
        # a settled payment never changes its mind
        if p["status"] == PENDING:
            p["status"] = outcome
        event = {
            "type": f"payment.{p['status']}",
            "payment_id": payment_id,
            "reference": p["reference"],
            "amount": p["amount"],
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }
        return json.dumps(event).encode()

    async def deliver(self, payload: bytes) -> bool:
        if self.http is None or not self.notify_url:
            return False
        try:
            r = await self.http.post(
                self.notify_url,
                content=payload,
                headers={
                    SIGNATURE_HEADER: sign(self.secret, payload),
                    "content-type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            # the browser callback reconciles on its own; notification
            # delivery is best effort for the mock
            logger.warning("mockpay.notify_failed", error=str(e))
            return False
        return r.is_success

    def parse_notification(self, payload: bytes,
                           headers: Mapping[str, str]) -> Notification:
        sig = headers.get(SIGNATURE_HEADER)
        expected = sign(self.secret, payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise NotificationError("Invalid signature", provider=self.name)
        try:
            event = json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise NotificationError("Invalid JSON", provider=self.name)
        if not isinstance(event, dict):
            raise NotificationError("Invalid event payload", provider=self.name)
        payment_id = event.get("payment_id") or ""
        if not payment_id:
            raise NotificationError("missing payment_id", provider=self.name)
        return Notification(
            payment_id=payment_id,
            merchant_reference=event.get("reference", ""),
            kind=event.get("type", "").split(".")[-1],
            event_id=event.get("idempotency_key"),
        )

    def callback_ids(self, query: Mapping[str, str]) -> Tuple[str, str]:
        return query.get("payment_id", ""), query.get("reference", "")
