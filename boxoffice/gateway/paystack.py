from typing import Any, Dict, Mapping, Tuple
import hmac
import hashlib
import json

import httpx
import structlog

from ..errors import GatewayError, NotificationError
from .base import (
    PaymentGateway, Capabilities, BillingInfo, Initiation, PaymentStatus,
    Notification, SUCCESS, FAILED, PENDING,
)

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"
CHANNELS = ["card", "bank", "ussd", "mobile_money"]

_STATUS_MAP = {
    "success": SUCCESS,
    "failed": FAILED,
    "abandoned": FAILED,
    "reversed": FAILED,
}


class Paystack(PaymentGateway):
    name = "paystack"
    capabilities = Capabilities(redirect=True, reinitialize=True)

    def __init__(self, secret_key: str, http: httpx.AsyncClient, *,
                 callback_url: str, currency: str = "KES",
                 base_url: str = "https://api.paystack.co") -> None:
        self.secret_key = secret_key
        self.http = http
        self.callback_url = callback_url
        self.currency = currency
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Accept": "application/json",
        }

    async def _call(self, method: str, path: str, **kw) -> Dict[str, Any]:
        try:
            r = await self.http.request(
                method, f"{self.base_url}{path}", headers=self._headers(), **kw
            )
        except httpx.HTTPError as e:
            raise GatewayError(f"paystack request failed: {e}",
                               provider=self.name) from e
        try:
            body = r.json()
        except ValueError:
            body = {}
        if r.status_code != 200:
            msg = body.get("message") or r.text
            logger.warning("paystack.api_error", path=path,
                           status_code=r.status_code, message=msg)
            raise GatewayError(f"Paystack Error: {msg}", provider=self.name,
                               status_code=r.status_code)
        if not body.get("status"):
            raise GatewayError(
                f"Paystack Error: {body.get('message', 'request failed')}",
                provider=self.name,
            )
        return body.get("data") or {}

    async def initiate(self, amount: int, billing: BillingInfo,
                       reference: str) -> Initiation:
        channels = CHANNELS
        if billing.payment_type in ("card", "mobile_money"):
            channels = [billing.payment_type]
        data = await self._call("POST", "/transaction/initialize", json={
            "email": billing.email,
            "amount": amount,
            "currency": self.currency,
            "reference": reference,
            "callback_url": self.callback_url,
            "channels": channels,
            "metadata": {
                "customer_name": billing.name,
                "payment_type": billing.payment_type,
            },
        })
        url = data.get("authorization_url") or ""
        if not url:
            raise GatewayError("Paystack returned no authorization URL",
                               provider=self.name)
        return Initiation(
            payment_id=data.get("reference") or reference,
            reference=reference,
            authorization_url=url,
        )

    async def query_status(self, payment_id: str) -> PaymentStatus:
        data = await self._call("GET", f"/transaction/verify/{payment_id}")
        return PaymentStatus(
            payment_id=payment_id,
            status=_STATUS_MAP.get(data.get("status", ""), PENDING),
            amount=data.get("amount"),
            transaction_id=str(data.get("id", "")),
        )

    def verify_signature(self, payload: bytes, signature: str) -> bool:
        mac = hmac.new(self.secret_key.encode(), payload, hashlib.sha512)
        return hmac.compare_digest(mac.hexdigest(), signature or "")

    def parse_notification(self, payload: bytes,
                           headers: Mapping[str, str]) -> Notification:
        if not self.verify_signature(payload, headers.get(SIGNATURE_HEADER)):
            raise NotificationError("Invalid signature", provider=self.name)
        try:
            event = json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise NotificationError("Invalid JSON", provider=self.name)
        data = event.get("data") if isinstance(event, dict) else None
        if not isinstance(data, dict):
            raise NotificationError("Invalid event payload", provider=self.name)
        reference = data.get("reference") or ""
        if not reference:
            raise NotificationError("missing reference", provider=self.name)
        return Notification(
            payment_id=reference,
            merchant_reference=reference,
            kind=event.get("event", ""),
            event_id=str(data["id"]) if data.get("id") else None,
        )

    def callback_ids(self, query: Mapping[str, str]) -> Tuple[str, str]:
        ref = query.get("reference") or query.get("trxref") or ""
        return ref, query.get("trxref", "")
