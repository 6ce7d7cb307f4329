from typing import Any, Dict, Mapping, Optional, Tuple
import json
import time

import httpx
import structlog

from ..errors import GatewayError, NotificationError
from .base import (
    PaymentGateway, Capabilities, BillingInfo, Initiation, PaymentStatus,
    Notification, SUCCESS, FAILED, PENDING, UNKNOWN,
)

logger = structlog.get_logger(__name__)

SANDBOX_URL = "https://cybqa.pesapal.com/pesapalv3"
LIVE_URL = "https://pay.pesapal.com/v3"

_STATUS_MAP = {1: SUCCESS, 2: FAILED, 0: PENDING}


class Pesapal(PaymentGateway):
    """Pesapal v3.

    IPNs are unsigned: a notification only names a tracking id, and the
    outcome is always taken from GetTransactionStatus.
    """
    name = "pesapal"
    capabilities = Capabilities(redirect=True, reinitialize=False)

    def __init__(self, consumer_key: str, consumer_secret: str,
                 http: httpx.AsyncClient, *, callback_url: str,
                 ipn_id: str = "", currency: str = "KES",
                 environment: str = "sandbox") -> None:
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.http = http
        self.callback_url = callback_url
        self.ipn_id = ipn_id
        self.currency = currency
        self.base_url = SANDBOX_URL if environment == "sandbox" else LIVE_URL
        self._token: Optional[str] = None
        self._token_expires = 0.0

    async def _post(self, path: str, payload: Dict[str, Any],
                    token: Optional[str] = None) -> Dict[str, Any]:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            r = await self.http.post(f"{self.base_url}{path}", json=payload,
                                     headers=headers)
        except httpx.HTTPError as e:
            raise GatewayError(f"pesapal request failed: {e}",
                               provider=self.name) from e
        return self._decode(r, path)

    def _decode(self, r: httpx.Response, path: str) -> Dict[str, Any]:
        try:
            body = r.json()
        except ValueError:
            body = {}
        err = body.get("error")
        if r.status_code != 200 or err:
            msg = (err or {}).get("message") if isinstance(err, dict) else err
            msg = msg or body.get("message") or r.text
            logger.warning("pesapal.api_error", path=path,
                           status_code=r.status_code, message=msg)
            raise GatewayError(f"Pesapal error: {msg}", provider=self.name,
                               status_code=r.status_code)
        return body

    async def _authenticate(self) -> str:
        if self._token and time.time() < self._token_expires:
            return self._token
        body = await self._post("/api/Auth/RequestToken", {
            "consumer_key": self.consumer_key,
            "consumer_secret": self.consumer_secret,
        })
        token = body.get("token")
        if not token:
            raise GatewayError("authentication failed: no token",
                               provider=self.name)
        self._token = token
        # tokens last five minutes; refresh a little early
        self._token_expires = time.time() + 240
        return token

    async def initiate(self, amount: int, billing: BillingInfo,
                       reference: str) -> Initiation:
        token = await self._authenticate()
        first, _, last = billing.name.strip().partition(" ")
        body = await self._post("/api/Transactions/SubmitOrderRequest", {
            "id": reference,
            "currency": self.currency,
            "amount": amount / 100,
            "description": "Event Ticket Purchase",
            "callback_url": self.callback_url,
            "notification_id": self.ipn_id,
            "billing_address": {
                "email_address": billing.email,
                "first_name": first,
                "last_name": last or first,
            },
        }, token=token)
        tracking_id = body.get("order_tracking_id") or ""
        if not tracking_id:
            raise GatewayError("Pesapal returned no tracking id",
                               provider=self.name)
        return Initiation(
            payment_id=tracking_id,
            reference=body.get("merchant_reference") or reference,
            authorization_url=body.get("redirect_url") or "",
        )

    async def query_status(self, payment_id: str) -> PaymentStatus:
        token = await self._authenticate()
        try:
            r = await self.http.get(
                f"{self.base_url}/api/Transactions/GetTransactionStatus",
                params={"orderTrackingId": payment_id},
                headers={
                    "Accept": "application/json",
                    "Authorization": f"Bearer {token}",
                },
            )
        except httpx.HTTPError as e:
            raise GatewayError(f"pesapal request failed: {e}",
                               provider=self.name) from e
        body = self._decode(r, "/api/Transactions/GetTransactionStatus")
        amount = body.get("amount")
        return PaymentStatus(
            payment_id=payment_id,
            status=_STATUS_MAP.get(body.get("status_code"), UNKNOWN),
            amount=round(float(amount) * 100) if amount is not None else None,
            transaction_id=body.get("confirmation_code") or "",
        )

    def parse_notification(self, payload: bytes,
                           headers: Mapping[str, str]) -> Notification:
        try:
            ipn = json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise NotificationError("Invalid IPN data", provider=self.name)
        if not isinstance(ipn, dict) or not ipn.get("OrderTrackingId"):
            raise NotificationError("invalid IPN: missing order tracking ID",
                                    provider=self.name)
        return Notification(
            payment_id=ipn["OrderTrackingId"],
            merchant_reference=ipn.get("OrderMerchantReference", ""),
            kind=ipn.get("OrderNotificationType", ""),
        )

    def callback_ids(self, query: Mapping[str, str]) -> Tuple[str, str]:
        return (
            query.get("OrderTrackingId", ""),
            query.get("OrderMerchantReference", ""),
        )
