from collections import OrderedDict
from typing import Mapping, Tuple
import uuid

from ..errors import GatewayError, NotificationError
from .base import (
    PaymentGateway, Capabilities, BillingInfo, Initiation, PaymentStatus,
    Notification, SUCCESS, UNKNOWN, remember,
)


class InstantPay(PaymentGateway):
    """Synchronous provider: the charge settles inside the checkout request.

    Development only: settled charges live in process memory and only
    the newest ``max_payments`` are kept.
    """
    name = "instant"
    capabilities = Capabilities(redirect=False, reinitialize=False)

    def __init__(self, max_payments: int = 10_000) -> None:
        self.max_payments = max_payments
        self._settled: OrderedDict[str, PaymentStatus] = OrderedDict()

    async def initiate(self, amount: int, billing: BillingInfo,
                       reference: str) -> Initiation:
        raise GatewayError("instant payments have no redirect step",
                           provider=self.name)

    async def purchase(self, amount: int, billing: BillingInfo,
                       reference: str) -> PaymentStatus:
        if amount <= 0:
            raise GatewayError("amount must be positive", provider=self.name)
        payment_id = f"inst_{uuid.uuid4().hex}"
        status = PaymentStatus(
            payment_id=payment_id,
            status=SUCCESS,
            amount=amount,
            transaction_id=reference,
        )
        remember(self._settled, payment_id, status, self.max_payments)
        return status

    async def query_status(self, payment_id: str) -> PaymentStatus:
        return self._settled.get(
            payment_id, PaymentStatus(payment_id=payment_id, status=UNKNOWN)
        )

    def parse_notification(self, payload: bytes,
                           headers: Mapping[str, str]) -> Notification:
        raise NotificationError("instant payments send no notifications",
                                provider=self.name)

    def callback_ids(self, query: Mapping[str, str]) -> Tuple[str, str]:
        return query.get("payment_id", ""), ""
