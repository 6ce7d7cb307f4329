from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx

from ..config import Settings
from ..errors import UnknownProvider
from .base import (
    PaymentGateway, Capabilities, BillingInfo, Initiation, PaymentStatus,
    Notification, new_reference, retry_reference,
    SUCCESS, FAILED, PENDING, UNKNOWN, STATUSES,
)


@dataclass(frozen=True)
class GatewayEntry:
    name: str
    gateway: PaymentGateway
    capabilities: Capabilities


class GatewayRegistry:
    """Enabled providers by name.

    Capabilities are read once at registration; callers branch on
    ``entry.capabilities`` and never on the gateway's concrete type.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, GatewayEntry] = {}

    def register(self, gateway: PaymentGateway,
                 name: Optional[str] = None) -> GatewayEntry:
        name = (name or gateway.name).lower()
        entry = GatewayEntry(
            name=name,
            gateway=gateway,
            capabilities=Capabilities(
                redirect=bool(gateway.capabilities.redirect),
                reinitialize=bool(gateway.capabilities.reinitialize),
            ),
        )
        self._entries[name] = entry
        return entry

    def get(self, name: str) -> GatewayEntry:
        entry = self._entries.get((name or "").lower())
        if entry is None:
            raise UnknownProvider(name)
        return entry

    def names(self) -> List[str]:
        return list(self._entries)

    def __contains__(self, name: str) -> bool:
        return (name or "").lower() in self._entries

    async def aclose(self) -> None:
        for entry in self._entries.values():
            await entry.gateway.aclose()


def build_registry(settings: Settings,
                   http: httpx.AsyncClient) -> GatewayRegistry:
    from .mockpay import MockPay
    from .instant import InstantPay
    from .paystack import Paystack
    from .pesapal import Pesapal

    reg = GatewayRegistry()
    for name in settings.providers:
        if name == "mockpay":
            reg.register(MockPay(
                settings.mock_secret,
                notify_url=f"{settings.public_base_url}/payment/notify/mockpay",
                http=http,
            ))
        elif name == "instant":
            reg.register(InstantPay())
        elif name == "paystack":
            reg.register(Paystack(
                settings.paystack_secret_key, http,
                callback_url=settings.callback_url("paystack"),
                currency=settings.currency,
                base_url=settings.paystack_base_url,
            ))
        elif name == "pesapal":
            reg.register(Pesapal(
                settings.pesapal_consumer_key,
                settings.pesapal_consumer_secret,
                http,
                callback_url=settings.callback_url("pesapal"),
                ipn_id=settings.pesapal_ipn_id,
                currency=settings.currency,
                environment=settings.pesapal_environment,
            ))
        else:
            raise UnknownProvider(name)
    return reg


__all__ = [
    "GatewayEntry", "GatewayRegistry", "build_registry",
    "PaymentGateway", "Capabilities", "BillingInfo", "Initiation",
    "PaymentStatus", "Notification", "new_reference", "retry_reference",
    "SUCCESS", "FAILED", "PENDING", "UNKNOWN", "STATUSES",
]
