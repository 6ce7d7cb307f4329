from __future__ import annotations
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
import secrets
from typing import Any, Mapping, Optional, Tuple

from ..errors import GatewayError
from ..helpers import now_ts

# normalized payment status
SUCCESS = "success"
FAILED = "failed"
PENDING = "pending"
UNKNOWN = "unknown"
STATUSES = (SUCCESS, FAILED, PENDING, UNKNOWN)


# ----------------------------
# Value types
# ----------------------------
@dataclass(frozen=True)
class BillingInfo:
    email: str
    name: str
    payment_type: str = ""


@dataclass(frozen=True)
class Capabilities:
    # initiation hands the payer an authorization URL
    redirect: bool = False
    # a stale attempt can be re-initiated under a fresh reference
    reinitialize: bool = False


@dataclass(frozen=True)
class Initiation:
    payment_id: str
    reference: str
    authorization_url: str = ""


@dataclass(frozen=True)
class PaymentStatus:
    payment_id: str
    status: str  # success | failed | pending | unknown
    amount: Optional[int] = None  # minor units
    transaction_id: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCESS


@dataclass(frozen=True)
class Notification:
    payment_id: str
    merchant_reference: str = ""
    kind: str = ""
    event_id: Optional[str] = None


def new_reference(prefix: str = "TIX") -> str:
    return f"{prefix}-{int(now_ts())}-{secrets.token_hex(6)}"


def retry_reference(original: str) -> str:
    # providers reject duplicate references: never reuse a failed one
    return f"{original}-retry-{int(now_ts())}-{secrets.token_hex(3)}"


def remember(table: OrderedDict[str, Any], key: str, value: Any,
             limit: int) -> None:
    """Insert into an in-process payment table, evicting the oldest entries."""
    table[key] = value
    table.move_to_end(key)
    while len(table) > limit:
        table.popitem(last=False)


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentGateway(ABC):
    name: str = ""
    capabilities: Capabilities = Capabilities()

    @abstractmethod
    async def initiate(self, amount: int, billing: BillingInfo,
                       reference: str) -> Initiation: ...

    # the single source of truth for a payment's outcome
    @abstractmethod
    async def query_status(self, payment_id: str) -> PaymentStatus: ...

    @abstractmethod
    def parse_notification(self, payload: bytes,
                           headers: Mapping[str, str]) -> Notification: ...

    # (tracking id, merchant reference) from a browser callback
    @abstractmethod
    def callback_ids(self, query: Mapping[str, str]
                     ) -> Tuple[str, str]: ...

    async def purchase(self, amount: int, billing: BillingInfo,
                       reference: str) -> PaymentStatus:
        raise GatewayError(
            f"{self.name} does not settle payments synchronously",
            provider=self.name,
        )

    async def aclose(self) -> None:
        return None
