from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..cart import Cart


@dataclass
class PendingPayment:
    """Links one payment attempt to the cart and billing that produced it."""
    payment_id: str
    provider: str
    reference: str
    cart: Cart
    billing_email: str
    billing_name: str
    user_id: int
    authorization_url: str = ""
    created_at: float = 0.0

    def to_mapping(self) -> Dict[str, str]:
        # flat string mapping: fits a redis hash and SQL bind params
        return {
            "payment_id": self.payment_id,
            "provider": self.provider,
            "reference": self.reference,
            "cart": self.cart.to_json(),
            "billing_email": self.billing_email,
            "billing_name": self.billing_name,
            "user_id": str(self.user_id),
            "authorization_url": self.authorization_url or "",
            "created_at": str(self.created_at),
        }

    @classmethod
    def from_mapping(cls, m: Dict[str, Any]) -> "PendingPayment":
        return cls(
            payment_id=m["payment_id"],
            provider=m.get("provider") or "",
            reference=m.get("reference") or "",
            cart=Cart.from_json(m.get("cart")),
            billing_email=m.get("billing_email") or "",
            billing_name=m.get("billing_name") or "",
            user_id=int(m.get("user_id") or 0),
            authorization_url=m.get("authorization_url") or "",
            created_at=float(m.get("created_at") or 0.0),
        )

    def summary(self, now: Optional[float] = None) -> Dict[str, Any]:
        out = {
            "payment_id": self.payment_id,
            "provider": self.provider,
            "reference": self.reference,
            "event_id": self.cart.event_id,
            "tickets": self.cart.ticket_count(),
            "amount": self.cart.total_amount,
            "email": self.billing_email,
            "user_id": self.user_id,
            "created_at": self.created_at,
            "status": "PENDING",
        }
        if now is not None:
            out["age_ms"] = int(max(0.0, now - self.created_at) * 1000)
        return out
