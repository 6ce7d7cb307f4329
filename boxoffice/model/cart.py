"""Session-held shopping cart.

The cart lives as a JSON string under ``session["cart"]``. It belongs to
exactly one event, and expiry is checked lazily on every read: an
expired cart reads back as an empty one.
"""
from __future__ import annotations
import json
from dataclasses import dataclass, field, asdict
from typing import Callable, List, MutableMapping, Optional

from ..errors import CartError
from ..helpers import now_ts

SESSION_KEY = "cart"
CART_TTL_SECONDS = 15 * 60


@dataclass
class CartItem:
    ticket_type_id: int
    price: int  # minor units
    quantity: int
    ticket_name: str = ""
    subtotal: int = 0

    def recompute(self) -> None:
        self.subtotal = self.price * self.quantity


@dataclass
class Cart:
    event_id: Optional[int] = None
    event_title: str = ""
    items: List[CartItem] = field(default_factory=list)
    total_amount: int = 0
    expires_at: float = 0.0

    def is_empty(self) -> bool:
        return not self.items

    def is_expired(self, now: float) -> bool:
        return self.expires_at > 0 and now > self.expires_at

    def item(self, ticket_type_id: int) -> Optional[CartItem]:
        for it in self.items:
            if it.ticket_type_id == ticket_type_id:
                return it
        return None

    def recompute(self) -> None:
        for it in self.items:
            it.recompute()
        self.total_amount = sum(it.subtotal for it in self.items)

    def ticket_count(self) -> int:
        return sum(it.quantity for it in self.items)

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_dict(cls, d: dict) -> "Cart":
        return cls(
            event_id=d.get("event_id") or None,
            event_title=d.get("event_title") or "",
            items=[
                CartItem(
                    ticket_type_id=int(it["ticket_type_id"]),
                    price=int(it["price"]),
                    quantity=int(it["quantity"]),
                    ticket_name=it.get("ticket_name") or "",
                    subtotal=int(it.get("subtotal") or 0),
                )
                for it in d.get("items") or []
            ],
            total_amount=int(d.get("total_amount") or 0),
            expires_at=float(d.get("expires_at") or 0.0),
        )

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "Cart":
        if not raw:
            return cls()
        try:
            return cls.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            # unreadable cart: start over
            return cls()


class CartStore:
    def __init__(self, ttl_seconds: int = CART_TTL_SECONDS,
                 clock: Callable[[], float] = now_ts) -> None:
        self.ttl = ttl_seconds
        self.clock = clock

    def get(self, session: MutableMapping) -> Cart:
        cart = Cart.from_json(session.get(SESSION_KEY))
        if cart.is_expired(self.clock()):
            return Cart()
        return cart

    def add(self, session: MutableMapping, ticket_type_id: int,
            quantity: int, unit_price: int, event_id: int,
            ticket_name: str = "", event_title: str = "") -> Cart:
        if quantity <= 0:
            raise CartError("quantity must be positive")
        if unit_price < 0:
            raise CartError("price must not be negative")

        cart = self.get(session)
        # switching events: drop the old cart before merging anything
        if cart.event_id is not None and cart.event_id != event_id:
            cart = Cart()
        if cart.event_id is None:
            cart.event_id = event_id
            cart.event_title = event_title

        item = cart.item(ticket_type_id)
        if item is None:
            cart.items.append(CartItem(
                ticket_type_id=ticket_type_id,
                price=unit_price,
                quantity=quantity,
                ticket_name=ticket_name,
            ))
        else:
            item.quantity += quantity
        cart.recompute()
        cart.expires_at = self.clock() + self.ttl
        self._save(session, cart)
        return cart

    def set_quantity(self, session: MutableMapping, ticket_type_id: int,
                     quantity: int) -> Cart:
        if quantity < 0:
            raise CartError("quantity must not be negative")

        cart = self.get(session)
        item = cart.item(ticket_type_id)
        if item is None:
            return cart
        if quantity == 0:
            cart.items.remove(item)
        else:
            item.quantity = quantity
        cart.recompute()
        cart.expires_at = self.clock() + self.ttl
        self._save(session, cart)
        return cart

    def clear(self, session: MutableMapping) -> Cart:
        cart = Cart()
        self._save(session, cart)
        return cart

    def _save(self, session: MutableMapping, cart: Cart) -> None:
        session[SESSION_KEY] = cart.to_json()
