import time
import re
import secrets
from datetime import datetime, timezone
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    return re.match(
        r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$", email
    ) is not None


def ticket_code(order_id: int, ticket_type_id: int,
                ts: Optional[float] = None) -> str:
    # TKT-{order}-{type}-{unix}-{32 hex}; uniqueness comes from the
    # random part, not from a counter
    ts = now_ts() if ts is None else ts
    return (
        f"TKT-{order_id}-{ticket_type_id}-{int(ts)}-{secrets.token_hex(16)}"
    )


def order_number(ts: Optional[float] = None) -> str:
    ts = now_ts() if ts is None else ts
    day = datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y%m%d")
    return f"ORD-{day}-{secrets.randbelow(1_000_000):06d}"


def format_amount(minor: int, currency: str = "KES") -> str:
    return f"{currency} {minor / 100:.2f}"


def is_htmx(headers) -> bool:
    return headers.get("hx-request", "").lower() == "true"
