from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Optional, Tuple


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


# ----------------------------
# Settings
# ----------------------------
@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./boxoffice.db"
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    # concurrent DB sections; None follows the pool size
    db_gate_limit: Optional[int] = None
    pending_backend: str = "sql"  # 'sql' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"
    pending_ttl_seconds: int = 3600
    cart_ttl_seconds: int = 15 * 60
    session_secret: str = "dev-secret-change-me"
    public_base_url: str = "http://localhost:8000"
    currency: str = "KES"
    status_query_timeout: float = 10.0
    http_timeout: float = 30.0
    providers: Tuple[str, ...] = ("mockpay", "instant")
    mock_secret: str = "supersecret"
    paystack_secret_key: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    pesapal_consumer_key: str = ""
    pesapal_consumer_secret: str = ""
    pesapal_environment: str = "sandbox"
    pesapal_ipn_id: str = ""
    admin_user_ids: Tuple[int, ...] = ()
    env: str = "development"

    @classmethod
    def from_env(cls) -> "Settings":
        providers = os.environ.get("PAYMENT_PROVIDERS", "mockpay,instant")
        admins = os.environ.get("ADMIN_USER_IDS", "")
        return cls(
            database_url=os.environ.get(
                "DATABASE_URL", "sqlite:///./boxoffice.db"
            ),
            db_pool_size=_env_int("DB_POOL_SIZE", 10),
            db_max_overflow=_env_int("DB_MAX_OVERFLOW", 10),
            db_pool_timeout=_env_int("DB_POOL_TIMEOUT", 30),
            db_gate_limit=_env_int("DB_GATE_LIMIT", 0) or None,
            pending_backend=os.environ.get(
                "PENDING_BACKEND", "sql"
            ).lower(),
            redis_url=os.environ.get("REDIS_URL", "redis://127.0.0.1:6379"),
            pending_ttl_seconds=_env_int("PENDING_TTL_SECONDS", 3600),
            cart_ttl_seconds=_env_int("CART_TTL_SECONDS", 15 * 60),
            session_secret=os.environ.get(
                "SESSION_SECRET", "dev-secret-change-me"
            ),
            public_base_url=os.environ.get(
                "PUBLIC_BASE_URL", "http://localhost:8000"
            ).rstrip("/"),
            currency=os.environ.get("CURRENCY", "KES"),
            status_query_timeout=_env_float("STATUS_QUERY_TIMEOUT", 10.0),
            http_timeout=_env_float("HTTP_TIMEOUT", 30.0),
            providers=tuple(
                p.strip().lower() for p in providers.split(",") if p.strip()
            ),
            mock_secret=os.environ.get("MOCK_SECRET", "supersecret"),
            paystack_secret_key=os.environ.get("PAYSTACK_SECRET_KEY", ""),
            paystack_base_url=os.environ.get(
                "PAYSTACK_BASE_URL", "https://api.paystack.co"
            ),
            pesapal_consumer_key=os.environ.get("PESAPAL_CONSUMER_KEY", ""),
            pesapal_consumer_secret=os.environ.get(
                "PESAPAL_CONSUMER_SECRET", ""
            ),
            pesapal_environment=os.environ.get(
                "PESAPAL_ENVIRONMENT", "sandbox"
            ),
            pesapal_ipn_id=os.environ.get("PESAPAL_IPN_ID", ""),
            admin_user_ids=tuple(
                int(u) for u in admins.split(",") if u.strip()
            ),
            env=(os.environ.get("ENV") or "development").lower(),
        )

    def callback_url(self, provider: str) -> str:
        return f"{self.public_base_url}/payment/callback/{provider}"
