import os
from dataclasses import dataclass, field
from typing import FrozenSet


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in (
        "1", "true", "yes", "on"
    )


def _permissions(raw: str) -> FrozenSet[str]:
    return frozenset(p.strip() for p in raw.split(",") if p.strip())


# static capability set granted to a logged-in staff user
DEFAULT_STAFF_PERMISSIONS = "Scan QR:Read,Scan QR:Update,Dashboard:Read"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./boxoffice.db"
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: int = 10

    # 'mock' | 'arifpay'
    payment_backend: str = "mock"
    arifpay_base_url: str = ""
    arifpay_api_key: str = ""
    mock_secret: str = "supersecret"
    mock_webhook_url: str = "http://localhost:8000/payments/webhook"
    public_base_url: str = "http://localhost:8000"
    currency: str = "ETB"

    # 'redis' | 'none'
    cache_backend: str = "none"
    redis_url: str = "redis://127.0.0.1:6379"
    cache_ttl_seconds: int = 60

    checkout_availability_check: bool = True

    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"
    staff_permissions: FrozenSet[str] = field(
        default_factory=lambda: _permissions(DEFAULT_STAFF_PERMISSIONS)
    )

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get(
                "DATABASE_URL", "sqlite:///./boxoffice.db"
            ),
            db_pool_size=int(os.environ.get("DB_POOL_SIZE", "10")),
            db_max_overflow=int(os.environ.get("DB_MAX_OVERFLOW", "10")),
            db_pool_timeout=int(os.environ.get("DB_POOL_TIMEOUT", "30")),
            db_gate_limit=int(os.environ.get("DB_GATE_LIMIT", "10")),
            payment_backend=os.environ.get(
                "PAYMENT_BACKEND", "mock"
            ).lower(),
            arifpay_base_url=os.environ.get("ARIFPAY_BASE_URL", ""),
            arifpay_api_key=os.environ.get("ARIFPAY_API_KEY", ""),
            mock_secret=os.environ.get("MOCK_SECRET", "supersecret"),
            mock_webhook_url=os.environ.get(
                "MOCK_WEBHOOK_URL",
                "http://localhost:8000/payments/webhook"
            ),
            public_base_url=os.environ.get(
                "PUBLIC_BASE_URL", "http://localhost:8000"
            ),
            currency=os.environ.get("CURRENCY", "ETB"),
            cache_backend=os.environ.get("CACHE_BACKEND", "none").lower(),
            redis_url=os.environ.get("REDIS_URL", "redis://127.0.0.1:6379"),
            cache_ttl_seconds=int(os.environ.get("CACHE_TTL_SECONDS", "60")),
            checkout_availability_check=_flag(
                "CHECKOUT_AVAILABILITY_CHECK", "1"
            ),
            session_secret=os.environ.get(
                "SESSION_SECRET", "dev-secret-change-me"
            ),
            admin_username=os.environ.get("ADMIN_USERNAME", "admin"),
            admin_password=os.environ.get("ADMIN_PASSWORD", "supasecret"),
            staff_permissions=_permissions(
                os.environ.get("STAFF_PERMISSIONS", DEFAULT_STAFF_PERMISSIONS)
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
