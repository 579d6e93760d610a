from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TypedDict

import httpx

from .config import Settings

# WebhookEvent.outcome
SUCCESS = "success"
FAILURE = "failure"
OTHER = "other"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    session_id: str
    redirect_url: str


@dataclass
class GatewayItem:
    name: str
    quantity: int
    price: int
    description: str = "Event Ticket"


@dataclass
class SessionRequest:
    transaction_id: str
    event_id: str
    amount: int
    currency: str
    phone: str
    email: str
    receiving_account: str
    success_url: str
    failure_url: str
    notify_url: str
    items: List[GatewayItem] = field(default_factory=list)


@dataclass(frozen=True)
class WebhookEvent:
    session_id: str
    outcome: str  # success | failure | other
    raw_status: str = ""
    idempotency_key: Optional[str] = None


class PaymentAdapter(ABC):
    @abstractmethod
    async def create_session(
            self, req: SessionRequest
    ) -> CreateSessionResult: ...

    # raises InvalidSignatureError / ValidationError
    @abstractmethod
    def parse_webhook(
            self, payload: bytes, headers: Dict[str, Any]
    ) -> WebhookEvent: ...

    async def session_status(self, session_id: str) -> Optional[str]:
        """Provider-side status of a session, if the provider exposes it."""
        return None


def new_adapter(
    settings: Settings, http: httpx.AsyncClient
) -> PaymentAdapter:
    if settings.payment_backend == "arifpay":
        from .arifpay import ArifPay
        return ArifPay(
            base_url=settings.arifpay_base_url,
            api_key=settings.arifpay_api_key,
            http=http,
        )
    if settings.payment_backend == "mock":
        from .mockpay import MockPay
        return MockPay(secret=settings.mock_secret)
    raise RuntimeError(
        f"unknown PAYMENT_BACKEND: {settings.payment_backend!r}"
    )
