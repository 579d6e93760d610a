from typing import Any, Dict
import base64
import hashlib
import hmac
import json
import time
import uuid

from .errors import InvalidSignatureError, ValidationError
from .gateway import (
    FAILURE, OTHER, SUCCESS,
    CreateSessionResult, PaymentAdapter, SessionRequest, WebhookEvent,
)

SIGNATURE_HEADER = "x-mockpay-signature"

_OUTCOMES = {
    "succeeded": SUCCESS,
    "failed": FAILURE,
    "canceled": FAILURE,
}


def sign_payload(secret: str, payload: bytes) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


def build_event(psid: str, kind: str, amount: int, currency: str) -> bytes:
    """Webhook body MockPay sends for a button press on its payment page."""
    return json.dumps({
        "type": f"payment.{kind}",
        "payment_session_id": psid,
        "amount": int(amount),
        "currency": currency,
        "created_at": int(time.time()),
        "idempotency_key": f"evt_{uuid.uuid4().hex}",
    }).encode()


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    In-process stand-in for a hosted payment page: sessions are just ids,
    the buyer "pays" on /mockpay/{psid} and the outcome arrives as an HMAC
    signed webhook, exactly like a real provider would deliver it.
    """

    def __init__(self, secret: str) -> None:
        self.secret = secret

    async def create_session(self, req: SessionRequest) -> CreateSessionResult:
        psid = f"mock_{uuid.uuid4().hex}"
        return {"session_id": psid, "redirect_url": f"/mockpay/{psid}"}

    def parse_webhook(
            self, payload: bytes, headers: Dict[str, Any]
    ) -> WebhookEvent:
        sig = headers.get(SIGNATURE_HEADER)
        expected = sign_payload(self.secret, payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise InvalidSignatureError("Invalid signature")
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationError("Invalid JSON")
        if not isinstance(event, dict):
            raise ValidationError("Invalid JSON")

        psid = event.get("payment_session_id") or ""
        if not psid:
            raise ValidationError("missing payment_session_id")
        kind = str(event.get("type", "")).split(".")[-1]
        return WebhookEvent(
            session_id=psid,
            outcome=_OUTCOMES.get(kind, OTHER),
            raw_status=kind,
            idempotency_key=event.get("idempotency_key"),
        )
