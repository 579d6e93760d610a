"""
ArifPay hosted-checkout adapter.

create-session:  POST {base}/api/payment/create-session   (Api-Key header)
    -> {"ResponseCode": "0", "Data": {"URL": <hosted page>, "NA": <session>}}
notification:    {"data": {"sessionId": ..., "transactionStatus": "SUCCESS"}}
status:          GET  {base}/status/{session}
    -> {"ResponseCode": "0", "Data": {"TransactionStatus": ...}}
"""
from __future__ import annotations
import json
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from .errors import GatewayError, ValidationError
from .gateway import (
    FAILURE, OTHER, SUCCESS,
    CreateSessionResult, PaymentAdapter, SessionRequest, WebhookEvent,
)

_OUTCOMES = {
    "SUCCESS": SUCCESS,
    "FAILED": FAILURE,
    "FAILURE": FAILURE,
    "CANCELED": FAILURE,
    "CANCELLED": FAILURE,
    "EXPIRED": FAILURE,
}


def outcome_of(status: str) -> str:
    return _OUTCOMES.get((status or "").strip().upper(), OTHER)


class ArifPay(PaymentAdapter):
    def __init__(
        self, *, base_url: str, api_key: str, http: httpx.AsyncClient
    ) -> None:
        if not base_url or not api_key:
            raise RuntimeError("ArifPay needs ARIFPAY_BASE_URL and "
                               "ARIFPAY_API_KEY")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.http = http

    async def create_session(self, req: SessionRequest) -> CreateSessionResult:
        body = {
            "phone": req.phone,
            "email": req.email,
            "cbs": req.receiving_account,
            "nonce": req.transaction_id,
            "successUrl": req.success_url,
            "cancelUrl": req.failure_url,
            "errorUrl": req.failure_url,
            "notifyUrl": req.notify_url,
            "items": [{
                "name": it.name,
                "quantity": it.quantity,
                "price": it.price,
                "description": it.description,
            } for it in req.items],
        }
        try:
            resp = await self.http.post(
                f"{self.base_url}/api/payment/create-session",
                json=body,
                headers={"Api-Key": self.api_key},
            )
            result = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("ArifPay create-session failed for {}: {}",
                         req.transaction_id, e)
            raise GatewayError()

        if not isinstance(result, dict):
            result = {}
        data = result.get("Data")
        if (
            result.get("ResponseCode") != "0"
            or not isinstance(data, dict)
            or not data.get("URL")
            or not data.get("NA")
        ):
            logger.error("ArifPay rejected session for {} (HTTP {}): {}",
                         req.transaction_id, resp.status_code, result)
            raise GatewayError()
        return {"session_id": str(data["NA"]), "redirect_url": data["URL"]}

    def parse_webhook(
            self, payload: bytes, headers: Dict[str, Any]
    ) -> WebhookEvent:
        try:
            body = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationError("Invalid JSON")
        if not isinstance(body, dict):
            raise ValidationError("Invalid JSON")

        data = body.get("data", body)
        if not isinstance(data, dict):
            raise ValidationError("Invalid notification payload")
        session_id = data.get("sessionId")
        if not session_id:
            raise ValidationError("Session ID is missing")
        status = str(
            data.get("transactionStatus") or data.get("outcome") or ""
        )
        return WebhookEvent(
            session_id=str(session_id),
            outcome=outcome_of(status),
            raw_status=status,
            idempotency_key=data.get("transactionId"),
        )

    async def session_status(self, session_id: str) -> Optional[str]:
        try:
            resp = await self.http.get(
                f"{self.base_url}/status/{session_id}",
                headers={"Api-Key": self.api_key},
            )
            if resp.status_code != 200:
                logger.warning("ArifPay status check for {} returned {}",
                               session_id, resp.status_code)
                return None
            result = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("ArifPay status check for {} failed: {}",
                           session_id, e)
            return None
        if not isinstance(result, dict):
            return None
        data = result.get("Data")
        if result.get("ResponseCode") == "0" and isinstance(data, dict):
            return data.get("TransactionStatus")
        return None
