from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx

SETTLED = ("COMPLETED", "FAILED")
TIMEOUT = "TIMEOUT"

# what the success page does: every 2s, for one minute
DEFAULT_INTERVAL_S = 2.0
DEFAULT_MAX_ATTEMPTS = 30


@dataclass
class PollResult:
    status: str  # COMPLETED | FAILED | PENDING-turned-TIMEOUT
    attempts: int
    attendee_id: Optional[str] = None
    reason: Optional[str] = None


async def poll_until_settled(
    client: httpx.AsyncClient,
    base: str,
    transaction_id: str,
    *,
    interval_s: float = DEFAULT_INTERVAL_S,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> PollResult:
    """
    Poll GET /api/orders/{transaction_id} until the webhook has settled the
    order, giving up after `max_attempts` polls. Transport errors and non-200
    answers count as attempts; they never abort the loop early.
    """
    url = f"{base.rstrip('/')}/api/orders/{transaction_id}"
    attempts = 0
    while attempts < max_attempts:
        attempts += 1
        try:
            resp = await client.get(url, timeout=10.0)
        except httpx.HTTPError:
            resp = None
        if resp is not None and resp.status_code == 200:
            body = resp.json()
            status = body.get("status", "PENDING")
            if status in SETTLED:
                return PollResult(
                    status=status,
                    attempts=attempts,
                    attendee_id=body.get("attendee_id"),
                    reason=body.get("reason"),
                )
        if attempts < max_attempts:
            await asyncio.sleep(interval_s)
    return PollResult(status=TIMEOUT, attempts=attempts)
