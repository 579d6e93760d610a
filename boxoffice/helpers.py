import time
import re
import uuid
from datetime import datetime, timezone
import hmac
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


def new_id() -> str:
    return uuid.uuid4().hex


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def format_phone_number(phone: str) -> str:
    # local 09xxxxxxxx / 07xxxxxxxx -> 2519xxxxxxxx / 2517xxxxxxxx
    phone = (phone or "").strip()
    if len(phone) == 10 and phone[:2] in ("09", "07"):
        return "251" + phone[1:]
    return phone


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
