from __future__ import annotations
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from ..helpers import is_valid_email


# ----------------------------
# Checkout
# ----------------------------
class LineItem(BaseModel):
    tier_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    unit_price: int = Field(ge=0)


class Buyer(BaseModel):
    name: str = Field(min_length=1)
    phone: str = ""
    email: Optional[str] = None
    user_id: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @field_validator("email")
    @classmethod
    def _check_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if not is_valid_email(v):
            raise ValueError("email must be a valid email address")
        return v.strip()


class CheckoutRequest(BaseModel):
    event_id: str = Field(min_length=1)
    line_items: List[LineItem] = Field(min_length=1)
    buyer: Buyer
    promo_code: Optional[str] = None

    @field_validator("promo_code")
    @classmethod
    def _blank_promo(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.line_items)


class BuyerPayload(BaseModel):
    """What the webhook needs to materialize tickets, stored on the order."""

    name: str
    phone: str = ""
    email: Optional[str] = None
    user_id: Optional[str] = None
    quantity: int


class CheckoutResponse(BaseModel):
    transaction_id: str
    redirect_url: str


# ----------------------------
# Status / check-in
# ----------------------------
class OrderStatus(BaseModel):
    status: str
    attendee_id: Optional[str] = None
    reason: Optional[str] = None


class CheckInRequest(BaseModel):
    # raw text decoded from the QR image, or the ticket reference directly
    payload: Optional[str] = None
    ticket_id: Optional[str] = None
    event_id: Optional[str] = None
