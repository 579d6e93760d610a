# model/promo.py
from __future__ import annotations
from typing import Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from .orm import FIXED, PERCENTAGE, PromoCode


async def find(
    db: AsyncSession, event_id: str, code: str
) -> Optional[PromoCode]:
    return (await db.execute(
        select(PromoCode).where(
            PromoCode.event_id == event_id, PromoCode.code == code
        )
    )).scalars().first()


def is_redeemable(promo: PromoCode) -> bool:
    return promo.usage_count < promo.usage_cap


def discount_for(kind: str, value: int, subtotal: int) -> int:
    """
    Discount in minor units for a subtotal. Percentage rounds down; the
    discount never exceeds the subtotal.
    """
    if subtotal <= 0 or value <= 0:
        return 0
    if kind == PERCENTAGE:
        discount = subtotal * min(value, 100) // 100
    elif kind == FIXED:
        discount = value
    else:
        raise ValueError(f"unknown discount kind: {kind}")
    return min(discount, subtotal)


# UN-GATED internal function; caller owns the transaction
async def redeem(db: AsyncSession, event_id: str, code: str) -> bool:
    """
    Count one use of `code` if it is still under its cap.
    Returns False if the code is unknown or exhausted.
    """
    row = (await db.execute(text("""
        UPDATE promo_codes
        SET usage_count = usage_count + 1
        WHERE event_id = :e
          AND code = :c
          AND usage_count < usage_cap
        RETURNING id
    """), {"e": event_id, "c": code})).first()
    return row is not None
