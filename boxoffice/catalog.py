"""
Events, tiers and promo codes: created by organizers (seeding and admin
tooling), read by the public event page. Counters on these rows are only
ever moved by the reconciliation engine.
"""
from __future__ import annotations
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .helpers import new_id, now_ts, to_iso
from .model import inventory
from .model.orm import FIXED, PERCENTAGE, Event, PromoCode, TicketTier


async def create_event(
    db: AsyncSession,
    name: str,
    *,
    location: str = "",
    starts_at: Optional[float] = None,
    receiving_account: Optional[str] = None,
) -> Event:
    event = Event(
        id=new_id(),
        name=name,
        location=location,
        starts_at=starts_at,
        receiving_account=receiving_account,
        created_at=now_ts(),
    )
    async with db.begin():
        db.add(event)
    return event


async def add_ticket_tier(
    db: AsyncSession,
    event_id: str,
    name: str,
    *,
    capacity: int,
    unit_price: int,
    sold_count: int = 0,
) -> TicketTier:
    if capacity < 0 or unit_price < 0:
        raise ValueError("capacity and unit_price must be non-negative")
    if not 0 <= sold_count <= capacity:
        raise ValueError("sold_count must be within capacity")
    tier = TicketTier(
        id=new_id(),
        event_id=event_id,
        name=name,
        capacity=capacity,
        sold_count=sold_count,
        unit_price=unit_price,
    )
    async with db.begin():
        db.add(tier)
    return tier


async def add_promo_code(
    db: AsyncSession,
    event_id: str,
    code: str,
    *,
    discount_kind: str,
    discount_value: int,
    usage_cap: int,
) -> PromoCode:
    if discount_kind not in (PERCENTAGE, FIXED):
        raise ValueError("discount_kind must be 'percentage' or 'fixed'")
    if discount_value < 0 or usage_cap < 0:
        raise ValueError("discount_value and usage_cap must be non-negative")
    promo = PromoCode(
        id=new_id(),
        event_id=event_id,
        code=code,
        discount_kind=discount_kind,
        discount_value=discount_value,
        usage_cap=usage_cap,
        usage_count=0,
    )
    async with db.begin():
        db.add(promo)
    return promo


async def event_page(
    db: AsyncSession, event_id: str
) -> Optional[Dict[str, Any]]:
    """Public event data with live tier availability, or None."""
    async with db.begin():
        event = (await db.execute(
            select(Event).where(Event.id == event_id)
        )).scalars().first()
        if event is None:
            return None
        tiers = await inventory.availability(db, event_id)
    return {
        "id": event.id,
        "name": event.name,
        "location": event.location,
        "starts_at": to_iso(event.starts_at),
        "on_sale": bool(event.receiving_account),
        "tiers": tiers,
    }
