# model/inventory.py
"""
Inventory ledger: per-tier sold counters bounded by capacity.

Capacity is consumed only while an order is reconciled, by a single
conditional UPDATE, so two transactions racing for the last seats serialize
on the tier row and the loser sees zero rows instead of overselling.
"""
from __future__ import annotations
from typing import Any, Dict, Iterable, List

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from .orm import TicketTier


# UN-GATED internal function; caller owns the transaction
async def consume(db: AsyncSession, tier_id: str, qty: int) -> bool:
    """
    Increment `sold_count` by `qty` if it stays within `capacity`.
    Returns False (and changes nothing) if there is not enough room left.
    """
    if qty <= 0:
        raise ValueError("qty must be positive")
    row = (await db.execute(text("""
        UPDATE ticket_tiers
        SET sold_count = sold_count + :q
        WHERE id = :id
          AND sold_count + :q <= capacity
        RETURNING id
    """), {"id": tier_id, "q": qty})).first()
    return row is not None


async def tiers_by_id(
    db: AsyncSession, tier_ids: Iterable[str]
) -> Dict[str, TicketTier]:
    ids = list(set(tier_ids))
    if not ids:
        return {}
    rows = (await db.execute(
        select(TicketTier).where(TicketTier.id.in_(ids))
    )).scalars().all()
    return {t.id: t for t in rows}


def _tier_view(t: TicketTier) -> Dict[str, Any]:
    available = t.capacity - t.sold_count
    return {
        "id": t.id,
        "name": t.name,
        "unit_price": t.unit_price,
        "capacity": t.capacity,
        "sold": t.sold_count,
        "available": available,
        "sold_out": available <= 0,
    }


async def availability(db: AsyncSession, event_id: str) -> List[Dict[str, Any]]:
    """Unguarded read of every tier of an event, for display."""
    rows = (await db.execute(
        select(TicketTier)
        .where(TicketTier.event_id == event_id)
        .order_by(TicketTier.unit_price.desc(), TicketTier.name)
    )).scalars().all()
    return [_tier_view(t) for t in rows]
