from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, now_ts, to_iso
from .orm import Attendee, Event, PendingOrder, PendingOrderItem, TicketTier
from .schemas import BuyerPayload


# UN-GATED internal function; caller owns the transaction
def materialize(
    db: AsyncSession,
    order: PendingOrder,
    items: List[PendingOrderItem],
    buyer: BuyerPayload,
) -> List[Attendee]:
    """
    One Attendee per purchased seat, in line-item order. Nothing is flushed
    here: the rows commit (or vanish) with the reconciliation transaction.
    """
    created = now_ts()
    out: List[Attendee] = []
    for item in items:
        for _ in range(item.quantity):
            out.append(Attendee(
                id=new_id(),
                name=buyer.name,
                email=buyer.email,
                event_id=order.event_id,
                ticket_tier_id=item.ticket_tier_id,
                user_id=buyer.user_id,
                order_id=order.id,
                checked_in=False,
                created_at=created,
            ))
    db.add_all(out)
    return out


def ticket_view(
    attendee: Attendee, event_name: str, tier_name: str
) -> Dict[str, Any]:
    return {
        "attendee": {
            "id": attendee.id,
            "name": attendee.name,
            "email": attendee.email,
            "event_id": attendee.event_id,
            "ticket_tier_id": attendee.ticket_tier_id,
            "user_id": attendee.user_id,
            "checked_in": bool(attendee.checked_in),
            "checked_in_at": to_iso(attendee.checked_in_at),
            "created_at": to_iso(attendee.created_at),
        },
        "event_name": event_name,
        "tier_name": tier_name,
    }


def _with_names():
    return (
        select(Attendee, Event.name, TicketTier.name)
        .join(Event, Event.id == Attendee.event_id)
        .join(TicketTier, TicketTier.id == Attendee.ticket_tier_id)
    )


async def get_ticket(
    db: AsyncSession, attendee_id: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        _with_names()
        .where(Attendee.id == attendee_id)
        .execution_options(populate_existing=True)
    )).first()
    if row is None:
        return None
    attendee, event_name, tier_name = row
    return ticket_view(attendee, event_name, tier_name)


async def list_for_user(
    db: AsyncSession, user_id: str
) -> List[Dict[str, Any]]:
    rows = (await db.execute(
        _with_names()
        .where(Attendee.user_id == user_id)
        .order_by(Attendee.created_at.desc())
    )).all()
    return [ticket_view(a, en, tn) for a, en, tn in rows]
