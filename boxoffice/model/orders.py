from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, to_iso
from ..infra.sql import Gated
from .orm import COMPLETED, FAILED, PENDING, PendingOrder, PendingOrderItem


# ------------------------------------------------------------------------------
# Conditional transitions (UN-GATED; caller owns the transaction)
# ------------------------------------------------------------------------------
async def claim(db: AsyncSession, order_id: str) -> bool:
    """
    PENDING -> COMPLETED. Only one concurrent caller can win this row; the
    others see zero rows and must treat the delivery as a replay.
    """
    row = (await db.execute(text("""
        UPDATE pending_orders
        SET status = :done, settled_at = :now
        WHERE id = :id
          AND status = :pending
        RETURNING id
    """), {
        "id": order_id, "now": now_ts(),
        "done": COMPLETED, "pending": PENDING,
    })).first()
    return row is not None


async def link_attendee(
    db: AsyncSession, order_id: str, attendee_id: str
) -> None:
    await db.execute(text("""
        UPDATE pending_orders
        SET linked_attendee_id = :a
        WHERE id = :id
    """), {"id": order_id, "a": attendee_id})


async def fail(db: AsyncSession, order_id: str, reason: str) -> bool:
    """PENDING -> FAILED. Returns False if the order already settled."""
    row = (await db.execute(text("""
        UPDATE pending_orders
        SET status = :failed, failure_reason = :reason, settled_at = :now
        WHERE id = :id
          AND status = :pending
        RETURNING id
    """), {
        "id": order_id, "reason": reason, "now": now_ts(),
        "failed": FAILED, "pending": PENDING,
    })).first()
    return row is not None


async def items_of(
    db: AsyncSession, order_id: str
) -> List[PendingOrderItem]:
    rows = (await db.execute(
        select(PendingOrderItem)
        .where(PendingOrderItem.order_id == order_id)
        .order_by(PendingOrderItem.id)
    )).scalars().all()
    return list(rows)


# ------------------------------------------------------------------------------
# Store
# ------------------------------------------------------------------------------
class PendingOrderStore:
    """Durable record of in-flight checkouts, one short transaction per call."""

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def create(
        self, order: PendingOrder, items: List[PendingOrderItem]
    ) -> None:
        async with self.gated():
            async with self.db.begin():
                self.db.add(order)
                await self.db.flush()
                for item in items:
                    item.order_id = order.id
                    self.db.add(item)

    async def attach_session(self, order_id: str, session_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                    UPDATE pending_orders
                    SET gateway_session_id = :sid
                    WHERE id = :id
                """), {"id": order_id, "sid": session_id})

    async def get_by_session(self, session_id: str) -> Optional[PendingOrder]:
        return await self._get_detached(
            PendingOrder.gateway_session_id == session_id
        )

    async def get_by_transaction(
        self, transaction_id: str
    ) -> Optional[PendingOrder]:
        return await self._get_detached(
            PendingOrder.transaction_id == transaction_id
        )

    async def _get_detached(self, where) -> Optional[PendingOrder]:
        # a detached snapshot: later rollbacks on this session can't expire
        # it, and a re-read always returns fresh column values
        async with self.gated():
            async with self.db.begin():
                order = (await self.db.execute(
                    select(PendingOrder).where(where)
                )).scalars().first()
                if order is not None:
                    self.db.expunge(order)
        return order

    async def mark_failed(self, order_id: str, reason: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                return await fail(self.db, order_id, reason)

    async def get_recent(self, limit: int = 200) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(PendingOrder)
                    .order_by(PendingOrder.created_at.desc())
                    .limit(max(1, min(limit, 500)))
                )).scalars().all()
        now = now_ts()
        return [{
            "transaction_id": o.transaction_id,
            "session_id": o.gateway_session_id or "",
            "event_id": o.event_id,
            "status": o.status,
            "reason": o.failure_reason or "",
            "amount": o.amount,
            "currency": o.currency,
            "quantity": int(o.buyer_payload.get("quantity", 0)),
            "name": o.buyer_payload.get("name", ""),
            "created_at_iso": to_iso(o.created_at),
            "age_ms": int(max(0.0, now - o.created_at) * 1000),
            "attendee_id": o.linked_attendee_id or "",
        } for o in rows]
