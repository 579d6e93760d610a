"""
Ticket check-in: NOT_CHECKED_IN -> CHECKED_IN, exactly once per attendee.

A QR code carries `{"ticketId", "eventId", "attendeeName"}`. The ticket is
identified by attendee id *and* event id, so a code lifted from one event
doesn't open the door of another.
"""
from __future__ import annotations
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import AlreadyCheckedInError, InvalidTicketError
from .helpers import now_ts
from .infra.sql import Gated
from .infra.timings import timeit
from .model import attendees


@dataclass(frozen=True)
class TicketRef:
    ticket_id: str
    event_id: Optional[str] = None
    attendee_name: Optional[str] = None


def encode_ticket_payload(
    ticket_id: str, event_id: str, attendee_name: str
) -> str:
    return json.dumps({
        "ticketId": ticket_id,
        "eventId": event_id,
        "attendeeName": attendee_name,
    }, separators=(",", ":"))


def with_qr_payload(ticket: Dict[str, Any]) -> Dict[str, Any]:
    a = ticket["attendee"]
    return {
        **ticket,
        "qr_payload": encode_ticket_payload(a["id"], a["event_id"],
                                            a["name"]),
    }


def decode_ticket_payload(raw: str) -> TicketRef:
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        raise InvalidTicketError("Invalid QR code format.")
    if not isinstance(data, dict) or not data.get("ticketId"):
        raise InvalidTicketError("Invalid QR code format.")
    event_id = data.get("eventId")
    return TicketRef(
        ticket_id=str(data["ticketId"]),
        event_id=str(event_id) if event_id else None,
        attendee_name=data.get("attendeeName"),
    )


async def _mark_checked_in(db: AsyncSession, ref: TicketRef) -> bool:
    # the check-and-set: two simultaneous scans can't both see False
    params: Dict[str, Any] = {"id": ref.ticket_id, "now": now_ts()}
    event_clause = ""
    if ref.event_id is not None:
        event_clause = "AND event_id = :eid"
        params["eid"] = ref.event_id
    row = (await db.execute(text(f"""
        UPDATE attendees
        SET checked_in = :yes, checked_in_at = :now
        WHERE id = :id
          {event_clause}
          AND checked_in = :no
        RETURNING id
    """), {**params, "yes": True, "no": False})).first()
    return row is not None


async def check_in(
    db: AsyncSession, gated: Gated, ref: TicketRef
) -> Dict[str, Any]:
    """
    Returns the checked-in ticket (attendee, event name, tier name).

    Raises:
        InvalidTicketError: unknown ticket, or one issued for another event.
        AlreadyCheckedInError: the ticket was used before; carries the same
            ticket data so the operator sees who it belongs to.
    """
    async with timeit("checkin.mark"):
        async with gated():
            async with db.begin():
                won = await _mark_checked_in(db, ref)
                ticket = await attendees.get_ticket(db, ref.ticket_id)

    if ticket is None or (
        ref.event_id is not None
        and ticket["attendee"]["event_id"] != ref.event_id
    ):
        logger.warning("check-in rejected: unknown ticket {} (event {})",
                       ref.ticket_id, ref.event_id)
        raise InvalidTicketError()
    if not won:
        logger.info("duplicate scan of ticket {} ({})",
                    ref.ticket_id, ticket["attendee"]["name"])
        raise AlreadyCheckedInError(ticket)

    logger.info("ticket {} checked in for event {}",
                ref.ticket_id, ticket["attendee"]["event_id"])
    return ticket
