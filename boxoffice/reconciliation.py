"""
Order reconciliation: checkout -> gateway -> webhook -> confirmed tickets.

initiate()    persists a PENDING order, asks the gateway for a hosted
              payment session (outside any DB transaction) and returns the
              redirect URL. No inventory is touched here.
reconcile()   turns one webhook delivery into final state. On success a
              single transaction claims the order, consumes capacity per
              line item, redeems the promo code and materializes attendees;
              any miss rolls all of it back and the order settles FAILED.
poll_status() read-only view for the buyer's browser.

Webhooks are keyed by gateway session id and may arrive any number of
times, in any order; only the PENDING -> COMPLETED/FAILED transition has an
effect, and it can only be won once.
"""
from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import urlencode

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .cache import PageCache, k_event, k_tickets
from .config import Settings
from .errors import (
    AlreadyProcessedError,
    CapacityExceededError,
    EmptyOrderError,
    GatewayError,
    NotFoundError,
    PromoExhaustedError,
    SoldOutError,
    ValidationError,
)
from .gateway import (
    FAILURE, SUCCESS, GatewayItem, PaymentAdapter, SessionRequest,
    WebhookEvent,
)
from .helpers import format_phone_number, new_id, now_ts
from .infra.sql import Gated
from .infra.timings import timeit
from .model import attendees, inventory, orders
from .model import promo as promos
from .model.orders import PendingOrderStore
from .model.orm import (
    COMPLETED, FAILED, PENDING, Event, PendingOrder, PendingOrderItem,
    TicketTier,
)
from .model.schemas import (
    BuyerPayload, CheckoutRequest, CheckoutResponse, OrderStatus,
)

GUEST_EMAIL = "guest@example.com"
PAYMENT_FAILED = "payment_failed"


@dataclass(frozen=True)
class ReconcileResult:
    transaction_id: str
    status: str
    # True when this delivery changed nothing (replay, or lost a race)
    idempotent: bool = False
    attendee_id: Optional[str] = None
    reason: Optional[str] = None


class ReconciliationEngine:
    def __init__(
        self,
        *,
        sessions: async_sessionmaker[AsyncSession],
        gated: Gated,
        adapter: PaymentAdapter,
        cache: PageCache,
        settings: Settings,
    ) -> None:
        self.sessions = sessions
        self.gated = gated
        self.adapter = adapter
        self.cache = cache
        self.settings = settings

    # ----------------------------
    # initiate
    # ----------------------------
    async def initiate(self, req: CheckoutRequest) -> CheckoutResponse:
        async with self.sessions() as db:
            async with timeit("checkout.load"):
                async with self.gated():
                    async with db.begin():
                        event = (await db.execute(
                            select(Event).where(Event.id == req.event_id)
                        )).scalars().first()
                        tiers = await inventory.tiers_by_id(
                            db, [li.tier_id for li in req.line_items]
                        )
                        promo = None
                        if req.promo_code:
                            promo = await promos.find(
                                db, req.event_id, req.promo_code
                            )

            if event is None:
                raise NotFoundError("Event not found.")
            if not event.receiving_account:
                raise NotFoundError(
                    "Event organizer or receiving account not configured."
                )

            subtotal = self._check_line_items(req, event, tiers)
            discount = 0
            if req.promo_code:
                if promo is None or not promos.is_redeemable(promo):
                    raise ValidationError(
                        "Promo code is invalid or no longer active."
                    )
                discount = promos.discount_for(
                    promo.discount_kind, promo.discount_value, subtotal
                )
            amount = subtotal - discount

            buyer = BuyerPayload(
                name=req.buyer.name,
                phone=req.buyer.phone,
                email=req.buyer.email,
                user_id=req.buyer.user_id,
                quantity=req.total_quantity,
            )
            order = PendingOrder(
                id=new_id(),
                transaction_id=new_id(),
                event_id=event.id,
                ticket_tier_id=req.line_items[0].tier_id,
                buyer_payload=buyer.model_dump(),
                promo_code=promo.code if promo is not None else None,
                amount=amount,
                currency=self.settings.currency,
                status=PENDING,
                created_at=now_ts(),
            )
            items = [
                PendingOrderItem(
                    ticket_tier_id=li.tier_id,
                    quantity=li.quantity,
                    unit_price=tiers[li.tier_id].unit_price,
                )
                for li in req.line_items
            ]

            store = PendingOrderStore(db=db, gated=self.gated)
            async with timeit("orders.create"):
                await store.create(order, items)

            # no transaction is open across the gateway round trip
            session_req = self._session_request(
                order, event, tiers, req, discount
            )
            try:
                async with timeit("gateway.create_session"):
                    result = await self.adapter.create_session(session_req)
            except GatewayError:
                logger.warning("gateway refused checkout {} (order stays "
                               "PENDING)", order.transaction_id)
                raise

            async with timeit("orders.attach_session"):
                await store.attach_session(order.id, result["session_id"])

        logger.info(
            "checkout {} created: event={} qty={} amount={} session={}",
            order.transaction_id, event.id, buyer.quantity, amount,
            result["session_id"],
        )
        return CheckoutResponse(
            transaction_id=order.transaction_id,
            redirect_url=result["redirect_url"],
        )

    def _check_line_items(
        self,
        req: CheckoutRequest,
        event: Event,
        tiers: Dict[str, TicketTier],
    ) -> int:
        wanted: Dict[str, int] = defaultdict(int)
        subtotal = 0
        for li in req.line_items:
            tier = tiers.get(li.tier_id)
            if tier is None or tier.event_id != event.id:
                raise ValidationError("Unknown ticket tier for this event.")
            if li.unit_price != tier.unit_price:
                raise ValidationError(
                    f"Price for {tier.name} has changed, please reload."
                )
            wanted[tier.id] += li.quantity
            subtotal += tier.unit_price * li.quantity

        # advisory only: capacity is consumed at reconciliation
        if self.settings.checkout_availability_check:
            for tier_id, qty in wanted.items():
                tier = tiers[tier_id]
                if tier.capacity - tier.sold_count < qty:
                    raise SoldOutError(
                        f"Not enough tickets left for {tier.name}."
                    )
        return subtotal

    def _session_request(
        self,
        order: PendingOrder,
        event: Event,
        tiers: Dict[str, TicketTier],
        req: CheckoutRequest,
        discount: int,
    ) -> SessionRequest:
        base = self.settings.public_base_url.rstrip("/")
        qs = urlencode({
            "transaction_id": order.transaction_id,
            "event_id": event.id,
        })
        if discount:
            # gateways take no negative lines: bill the discounted total
            items = [GatewayItem(
                name=f"{event.name} tickets (promo {order.promo_code})",
                quantity=1,
                price=order.amount,
            )]
        else:
            items = [GatewayItem(
                name=f"{event.name} - {tiers[li.tier_id].name}",
                quantity=li.quantity,
                price=li.unit_price,
            ) for li in req.line_items]
        return SessionRequest(
            transaction_id=order.transaction_id,
            event_id=event.id,
            amount=order.amount,
            currency=order.currency,
            phone=format_phone_number(req.buyer.phone),
            email=req.buyer.email or GUEST_EMAIL,
            receiving_account=event.receiving_account,
            success_url=f"{base}/payment/success?{qs}",
            failure_url=f"{base}/payment/failure?{qs}",
            notify_url=f"{base}/payments/webhook",
            items=items,
        )

    # ----------------------------
    # reconcile
    # ----------------------------
    async def reconcile(self, event: WebhookEvent) -> ReconcileResult:
        async with self.sessions() as db:
            store = PendingOrderStore(db=db, gated=self.gated)
            async with timeit("orders.get_by_session"):
                order = await store.get_by_session(event.session_id)
            if order is None:
                logger.warning("webhook for unknown session {}",
                               event.session_id)
                raise NotFoundError("Order not found.")

            tid = order.transaction_id
            if order.status != PENDING:
                if event.outcome == SUCCESS and order.status == FAILED:
                    logger.warning(
                        "late success for FAILED order {} (session {}); "
                        "needs a manual refund", tid, event.session_id,
                    )
                else:
                    logger.info("order {} already {}, ignoring replay",
                                tid, order.status)
                return self._settled(order, idempotent=True)

            if event.outcome == FAILURE:
                async with timeit("orders.mark_failed"):
                    changed = await store.mark_failed(order.id,
                                                      PAYMENT_FAILED)
                if not changed:
                    return await self._replayed(store, tid)
                logger.info("order {} FAILED: gateway reported {}",
                            tid, event.raw_status or "failure")
                return ReconcileResult(tid, FAILED, reason=PAYMENT_FAILED)

            if event.outcome != SUCCESS:
                logger.info("order {}: ignoring intermediate status {!r}",
                            tid, event.raw_status)
                return ReconcileResult(tid, PENDING, idempotent=True)

            try:
                async with timeit("orders.materialize"):
                    attendee_id = await self._complete(db, order)
            except AlreadyProcessedError:
                return await self._replayed(store, tid)
            except (CapacityExceededError, PromoExhaustedError,
                    EmptyOrderError) as e:
                changed = await store.mark_failed(order.id, e.reason)
                if not changed:
                    return await self._replayed(store, tid)
                logger.warning(
                    "order {} FAILED after payment ({}): refund required",
                    tid, e.reason,
                )
                await self._invalidate(order)
                return ReconcileResult(tid, FAILED, reason=e.reason)

        logger.info("order {} COMPLETED: {} ticket(s), first attendee {}",
                    tid, order.buyer_payload.get("quantity"), attendee_id)
        await self._invalidate(order)
        return ReconcileResult(tid, COMPLETED, attendee_id=attendee_id)

    async def _complete(self, db: AsyncSession, order: PendingOrder) -> str:
        """
        The atomic step. Claim, capacity, promo and attendees commit together
        or not at all; raising anywhere inside rolls every write back.
        """
        async with self.gated():
            async with db.begin():
                if not await orders.claim(db, order.id):
                    raise AlreadyProcessedError(order.transaction_id, "")

                items = await orders.items_of(db, order.id)
                if not items:
                    raise EmptyOrderError(order.transaction_id)
                # fixed lock order across concurrent multi-tier orders
                for item in sorted(items, key=lambda i: i.ticket_tier_id):
                    if not await inventory.consume(
                        db, item.ticket_tier_id, item.quantity
                    ):
                        raise CapacityExceededError(item.ticket_tier_id)

                if order.promo_code and not await promos.redeem(
                    db, order.event_id, order.promo_code
                ):
                    raise PromoExhaustedError(order.promo_code)

                buyer = BuyerPayload.model_validate(order.buyer_payload)
                created = attendees.materialize(db, order, items, buyer)
                await db.flush()
                await orders.link_attendee(db, order.id, created[0].id)
        return created[0].id

    def _settled(
        self, order: PendingOrder, idempotent: bool
    ) -> ReconcileResult:
        return ReconcileResult(
            order.transaction_id,
            order.status,
            idempotent=idempotent,
            attendee_id=order.linked_attendee_id,
            reason=order.failure_reason,
        )

    async def _replayed(
        self, store: PendingOrderStore, transaction_id: str
    ) -> ReconcileResult:
        # a concurrent delivery settled the order first
        order = await store.get_by_transaction(transaction_id)
        logger.info("order {} settled concurrently as {}",
                    transaction_id, order.status)
        return self._settled(order, idempotent=True)

    async def _invalidate(self, order: PendingOrder) -> None:
        keys: List[str] = [k_event(order.event_id)]
        user_id = order.buyer_payload.get("user_id")
        if user_id:
            keys.append(k_tickets(user_id))
        await self.cache.invalidate(*keys)

    # ----------------------------
    # poll
    # ----------------------------
    async def poll_status(self, transaction_id: str) -> OrderStatus:
        async with self.sessions() as db:
            store = PendingOrderStore(db=db, gated=self.gated)
            async with timeit("orders.get_by_transaction"):
                order = await store.get_by_transaction(transaction_id)
        if order is None:
            raise NotFoundError("Order not found.")
        if order.status == COMPLETED:
            return OrderStatus(status=COMPLETED,
                               attendee_id=order.linked_attendee_id)
        if order.status == FAILED:
            return OrderStatus(status=FAILED, reason=order.failure_reason)
        return OrderStatus(status=PENDING)

    async def gateway_status(self, transaction_id: str) -> Dict[str, object]:
        """Provider-side view of an order, for operators chasing a stuck
        PENDING order whose webhook never arrived."""
        async with self.sessions() as db:
            store = PendingOrderStore(db=db, gated=self.gated)
            order = await store.get_by_transaction(transaction_id)
        if order is None:
            raise NotFoundError("Order not found.")
        provider = None
        if order.gateway_session_id:
            provider = await self.adapter.session_status(
                order.gateway_session_id
            )
        return {
            "transaction_id": order.transaction_id,
            "status": order.status,
            "session_id": order.gateway_session_id,
            "gateway_status": provider,
        }
