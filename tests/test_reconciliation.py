import asyncio

import pytest
from sqlalchemy import delete, func, select

from boxoffice.errors import (
    GatewayError, NotFoundError, SoldOutError, ValidationError,
)
from boxoffice.gateway import FAILURE, OTHER, SUCCESS, WebhookEvent
from boxoffice.model.orm import (
    Attendee, PendingOrder, PendingOrderItem, PromoCode, TicketTier,
)
from boxoffice.model.schemas import Buyer, CheckoutRequest, LineItem


def paid(session_id: str) -> WebhookEvent:
    return WebhookEvent(session_id=session_id, outcome=SUCCESS,
                        raw_status="succeeded")


def declined(session_id: str) -> WebhookEvent:
    return WebhookEvent(session_id=session_id, outcome=FAILURE,
                        raw_status="failed")


async def sold(db_env, tier_id: str) -> int:
    async with db_env.sessions() as db:
        return (await db.execute(
            select(TicketTier.sold_count).where(TicketTier.id == tier_id)
        )).scalar_one()


async def attendee_count(db_env, transaction_id: str = None) -> int:
    q = select(func.count()).select_from(Attendee)
    if transaction_id is not None:
        q = q.join(PendingOrder, PendingOrder.id == Attendee.order_id).where(
            PendingOrder.transaction_id == transaction_id
        )
    async with db_env.sessions() as db:
        return (await db.execute(q)).scalar_one()


async def order_row(db_env, transaction_id: str) -> PendingOrder:
    async with db_env.sessions() as db:
        return (await db.execute(
            select(PendingOrder)
            .where(PendingOrder.transaction_id == transaction_id)
        )).scalars().one()


# ----------------------------
# initiate
# ----------------------------
async def test_initiate_persists_pending_order_without_touching_inventory(
    reconciler, seeded, db_env, buy
):
    tid, psid = await buy((seeded.regular_id, 3))

    order = await order_row(db_env, tid)
    assert order.status == "PENDING"
    assert order.gateway_session_id == psid
    assert order.amount == 3 * seeded.prices[seeded.regular_id]
    assert order.buyer_payload["quantity"] == 3
    assert order.buyer_payload["name"] == "Abebe Kebede"
    assert await sold(db_env, seeded.regular_id) == 0
    assert (await reconciler.poll_status(tid)).status == "PENDING"


async def test_initiate_applies_promo_discount(seeded, db_env, buy):
    tid, _ = await buy((seeded.regular_id, 2), promo_code="HALF")
    order = await order_row(db_env, tid)
    assert order.amount == seeded.prices[seeded.regular_id]
    assert order.promo_code == "HALF"


async def test_initiate_rejects_unknown_event(reconciler, seeded):
    with pytest.raises(NotFoundError):
        await reconciler.initiate(CheckoutRequest(
            event_id="nope",
            line_items=[LineItem(tier_id=seeded.regular_id, quantity=1,
                                 unit_price=1000)],
            buyer=Buyer(name="A"),
        ))


async def test_initiate_rejects_event_without_receiving_account(
    reconciler, seeded, db_env
):
    async with db_env.sessions() as db:
        tier = (await db.execute(
            select(TicketTier)
            .where(TicketTier.event_id == seeded.no_account_event_id)
        )).scalars().one()
    with pytest.raises(NotFoundError):
        await reconciler.initiate(CheckoutRequest(
            event_id=seeded.no_account_event_id,
            line_items=[LineItem(tier_id=tier.id, quantity=1,
                                 unit_price=tier.unit_price)],
            buyer=Buyer(name="A"),
        ))


async def test_initiate_rejects_tier_of_other_event(reconciler, seeded):
    with pytest.raises(ValidationError):
        await reconciler.initiate(CheckoutRequest(
            event_id=seeded.other_event_id,
            line_items=[LineItem(tier_id=seeded.regular_id, quantity=1,
                                 unit_price=1000)],
            buyer=Buyer(name="A"),
        ))


async def test_initiate_rejects_stale_price(reconciler, seeded):
    with pytest.raises(ValidationError):
        await reconciler.initiate(CheckoutRequest(
            event_id=seeded.event_id,
            line_items=[LineItem(tier_id=seeded.regular_id, quantity=1,
                                 unit_price=1)],
            buyer=Buyer(name="A"),
        ))


async def test_initiate_rejects_unknown_promo(seeded, buy):
    with pytest.raises(ValidationError):
        await buy((seeded.regular_id, 1), promo_code="NOPE")


async def test_initiate_advisory_sold_out(seeded, buy):
    with pytest.raises(SoldOutError):
        await buy((seeded.vip_id, 3))


async def test_initiate_gateway_failure_leaves_order_pending(
    reconciler, seeded, db_env, buy, monkeypatch
):
    async def refuse(req):
        raise GatewayError()

    monkeypatch.setattr(reconciler.adapter, "create_session", refuse)
    with pytest.raises(GatewayError):
        await buy((seeded.regular_id, 1))
    async with db_env.sessions() as db:
        orders = (await db.execute(select(PendingOrder))).scalars().all()
    assert [o.status for o in orders] == ["PENDING"]
    assert orders[0].gateway_session_id is None


# ----------------------------
# reconcile
# ----------------------------
async def test_happy_path_materializes_one_attendee_per_seat(
    reconciler, seeded, db_env, buy
):
    tid, psid = await buy((seeded.regular_id, 2), user_id="u-1")

    result = await reconciler.reconcile(paid(psid))

    assert result.status == "COMPLETED"
    assert not result.idempotent
    assert result.attendee_id
    assert await sold(db_env, seeded.regular_id) == 2
    assert await attendee_count(db_env, tid) == 2
    status = await reconciler.poll_status(tid)
    assert status.status == "COMPLETED"
    assert status.attendee_id == result.attendee_id


async def test_replayed_success_webhook_is_a_no_op(
    reconciler, seeded, db_env, buy
):
    tid, psid = await buy((seeded.regular_id, 1))
    first = await reconciler.reconcile(paid(psid))
    again = await reconciler.reconcile(paid(psid))

    assert again.idempotent
    assert again.status == "COMPLETED"
    assert again.attendee_id == first.attendee_id
    assert await sold(db_env, seeded.regular_id) == 1
    assert await attendee_count(db_env, tid) == 1


async def test_concurrent_duplicate_deliveries_settle_once(
    reconciler, seeded, db_env, buy
):
    tid, psid = await buy((seeded.regular_id, 2))

    results = await asyncio.gather(
        *[reconciler.reconcile(paid(psid)) for _ in range(5)]
    )

    assert [r.status for r in results] == ["COMPLETED"] * 5
    assert sum(1 for r in results if not r.idempotent) == 1
    assert len({r.attendee_id for r in results}) == 1
    assert await sold(db_env, seeded.regular_id) == 2
    assert await attendee_count(db_env, tid) == 2


async def test_unknown_session_is_not_found(reconciler, seeded):
    with pytest.raises(NotFoundError):
        await reconciler.reconcile(paid("mock_does_not_exist"))


async def test_failed_payment_settles_failed_without_side_effects(
    reconciler, seeded, db_env, buy
):
    tid, psid = await buy((seeded.regular_id, 1), promo_code="HALF")

    result = await reconciler.reconcile(declined(psid))

    assert result.status == "FAILED"
    assert result.reason == "payment_failed"
    assert await sold(db_env, seeded.regular_id) == 0
    assert await attendee_count(db_env) == 0
    status = await reconciler.poll_status(tid)
    assert status.status == "FAILED"
    assert status.reason == "payment_failed"


async def test_late_success_after_failure_changes_nothing(
    reconciler, seeded, db_env, buy
):
    tid, psid = await buy((seeded.regular_id, 1))
    await reconciler.reconcile(declined(psid))

    result = await reconciler.reconcile(paid(psid))

    assert result.idempotent
    assert result.status == "FAILED"
    assert await attendee_count(db_env) == 0
    assert await sold(db_env, seeded.regular_id) == 0


async def test_intermediate_outcome_keeps_order_pending(
    reconciler, seeded, buy
):
    tid, psid = await buy((seeded.regular_id, 1))
    result = await reconciler.reconcile(
        WebhookEvent(session_id=psid, outcome=OTHER, raw_status="PENDING")
    )
    assert result.status == "PENDING"
    assert result.idempotent
    assert (await reconciler.poll_status(tid)).status == "PENDING"


async def test_order_without_items_settles_failed(
    reconciler, seeded, db_env, buy
):
    tid, psid = await buy((seeded.regular_id, 2))
    order = await order_row(db_env, tid)
    async with db_env.sessions() as db:
        async with db.begin():
            await db.execute(delete(PendingOrderItem)
                             .where(PendingOrderItem.order_id == order.id))

    result = await reconciler.reconcile(paid(psid))
    again = await reconciler.reconcile(paid(psid))

    assert result.status == "FAILED"
    assert result.reason == "no_items"
    assert again.idempotent
    assert again.status == "FAILED"
    assert await attendee_count(db_env) == 0
    assert (await order_row(db_env, tid)).failure_reason == "no_items"


async def test_sold_out_race_never_oversells(reconciler, seeded, db_env, buy):
    # VIP holds 2 seats; five buyers each paid for one
    orders = [await buy((seeded.vip_id, 1)) for _ in range(5)]

    results = await asyncio.gather(
        *[reconciler.reconcile(paid(psid)) for _, psid in orders]
    )

    completed = [r for r in results if r.status == "COMPLETED"]
    failed = [r for r in results if r.status == "FAILED"]
    assert len(completed) == 2
    assert len(failed) == 3
    assert {r.reason for r in failed} == {"capacity_exceeded"}
    assert await sold(db_env, seeded.vip_id) == 2
    assert await attendee_count(db_env) == 2


async def test_completed_orders_and_attendees_match(
    reconciler, seeded, db_env, buy
):
    orders = [await buy((seeded.vip_id, 1)) for _ in range(4)]
    await asyncio.gather(
        *[reconciler.reconcile(paid(psid)) for _, psid in orders]
    )

    async with db_env.sessions() as db:
        rows = (await db.execute(select(PendingOrder))).scalars().all()
    for order in rows:
        n = await attendee_count(db_env, order.transaction_id)
        if order.status == "COMPLETED":
            assert n == 1
            assert order.linked_attendee_id is not None
        else:
            assert order.status == "FAILED"
            assert n == 0
            assert order.linked_attendee_id is None


async def test_multi_tier_order_consumes_each_tier(
    reconciler, seeded, db_env, buy
):
    tid, psid = await buy((seeded.regular_id, 2), (seeded.vip_id, 1))
    order = await order_row(db_env, tid)
    assert order.amount == 2 * 1_000 + 5_000

    result = await reconciler.reconcile(paid(psid))

    assert result.status == "COMPLETED"
    assert await sold(db_env, seeded.regular_id) == 2
    assert await sold(db_env, seeded.vip_id) == 1
    async with db_env.sessions() as db:
        tiers = (await db.execute(
            select(Attendee.ticket_tier_id)
            .where(Attendee.order_id == order.id)
        )).scalars().all()
    assert sorted(tiers) == sorted(
        [seeded.regular_id] * 2 + [seeded.vip_id]
    )


async def test_capacity_miss_rolls_back_every_tier(
    reconciler, seeded, db_env, buy
):
    _, first = await buy((seeded.vip_id, 2))
    tid, second = await buy((seeded.regular_id, 2), (seeded.vip_id, 1))
    await reconciler.reconcile(paid(first))

    result = await reconciler.reconcile(paid(second))

    assert result.status == "FAILED"
    assert result.reason == "capacity_exceeded"
    # nothing of the partial consumption survives
    assert await sold(db_env, seeded.regular_id) == 0
    assert await sold(db_env, seeded.vip_id) == 2
    assert await attendee_count(db_env, tid) == 0


async def test_promo_cap_is_enforced_at_reconciliation(
    reconciler, seeded, db_env, buy
):
    tid_a, a = await buy((seeded.regular_id, 1), promo_code="HALF")
    tid_b, b = await buy((seeded.regular_id, 1), promo_code="HALF")

    ra = await reconciler.reconcile(paid(a))
    rb = await reconciler.reconcile(paid(b))

    assert ra.status == "COMPLETED"
    assert rb.status == "FAILED"
    assert rb.reason == "promo_exhausted"
    assert await sold(db_env, seeded.regular_id) == 1
    async with db_env.sessions() as db:
        promo = (await db.execute(select(PromoCode))).scalars().one()
    assert promo.usage_count == promo.usage_cap == 1


async def test_poll_unknown_transaction(reconciler, seeded):
    with pytest.raises(NotFoundError):
        await reconciler.poll_status("nope")


async def test_gateway_status_for_mockpay_order(reconciler, seeded, buy):
    tid, psid = await buy((seeded.regular_id, 1))
    view = await reconciler.gateway_status(tid)
    assert view == {
        "transaction_id": tid,
        "status": "PENDING",
        "session_id": psid,
        "gateway_status": None,
    }
