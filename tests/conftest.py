import json
from base64 import b64encode
from types import SimpleNamespace

import httpx
import itsdangerous
import pytest

from boxoffice import catalog
from boxoffice.cache import NullCache
from boxoffice.config import Settings
from boxoffice.infra.sql import make_async_engine
from boxoffice.mockpay import MockPay
from boxoffice.model.orm import PERCENTAGE, Base
from boxoffice.model.schemas import Buyer, CheckoutRequest, LineItem
from boxoffice.reconciliation import ReconciliationEngine
from boxoffice.server import create_app

REGULAR_PRICE = 1_000
VIP_PRICE = 5_000


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'boxoffice.db'}",
        public_base_url="http://test",
        mock_webhook_url="http://test/payments/webhook",
        log_level="WARNING",
    )


async def seed_catalog(sessions) -> SimpleNamespace:
    async with sessions() as db:
        event = await catalog.create_event(
            db, "Test Fest", location="Bole", receiving_account="ACC-1",
        )
        regular = await catalog.add_ticket_tier(
            db, event.id, "Regular", capacity=10, unit_price=REGULAR_PRICE,
        )
        vip = await catalog.add_ticket_tier(
            db, event.id, "VIP", capacity=2, unit_price=VIP_PRICE,
        )
        await catalog.add_promo_code(
            db, event.id, "HALF",
            discount_kind=PERCENTAGE, discount_value=50, usage_cap=1,
        )
        other = await catalog.create_event(
            db, "Other Fest", receiving_account="ACC-2",
        )
        no_account = await catalog.create_event(db, "Unpaid Fest")
        await catalog.add_ticket_tier(
            db, no_account.id, "Regular", capacity=10, unit_price=100,
        )
    return SimpleNamespace(
        event_id=event.id,
        other_event_id=other.id,
        no_account_event_id=no_account.id,
        regular_id=regular.id,
        vip_id=vip.id,
        promo="HALF",
        prices={regular.id: REGULAR_PRICE, vip.id: VIP_PRICE},
    )


# ----------------------------
# Engine-level fixtures
# ----------------------------
@pytest.fixture
async def db_env(settings):
    engine, SessionAsync, gated = make_async_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SimpleNamespace(sessions=SessionAsync, gated=gated)
    await engine.dispose()


@pytest.fixture
async def seeded(db_env):
    return await seed_catalog(db_env.sessions)


@pytest.fixture
def reconciler(db_env, settings):
    return ReconciliationEngine(
        sessions=db_env.sessions,
        gated=db_env.gated,
        adapter=MockPay(secret=settings.mock_secret),
        cache=NullCache(),
        settings=settings,
    )


@pytest.fixture
def buy(reconciler, seeded):
    """Start a checkout; returns (transaction_id, gateway session id)."""

    async def _buy(*items, promo_code=None, user_id=None, name="Abebe Kebede"):
        items = items or ((seeded.regular_id, 1),)
        resp = await reconciler.initiate(CheckoutRequest(
            event_id=seeded.event_id,
            line_items=[
                LineItem(tier_id=tier_id, quantity=qty,
                         unit_price=seeded.prices[tier_id])
                for tier_id, qty in items
            ],
            buyer=Buyer(name=name, phone="0911223344", user_id=user_id),
            promo_code=promo_code,
        ))
        return resp.transaction_id, resp.redirect_url.rsplit("/", 1)[-1]

    return _buy


# ----------------------------
# HTTP fixtures
# ----------------------------
@pytest.fixture
async def app(settings):
    app = create_app(settings)
    # MockPay delivers its webhook back into the same app
    app.state.http = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test",
    )
    async with app.router.lifespan_context(app):
        yield app
    await app.state.http.aclose()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://test") as c:
        yield c


@pytest.fixture
def seed():
    return seed_catalog


@pytest.fixture
async def api_catalog(app):
    return await seed_catalog(app.state.sessions)


@pytest.fixture
async def staff(client, settings):
    resp = await client.post("/admin/login", data={
        "username": settings.admin_username,
        "password": settings.admin_password,
    })
    assert resp.status_code == 303
    return client


def session_cookie(secret: str, data: dict) -> str:
    # same signed format as starlette's SessionMiddleware
    signer = itsdangerous.TimestampSigner(str(secret))
    raw = b64encode(json.dumps(data).encode("utf-8"))
    return signer.sign(raw).decode("utf-8")


@pytest.fixture
async def buyer_client(app, settings):
    """Clients carrying a buyer session, as the sign-in layer issues it."""
    clients = []

    def _client(user_id: str) -> httpx.AsyncClient:
        c = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://test",
            cookies={"session": session_cookie(settings.session_secret,
                                               {"user_id": user_id})},
        )
        clients.append(c)
        return c

    yield _client
    for c in clients:
        await c.aclose()
