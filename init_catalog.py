import asyncio
import time

from boxoffice import catalog
from boxoffice.config import Settings
from boxoffice.infra.sql import make_async_engine
from boxoffice.model.orm import FIXED, PERCENTAGE, Base

# Config
EVENT_NAME = "BoxOffice Launch Night"
EVENT_LOCATION = "Addis Ababa"
RECEIVING_ACCOUNT = "01320811436100"

# prices in cents
TIERS = [
    ("Regular", 500, 50_000),
    ("VIP", 50, 250_000),
]
PROMOS = [
    ("EARLYBIRD", PERCENTAGE, 20, 100),
    ("FRIENDS", FIXED, 10_000, 25),
]


async def seed(settings: Settings) -> str:
    engine, SessionAsync, _ = make_async_engine(settings)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        print('✅ schema created')

        async with SessionAsync() as db:
            event = await catalog.create_event(
                db, EVENT_NAME,
                location=EVENT_LOCATION,
                starts_at=time.time() + 30 * 24 * 3600,
                receiving_account=RECEIVING_ACCOUNT,
            )
            for name, capacity, price in TIERS:
                await catalog.add_ticket_tier(
                    db, event.id, name, capacity=capacity, unit_price=price,
                )
            for code, kind, value, cap in PROMOS:
                await catalog.add_promo_code(
                    db, event.id, code,
                    discount_kind=kind, discount_value=value, usage_cap=cap,
                )
        print(f'✅ event {event.id} seeded with {len(TIERS)} tiers '
              f'and {len(PROMOS)} promo codes')
        return event.id
    finally:
        await engine.dispose()


if __name__ == '__main__':
    asyncio.run(seed(Settings.from_env()))
