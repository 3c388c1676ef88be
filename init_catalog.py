import asyncio
import os
import sys
import time

from fieldday.model.store import Store

# Config (pence)
WALK_ON_PRICE = 2500
RENTAL_PRICE = 3500
WALK_ON_SLOTS = 60
RENTAL_SLOTS = 20

DAY = 24 * 3600

PRODUCTS = [
    dict(product_id="pr_bbs", name="BBs 0.25g (4000)", price=1200,
         stock=80, no_post=True, extra_eligible=True),
    dict(product_id="pr_mask", name="Mesh face mask", price=1800,
         sale_price=1400, on_sale=True, stock=25, extra_eligible=True),
    dict(product_id="pr_patch", name="Club patch", price=500, stock=200),
    dict(product_id="pr_tee", name="Club T-shirt", price=2000,
         variants=[
             dict(id="pv_tee_m", name="M", price=2000, stock=10),
             dict(id="pv_tee_l", name="L", price=2000, stock=10),
             dict(id="pv_tee_xl", name="XL", price=2200, stock=5),
         ]),
]

POSTAGE = [
    dict(postage_id="po_2nd", name="Royal Mail 2nd class", price=295),
    dict(postage_id="po_1st", name="Royal Mail 1st class", price=395),
]


async def create_products(store: Store):
    for i, p in enumerate(PRODUCTS):
        await store.create_product(sort_order=i, **p)
    for p in POSTAGE:
        await store.create_postage(**p)
    print('✅ products and postage created')


async def create_events(store: Store, n: int = 3):
    now = time.time()
    for i in range(n):
        await store.create_event(
            event_id=f"ev_{i + 1}",
            title=f"Sunday Skirmish #{i + 1}",
            starts_at=now + (i + 1) * 14 * DAY,
            location="Woodland site",
            walk_on_slots=WALK_ON_SLOTS,
            walk_on_price=WALK_ON_PRICE,
            rental_slots=RENTAL_SLOTS,
            rental_price=RENTAL_PRICE,
            extra_product_ids=["pr_bbs", "pr_mask"],
        )
    print(f'✅ {n} events created')


async def main(database_url: str):
    store = await Store.open(database_url)
    await create_products(store)
    await create_events(store)
    await store.close()


if __name__ == '__main__':
    url = os.getenv("DATABASE_URL")
    if url is None:
        print("NEED DATABASE_URL! e.g. sqlite:///./fieldday.db")
        sys.exit(1)
    asyncio.run(main(url))
