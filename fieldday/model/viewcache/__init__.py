# model/viewcache/__init__.py
"""
Read-through cache of the event and product listings.

Readers call ``get_events``/``get_products``; a miss loads from the store.
Checkout calls ``refresh`` after a commit so the listings show the new
booking counts and stock. Nothing downstream relies on the cached listing
being current: capacity is always re-read from the store before payment.
"""
import logging
import os
from typing import List, Optional
import redis.asyncio as redis

from ..store import Store
from ..views import event_views, product_view
from ._local import LocalBackend
from ._redis import RedisBackend

logger = logging.getLogger(__name__)

BACKEND = os.getenv("VIEWCACHE_BACKEND", "local").lower()  # 'local' | 'redis'
TTL_SECONDS = int(os.getenv("VIEWCACHE_TTL_SECONDS", "300"))

EVENTS = "events"
PRODUCTS = "products"


class ViewCache:
    def __init__(self, backend, store: Store,
                 ttl_seconds: int = TTL_SECONDS) -> None:
        self.backend = backend
        self.store = store
        self.ttl = ttl_seconds

    async def _load_events(self) -> List[dict]:
        events = await self.store.list_events()
        bookings = await self.store.list_bookings()
        products = await self.store.products_by_id(
            ex.product_id for ev in events for ex in ev.extras
        )
        return event_views(events, bookings, products)

    async def _load_products(self) -> List[dict]:
        return [product_view(p) for p in await self.store.list_products()]

    async def get_events(self) -> List[dict]:
        hit = await self.backend.get(EVENTS)
        if hit is not None:
            return hit
        views = await self._load_events()
        await self.backend.put(EVENTS, views, self.ttl)
        return views

    async def get_products(self) -> List[dict]:
        hit = await self.backend.get(PRODUCTS)
        if hit is not None:
            return hit
        views = await self._load_products()
        await self.backend.put(PRODUCTS, views, self.ttl)
        return views

    async def refresh(self) -> None:
        events = await self._load_events()
        products = await self._load_products()
        await self.backend.put(EVENTS, events, self.ttl)
        await self.backend.put(PRODUCTS, products, self.ttl)
        logger.debug(
            f"view cache refreshed: {len(events)} events, "
            f"{len(products)} products"
        )

    async def invalidate(self) -> None:
        await self.backend.drop(EVENTS, PRODUCTS)


# Factory keeps server.py simple and constructor-agnostic:
def new_cache(store: Store, *, r: Optional[redis.Redis] = None,
              backend: Optional[str] = None) -> ViewCache:
    backend = (backend or BACKEND).lower()
    if backend == "redis":
        if r is None:
            raise RuntimeError("ViewCache(redis) requires r=redis.Redis")
        return ViewCache(RedisBackend(r), store)
    return ViewCache(LocalBackend(), store)


__all__ = ["ViewCache", "new_cache", "BACKEND"]
