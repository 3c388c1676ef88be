"""
Durable storage collaborator.

Every public method is its own transaction and is atomic for the single
record it touches; callers must not assume anything across records. Rows are
returned detached (``expire_on_commit=False``) with eager relationships
already loaded.
"""
from __future__ import annotations
import uuid
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update, delete, func

from ..errors import ValidationError
from ..helpers import now_ts
from ..infra.sql import Database
from .db import (
    Base, Event, EventExtra, Product, ProductVariant, PostageOption,
    Booking, Order, Profile,
)


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex}"


class Store:
    def __init__(self, db: Database) -> None:
        self.db = db
        self.sessions = db.sessions
        self.gated = db.gated

    @classmethod
    async def open(cls, database_url: str) -> "Store":
        """Connect and create any missing tables."""
        db = Database(database_url)
        await db.create_all(Base.metadata)
        return cls(db)

    async def close(self) -> None:
        await self.db.dispose()

    # ---- generic helpers
    async def _get(self, model, ident: str):
        async with self.gated():
            async with self.sessions() as db:
                return await db.get(model, ident)

    async def _add(self, obj):
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    db.add(obj)
        return obj

    async def _patch(self, model, ident: str, patch: Dict[str, Any]):
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    obj = await db.get(model, ident)
                    if obj is None:
                        return None
                    for k, v in patch.items():
                        if not hasattr(model, k):
                            raise AttributeError(
                                f"{model.__name__} has no field {k!r}"
                            )
                        setattr(obj, k, v)
        return obj

    async def _delete(self, model, ident: str) -> bool:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    obj = await db.get(model, ident)
                    if obj is None:
                        return False
                    await db.delete(obj)
        return True

    async def _list(self, stmt) -> List:
        async with self.gated():
            async with self.sessions() as db:
                result = await db.execute(stmt)
                return list(result.scalars().all())

    # ---- events
    async def create_event(
        self, *, title: str, starts_at: float,
        walk_on_slots: int, walk_on_price: int,
        rental_slots: int = 0, rental_price: int = 0,
        location: str = "", extra_product_ids: Iterable[str] = (),
        published: bool = True, event_id: Optional[str] = None,
    ) -> Event:
        extra_product_ids = list(extra_product_ids)
        if extra_product_ids:
            products = await self.products_by_id(extra_product_ids)
            for pid in extra_product_ids:
                p = products.get(pid)
                if p is None or not p.extra_eligible:
                    raise ValidationError(
                        f"product {pid} cannot be offered as an event extra"
                    )
        ev = Event(
            id=event_id or new_id("ev_"),
            title=title,
            starts_at=starts_at,
            location=location,
            published=published,
            walk_on_slots=walk_on_slots,
            walk_on_price=walk_on_price,
            rental_slots=rental_slots,
            rental_price=rental_price,
            created_at=now_ts(),
        )
        ev.extras = [
            EventExtra(id=new_id("ex_"), event_id=ev.id, product_id=pid,
                       sort_order=i)
            for i, pid in enumerate(extra_product_ids)
        ]
        return await self._add(ev)

    async def get_event(self, event_id: str) -> Optional[Event]:
        return await self._get(Event, event_id)

    async def list_events(self) -> List[Event]:
        return await self._list(select(Event).order_by(Event.starts_at))

    async def update_event(self, event_id: str, **patch) -> Optional[Event]:
        # capacity/price edits never touch existing bookings
        return await self._patch(Event, event_id, patch)

    async def delete_event(self, event_id: str) -> bool:
        return await self._delete(Event, event_id)

    # ---- products
    async def create_product(
        self, *, name: str, price: int, stock: int = 0,
        sale_price: Optional[int] = None, on_sale: bool = False,
        no_post: bool = False, extra_eligible: bool = False,
        variants: Iterable[Dict[str, Any]] = (),
        product_id: Optional[str] = None, sort_order: int = 0,
    ) -> Product:
        p = Product(
            id=product_id or new_id("pr_"),
            name=name,
            price=price,
            sale_price=sale_price,
            on_sale=on_sale,
            stock=stock,
            no_post=no_post,
            extra_eligible=extra_eligible,
            sort_order=sort_order,
        )
        p.variants = [
            ProductVariant(
                id=v.get("id") or new_id("va_"),
                product_id=p.id,
                name=v["name"],
                price=v.get("price", price),
                stock=v.get("stock", 0),
                sort_order=i,
            )
            for i, v in enumerate(variants)
        ]
        return await self._add(p)

    async def get_product(self, product_id: str) -> Optional[Product]:
        return await self._get(Product, product_id)

    async def list_products(self) -> List[Product]:
        return await self._list(select(Product).order_by(Product.sort_order))

    async def products_by_id(self, ids: Iterable[str]) -> Dict[str, Product]:
        ids = list(set(ids))
        if not ids:
            return {}
        rows = await self._list(select(Product).where(Product.id.in_(ids)))
        return {p.id: p for p in rows}

    async def update_product(self, product_id: str, **patch):
        return await self._patch(Product, product_id, patch)

    async def delete_product(self, product_id: str) -> bool:
        return await self._delete(Product, product_id)

    async def decrement_stock(
        self, product_id: str, variant_id: Optional[str] = None
    ) -> bool:
        """Take one unit; never below zero. False if nothing was taken."""
        if variant_id:
            stmt = (
                update(ProductVariant)
                .where(ProductVariant.id == variant_id,
                       ProductVariant.product_id == product_id,
                       ProductVariant.stock > 0)
                .values(stock=ProductVariant.stock - 1)
                .execution_options(synchronize_session=False)
            )
        else:
            stmt = (
                update(Product)
                .where(Product.id == product_id, Product.stock > 0)
                .values(stock=Product.stock - 1)
                .execution_options(synchronize_session=False)
            )
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    result = await db.execute(stmt)
        return result.rowcount == 1

    # ---- postage
    async def create_postage(self, *, name: str, price: int,
                             postage_id: Optional[str] = None
                             ) -> PostageOption:
        return await self._add(PostageOption(
            id=postage_id or new_id("po_"), name=name, price=price
        ))

    async def get_postage(self, postage_id: str) -> Optional[PostageOption]:
        return await self._get(PostageOption, postage_id)

    async def list_postage(self) -> List[PostageOption]:
        return await self._list(
            select(PostageOption).order_by(PostageOption.sort_order)
        )

    # ---- bookings
    async def create_booking(self, **fields) -> Booking:
        fields.setdefault("id", new_id("bk_"))
        fields.setdefault("created_at", now_ts())
        fields.setdefault("attended", False)
        return await self._add(Booking(**fields))

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        return await self._get(Booking, booking_id)

    async def list_bookings(
        self, *, event_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[Booking]:
        stmt = select(Booking)
        if event_id is not None:
            stmt = stmt.where(Booking.event_id == event_id)
        if user_id is not None:
            stmt = stmt.where(Booking.user_id == user_id)
        return await self._list(stmt.order_by(Booking.created_at))

    async def bookings_for_payment(self, reference: str) -> List[Booking]:
        return await self._list(
            select(Booking).where(Booking.payment_reference == reference)
        )

    async def update_booking(self, booking_id: str, **patch):
        return await self._patch(Booking, booking_id, patch)

    async def delete_booking(self, booking_id: str) -> bool:
        return await self._delete(Booking, booking_id)

    async def mark_attended(self, booking_id: str) -> bool:
        """Flip attended false -> true. True only for the caller that won."""
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id, Booking.attended.is_(False))
            .values(attended=True)
            .execution_options(synchronize_session=False)
        )
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    result = await db.execute(stmt)
        return result.rowcount == 1

    async def count_attended(self, user_id: str) -> int:
        stmt = (
            select(func.count(Booking.id))
            .where(Booking.user_id == user_id, Booking.attended.is_(True))
        )
        async with self.gated():
            async with self.sessions() as db:
                return int((await db.execute(stmt)).scalar_one())

    async def attended_counts(self) -> Dict[str, int]:
        stmt = (
            select(Booking.user_id, func.count(Booking.id))
            .where(Booking.attended.is_(True))
            .group_by(Booking.user_id)
        )
        async with self.gated():
            async with self.sessions() as db:
                rows = (await db.execute(stmt)).all()
        return {uid: int(n) for uid, n in rows}

    # ---- orders
    async def create_order(self, **fields) -> Order:
        fields.setdefault("id", new_id("or_"))
        fields.setdefault("created_at", now_ts())
        return await self._add(Order(**fields))

    async def get_order(self, order_id: str) -> Optional[Order]:
        return await self._get(Order, order_id)

    async def list_orders(self, limit: int = 200) -> List[Order]:
        return await self._list(
            select(Order).order_by(Order.created_at.desc()).limit(limit)
        )

    async def update_order(self, order_id: str, **patch):
        return await self._patch(Order, order_id, patch)

    async def orders_for_payment(self, reference: str) -> List[Order]:
        return await self._list(
            select(Order).where(Order.payment_reference == reference)
        )

    async def delete_order(self, order_id: str) -> bool:
        return await self._delete(Order, order_id)

    # ---- profiles
    async def create_profile(self, **fields) -> Profile:
        fields.setdefault("id", new_id("us_"))
        fields.setdefault("created_at", now_ts())
        return await self._add(Profile(**fields))

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        return await self._get(Profile, user_id)

    async def list_profiles(self) -> List[Profile]:
        return await self._list(select(Profile).order_by(Profile.created_at))

    async def update_profile(self, user_id: str, **patch):
        return await self._patch(Profile, user_id, patch)

    async def member_refs(self) -> set:
        async with self.gated():
            async with self.sessions() as db:
                rows = await db.execute(
                    select(Profile.member_ref)
                    .where(Profile.member_ref.is_not(None))
                )
                return {r for (r,) in rows.all()}
