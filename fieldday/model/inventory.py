"""
Finite capacity for event ticket pools and product/variant stock.

Pure data and arithmetic: snapshots are built from rows the store already
loaded, nothing in here touches the database.

Keys:
  - ticket categories are ``walkOn`` and ``rental``
  - an extra is addressed by its id, or ``<extra_id>:<variant_id>`` when the
    underlying product has variants (each variant has its own stock/price)
  - a retail line is addressed the same way by product id
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

WALK_ON = "walkOn"
RENTAL = "rental"
CATEGORIES = (WALK_ON, RENTAL)

KEY_SEP = ":"


def make_key(base_id: str, variant_id: Optional[str] = None) -> str:
    if variant_id:
        return f"{base_id}{KEY_SEP}{variant_id}"
    return base_id


def effective_price(product) -> int:
    if product.on_sale and product.sale_price:
        return int(product.sale_price)
    return int(product.price)


@dataclass(frozen=True)
class Pool:
    capacity: int
    unit_price: int
    booked: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.capacity - self.booked)


@dataclass(frozen=True)
class StockLine:
    """One purchasable unit kind: a plain product or one of its variants."""
    key: str
    product_id: str
    variant_id: Optional[str]
    name: str
    unit_price: int
    stock: int
    no_post: bool = False


def stock_lines(product, base_id: Optional[str] = None) -> Dict[str, StockLine]:
    """Explode a product into its purchasable lines.

    Variants supersede the parent: a product with variants has no line of its
    own. ``base_id`` replaces the product id in keys (event extras are keyed
    by extra id).
    """
    base = base_id or product.id
    variants = list(getattr(product, "variants", None) or [])
    if not variants:
        line = StockLine(
            key=make_key(base),
            product_id=product.id,
            variant_id=None,
            name=product.name,
            unit_price=effective_price(product),
            stock=max(0, int(product.stock)),
            no_post=bool(product.no_post),
        )
        return {line.key: line}
    out = {}
    for v in variants:
        line = StockLine(
            key=make_key(base, v.id),
            product_id=product.id,
            variant_id=v.id,
            name=f"{product.name} ({v.name})",
            unit_price=int(v.price),
            stock=max(0, int(v.stock)),
            no_post=bool(product.no_post),
        )
        out[line.key] = line
    return out


@dataclass(frozen=True)
class EventInventory:
    event_id: str
    pools: Dict[str, Pool]
    extras: Dict[str, StockLine] = field(default_factory=dict)

    def pool(self, category: str) -> Pool:
        try:
            return self.pools[category]
        except KeyError:
            raise KeyError(f"unknown ticket category: {category}") from None

    def remaining(self, category: str) -> int:
        return self.pool(category).remaining

    def stock(self, key: str) -> int:
        line = self.extras.get(key)
        return 0 if line is None else line.stock

    @classmethod
    def from_rows(
        cls, event, bookings: Iterable, products: Dict[str, object]
    ) -> "EventInventory":
        booked = {c: 0 for c in CATEGORIES}
        for b in bookings:
            if b.ticket_type in booked:
                booked[b.ticket_type] += int(b.qty)
        pools = {
            WALK_ON: Pool(event.walk_on_slots, event.walk_on_price,
                          booked[WALK_ON]),
            RENTAL: Pool(event.rental_slots, event.rental_price,
                         booked[RENTAL]),
        }
        extras: Dict[str, StockLine] = {}
        for ex in event.extras:
            product = products.get(ex.product_id)
            if product is None:
                continue
            extras.update(stock_lines(product, base_id=ex.id))
        return cls(event_id=event.id, pools=pools, extras=extras)


@dataclass(frozen=True)
class ShopInventory:
    lines: Dict[str, StockLine]

    def stock(self, key: str) -> int:
        line = self.lines.get(key)
        return 0 if line is None else line.stock

    @classmethod
    def from_products(cls, products: Iterable) -> "ShopInventory":
        lines: Dict[str, StockLine] = {}
        for p in products:
            lines.update(stock_lines(p))
        return cls(lines=lines)
