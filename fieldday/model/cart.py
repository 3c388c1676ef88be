"""
Cart & pricing engine.

A cart is a transient draft: ticket quantities per category plus a mapping
of extra keys to quantities, bounded by an inventory snapshot. Bounds applied
while editing are advisory; ``revalidate`` runs against a freshly loaded
snapshot right before payment and refuses instead of truncating.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from ..errors import CapacityExceededError, ValidationError
from ..helpers import current_year, round_pence
from .inventory import CATEGORIES, EventInventory, ShopInventory
from .membership import DISCOUNT_RATE, membership_active

ROLE_PLAYER = "player"
ROLE_STAFF = "staff"
ROLE_ADMIN = "admin"
EXEMPT_ROLES = (ROLE_STAFF, ROLE_ADMIN)


@dataclass
class Actor:
    """Whoever is checking out, as far as pricing and guards care."""
    user_id: Optional[str]
    name: str = ""
    email: str = ""
    role: str = ROLE_PLAYER
    waiver_signed: bool = False
    waiver_year: Optional[int] = None
    member_status: str = "none"

    @property
    def authenticated(self) -> bool:
        return bool(self.user_id)

    @property
    def is_member(self) -> bool:
        return membership_active(self.member_status)

    @classmethod
    def from_profile(cls, profile) -> "Actor":
        return cls(
            user_id=profile.id,
            name=profile.name,
            email=profile.email or "",
            role=profile.role,
            waiver_signed=bool(profile.waiver_signed),
            waiver_year=profile.waiver_year,
            member_status=profile.member_status,
        )


def waiver_valid(actor: Actor, year: Optional[int] = None) -> bool:
    if actor.role in EXEMPT_ROLES:
        return True
    year = current_year() if year is None else year
    return actor.waiver_signed and actor.waiver_year == year


def _discounted(subtotal: int, membership: bool) -> int:
    if not membership or subtotal == 0:
        return subtotal
    return round_pence(Decimal(subtotal) * (1 - DISCOUNT_RATE))


def _clamp(n: int, upper: int) -> int:
    return max(0, min(int(n), upper))


class EventCart:
    def __init__(self, inventory: EventInventory) -> None:
        self.inventory = inventory
        self.tickets: Dict[str, int] = {c: 0 for c in CATEGORIES}
        self.extras: Dict[str, int] = {}

    @property
    def event_id(self) -> str:
        return self.inventory.event_id

    # ---- editing
    def set_quantity(self, category: str, n: int) -> int:
        if category not in self.tickets:
            raise ValidationError(f"unknown ticket category: {category}")
        qty = _clamp(n, self.inventory.remaining(category))
        self.tickets[category] = qty
        return qty

    def set_extra_quantity(self, key: str, n: int) -> int:
        if key not in self.inventory.extras:
            raise ValidationError(f"unknown extra: {key}")
        qty = _clamp(n, self.inventory.stock(key))
        if qty:
            self.extras[key] = qty
        else:
            self.extras.pop(key, None)
        return qty

    def add_extra(self, key: str, delta: int = 1) -> int:
        return self.set_extra_quantity(key, self.extras.get(key, 0) + delta)

    def clear(self) -> None:
        self.tickets = {c: 0 for c in CATEGORIES}
        self.extras = {}

    # ---- reading
    def categories_present(self) -> List[str]:
        return [c for c in CATEGORIES if self.tickets[c] > 0]

    @property
    def is_empty(self) -> bool:
        return not self.categories_present() and not self.extras

    def ticket_subtotal(self, category: Optional[str] = None) -> int:
        cats = CATEGORIES if category is None else (category,)
        return sum(
            self.tickets[c] * self.inventory.pool(c).unit_price for c in cats
        )

    def extras_subtotal(self) -> int:
        return sum(
            qty * self.inventory.extras[key].unit_price
            for key, qty in self.extras.items()
        )

    def compute_total(self, membership_active: bool) -> int:
        # extras are never discounted
        return (
            _discounted(self.ticket_subtotal(), membership_active)
            + self.extras_subtotal()
        )

    def category_totals(self, membership_active: bool) -> Dict[str, int]:
        """Split the discounted ticket subtotal across categories.

        The discount is applied once to the combined subtotal; any rounding
        remainder lands on the first category so the parts add up to the
        charged amount. Extras ride on the first category as well.
        """
        cats = self.categories_present()
        if not cats:
            return {}
        parts = {
            c: _discounted(self.ticket_subtotal(c), membership_active)
            for c in cats
        }
        combined = _discounted(self.ticket_subtotal(), membership_active)
        parts[cats[0]] += combined - sum(parts.values())
        parts[cats[0]] += self.extras_subtotal()
        return parts

    def describe(self) -> str:
        parts = []
        for c in self.categories_present():
            parts.append(f"{self.tickets[c]} x {c}")
        for key, qty in self.extras.items():
            parts.append(f"{qty} x {self.inventory.extras[key].name}")
        return f"Event {self.event_id}: " + ", ".join(parts)

    # ---- authoritative check
    def revalidate(self, fresh: EventInventory) -> None:
        """Re-check against live inventory; raise instead of truncating."""
        for c in self.categories_present():
            available = fresh.remaining(c)
            if self.tickets[c] > available:
                raise CapacityExceededError(c, self.tickets[c], available)
        for key, qty in self.extras.items():
            available = fresh.stock(key)
            if qty > available:
                raise CapacityExceededError(key, qty, available)
        self.inventory = fresh


class ShopCart:
    def __init__(self, inventory: ShopInventory) -> None:
        self.inventory = inventory
        self.lines: Dict[str, int] = {}

    def set_quantity(self, key: str, n: int) -> int:
        if key not in self.inventory.lines:
            raise ValidationError(f"unknown product: {key}")
        qty = _clamp(n, self.inventory.stock(key))
        if qty:
            self.lines[key] = qty
        else:
            self.lines.pop(key, None)
        return qty

    def clear(self) -> None:
        self.lines = {}

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def pickup_only(self) -> bool:
        return any(self.inventory.lines[k].no_post for k in self.lines)

    def unit_price(self, key: str, membership_active: bool) -> int:
        return _discounted(
            self.inventory.lines[key].unit_price, membership_active
        )

    def subtotal(self, membership_active: bool) -> int:
        return sum(
            self.unit_price(key, membership_active) * qty
            for key, qty in self.lines.items()
        )

    def shipping_fee(self, postage_price: int) -> int:
        if self.is_empty or self.pickup_only:
            return 0
        return int(postage_price)

    def compute_total(self, membership_active: bool,
                      postage_price: int = 0) -> int:
        return (
            self.subtotal(membership_active)
            + self.shipping_fee(postage_price)
        )

    def captured_items(self, membership_active: bool) -> List[dict]:
        """Line items with the price frozen at checkout."""
        items = []
        for key, qty in self.lines.items():
            line = self.inventory.lines[key]
            items.append({
                "key": key,
                "product_id": line.product_id,
                "variant_id": line.variant_id,
                "name": line.name,
                "unit_price": self.unit_price(key, membership_active),
                "qty": qty,
            })
        return items

    def describe(self) -> str:
        return "Shop order: " + ", ".join(
            f"{qty} x {self.inventory.lines[k].name}"
            for k, qty in self.lines.items()
        )

    def revalidate(self, fresh: ShopInventory) -> None:
        for key, qty in self.lines.items():
            available = fresh.stock(key)
            if qty > available:
                raise CapacityExceededError(key, qty, available)
        self.inventory = fresh


def checkout_blocker(actor: Actor, total: int,
                     year: Optional[int] = None) -> Optional[str]:
    """Why event checkout is disabled for this actor, or None."""
    if not actor.authenticated:
        return "You must be logged in to book"
    if not waiver_valid(actor, year):
        return "A signed waiver for this year is required before booking"
    if total <= 0:
        return "Cart is empty"
    return None
