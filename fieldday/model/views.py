"""JSON-ready views of events and products, as served and cached."""
from __future__ import annotations
from typing import Dict, Iterable, List

from ..helpers import to_iso
from .inventory import CATEGORIES, EventInventory, effective_price


def product_view(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "price": int(p.price),
        "sale_price": p.sale_price,
        "on_sale": bool(p.on_sale),
        "effective_price": effective_price(p),
        "stock": int(p.stock),
        "no_post": bool(p.no_post),
        "extra_eligible": bool(p.extra_eligible),
        "variants": [
            {"id": v.id, "name": v.name, "price": int(v.price),
             "stock": int(v.stock)}
            for v in p.variants
        ],
    }


def event_view(ev, bookings: Iterable, products: Dict[str, object]) -> dict:
    bookings = list(bookings)
    inv = EventInventory.from_rows(ev, bookings, products)
    return {
        "id": ev.id,
        "title": ev.title,
        "starts_at": to_iso(ev.starts_at),
        "location": ev.location,
        "published": bool(ev.published),
        "pools": {
            c: {
                "capacity": inv.pools[c].capacity,
                "unit_price": inv.pools[c].unit_price,
                "booked": inv.pools[c].booked,
                "remaining": inv.pools[c].remaining,
            }
            for c in CATEGORIES
        },
        "extras": [
            {"key": line.key, "name": line.name,
             "unit_price": line.unit_price, "stock": line.stock,
             "no_post": line.no_post}
            for line in inv.extras.values()
        ],
        "bookings": len(bookings),
        "attended": sum(1 for b in bookings if b.attended),
    }


def booking_view(b) -> dict:
    return {
        "id": b.id,
        "event_id": b.event_id,
        "user_id": b.user_id,
        "user_name": b.user_name,
        "ticket_type": b.ticket_type,
        "qty": int(b.qty),
        "extras": dict(b.extras or {}),
        "total": int(b.total),
        "payment_reference": b.payment_reference,
        "attended": bool(b.attended),
        "created_at": to_iso(b.created_at),
    }


def order_view(o) -> dict:
    return {
        "id": o.id,
        "customer_name": o.customer_name,
        "customer_email": o.customer_email,
        "items": list(o.items or []),
        "subtotal": int(o.subtotal),
        "shipping_fee": int(o.shipping_fee),
        "postage_name": o.postage_name,
        "total": int(o.total),
        "currency": o.currency,
        "status": o.status,
        "payment_reference": o.payment_reference,
        "created_at": to_iso(o.created_at),
    }


def profile_view(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "role": p.role,
        "games_attended": int(p.games_attended),
        "member_status": p.member_status,
        "member_applied": bool(p.member_applied),
        "member_ref": p.member_ref,
        "waiver_signed": bool(p.waiver_signed),
        "waiver_year": p.waiver_year,
        "credits": int(p.credits),
    }


def event_views(events: Iterable, bookings: Iterable,
                products: Dict[str, object]) -> List[dict]:
    by_event: Dict[str, list] = {}
    for b in bookings:
        by_event.setdefault(b.event_id, []).append(b)
    return [event_view(ev, by_event.get(ev.id, []), products)
            for ev in events]
