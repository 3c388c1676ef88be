"""
Membership eligibility and pricing flags.

Status lives on the profile as ``member_status`` plus an ``member_applied``
flag. Applying only sets the flag; approval activates, rejection clears the
flag so the player may apply again. The discount is a fixed rate and the only
place pricing asks "is this actor a member" is ``membership_active``.
"""
from __future__ import annotations
import random
from decimal import Decimal
from typing import Container, Optional

STATUS_NONE = "none"
STATUS_ACTIVE = "active"
STATUS_REJECTED = "rejected"
STATUS_EXPIRED = "expired"
MEMBER_STATUSES = (STATUS_NONE, STATUS_ACTIVE, STATUS_REJECTED, STATUS_EXPIRED)

DISCOUNT_RATE = Decimal("0.10")
ATTENDANCE_THRESHOLD = 3

# statuses from which a fresh application is allowed
_APPLIABLE = (STATUS_NONE, STATUS_REJECTED)


def membership_active(status: Optional[str]) -> bool:
    return status == STATUS_ACTIVE


def is_eligible(status: str, applied: bool, attendance_count: int) -> bool:
    return (
        attendance_count >= ATTENDANCE_THRESHOLD
        and status in _APPLIABLE
        and not applied
    )


def display_state(status: str, applied: bool) -> str:
    """none | applied | active | expired"""
    if status == STATUS_ACTIVE:
        return STATUS_ACTIVE
    if status == STATUS_EXPIRED:
        return STATUS_EXPIRED
    if applied:
        return "applied"
    return STATUS_NONE


def games_needed(attendance_count: int) -> int:
    return max(0, ATTENDANCE_THRESHOLD - attendance_count)


def new_member_ref(
    year: int, taken: Container[str], rng: Optional[random.Random] = None
) -> str:
    rng = rng or random.Random()
    # 900 possible codes per year
    free = [
        ref for ref in (f"UKARA-{year}-{n:03d}" for n in range(100, 1000))
        if ref not in taken
    ]
    if not free:
        raise RuntimeError(f"membership references exhausted for {year}")
    return rng.choice(free)
