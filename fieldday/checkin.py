"""
Check-in engine.

A booking goes Booked -> Attended once. The profile's ``games_attended`` is
a cache of the user's attended bookings across all events and is always
overwritten with a fresh count, never incremented.
"""
from __future__ import annotations
import csv
import io
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .errors import AmbiguousMatchError, NotFoundError, ValidationError
from .helpers import fmt_gbp
from .infra.timings import timeit
from .model.db import Booking
from .model.store import Store

logger = logging.getLogger(__name__)

ROSTER_COLUMNS = ("name", "category", "qty", "total", "attended")


@dataclass
class CheckInResult:
    booking: Booking
    already_attended: bool
    games_attended: int

    @property
    def message(self) -> str:
        if self.already_attended:
            return f"{self.booking.user_name} is already checked in"
        return f"{self.booking.user_name} checked in"


@dataclass
class ReconcileReport:
    checked: int
    corrected: List[str] = field(default_factory=list)

    @property
    def updated(self) -> int:
        return len(self.corrected)


class CheckInEngine:
    def __init__(self, store: Store) -> None:
        self.store = store

    async def lookup(self, query: str, *,
                     event_id: Optional[str] = None) -> Booking:
        """Exact booking id first, else a unique case-insensitive name match."""
        q = (query or "").strip()
        if not q:
            raise ValidationError("Enter a booking id or a name")

        exact = await self.store.get_booking(q)
        if exact is not None and (event_id is None or exact.event_id == event_id):
            return exact

        needle = q.lower()
        matches = [
            b for b in await self.store.list_bookings(event_id=event_id)
            if needle in (b.user_name or "").lower()
        ]
        if not matches:
            raise NotFoundError("Booking", q)
        if len(matches) > 1:
            raise AmbiguousMatchError(q, [b.id for b in matches])
        return matches[0]

    async def check_in(self, booking_id: str,
                       user_id: Optional[str] = None) -> CheckInResult:
        async with timeit("checkin"):
            booking = await self.store.get_booking(booking_id)
            if booking is None:
                raise NotFoundError("Booking", booking_id)
            if user_id is not None and booking.user_id != user_id:
                raise ValidationError("Booking belongs to a different user")

            if not await self.store.mark_attended(booking_id):
                count = await self.store.count_attended(booking.user_id)
                logger.info(f"check-in {booking_id}: already attended")
                return CheckInResult(booking, True, count)

            booking.attended = True
            count = await self.recount(booking.user_id)
            logger.info(
                f"check-in {booking_id}: {booking.user_name} now at {count}"
            )
            return CheckInResult(booking, False, count)

    async def check_in_query(self, query: str, *,
                             event_id: Optional[str] = None) -> CheckInResult:
        booking = await self.lookup(query, event_id=event_id)
        return await self.check_in(booking.id, booking.user_id)

    async def recount(self, user_id: str) -> int:
        count = await self.store.count_attended(user_id)
        if await self.store.update_profile(user_id, games_attended=count) is None:
            logger.warning(f"no profile for {user_id}; attendance not cached")
        return count

    async def set_attended(self, booking_id: str, attended: bool) -> Booking:
        """Operator override of the attended flag, either direction."""
        booking = await self.store.update_booking(
            booking_id, attended=bool(attended)
        )
        if booking is None:
            raise NotFoundError("Booking", booking_id)
        await self.recount(booking.user_id)
        logger.info(f"booking {booking_id}: attended forced to {attended}")
        return booking

    async def reconcile_all(self) -> ReconcileReport:
        async with timeit("checkin.reconcile"):
            counts = await self.store.attended_counts()
            profiles = await self.store.list_profiles()
            report = ReconcileReport(checked=len(profiles))
            for p in profiles:
                correct = counts.get(p.id, 0)
                if p.games_attended == correct:
                    continue
                await self.store.update_profile(p.id, games_attended=correct)
                report.corrected.append(p.id)
        logger.info(
            f"reconcile: {report.updated} of {report.checked} profiles corrected"
        )
        return report


def roster_csv(bookings: Iterable[Booking]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(ROSTER_COLUMNS)
    for b in bookings:
        writer.writerow([
            b.user_name,
            b.ticket_type,
            b.qty,
            fmt_gbp(b.total),
            "yes" if b.attended else "no",
        ])
    return buf.getvalue()
