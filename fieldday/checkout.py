"""
Checkout reconciliation.

One ``CheckoutAttempt`` per submit. The attempt walks

    Idle -> AwaitingAuthorization -> Committing -> Settled
    Idle -> AwaitingAuthorization -> Failed
    Committing -> PaidButUncommitted

Money and rows are not transactionally linked: once the payment collaborator
has said yes, a failed write is surfaced as ``CommitFailedAfterPayment``
carrying the payment reference, and nothing else. Stock decrements and view
refreshes happen afterwards on the ``Reconciler`` and never reach the user.
"""
from __future__ import annotations
import asyncio
import logging
import os
import uuid
from enum import Enum
from typing import Iterable, List, Optional, Set, Tuple

from .errors import (
    AuthorizationFailedOrCancelled, CheckoutInProgressError,
    CheckoutNotAllowedError, CommitFailedAfterPayment, DomainError,
    NotFoundError, ValidationError,
)
from .helpers import is_valid_email
from .infra.timings import timeit
from .mockpay import CreateSessionResult, PaymentAdapter
from .model.cart import Actor, EventCart, ShopCart, checkout_blocker
from .model.inventory import EventInventory, ShopInventory
from .model.store import Store, new_id
from .model.viewcache import ViewCache
from .model.views import booking_view, order_view

logger = logging.getLogger(__name__)

AUTHORIZATION_TIMEOUT_SECONDS = float(
    os.getenv("AUTHORIZATION_TIMEOUT_SECONDS", "120")
)
COMMIT_TIMEOUT_SECONDS = float(os.getenv("COMMIT_TIMEOUT_SECONDS", "10"))

# (product_id, variant_id) per unit sold
Unit = Tuple[str, Optional[str]]


class CheckoutState(str, Enum):
    IDLE = "Idle"
    AWAITING_AUTHORIZATION = "AwaitingAuthorization"
    COMMITTING = "Committing"
    SETTLED = "Settled"
    FAILED = "Failed"
    PAID_BUT_UNCOMMITTED = "PaidButUncommitted"


TERMINAL_STATES = (
    CheckoutState.SETTLED,
    CheckoutState.FAILED,
    CheckoutState.PAID_BUT_UNCOMMITTED,
)


async def load_event_inventory(store: Store, event_id: str) -> EventInventory:
    """Fresh snapshot straight from the store, never the view cache."""
    event = await store.get_event(event_id)
    if event is None:
        raise NotFoundError("Event", event_id)
    bookings = await store.list_bookings(event_id=event_id)
    products = await store.products_by_id(ex.product_id for ex in event.extras)
    return EventInventory.from_rows(event, bookings, products)


async def load_shop_inventory(store: Store) -> ShopInventory:
    return ShopInventory.from_products(await store.list_products())


class Reconciler:
    """Fire-and-forget post-commit work: stock decrements + view refresh."""

    def __init__(self, store: Store, cache: Optional[ViewCache]) -> None:
        self.store = store
        self.cache = cache
        self._tasks: Set[asyncio.Task] = set()

    def schedule(self, units: Iterable[Unit], reference: str) -> asyncio.Task:
        task = asyncio.create_task(self._run(list(units), reference))
        # keep a strong ref until done
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, units: List[Unit], reference: str) -> None:
        async with timeit("reconcile.stock"):
            for product_id, variant_id in units:
                try:
                    taken = await self.store.decrement_stock(
                        product_id, variant_id
                    )
                except Exception as e:
                    logger.warning(
                        f"stock decrement failed for {product_id}"
                        f"/{variant_id} ({reference}): {e!r}"
                    )
                    continue
                if not taken:
                    logger.warning(
                        f"stock already at zero for {product_id}"
                        f"/{variant_id} ({reference})"
                    )
        if self.cache is None:
            return
        try:
            async with timeit("reconcile.refresh"):
                await self.cache.refresh()
        except Exception as e:
            logger.warning(f"view refresh failed after {reference}: {e!r}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled reconciliation (tests, shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class CheckoutAttempt:
    kind = "checkout"

    def __init__(
        self, store: Store, payments: PaymentAdapter, reconciler: Reconciler,
        *, actor: Actor, bypass_payment: bool = False,
        authorization_timeout: Optional[float] = None,
        commit_timeout: Optional[float] = None,
    ) -> None:
        self.id = new_id("co_")
        self.store = store
        self.payments = payments
        self.reconciler = reconciler
        self.actor = actor
        self.bypass_payment = bypass_payment
        self.authorization_timeout = (
            AUTHORIZATION_TIMEOUT_SECONDS
            if authorization_timeout is None else authorization_timeout
        )
        self.commit_timeout = (
            COMMIT_TIMEOUT_SECONDS if commit_timeout is None else commit_timeout
        )

        self.state = CheckoutState.IDLE
        self.history: List[CheckoutState] = [CheckoutState.IDLE]
        self.amount = 0
        self.session: Optional[CreateSessionResult] = None
        self.payment_reference: Optional[str] = None
        self.records: List = []
        self.error: Optional[DomainError] = None
        self._progress = asyncio.Event()
        self._abandoned = False
        self._running = False

    # ---- hooks for the concrete checkouts
    async def _validate(self) -> Tuple[int, str]:
        raise NotImplementedError

    async def _commit(self, reference: str) -> List:
        raise NotImplementedError

    def _units(self) -> List[Unit]:
        raise NotImplementedError

    def _clear(self) -> None:
        raise NotImplementedError

    def _record_view(self, row) -> dict:
        raise NotImplementedError

    async def _discard(self, reference: str) -> None:
        """Remove whatever a failed commit left behind under ``reference``."""
        raise NotImplementedError

    # ---- state
    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def _transition(self, state: CheckoutState) -> None:
        logger.debug(f"{self.kind} {self.id}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)
        if self.done:
            self._progress.set()

    def _fail(self, err: DomainError) -> None:
        self.error = err
        self._transition(CheckoutState.FAILED)

    def _on_session(self, session: CreateSessionResult) -> None:
        self.session = session
        self._progress.set()

    async def wait_started(self) -> None:
        """Until the payment page exists or the attempt has finished."""
        await self._progress.wait()

    def abandon(self) -> bool:
        """Cancel before authorization completes. False once paid."""
        if self.state is CheckoutState.IDLE:
            self._abandoned = True
            return True
        if self.state is not CheckoutState.AWAITING_AUTHORIZATION:
            return False
        if self.session is None:
            self._abandoned = True
            return True
        return self.payments.cancel(self.session["payment_session_id"])

    # ---- protocol
    async def run(self) -> List:
        if self.done:
            raise ValidationError("This checkout has already finished")
        if self._running:
            raise CheckoutInProgressError()
        # claimed before the first await
        self._running = True

        try:
            async with timeit(f"{self.kind}.validate"):
                amount, description = await self._validate()
        except DomainError as e:
            self._fail(e)
            raise
        except Exception:
            self._transition(CheckoutState.FAILED)
            raise
        if self._abandoned:
            err = AuthorizationFailedOrCancelled("canceled")
            self._fail(err)
            raise err
        self.amount = amount

        self._transition(CheckoutState.AWAITING_AUTHORIZATION)
        reference = await self._authorize(amount, description)

        self.payment_reference = reference
        self._transition(CheckoutState.COMMITTING)
        try:
            async with timeit(f"{self.kind}.commit"):
                records = await asyncio.wait_for(
                    self._commit(reference), self.commit_timeout
                )
        except asyncio.CancelledError:
            await asyncio.shield(self._discard_quietly(reference))
            self._uncommitted(reference, "cancelled")
            raise
        except Exception as e:
            # a timed-out commit is cancelled mid-write and may leave rows
            await asyncio.shield(self._discard_quietly(reference))
            raise self._uncommitted(reference, repr(e)) from e

        self.records = records
        self._transition(CheckoutState.SETTLED)
        logger.info(
            f"{self.kind} {self.id}: settled {len(records)} record(s) "
            f"for {self.amount} ({reference})"
        )
        units = self._units()
        self._clear()
        if units or self.reconciler.cache is not None:
            self.reconciler.schedule(units, reference)
        return records

    def _uncommitted(self, reference: str,
                     cause: str) -> CommitFailedAfterPayment:
        err = CommitFailedAfterPayment(reference, cause=cause)
        logger.error(
            f"{self.kind} {self.id}: payment {reference} captured for "
            f"{self.amount} but commit failed: {cause}"
        )
        self.error = err
        self._transition(CheckoutState.PAID_BUT_UNCOMMITTED)
        return err

    async def _discard_quietly(self, reference: str) -> None:
        try:
            await self._discard(reference)
        except Exception as e:
            logger.warning(
                f"{self.kind} {self.id}: could not remove rows for "
                f"{reference}: {e!r}"
            )

    async def _authorize(self, amount: int, description: str) -> str:
        if self.bypass_payment:
            return f"manual_{uuid.uuid4().hex}"
        try:
            async with timeit(f"{self.kind}.authorize"):
                auth = await asyncio.wait_for(
                    self.payments.authorize(
                        amount, description, on_session=self._on_session
                    ),
                    self.authorization_timeout,
                )
        except asyncio.TimeoutError:
            err = AuthorizationFailedOrCancelled("timed out")
            self._fail(err)
            raise err from None
        except AuthorizationFailedOrCancelled as e:
            self._fail(e)
            raise
        except Exception:
            self._transition(CheckoutState.FAILED)
            raise
        if self._abandoned:
            # abandoned while the session was being created; nothing was paid
            err = AuthorizationFailedOrCancelled("canceled")
            self._fail(err)
            raise err
        return auth.reference

    def snapshot(self) -> dict:
        out = {
            "attempt_id": self.id,
            "kind": self.kind,
            "state": self.state.value,
            "amount": self.amount,
            "payment_reference": self.payment_reference,
            "redirect_url": self.session["redirect_url"] if self.session else None,
            "records": [self._record_view(r) for r in self.records],
        }
        if self.error is not None:
            out["error"] = {
                "code": self.error.code.value,
                "message": self.error.message,
            }
        return out


class EventCheckout(CheckoutAttempt):
    """Tickets (+ extras) for one event.

    ``operator=True`` is the add-booking path: no guard, no payment, a
    synthetic ``manual_`` reference, otherwise the same commit/decrement.
    """
    kind = "event_checkout"

    def __init__(self, store: Store, payments: PaymentAdapter,
                 reconciler: Reconciler, *, actor: Actor, cart: EventCart,
                 operator: bool = False, year: Optional[int] = None,
                 **kw) -> None:
        super().__init__(store, payments, reconciler, actor=actor,
                         bypass_payment=operator, **kw)
        self.cart = cart
        self.operator = operator
        self.year = year
        self._committed_units: List[Unit] = []

    async def _validate(self) -> Tuple[int, str]:
        cart = self.cart
        if not self.operator:
            blocker = checkout_blocker(
                self.actor, cart.compute_total(self.actor.is_member), self.year
            )
            if blocker:
                raise CheckoutNotAllowedError(blocker)
        elif not self.actor.authenticated:
            raise ValidationError("A user is required for a booking")
        if not cart.categories_present():
            raise ValidationError("Select at least one ticket")

        if not self.operator:
            existing = await self.store.list_bookings(
                event_id=cart.event_id, user_id=self.actor.user_id
            )
            if existing:
                raise ValidationError(
                    "You already have a booking for this event"
                )

        fresh = await load_event_inventory(self.store, cart.event_id)
        cart.revalidate(fresh)
        return cart.compute_total(self.actor.is_member), cart.describe()

    async def _commit(self, reference: str) -> List:
        cart = self.cart
        totals = cart.category_totals(self.actor.is_member)
        cats = cart.categories_present()
        created = []
        for i, category in enumerate(cats):
            extras = dict(cart.extras) if i == 0 else {}
            booking = await self.store.create_booking(
                event_id=cart.event_id,
                user_id=self.actor.user_id,
                user_name=self.actor.name,
                ticket_type=category,
                qty=cart.tickets[category],
                extras=extras,
                total=totals[category],
                payment_reference=reference,
            )
            created.append(booking)
        self._committed_units = self._extra_units()
        return created

    async def _discard(self, reference: str) -> None:
        # rows are per category and not atomic as a set
        for booking in await self.store.bookings_for_payment(reference):
            await self.store.delete_booking(booking.id)
            logger.warning(
                f"removed partial booking {booking.id} ({reference})"
            )

    def _extra_units(self) -> List[Unit]:
        units: List[Unit] = []
        for key, qty in self.cart.extras.items():
            line = self.cart.inventory.extras[key]
            units.extend([(line.product_id, line.variant_id)] * qty)
        return units

    def _units(self) -> List[Unit]:
        return self._committed_units

    def _clear(self) -> None:
        self.cart.clear()

    def _record_view(self, row) -> dict:
        return booking_view(row)


class ShopCheckout(CheckoutAttempt):
    kind = "shop_checkout"

    def __init__(self, store: Store, payments: PaymentAdapter,
                 reconciler: Reconciler, *, actor: Actor, cart: ShopCart,
                 postage_id: Optional[str] = None,
                 customer_name: str = "", customer_email: str = "",
                 **kw) -> None:
        super().__init__(store, payments, reconciler, actor=actor, **kw)
        self.cart = cart
        self.postage_id = postage_id
        self.customer_name = customer_name or actor.name
        self.customer_email = customer_email or actor.email
        self._postage_name = ""
        self._postage_price = 0
        self._committed_units: List[Unit] = []

    async def _validate(self) -> Tuple[int, str]:
        cart = self.cart
        if cart.is_empty:
            raise CheckoutNotAllowedError("Cart is empty")
        if not self.customer_name.strip():
            raise ValidationError("A name is required")
        if not is_valid_email(self.customer_email):
            raise ValidationError("A valid email is required")

        if self.postage_id and not cart.pickup_only:
            postage = await self.store.get_postage(self.postage_id)
            if postage is None:
                raise NotFoundError("Postage option", self.postage_id)
            self._postage_name = postage.name
            self._postage_price = int(postage.price)
        else:
            self._postage_name = "Collection"
            self._postage_price = 0

        cart.revalidate(await load_shop_inventory(self.store))
        member = self.actor.is_member
        total = cart.compute_total(member, self._postage_price)
        if total <= 0:
            raise CheckoutNotAllowedError("Cart is empty")
        return total, cart.describe()

    async def _commit(self, reference: str) -> List:
        cart = self.cart
        member = self.actor.is_member
        order = await self.store.create_order(
            user_id=self.actor.user_id,
            customer_name=self.customer_name,
            customer_email=self.customer_email,
            items=cart.captured_items(member),
            subtotal=cart.subtotal(member),
            shipping_fee=cart.shipping_fee(self._postage_price),
            postage_name=self._postage_name,
            total=cart.compute_total(member, self._postage_price),
            payment_reference=reference,
        )
        units: List[Unit] = []
        for key, qty in cart.lines.items():
            line = cart.inventory.lines[key]
            units.extend([(line.product_id, line.variant_id)] * qty)
        self._committed_units = units
        return [order]

    async def _discard(self, reference: str) -> None:
        for order in await self.store.orders_for_payment(reference):
            await self.store.delete_order(order.id)
            logger.warning(f"removed partial order {order.id} ({reference})")

    def _units(self) -> List[Unit]:
        return self._committed_units

    def _clear(self) -> None:
        self.cart.clear()

    def _record_view(self, row) -> dict:
        return order_view(row)
