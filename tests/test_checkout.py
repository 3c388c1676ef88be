"""Tests for checkout reconciliation.

Run with: pytest tests/test_checkout.py -v
"""

import asyncio

import pytest

from fieldday.checkout import (
    CheckoutState, EventCheckout, ShopCheckout, load_event_inventory,
    load_shop_inventory,
)
from fieldday.errors import (
    AuthorizationFailedOrCancelled, CapacityExceededError,
    CheckoutInProgressError, CheckoutNotAllowedError,
    CommitFailedAfterPayment, ValidationError,
)
from fieldday.infra import timings
from fieldday.mockpay import MockPay
from fieldday.model.cart import EventCart, ShopCart
from fieldday.model.inventory import RENTAL, WALK_ON

TEST_SECRET = "test-secret"


async def _event_cart(store, event_id, walk_on=0, rental=0, extras=None):
    cart = EventCart(await load_event_inventory(store, event_id))
    cart.set_quantity(WALK_ON, walk_on)
    cart.set_quantity(RENTAL, rental)
    for key, n in (extras or {}).items():
        cart.set_extra_quantity(key, n)
    return cart


class TestEventCheckout:
    """Player checkout for an event."""

    async def test_scenario_two_walk_ons(self, store, payments, reconciler,
                                         make_event, make_profile, actor_for):
        """Filling the pool creates one booking of qty 2 for 50.00."""
        ev = await make_event()
        profile = await make_profile()
        cart = await _event_cart(store, ev.id, walk_on=2)
        attempt = EventCheckout(store, payments, reconciler,
                                actor=actor_for(profile), cart=cart)

        records = await attempt.run()

        assert len(records) == 1
        assert records[0].qty == 2
        assert records[0].total == 5000
        assert records[0].payment_reference == attempt.payment_reference
        assert attempt.history == [
            CheckoutState.IDLE,
            CheckoutState.AWAITING_AUTHORIZATION,
            CheckoutState.COMMITTING,
            CheckoutState.SETTLED,
        ]
        assert cart.is_empty

        again = await _event_cart(store, ev.id)
        assert again.set_quantity(WALK_ON, 1) == 0

    async def test_member_pays_forty_five(self, store, payments, reconciler,
                                          make_event, make_profile, actor_for):
        """An active member gets 10% off the tickets."""
        ev = await make_event()
        profile = await make_profile(member_status="active")
        cart = await _event_cart(store, ev.id, walk_on=2)
        attempt = EventCheckout(store, payments, reconciler,
                                actor=actor_for(profile), cart=cart)
        records = await attempt.run()
        assert records[0].total == 4500
        assert attempt.amount == 4500

    async def test_two_categories_share_a_reference(
        self, store, payments, reconciler, make_event, make_profile, actor_for,
    ):
        """One row per category; extras ride on the first category only."""
        product = await store.create_product(name="BBs", price=1200, stock=5,
                                             extra_eligible=True)
        ev = await make_event(extra_product_ids=[product.id])
        extra_key = ev.extras[0].id
        profile = await make_profile()
        cart = await _event_cart(store, ev.id, walk_on=1, rental=1,
                                 extras={extra_key: 2})
        attempt = EventCheckout(store, payments, reconciler,
                                actor=actor_for(profile), cart=cart)

        records = await attempt.run()

        by_type = {b.ticket_type: b for b in records}
        assert set(by_type) == {WALK_ON, RENTAL}
        assert by_type[WALK_ON].extras == {extra_key: 2}
        assert by_type[RENTAL].extras == {}
        assert {b.payment_reference for b in records} == {
            attempt.payment_reference
        }
        assert sum(b.total for b in records) == attempt.amount == 8400

    async def test_commit_failure_is_paid_but_uncommitted(
        self, store, payments, reconciler, make_event, make_profile, actor_for,
        monkeypatch,
    ):
        """A failed write after payment carries the reference; no row exists."""
        ev = await make_event()
        profile = await make_profile()
        cart = await _event_cart(store, ev.id, walk_on=1)

        async def broken(**fields):
            raise RuntimeError("disk full")
        monkeypatch.setattr(store, "create_booking", broken)

        attempt = EventCheckout(store, payments, reconciler,
                                actor=actor_for(profile), cart=cart)
        with pytest.raises(CommitFailedAfterPayment) as exc:
            await attempt.run()

        ref = exc.value.payment_reference
        assert ref and ref == attempt.payment_reference
        assert ref in exc.value.message
        assert attempt.state is CheckoutState.PAID_BUT_UNCOMMITTED
        assert await store.list_bookings(event_id=ev.id) == []

    async def test_partial_commit_is_removed(
        self, store, payments, reconciler, make_event, make_profile, actor_for,
        monkeypatch,
    ):
        """If the second category fails, the first row is taken back out."""
        ev = await make_event()
        profile = await make_profile()
        cart = await _event_cart(store, ev.id, walk_on=1, rental=1)
        real = store.create_booking

        async def second_fails(**fields):
            if fields["ticket_type"] == RENTAL:
                raise RuntimeError("connection reset")
            return await real(**fields)
        monkeypatch.setattr(store, "create_booking", second_fails)

        attempt = EventCheckout(store, payments, reconciler,
                                actor=actor_for(profile), cart=cart)
        with pytest.raises(CommitFailedAfterPayment):
            await attempt.run()
        assert await store.list_bookings(event_id=ev.id) == []

    async def test_commit_timeout_removes_written_rows(
        self, store, payments, reconciler, make_event, make_profile, actor_for,
        monkeypatch,
    ):
        """A commit cut off mid-way leaves no booking behind."""
        ev = await make_event()
        profile = await make_profile()
        cart = await _event_cart(store, ev.id, walk_on=1, rental=1)
        real = store.create_booking

        async def slow_rental(**fields):
            if fields["ticket_type"] == RENTAL:
                await asyncio.sleep(1)
            return await real(**fields)
        monkeypatch.setattr(store, "create_booking", slow_rental)

        attempt = EventCheckout(store, payments, reconciler,
                                actor=actor_for(profile), cart=cart,
                                commit_timeout=0.2)
        with pytest.raises(CommitFailedAfterPayment) as exc:
            await attempt.run()

        assert exc.value.payment_reference == attempt.payment_reference
        assert attempt.state is CheckoutState.PAID_BUT_UNCOMMITTED
        assert await store.list_bookings(event_id=ev.id) == []
        ref = attempt.payment_reference
        assert await store.bookings_for_payment(ref) == []

    async def test_concurrent_runs_charge_once(
        self, store, payments, reconciler, make_event, make_profile, actor_for,
    ):
        """A second run of the same attempt is refused while the first runs."""
        ev = await make_event()
        profile = await make_profile()
        attempt = EventCheckout(
            store, payments, reconciler, actor=actor_for(profile),
            cart=await _event_cart(store, ev.id, walk_on=1),
        )

        first, second = await asyncio.gather(
            attempt.run(), attempt.run(), return_exceptions=True,
        )

        assert isinstance(first, list) and len(first) == 1
        assert isinstance(second, CheckoutInProgressError)
        rows = await store.list_bookings(event_id=ev.id)
        assert [b.payment_reference for b in rows] == [
            attempt.payment_reference
        ]

    async def test_finished_attempt_cannot_rerun(
        self, store, payments, reconciler, make_event, make_profile, actor_for,
    ):
        """A settled attempt is not charged again."""
        ev = await make_event()
        profile = await make_profile()
        attempt = EventCheckout(
            store, payments, reconciler, actor=actor_for(profile),
            cart=await _event_cart(store, ev.id, walk_on=1),
        )
        await attempt.run()
        with pytest.raises(ValidationError):
            await attempt.run()

    async def test_declined_payment_writes_nothing(
        self, store, reconciler, make_event, make_profile, actor_for,
    ):
        """A declined payment ends in Failed with no booking."""
        ev = await make_event()
        profile = await make_profile()
        cart = await _event_cart(store, ev.id, walk_on=1)
        attempt = EventCheckout(
            store, MockPay(secret=TEST_SECRET, auto="failed"), reconciler,
            actor=actor_for(profile), cart=cart,
        )
        with pytest.raises(AuthorizationFailedOrCancelled) as exc:
            await attempt.run()
        assert exc.value.outcome == "failed"
        assert attempt.state is CheckoutState.FAILED
        assert not cart.is_empty
        assert await store.list_bookings(event_id=ev.id) == []

    async def test_capacity_taken_meanwhile_is_refused(
        self, store, payments, reconciler, make_event, make_profile, actor_for,
    ):
        """Re-validation uses live bookings and stops before payment."""
        ev = await make_event()
        profile = await make_profile()
        cart = await _event_cart(store, ev.id, walk_on=2)
        await store.create_booking(
            event_id=ev.id, user_id="us_other", user_name="Other",
            ticket_type=WALK_ON, qty=1, extras={}, total=2500,
            payment_reference="manual_x",
        )
        attempt = EventCheckout(store, payments, reconciler,
                                actor=actor_for(profile), cart=cart)
        with pytest.raises(CapacityExceededError):
            await attempt.run()
        assert attempt.session is None
        assert attempt.state is CheckoutState.FAILED

    async def test_waiver_is_required(self, store, payments, reconciler,
                                      make_event, make_profile, actor_for):
        """Players without this year's waiver cannot book."""
        ev = await make_event()
        profile = await make_profile(waiver_signed=False, waiver_year=None)
        cart = await _event_cart(store, ev.id, walk_on=1)
        attempt = EventCheckout(store, payments, reconciler,
                                actor=actor_for(profile), cart=cart)
        with pytest.raises(CheckoutNotAllowedError):
            await attempt.run()

    async def test_one_booking_per_event(self, store, payments, reconciler,
                                         make_event, make_profile, actor_for):
        """A second player booking for the same event is refused."""
        ev = await make_event()
        profile = await make_profile()
        first = EventCheckout(
            store, payments, reconciler, actor=actor_for(profile),
            cart=await _event_cart(store, ev.id, walk_on=1),
        )
        await first.run()
        second = EventCheckout(
            store, payments, reconciler, actor=actor_for(profile),
            cart=await _event_cart(store, ev.id, rental=1),
        )
        with pytest.raises(ValidationError):
            await second.run()

    async def test_phases_are_timed(self, store, payments, reconciler,
                                    make_event, make_profile, actor_for):
        """Validation, authorization and commit each leave a timing."""
        ev = await make_event()
        profile = await make_profile()
        attempt = EventCheckout(
            store, payments, reconciler, actor=actor_for(profile),
            cart=await _event_cart(store, ev.id, walk_on=1),
        )
        await attempt.run()
        kinds = {row["kind"] for row in timings.snapshot()}
        assert {"event_checkout.validate", "event_checkout.authorize",
                "event_checkout.commit"} <= kinds


class TestWebhookDrivenAuthorization:
    """Authorization that waits for the payment page."""

    async def test_webhook_success_settles(self, store, reconciler,
                                           make_event, make_profile,
                                           actor_for):
        """The attempt waits until the provider reports success."""
        pay = MockPay(secret=TEST_SECRET, auto=None)
        ev = await make_event()
        profile = await make_profile()
        attempt = EventCheckout(
            store, pay, reconciler, actor=actor_for(profile),
            cart=await _event_cart(store, ev.id, walk_on=1),
        )
        task = asyncio.create_task(attempt.run())
        await attempt.wait_started()
        assert attempt.state is CheckoutState.AWAITING_AUTHORIZATION

        with pytest.raises(CheckoutInProgressError):
            await attempt.run()

        psid = attempt.session["payment_session_id"]
        assert pay.deliver(pay.build_event(psid, "succeeded"))
        records = await task
        assert attempt.state is CheckoutState.SETTLED
        assert records[0].payment_reference == psid

    async def test_replayed_event_is_ignored(self):
        """The same idempotency key is applied once."""
        pay = MockPay(secret=TEST_SECRET, auto=None)
        event = {"type": "payment.succeeded", "payment_session_id": "mock_x",
                 "idempotency_key": "evt_1"}
        assert pay.deliver(event) is False  # nothing pending
        assert pay.deliver(event) is False

    async def test_replay_memory_is_bounded(self):
        """Only the most recent idempotency keys are remembered."""
        pay = MockPay(secret=TEST_SECRET, auto=None, seen_limit=2)
        for n in range(3):
            pay.deliver({"type": "payment.succeeded",
                         "payment_session_id": "mock_x",
                         "idempotency_key": f"evt_{n}"})
        assert list(pay._seen) == ["evt_1", "evt_2"]

    async def test_abandon_before_payment(self, store, reconciler, make_event,
                                          make_profile, actor_for):
        """Abandoning while the payment page is open cancels cleanly."""
        pay = MockPay(secret=TEST_SECRET, auto=None)
        ev = await make_event()
        profile = await make_profile()
        attempt = EventCheckout(
            store, pay, reconciler, actor=actor_for(profile),
            cart=await _event_cart(store, ev.id, walk_on=1),
        )
        task = asyncio.create_task(attempt.run())
        await attempt.wait_started()
        assert attempt.abandon() is True

        with pytest.raises(AuthorizationFailedOrCancelled) as exc:
            await task
        assert exc.value.outcome == "canceled"
        assert attempt.abandon() is False
        assert await store.list_bookings(event_id=ev.id) == []

    async def test_authorization_times_out(self, store, reconciler,
                                           make_event, make_profile,
                                           actor_for):
        """No answer from the provider ends in Failed, not a hang."""
        pay = MockPay(secret=TEST_SECRET, auto=None)
        ev = await make_event()
        profile = await make_profile()
        attempt = EventCheckout(
            store, pay, reconciler, actor=actor_for(profile),
            cart=await _event_cart(store, ev.id, walk_on=1),
            authorization_timeout=0.05,
        )
        with pytest.raises(AuthorizationFailedOrCancelled) as exc:
            await attempt.run()
        assert exc.value.outcome == "timed out"
        assert pay.get_pending(attempt.session["payment_session_id"]) is None


class TestOperatorBooking:
    """Add-booking by an operator."""

    async def test_skips_payment_and_waiver(self, store, reconciler,
                                            make_event, make_profile,
                                            actor_for):
        """A synthetic reference is recorded and no payment is requested."""
        pay = MockPay(secret=TEST_SECRET, auto=None)
        ev = await make_event()
        profile = await make_profile(waiver_signed=False)
        attempt = EventCheckout(
            store, pay, reconciler, actor=actor_for(profile),
            cart=await _event_cart(store, ev.id, rental=2), operator=True,
        )
        records = await attempt.run()
        assert records[0].payment_reference.startswith("manual_")
        assert attempt.session is None
        assert CheckoutState.AWAITING_AUTHORIZATION in attempt.history


class TestReconciliation:
    """Background stock decrement and view refresh."""

    async def test_extras_decrement_per_unit(
        self, store, payments, reconciler, make_event, make_profile, actor_for,
    ):
        """Each unit sold takes one from stock once the commit is reported."""
        product = await store.create_product(
            name="Tee", price=2000,
            extra_eligible=True,
            variants=[{"id": "va_m", "name": "M", "stock": 3},
                      {"id": "va_l", "name": "L", "stock": 1}],
        )
        ev = await make_event(extra_product_ids=[product.id])
        ex = ev.extras[0].id
        profile = await make_profile()
        attempt = EventCheckout(
            store, payments, reconciler, actor=actor_for(profile),
            cart=await _event_cart(store, ev.id, walk_on=1,
                                   extras={f"{ex}:va_m": 2, f"{ex}:va_l": 1}),
        )
        await attempt.run()
        await reconciler.drain()

        fresh = await store.get_product(product.id)
        stock = {v.id: v.stock for v in fresh.variants}
        assert stock == {"va_m": 1, "va_l": 0}

    async def test_refresh_failure_never_reaches_the_user(
        self, store, payments, reconciler, cache, make_event, make_profile,
        actor_for, monkeypatch,
    ):
        """A broken view refresh is logged and the booking stands."""
        async def broken():
            raise RuntimeError("cache down")
        monkeypatch.setattr(cache, "refresh", broken)

        ev = await make_event()
        profile = await make_profile()
        attempt = EventCheckout(
            store, payments, reconciler, actor=actor_for(profile),
            cart=await _event_cart(store, ev.id, walk_on=1),
        )
        await attempt.run()
        await reconciler.drain()
        assert attempt.state is CheckoutState.SETTLED
        assert len(await store.list_bookings(event_id=ev.id)) == 1

    async def test_refresh_shows_new_booking(
        self, store, payments, reconciler, cache, make_event, make_profile,
        actor_for,
    ):
        """The cached listing reflects the booking after reconciliation."""
        ev = await make_event()
        before = await cache.get_events()
        assert before[0]["pools"][WALK_ON]["remaining"] == 2

        profile = await make_profile()
        attempt = EventCheckout(
            store, payments, reconciler, actor=actor_for(profile),
            cart=await _event_cart(store, ev.id, walk_on=1),
        )
        await attempt.run()
        await reconciler.drain()
        after = await cache.get_events()
        assert after[0]["pools"][WALK_ON]["remaining"] == 1


class TestShopCheckout:
    """Retail orders."""

    async def test_order_captures_lines_and_postage(
        self, store, payments, reconciler, make_profile, actor_for,
    ):
        """One order row with frozen prices and shipping."""
        await store.create_product(product_id="pr_patch", name="Patch",
                                   price=500, stock=10)
        postage = await store.create_postage(name="2nd class", price=295)
        profile = await make_profile()
        cart = ShopCart(await load_shop_inventory(store))
        cart.set_quantity("pr_patch", 3)

        attempt = ShopCheckout(store, payments, reconciler,
                               actor=actor_for(profile), cart=cart,
                               postage_id=postage.id)
        (order,) = await attempt.run()
        await reconciler.drain()

        assert order.subtotal == 1500
        assert order.shipping_fee == 295
        assert order.total == 1795
        assert order.status == "pending"
        assert order.postage_name == "2nd class"
        assert order.items[0]["unit_price"] == 500
        assert (await store.get_product("pr_patch")).stock == 7

    async def test_pickup_only_order_ships_free(
        self, store, payments, reconciler, make_profile, actor_for,
    ):
        """Any collection-only line drops the postage."""
        await store.create_product(product_id="pr_gas", name="Green gas",
                                   price=900, stock=5, no_post=True)
        postage = await store.create_postage(name="1st class", price=395)
        profile = await make_profile(member_status="active")
        cart = ShopCart(await load_shop_inventory(store))
        cart.set_quantity("pr_gas", 1)

        attempt = ShopCheckout(store, payments, reconciler,
                               actor=actor_for(profile), cart=cart,
                               postage_id=postage.id)
        (order,) = await attempt.run()
        assert order.shipping_fee == 0
        assert order.total == 810
        assert order.postage_name == "Collection"

    async def test_empty_cart_is_refused(self, store, payments, reconciler,
                                         make_profile, actor_for):
        """Nothing in the cart, nothing to pay for."""
        profile = await make_profile()
        cart = ShopCart(await load_shop_inventory(store))
        attempt = ShopCheckout(store, payments, reconciler,
                               actor=actor_for(profile), cart=cart)
        with pytest.raises(CheckoutNotAllowedError):
            await attempt.run()

    async def test_commit_failure_reports_reference(
        self, store, payments, reconciler, make_profile, actor_for,
        monkeypatch,
    ):
        """Retail shares the paid-but-uncommitted path."""
        await store.create_product(product_id="pr_p", name="P", price=100,
                                   stock=1)
        profile = await make_profile()
        cart = ShopCart(await load_shop_inventory(store))
        cart.set_quantity("pr_p", 1)

        async def broken(**fields):
            raise RuntimeError("db gone")
        monkeypatch.setattr(store, "create_order", broken)

        attempt = ShopCheckout(store, payments, reconciler,
                               actor=actor_for(profile), cart=cart)
        with pytest.raises(CommitFailedAfterPayment) as exc:
            await attempt.run()
        assert exc.value.payment_reference.startswith("mock_")
        assert await store.list_orders() == []
