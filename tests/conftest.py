"""Pytest configuration and shared fixtures."""

import pytest

from fieldday.checkin import CheckInEngine
from fieldday.checkout import Reconciler
from fieldday.helpers import current_year
from fieldday.infra import timings
from fieldday.mockpay import MockPay
from fieldday.model.cart import Actor
from fieldday.model.store import Store
from fieldday.model.viewcache import ViewCache
from fieldday.model.viewcache._local import LocalBackend

TEST_SECRET = "test-secret"


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'fieldday.db'}"


@pytest.fixture
async def store(db_url):
    store = await Store.open(db_url)
    yield store
    await store.close()


@pytest.fixture
def cache(store) -> ViewCache:
    return ViewCache(LocalBackend(), store)


@pytest.fixture
def payments() -> MockPay:
    return MockPay(secret=TEST_SECRET, auto="succeeded")


@pytest.fixture
async def reconciler(store, cache):
    rec = Reconciler(store, cache)
    yield rec
    await rec.drain()


@pytest.fixture
def engine(store) -> CheckInEngine:
    return CheckInEngine(store)


@pytest.fixture(autouse=True)
def clear_timings():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture
def make_profile(store):
    async def _make(name="Alex Player", **fields):
        fields.setdefault("email", "alex@example.com")
        fields.setdefault("waiver_signed", True)
        fields.setdefault("waiver_year", current_year())
        return await store.create_profile(name=name, **fields)
    return _make


@pytest.fixture
def make_event(store):
    async def _make(**fields):
        fields.setdefault("title", "Sunday Skirmish")
        fields.setdefault("starts_at", 1_900_000_000.0)
        fields.setdefault("walk_on_slots", 2)
        fields.setdefault("walk_on_price", 2500)
        fields.setdefault("rental_slots", 2)
        fields.setdefault("rental_price", 3500)
        return await store.create_event(**fields)
    return _make


@pytest.fixture
def actor_for():
    def _actor(profile) -> Actor:
        return Actor.from_profile(profile)
    return _actor
