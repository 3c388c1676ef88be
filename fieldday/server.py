from __future__ import annotations
import sys

import asyncio
import httpx
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi import Form
from fastapi.responses import ORJSONResponse, RedirectResponse, Response
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

import redis.asyncio as redis

from .checkin import CheckInEngine, roster_csv
from .checkout import (
    CheckoutAttempt, CheckoutState, EventCheckout, Reconciler, ShopCheckout,
    load_event_inventory, load_shop_inventory,
)
from .errors import (
    AmbiguousMatchError, CapacityExceededError, CheckoutInProgressError,
    CommitFailedAfterPayment, DomainError, ErrorCode, NotFoundError,
    ValidationError,
)
from .helpers import ct_equal
from .infra import timings
from .infra.timings import timeit
from .members import MembershipWorkflow
from .mockpay import OUTCOMES, MockPay, PaymentAdapter
from .model.cart import Actor, EventCart, ShopCart
from .model.store import Store
from .model.viewcache import BACKEND as VIEWCACHE_BACKEND, new_cache
from .model.views import booking_view, order_view, profile_view
from .orders import set_order_status

logger = logging.getLogger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)
DATABASE_URL = os.environ.get("DATABASE_URL", None)

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

# finished attempts kept around for polling
MAX_ATTEMPTS = 1000

STATUS_BY_CODE = {
    ErrorCode.VALIDATION: 400,
    ErrorCode.CHECKOUT_NOT_ALLOWED: 403,
    ErrorCode.CHECKOUT_IN_PROGRESS: 409,
    ErrorCode.CAPACITY_EXCEEDED: 409,
    ErrorCode.AUTHORIZATION_FAILED: 402,
    ErrorCode.COMMIT_FAILED_AFTER_PAYMENT: 502,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.AMBIGUOUS_MATCH: 409,
    ErrorCode.CAMERA_PERMISSION: 400,
}


# ---
# startup / shutdown
# ---
def _say_hello(app: FastAPI) -> None:
    print('\n' * 3)
    print('=' * 50)
    print('Field Day is starting up...')
    print(f'   - View cache backend: {app.state.viewcache_backend}')
    print(f'   - Payments: {type(app.state.payments).__name__}')
    print('=' * 50)
    print('\n' * 3)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = await Store.open(app.state.database_url)

    r = None
    if app.state.viewcache_backend == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        r = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )

    cache = new_cache(store, r=r, backend=app.state.viewcache_backend)
    app.state.store = store
    app.state.cache = cache
    app.state.reconciler = Reconciler(store, cache)
    app.state.checkin = CheckInEngine(store)
    app.state.members = MembershipWorkflow(store)
    app.state.attempts = {}
    app.state.inflight = {}
    app.state.tasks = set()
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=64),
    )
    _say_hello(app)
    try:
        yield
    finally:
        for task in list(app.state.tasks):
            task.cancel()
        await app.state.reconciler.drain()
        await app.state.http.aclose()
        if r is not None:
            await r.aclose()
        await store.close()


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_payments(request: Request) -> PaymentAdapter:
    return request.app.state.payments


def _qty(value) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"invalid quantity: {value!r}") from None
    if n < 0:
        raise ValidationError(f"invalid quantity: {value!r}")
    return n


def _set_exact(setter, key: str, value) -> None:
    # editing clamps; a submitted cart that no longer fits is refused instead
    wanted = _qty(value)
    got = setter(key, wanted)
    if got != wanted:
        raise CapacityExceededError(key, wanted, got)


async def _actor(store: Store, user_id: Optional[str]) -> Actor:
    if not user_id:
        return Actor(user_id=None)
    profile = await store.get_profile(user_id)
    if profile is None:
        raise NotFoundError("Profile", user_id)
    return Actor.from_profile(profile)


async def _event_cart(store: Store, event_id: str, payload: dict) -> EventCart:
    cart = EventCart(await load_event_inventory(store, event_id))
    for category, n in (payload.get("tickets") or {}).items():
        _set_exact(cart.set_quantity, category, n)
    for key, n in (payload.get("extras") or {}).items():
        _set_exact(cart.set_extra_quantity, key, n)
    return cart


def _remember(app: FastAPI, attempt: CheckoutAttempt) -> None:
    attempts: Dict[str, CheckoutAttempt] = app.state.attempts
    attempts[attempt.id] = attempt
    if len(attempts) > MAX_ATTEMPTS:
        for aid in [a.id for a in attempts.values() if a.done]:
            attempts.pop(aid, None)
            if len(attempts) <= MAX_ATTEMPTS:
                break


async def _run_attempt(app: FastAPI, attempt: CheckoutAttempt,
                       owner: str) -> None:
    try:
        await attempt.run()
    except DomainError as e:
        logger.info(f"{attempt.kind} {attempt.id} ended: {e}")
    except Exception:
        logger.exception(f"{attempt.kind} {attempt.id} crashed")
    finally:
        if app.state.inflight.get(owner) is attempt:
            app.state.inflight.pop(owner, None)


async def _launch(request: Request, attempt: CheckoutAttempt, owner: str,
                  wait: bool):
    app = request.app
    current = app.state.inflight.get(owner)
    if current is not None and not current.done:
        raise CheckoutInProgressError()
    app.state.inflight[owner] = attempt
    _remember(app, attempt)

    task = asyncio.create_task(_run_attempt(app, attempt, owner))
    app.state.tasks.add(task)
    task.add_done_callback(app.state.tasks.discard)
    if wait:
        await task
    else:
        await attempt.wait_started()
    if attempt.error is not None:
        raise attempt.error
    if attempt.state is CheckoutState.FAILED:
        raise HTTPException(500, detail="checkout failed")
    status = 200 if attempt.done else 202
    return ORJSONResponse(attempt.snapshot(), status_code=status)


router = APIRouter()
admin = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])


# ----------------------------
# Catalogue (view cache)
# ----------------------------
@router.get("/api/events")
async def list_events(request: Request):
    return {"items": await request.app.state.cache.get_events()}


@router.get("/api/events/{event_id}")
async def get_event(event_id: str, request: Request):
    for ev in await request.app.state.cache.get_events():
        if ev["id"] == event_id:
            return ev
    raise NotFoundError("Event", event_id)


@router.get("/api/products")
async def list_products(request: Request):
    return {"items": await request.app.state.cache.get_products()}


@router.get("/api/postage")
async def list_postage(store: Store = Depends(get_store)):
    return {"items": [
        {"id": p.id, "name": p.name, "price": int(p.price)}
        for p in await store.list_postage()
    ]}


# ----------------------------
# Checkout
# ----------------------------
@router.post("/api/events/{event_id}/checkout")
async def event_checkout(event_id: str, payload: dict, request: Request,
                         store: Store = Depends(get_store),
                         payments: PaymentAdapter = Depends(get_payments)):
    actor = await _actor(store, payload.get("user_id"))
    cart = await _event_cart(store, event_id, payload)
    attempt = EventCheckout(store, payments, request.app.state.reconciler,
                            actor=actor, cart=cart)
    owner = actor.user_id or attempt.id
    return await _launch(request, attempt, owner, bool(payload.get("wait")))


@router.post("/api/shop/checkout")
async def shop_checkout(payload: dict, request: Request,
                        store: Store = Depends(get_store),
                        payments: PaymentAdapter = Depends(get_payments)):
    actor = await _actor(store, payload.get("user_id"))
    cart = ShopCart(await load_shop_inventory(store))
    for key, n in (payload.get("items") or {}).items():
        _set_exact(cart.set_quantity, key, n)
    attempt = ShopCheckout(
        store, payments, request.app.state.reconciler,
        actor=actor, cart=cart,
        postage_id=payload.get("postage_id"),
        customer_name=(payload.get("customer_name") or "").strip(),
        customer_email=(payload.get("customer_email") or "").strip(),
    )
    owner = actor.user_id or attempt.id
    return await _launch(request, attempt, owner, bool(payload.get("wait")))


def _attempt(request: Request, attempt_id: str) -> CheckoutAttempt:
    attempt = request.app.state.attempts.get(attempt_id)
    if attempt is None:
        raise NotFoundError("Checkout", attempt_id)
    return attempt


# polled by the client while the payment page is open
@router.get("/api/checkout/{attempt_id}")
async def checkout_status(attempt_id: str, request: Request):
    return _attempt(request, attempt_id).snapshot()


@router.post("/api/checkout/{attempt_id}/cancel")
async def checkout_cancel(attempt_id: str, request: Request):
    attempt = _attempt(request, attempt_id)
    return {"cancelled": attempt.abandon(), "state": attempt.state.value}


# ----------------------------
# Webhook endpoint
# ----------------------------
@router.post("/payments/webhook")
async def payments_webhook(request: Request,
                           payments: PaymentAdapter = Depends(get_payments)):
    payload = await request.body()
    headers = dict(request.headers)

    event = payments.verify_webhook(payload, headers)
    kind = payments.event_kind(event)  # succeeded | failed | canceled
    psid, idem = payments.event_ids(event)
    if not psid:
        raise HTTPException(400, detail="missing payment_session_id")
    if kind not in OUTCOMES:
        raise HTTPException(400, detail="invalid kind")

    async with timeit("payments.webhook"):
        delivered = payments.deliver(event)
    return {"ok": True, "delivered": delivered, "idempotent": not delivered}


# ----------------------------
# MockPay
# ----------------------------
@router.get("/mockpay/{psid}")
async def mockpay_screen(psid: str,
                         payments: PaymentAdapter = Depends(get_payments)):
    pending = payments.get_pending(psid)
    if pending is None:
        raise HTTPException(404, "payment session not found")
    return {
        "psid": psid,
        "amount": pending.amount,
        "currency": pending.currency,
        "description": pending.description,
        "webhook_url": MOCK_WEBHOOK_URL,
    }


@router.post("/mockpay/{psid}/emit")
async def mockpay_emit(psid: str, request: Request, t: str = Form(...),
                       payments: PaymentAdapter = Depends(get_payments)):
    kind = t  # succeeded|failed|canceled
    if kind not in OUTCOMES:
        raise HTTPException(400, detail="invalid kind")
    if payments.get_pending(psid) is None:
        raise HTTPException(404, "payment session not found")

    event = payments.build_event(psid, kind)
    payload = json.dumps(event).encode()

    if not MOCK_WEBHOOK_URL:
        return {"ok": True, "kind": kind, "delivered": payments.deliver(event)}

    client_http: httpx.AsyncClient = request.app.state.http
    try:
        await client_http.post(
            MOCK_WEBHOOK_URL,
            content=payload,
            headers={
                "x-mockpay-signature": payments.sign(payload),
                "content-type": "application/json",
            },
        )
    except Exception as e:
        # the payment page can be retried
        logger.warning(f"webhook delivery failed: {e!r}")
        return {"ok": False, "kind": kind}
    return {"ok": True, "kind": kind}


# ----------------------------
# Members
# ----------------------------
@router.get("/api/members/{user_id}")
async def member_status(user_id: str, request: Request):
    return await request.app.state.members.status(user_id)


@router.post("/api/members/{user_id}/apply")
async def member_apply(user_id: str, request: Request):
    return profile_view(await request.app.state.members.apply(user_id))


# ----------------------------
# Admin
# ----------------------------
@router.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return {"ok": True}
    raise HTTPException(status_code=401, detail="Invalid credentials.")


@router.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/api/events", status_code=HTTP_303_SEE_OTHER)


@admin.post("/events/{event_id}/bookings")
async def admin_add_booking(event_id: str, payload: dict, request: Request,
                            store: Store = Depends(get_store),
                            payments: PaymentAdapter = Depends(get_payments)):
    user_id = payload.get("user_id")
    if not user_id:
        raise ValidationError("user_id is required")
    actor = await _actor(store, user_id)
    cart = await _event_cart(store, event_id, payload)
    attempt = EventCheckout(store, payments, request.app.state.reconciler,
                            actor=actor, cart=cart, operator=True)
    _remember(request.app, attempt)
    await attempt.run()
    return attempt.snapshot()


@admin.get("/events/{event_id}/bookings")
async def admin_event_bookings(event_id: str,
                               store: Store = Depends(get_store)):
    if await store.get_event(event_id) is None:
        raise NotFoundError("Event", event_id)
    bookings = await store.list_bookings(event_id=event_id)
    return {"items": [booking_view(b) for b in bookings]}


@admin.get("/events/{event_id}/roster.csv")
async def admin_roster(event_id: str, store: Store = Depends(get_store)):
    if await store.get_event(event_id) is None:
        raise NotFoundError("Event", event_id)
    body = roster_csv(await store.list_bookings(event_id=event_id))
    return Response(
        content=body,
        media_type="text/csv",
        headers={
            "Content-Disposition":
                f'attachment; filename="roster-{event_id}.csv"',
        },
    )


@admin.post("/checkin")
async def admin_checkin(payload: dict, request: Request):
    engine: CheckInEngine = request.app.state.checkin
    booking_id = payload.get("booking_id")
    if booking_id:
        result = await engine.check_in(booking_id, payload.get("user_id"))
    else:
        result = await engine.check_in_query(
            payload.get("query") or "", event_id=payload.get("event_id")
        )
    return {
        "booking": booking_view(result.booking),
        "already_attended": result.already_attended,
        "games_attended": result.games_attended,
        "message": result.message,
    }


@admin.post("/checkin/reconcile")
async def admin_reconcile(request: Request):
    report = await request.app.state.checkin.reconcile_all()
    return {
        "checked": report.checked,
        "updated": report.updated,
        "corrected": report.corrected,
    }


@admin.patch("/bookings/{booking_id}")
async def admin_update_booking(booking_id: str, payload: dict,
                               request: Request):
    if "attended" not in payload:
        raise ValidationError("attended is required")
    booking = await request.app.state.checkin.set_attended(
        booking_id, bool(payload["attended"])
    )
    return booking_view(booking)


@admin.delete("/bookings/{booking_id}")
async def admin_delete_booking(booking_id: str,
                               store: Store = Depends(get_store)):
    if not await store.delete_booking(booking_id):
        raise NotFoundError("Booking", booking_id)
    return {"ok": True}


@admin.post("/members/{user_id}/approve")
async def admin_member_approve(user_id: str, request: Request):
    return profile_view(await request.app.state.members.approve(user_id))


@admin.post("/members/{user_id}/reject")
async def admin_member_reject(user_id: str, request: Request):
    return profile_view(await request.app.state.members.reject(user_id))


@admin.post("/members/{user_id}/expire")
async def admin_member_expire(user_id: str, request: Request):
    return profile_view(await request.app.state.members.expire(user_id))


@admin.get("/orders")
async def admin_orders(limit: int = 200, store: Store = Depends(get_store)):
    orders = await store.list_orders(limit=max(1, min(limit, 500)))
    return {"items": [order_view(o) for o in orders], "limit": limit}


@admin.patch("/orders/{order_id}/status")
async def admin_order_status(order_id: str, payload: dict,
                             store: Store = Depends(get_store)):
    order = await set_order_status(store, order_id, payload.get("status", ""))
    return order_view(order)


@admin.get("/timings")
async def admin_timings():
    return {"items": timings.snapshot()}


# ----------------------------
# Errors
# ----------------------------
async def domain_error_handler(request: Request, exc: DomainError):
    body = {"error": exc.code.value, "message": exc.message}
    if isinstance(exc, CommitFailedAfterPayment):
        body["payment_reference"] = exc.payment_reference
    if isinstance(exc, AmbiguousMatchError):
        body["candidates"] = exc.candidates
    return ORJSONResponse(body, status_code=STATUS_BY_CODE.get(exc.code, 400))


def create_app(database_url: Optional[str] = None, *,
               payments: Optional[PaymentAdapter] = None,
               viewcache_backend: Optional[str] = None) -> FastAPI:
    """``uvicorn --factory fieldday.server:create_app``"""
    database_url = database_url or DATABASE_URL
    if database_url is None:
        print("NEED DATABASE_URL! e.g. sqlite:///./fieldday.db")
        sys.exit(1)

    app = FastAPI(
        title="Field Day",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)
    app.state.database_url = database_url
    app.state.payments = payments or MockPay()
    app.state.viewcache_backend = (viewcache_backend or VIEWCACHE_BACKEND).lower()
    app.add_exception_handler(DomainError, domain_error_handler)
    app.include_router(router)
    app.include_router(admin)
    return app
