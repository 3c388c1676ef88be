import asyncio
import logging
import os
import time
import uuid
import hmac
import hashlib
import base64
import json
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple, TypedDict
from fastapi import HTTPException

from .errors import AuthorizationFailedOrCancelled
from .helpers import now_ts

logger = logging.getLogger(__name__)

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
# succeeded | failed | canceled; empty waits for the webhook
MOCK_AUTO = os.environ.get("MOCKPAY_AUTO", "").strip().lower()

OUTCOMES = ("succeeded", "failed", "canceled")
# idempotency keys remembered for replay detection
SEEN_LIMIT = int(os.environ.get("MOCKPAY_SEEN_LIMIT", "10000"))


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    payment_session_id: str
    redirect_url: str


@dataclass(frozen=True)
class Authorization:
    reference: str
    amount: int
    currency: str
    status: str = "succeeded"


@dataclass
class PendingAuthorization:
    psid: str
    amount: int
    currency: str
    description: str
    created_at: float
    future: asyncio.Future = field(repr=False)


OnSession = Callable[[CreateSessionResult], None]


class PaymentAdapter(ABC):
    @abstractmethod
    async def authorize(
        self, amount: int, description: str, *,
        currency: str = "gbp", on_session: Optional[OnSession] = None,
    ) -> Authorization:
        """Suspend until the provider reports an outcome.

        Raises AuthorizationFailedOrCancelled unless the payment succeeded.
        """

    # abandon a payment that has not completed yet
    @abstractmethod
    def cancel(self, psid: str) -> bool: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (payment_session_id, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...

    @abstractmethod
    def deliver(self, event: dict) -> bool: ...


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):

    def __init__(self, secret: str = MOCK_SECRET,
                 auto: Optional[str] = MOCK_AUTO or None,
                 seen_limit: int = SEEN_LIMIT) -> None:
        if auto is not None and auto not in OUTCOMES:
            raise ValueError(f"invalid MOCKPAY_AUTO outcome: {auto}")
        self.secret = secret
        self.auto = auto
        self._pending: Dict[str, PendingAuthorization] = {}
        self.seen_limit = max(1, seen_limit)
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def create_session_id_and_url(self) -> CreateSessionResult:
        psid = f"mock_{uuid.uuid4().hex}"
        redirect_url = f"/mockpay/{psid}"
        return {"payment_session_id": psid, "redirect_url": redirect_url}

    def get_pending(self, psid: str) -> Optional[PendingAuthorization]:
        return self._pending.get(psid)

    async def authorize(
        self, amount: int, description: str, *,
        currency: str = "gbp", on_session: Optional[OnSession] = None,
    ) -> Authorization:
        session = self.create_session_id_and_url()
        psid = session["payment_session_id"]
        pending = PendingAuthorization(
            psid=psid,
            amount=amount,
            currency=currency,
            description=description,
            created_at=now_ts(),
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[psid] = pending
        if on_session is not None:
            on_session(session)
        if self.auto:
            self._resolve(psid, self.auto)

        try:
            outcome = await pending.future
        finally:
            self._pending.pop(psid, None)

        if outcome != "succeeded":
            raise AuthorizationFailedOrCancelled(outcome)
        return Authorization(reference=psid, amount=amount, currency=currency)

    def _resolve(self, psid: str, kind: str) -> bool:
        pending = self._pending.get(psid)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(kind)
        return True

    def cancel(self, psid: str) -> bool:
        return self._resolve(psid, "canceled")

    def deliver(self, event: dict) -> bool:
        """Apply a verified webhook event. False for replays and unknowns."""
        kind = self.event_kind(event)
        psid, idem = self.event_ids(event)
        if kind not in OUTCOMES or not psid:
            return False
        if idem:
            if idem in self._seen:
                return False
            self._remember(idem)
        delivered = self._resolve(psid, kind)
        if not delivered:
            logger.info(f"mockpay: no pending authorization for {psid}")
        return delivered

    def _remember(self, idem: str) -> None:
        self._seen[idem] = None
        while len(self._seen) > self.seen_limit:
            self._seen.popitem(last=False)

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(self, psid: str, kind: str) -> dict:
        pending = self._pending.get(psid)
        return {
            "type": f"payment.{kind}",
            "payment_session_id": psid,
            "amount": pending.amount if pending else 0,
            "currency": pending.currency if pending else "gbp",
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")

    def event_kind(self, event: dict) -> str:
        return event.get("type", "").split(".")[-1]

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("payment_session_id", ""),
                event.get("idempotency_key")
        )
