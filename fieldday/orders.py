import logging

from .errors import NotFoundError, ValidationError
from .model.db import Order
from .model.store import Store

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
DISPATCHED = "dispatched"
COMPLETED = "completed"
CANCELLED = "cancelled"
ORDER_STATUSES = (PENDING, PROCESSING, DISPATCHED, COMPLETED, CANCELLED)

_NEXT = {
    PENDING: (PROCESSING, CANCELLED),
    PROCESSING: (DISPATCHED, CANCELLED),
    DISPATCHED: (COMPLETED, CANCELLED),
    COMPLETED: (),
    CANCELLED: (),
}


def can_transition(current: str, new: str) -> bool:
    return new in _NEXT.get(current, ())


async def set_order_status(store: Store, order_id: str, status: str) -> Order:
    if status not in ORDER_STATUSES:
        raise ValidationError(f"unknown order status: {status}")
    order = await store.get_order(order_id)
    if order is None:
        raise NotFoundError("Order", order_id)
    if not can_transition(order.status, status):
        raise ValidationError(
            f"Order {order_id} cannot go from {order.status} to {status}"
        )
    order = await store.update_order(order_id, status=status)
    logger.info(f"order {order_id}: status -> {status}")
    return order
