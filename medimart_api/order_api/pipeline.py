# medimart_api/order_api/pipeline.py
"""
Order status pipeline.

Orders move one step at a time along FULFILLMENT_CHAIN. CANCELLED and
RETURNED can be reached from any status that is not terminal, and nothing
leaves a terminal status. Every accepted transition appends one
OrderTrackingUpdate row.
"""

import logging
import random
import time

from sqlmodel import Session, select

from medimart_api import settings
from medimart_api.order_api.models import (
    OrderCreate, OrderItem, Orders, OrderStatus, OrderTrackingUpdate, utcnow
)

logger = logging.getLogger(__name__)


FULFILLMENT_CHAIN = [
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.PACKED,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]

ABSORBING_STATES = {OrderStatus.CANCELLED, OrderStatus.RETURNED}

TERMINAL_STATES = ABSORBING_STATES | {OrderStatus.DELIVERED}

STATUS_MESSAGES = {
    OrderStatus.PENDING: "Order placed",
    OrderStatus.CONFIRMED: "Order confirmed",
    OrderStatus.PROCESSING: "Order is being processed",
    OrderStatus.PACKED: "Order packed and ready for dispatch",
    OrderStatus.SHIPPED: "Order shipped",
    OrderStatus.OUT_FOR_DELIVERY: "Order is out for delivery",
    OrderStatus.DELIVERED: "Order delivered",
    OrderStatus.CANCELLED: "Order cancelled",
    OrderStatus.RETURNED: "Order returned",
}


def _build_transition_table() -> dict[OrderStatus, set[OrderStatus]]:
    table = {status: set() for status in OrderStatus}
    for current, following in zip(FULFILLMENT_CHAIN, FULFILLMENT_CHAIN[1:]):
        table[current] = {following} | ABSORBING_STATES
    return table


VALID_TRANSITIONS = _build_transition_table()


class OrderStateError(Exception):
    """Base class for order pipeline errors."""


class OrderNotFoundError(OrderStateError):
    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class InvalidTransitionError(OrderStateError):
    def __init__(self, current: OrderStatus, requested: OrderStatus):
        super().__init__(f"Cannot move order from {current.value} to {requested.value}")
        self.current = current
        self.requested = requested


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATES


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    return requested in VALID_TRANSITIONS[current]


def generate_order_number() -> str:
    return f"OM{int(time.time() * 1000)}{random.randint(0, 999):03d}"


def calculate_totals(order: OrderCreate) -> dict:
    """
    Prices a cart snapshot.

    Delivery is free once the subtotal reaches FREE_DELIVERY_THRESHOLD and the
    discount can never exceed the subtotal.
    """
    subtotal = round(sum(item.price * item.quantity for item in order.items), 2)
    discount = round(min(order.discount, subtotal), 2)
    delivery_fee = 0.0 if subtotal >= settings.FREE_DELIVERY_THRESHOLD else settings.DELIVERY_FEE
    tax = round((subtotal - discount) * settings.TAX_RATE, 2)
    total = round(subtotal - discount + delivery_fee + tax, 2)
    return {
        "subtotal": subtotal,
        "discount": discount,
        "delivery_fee": delivery_fee,
        "tax": tax,
        "order_total": total,
    }


def create_order(session: Session, user_id: str, order: OrderCreate) -> Orders:
    """Creates a PENDING order with its line items and commits it."""
    order_db = Orders(
        order_number=generate_order_number(),
        user_id=user_id,
        order_status=OrderStatus.PENDING,
        payment_method=order.payment_method,
        delivery_address=order.delivery_address.model_dump(mode="json"),
        delivery_slot=order.delivery_slot,
        prescription_id=order.prescription_id,
        notes=order.notes,
        **calculate_totals(order),
    )
    session.add(order_db)
    session.flush()

    for item in order.items:
        session.add(OrderItem(
            order_id=order_db.order_id,
            product_id=item.product_id,
            product_name=item.product_name,
            product_type=item.product_type,
            quantity=item.quantity,
            price=item.price,
            line_total=round(item.price * item.quantity, 2),
            prescription_required=item.prescription_required,
        ))

    session.commit()
    session.refresh(order_db)
    logger.info(f"Order {order_db.order_number} created for user {user_id} with total {order_db.order_total}")
    return order_db


def apply_transition(
    session: Session,
    order_db: Orders,
    new_status: OrderStatus,
    message: str | None = None,
    location: str | None = None,
) -> OrderTrackingUpdate:
    """
    Moves an already loaded order to new_status and appends the tracking row.
    The caller commits.

    Raises:
        InvalidTransitionError: If the move is not in VALID_TRANSITIONS.
    """
    current = OrderStatus(order_db.order_status)
    if not can_transition(current, new_status):
        raise InvalidTransitionError(current, new_status)

    order_db.order_status = new_status
    order_db.updated_at = utcnow()
    tracking = OrderTrackingUpdate(
        order_id=order_db.order_id,
        status=new_status,
        message=message or STATUS_MESSAGES[new_status],
        location=location,
    )
    session.add(order_db)
    session.add(tracking)
    logger.info(f"Order {order_db.order_number} moved from {current.value} to {new_status.value}")
    return tracking


def lock_order(session: Session, order_id: int) -> Orders:
    order_db = session.exec(
        select(Orders).where(Orders.order_id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).first()
    if not order_db:
        raise OrderNotFoundError(order_id)
    return order_db


def update_status(
    session: Session,
    order_id: int,
    new_status: OrderStatus,
    message: str | None = None,
    location: str | None = None,
) -> tuple[Orders, OrderTrackingUpdate]:
    """
    Advances an order and commits. The row is locked for the duration of the
    check so concurrent updates on PostgreSQL are serialised.
    """
    order_db = lock_order(session, order_id)
    try:
        tracking = apply_transition(session, order_db, new_status, message, location)
    except InvalidTransitionError:
        session.rollback()
        raise
    session.commit()
    session.refresh(order_db)
    session.refresh(tracking)
    return order_db, tracking


def cancel_order(session: Session, order_id: int, reason: str) -> tuple[Orders, OrderTrackingUpdate]:
    """Cancels an order. Refunds and stock release are handled elsewhere."""
    order_db = lock_order(session, order_id)
    try:
        tracking = apply_transition(
            session, order_db, OrderStatus.CANCELLED, f"Order cancelled: {reason}"
        )
    except InvalidTransitionError:
        session.rollback()
        raise
    order_db.cancellation_reason = reason
    session.commit()
    session.refresh(order_db)
    session.refresh(tracking)
    return order_db, tracking


def get_tracking_updates(session: Session, order_id: int) -> list[OrderTrackingUpdate]:
    return list(session.exec(
        select(OrderTrackingUpdate)
        .where(OrderTrackingUpdate.order_id == order_id)
        .order_by(OrderTrackingUpdate.tracking_id)
    ).all())
