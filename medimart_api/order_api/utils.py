# medimart_api/order_api/utils.py

import math

from fastapi import HTTPException
from sqlmodel import Session, select, func

from medimart_api.auth import is_staff
from medimart_api.events import OrderStatusMessage, PaymentStatusMessage
from medimart_api.order_api.models import (
    IntentStatus, OrderItem, OrderItemRead, OrderPage, OrderRead, Orders,
    OrderStatus, OrderTrackingUpdate, Payment, TrackingUpdateRead
)
from medimart_api.order_api.pipeline import get_tracking_updates


def get_order_for_user(session: Session, order_id: int, current_user: dict) -> Orders:
    """
    Loads an order the current user may see: its owner, or any staff member.
    """
    order_db = session.get(Orders, order_id)
    if not order_db:
        raise HTTPException(status_code=404, detail="Order not found")
    if order_db.user_id != current_user["user_id"] and not is_staff(current_user):
        raise HTTPException(status_code=403, detail="You are not authorized to access this order.")
    return order_db


def build_order_read(session: Session, order_db: Orders) -> OrderRead:
    items = session.exec(
        select(OrderItem).where(OrderItem.order_id == order_db.order_id).order_by(OrderItem.item_id)
    ).all()
    tracking = get_tracking_updates(session, order_db.order_id)
    return OrderRead.model_validate(
        order_db,
        update={
            "items": [OrderItemRead.model_validate(item) for item in items],
            "tracking_updates": [TrackingUpdateRead.model_validate(row) for row in tracking],
        },
    )


def paginate_orders(session: Session, statement, count_statement, page: int, limit: int) -> OrderPage:
    total = session.exec(count_statement).one()
    orders = session.exec(
        statement.order_by(Orders.created_at.desc(), Orders.order_id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    return OrderPage(
        data=[build_order_read(session, order_db) for order_db in orders],
        total=total,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if total else 0,
    )


def order_queries(user_id: str | None = None, status: OrderStatus | None = None):
    """Returns matching select and count statements for an order listing."""
    statement = select(Orders)
    count_statement = select(func.count()).select_from(Orders)
    if user_id is not None:
        statement = statement.where(Orders.user_id == user_id)
        count_statement = count_statement.where(Orders.user_id == user_id)
    if status is not None:
        statement = statement.where(Orders.order_status == status)
        count_statement = count_statement.where(Orders.order_status == status)
    return statement, count_statement


def build_order_message(order_db: Orders, tracking: OrderTrackingUpdate) -> OrderStatusMessage:
    address = order_db.delivery_address or {}
    return OrderStatusMessage(
        order_id=order_db.order_id,
        order_number=order_db.order_number,
        user_id=order_db.user_id,
        status=OrderStatus(tracking.status).value,
        message=tracking.message,
        location=tracking.location,
        timestamp=tracking.timestamp,
        contact_email=address.get("email"),
        contact_phone=address.get("phone_number"),
    )


def build_payment_message(payment: Payment) -> PaymentStatusMessage:
    return PaymentStatusMessage(
        payment_id=payment.payment_id,
        order_id=payment.order_id,
        user_id=payment.user_id,
        status=IntentStatus(payment.status).value,
        razorpay_order_id=payment.razorpay_order_id,
        failure_reason=payment.failure_reason,
    )
