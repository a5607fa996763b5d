# medimart_api/order_api/main.py

from fastapi import FastAPI, Depends, HTTPException, Request, Header
from sqlmodel import Session, select
from typing import Annotated
from aiokafka import AIOKafkaProducer
from contextlib import asynccontextmanager
import json
import logging

from medimart_api import settings
from medimart_api.auth import get_current_user, get_current_staff_user, is_staff
from medimart_api.db import create_db_and_tables, get_session
from medimart_api.topic_generator.create_topic import create_kafka_topics
from medimart_api.order_api.models import (
    OrderCreate, OrderRead, OrderPage, OrderUpdate, OrderStatusUpdate, OrderCancel,
    OrderTracking, OrderItem, OrderTrackingUpdate, Orders, OrderStatus, Payment,
    PaymentStatus, PaymentInitiateRequest, PaymentInitiateResponse,
    PaymentVerifyRequest, PaymentVerifyResponse, TrackingUpdateRead, utcnow
)
from medimart_api.order_api.pipeline import (
    InvalidTransitionError, OrderNotFoundError, cancel_order, create_order,
    get_tracking_updates, update_status
)
from medimart_api.order_api.payments import (
    PaymentError, PaymentSignatureError, PaymentVerificationError, RazorpayGateway, get_payment_gateway,
    handle_webhook_event, initiate_payment, verify_payment
)
from medimart_api.order_api.utils import (
    build_order_message, build_order_read, build_payment_message,
    get_order_for_user, order_queries, paginate_orders
)


# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def produce_message():
    producer = AIOKafkaProducer(
        bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS)
    # Get cluster layout and initial topic/partition leadership information
    await producer.start()
    try:
        yield producer
    finally:
        # Wait for all pending messages to be delivered or expire.
        await producer.stop()


async def publish_order_update(producer: AIOKafkaProducer, order_db: Orders, tracking: OrderTrackingUpdate):
    """Publishes a status change to the order topic. Failures are logged only."""
    try:
        message = build_order_message(order_db, tracking)
        await producer.send_and_wait(settings.ORDER_TOPIC, message.model_dump_json().encode("utf-8"))
        logger.info(f"Produced order update for Order {order_db.order_number} ({message.status}).")
    except Exception as e:
        logger.error(f"Error producing order update message: {e}")


async def publish_payment_update(producer: AIOKafkaProducer, payment: Payment):
    """Publishes a payment intent change to the payment topic. Failures are logged only."""
    try:
        message = build_payment_message(payment)
        await producer.send_and_wait(settings.PAYMENT_TOPIC, message.model_dump_json().encode("utf-8"))
        logger.info(f"Produced payment update for Payment ID {payment.payment_id} ({message.status}).")
    except Exception as e:
        logger.error(f"Error producing payment update message: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan event to manage application startup and shutdown.
    """
    create_db_and_tables()
    logger.info("Database created and tables ensured.")

    await create_kafka_topics([settings.ORDER_TOPIC, settings.PAYMENT_TOPIC])
    yield


app = FastAPI(lifespan=lifespan, title="Order Service", version="1.0.0")


@app.get("/orders", response_model=OrderPage)
def get_orders(session: Annotated[Session, Depends(get_session)],
               current_user: Annotated[dict, Depends(get_current_staff_user)],
               status: OrderStatus | None = None,
               page: int = 1,
               limit: int = 10):
    """
    Lists every order, newest first. Staff only.
    """
    if page < 1 or limit < 1:
        raise HTTPException(status_code=400, detail="page and limit must be positive")
    statement, count_statement = order_queries(status=status)
    return paginate_orders(session, statement, count_statement, page, limit)


@app.get("/orders/me", response_model=OrderPage)
def get_my_orders(
    session: Annotated[Session, Depends(get_session)],
    current_user: Annotated[dict, Depends(get_current_user)],
    status: OrderStatus | None = None,
    page: int = 1,
    limit: int = 10,
):
    """
    Retrieve the orders belonging to the currently authenticated user.
    """
    if page < 1 or limit < 1:
        raise HTTPException(status_code=400, detail="page and limit must be positive")
    statement, count_statement = order_queries(user_id=current_user["user_id"], status=status)
    return paginate_orders(session, statement, count_statement, page, limit)


@app.post("/orders", response_model=OrderRead)
def create_new_order(
    order: OrderCreate,
    session: Annotated[Session, Depends(get_session)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    if not order.items:
        raise HTTPException(status_code=400, detail="Order must contain at least one item")
    if any(item.prescription_required for item in order.items) and not order.prescription_id:
        raise HTTPException(status_code=400, detail="A prescription is required for this order")

    order_db = create_order(session, current_user["user_id"], order)
    return build_order_read(session, order_db)


@app.get("/orders/{order_id}", response_model=OrderRead)
def get_order(
    order_id: int,
    session: Annotated[Session, Depends(get_session)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    order_db = get_order_for_user(session, order_id, current_user)
    return build_order_read(session, order_db)


@app.patch("/orders/{order_id}", response_model=OrderRead)
def update_order(
    order_id: int,
    updated_order: OrderUpdate,
    session: Annotated[Session, Depends(get_session)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    order_db = session.get(Orders, order_id)
    if not order_db:
        raise HTTPException(status_code=404, detail="Order not found")
    if order_db.user_id != current_user["user_id"]:
        raise HTTPException(status_code=403, detail="You are not authorized to update this order.")
    if order_db.order_status != OrderStatus.PENDING:
        raise HTTPException(status_code=409, detail="Only pending orders can be updated")

    order_data = updated_order.model_dump(exclude_unset=True)
    logger.info(f"Fields to update for Order ID {order_id}: {order_data}")
    for key, value in order_data.items():
        setattr(order_db, key, value)
    order_db.updated_at = utcnow()

    session.add(order_db)
    session.commit()
    session.refresh(order_db)
    return build_order_read(session, order_db)


@app.put("/orders/{order_id}/status", response_model=OrderRead)
async def update_order_status(
    order_id: int,
    updated_order_status: OrderStatusUpdate,
    session: Annotated[Session, Depends(get_session)],
    current_user: Annotated[dict, Depends(get_current_staff_user)],
    producer: Annotated[AIOKafkaProducer, Depends(produce_message)]
):
    try:
        order_db, tracking = update_status(
            session,
            order_id,
            updated_order_status.status,
            updated_order_status.message,
            updated_order_status.location,
        )
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))

    await publish_order_update(producer, order_db, tracking)
    return build_order_read(session, order_db)


@app.post("/orders/{order_id}/cancel", response_model=OrderRead)
async def cancel_existing_order(
    order_id: int,
    cancellation: OrderCancel,
    session: Annotated[Session, Depends(get_session)],
    current_user: Annotated[dict, Depends(get_current_user)],
    producer: Annotated[AIOKafkaProducer, Depends(produce_message)]
):
    get_order_for_user(session, order_id, current_user)
    try:
        order_db, tracking = cancel_order(session, order_id, cancellation.reason)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))

    await publish_order_update(producer, order_db, tracking)
    return build_order_read(session, order_db)


@app.get("/orders/{order_id}/track", response_model=OrderTracking)
def track_order(
    order_id: int,
    session: Annotated[Session, Depends(get_session)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    order_db = get_order_for_user(session, order_id, current_user)
    return OrderTracking(
        order_id=order_db.order_id,
        order_number=order_db.order_number,
        order_status=order_db.order_status,
        tracking_updates=[
            TrackingUpdateRead.model_validate(row) for row in get_tracking_updates(session, order_id)
        ],
    )


@app.delete("/orders/{order_id}", status_code=204)
def delete_order(
    order_id: int,
    session: Annotated[Session, Depends(get_session)],
    current_user: Annotated[dict, Depends(get_current_user)],
):
    order_db = session.get(Orders, order_id)
    if not order_db:
        raise HTTPException(status_code=404, detail="Order not found")
    if order_db.user_id != current_user["user_id"] and not is_staff(current_user):
        raise HTTPException(status_code=403, detail="You are not authorized to delete this order.")
    if order_db.order_status != OrderStatus.PENDING or order_db.payment_status == PaymentStatus.COMPLETED:
        raise HTTPException(status_code=409, detail="Only unpaid pending orders can be deleted")

    for model in (Payment, OrderTrackingUpdate, OrderItem):
        for row in session.exec(select(model).where(model.order_id == order_id)).all():
            session.delete(row)
    session.flush()
    session.delete(order_db)
    session.commit()
    logger.info(f"Order ID {order_id} deleted.")


# ------------------------------ Payments ------------------------------

@app.post("/orders/{order_id}/payment/initiate", response_model=PaymentInitiateResponse)
async def initiate_order_payment(
    order_id: int,
    payment_request: PaymentInitiateRequest,
    session: Annotated[Session, Depends(get_session)],
    current_user: Annotated[dict, Depends(get_current_user)],
    gateway: Annotated[RazorpayGateway, Depends(get_payment_gateway)],
    producer: Annotated[AIOKafkaProducer, Depends(produce_message)]
):
    order_db = session.get(Orders, order_id)
    if not order_db:
        raise HTTPException(status_code=404, detail="Order not found")
    if order_db.user_id != current_user["user_id"]:
        raise HTTPException(status_code=403, detail="You are not authorized to pay for this order.")
    if order_db.payment_status == PaymentStatus.COMPLETED:
        raise HTTPException(status_code=409, detail="Order has already been paid")

    try:
        payment = initiate_payment(
            session, gateway, order_db, payment_request.amount, payment_request.currency
        )
    except PaymentError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await publish_payment_update(producer, payment)
    return PaymentInitiateResponse(
        payment_id=payment.payment_id,
        razorpay_order_id=payment.razorpay_order_id,
        amount=round(payment.amount * 100),
        currency=payment.currency,
        key=gateway.key_id,
    )


@app.post("/orders/payment/verify", response_model=PaymentVerifyResponse)
async def verify_order_payment(
    verification: PaymentVerifyRequest,
    session: Annotated[Session, Depends(get_session)],
    current_user: Annotated[dict, Depends(get_current_user)],
    gateway: Annotated[RazorpayGateway, Depends(get_payment_gateway)],
    producer: Annotated[AIOKafkaProducer, Depends(produce_message)]
):
    try:
        payment, order_db, tracking = verify_payment(
            session, gateway, verification, current_user["user_id"]
        )
    except PaymentVerificationError as e:
        logger.error(f"Payment verification failed for Order ID {verification.order_id}: {e}")
        if isinstance(e, PaymentSignatureError):
            failed = session.exec(
                select(Payment).where(Payment.razorpay_order_id == verification.razorpay_order_id)
            ).first()
            await publish_payment_update(producer, failed)
        raise HTTPException(status_code=400, detail="Payment verification failed")

    await publish_payment_update(producer, payment)
    if tracking:
        await publish_order_update(producer, order_db, tracking)

    return PaymentVerifyResponse(
        success=True,
        order_id=order_db.order_id,
        payment_id=payment.payment_id,
        status=payment.status,
        message="Payment verified",
    )


@app.post("/orders/payment/webhook", status_code=200)
async def razorpay_webhook(
    request: Request,
    session: Annotated[Session, Depends(get_session)],
    gateway: Annotated[RazorpayGateway, Depends(get_payment_gateway)],
    producer: Annotated[AIOKafkaProducer, Depends(produce_message)],
    x_razorpay_signature: Annotated[str | None, Header()] = None,
):
    """
    Endpoint to handle Razorpay webhook events.
    """
    payload = await request.body()
    if not gateway.verify_webhook_signature(payload, x_razorpay_signature or ""):
        logger.error("Invalid webhook signature")
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = json.loads(payload)
    except ValueError:
        logger.error("Invalid payload")
        raise HTTPException(status_code=400, detail="Invalid payload")

    result = handle_webhook_event(session, event)
    if result:
        payment, order_db, tracking = result
        await publish_payment_update(producer, payment)
        if tracking:
            await publish_order_update(producer, order_db, tracking)

    return {"status": "success"}
