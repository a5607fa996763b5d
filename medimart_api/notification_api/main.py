# medimart_api/notification_api/main.py

from fastapi import FastAPI, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from sqlmodel import Session, select, func
from typing import Annotated
from aiokafka import AIOKafkaConsumer
from contextlib import asynccontextmanager
from jose import JWTError
import asyncio
import logging

from medimart_api import settings
from medimart_api.auth import decode_access_token, get_current_user
from medimart_api.db import engine, create_db_and_tables, get_session
from medimart_api.events import (
    NOTIFICATION_READ, NOTIFICATION_READ_ALL, ORDER_SUBSCRIBE, ORDER_UNSUBSCRIBE,
    SUBSCRIBED, UNSUBSCRIBED, NotificationEvent, OrderStatusMessage,
    OrderUpdateEvent, PaymentStatusMessage, PaymentUpdateEvent
)
from medimart_api.topic_generator.create_topic import create_kafka_topics
from medimart_api.notification_api.gateway import ConnectionManager
from medimart_api.notification_api.models import (
    Channel, Notification, NotificationLog, NotificationRead, ReadAllResult, UnreadCount
)
from medimart_api.notification_api.utils import (
    build_order_notification, build_payment_notification,
    mark_all_notifications_read, mark_notification_read, send_email, send_sms
)


# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Kafka Configuration
CONSUME_TOPICS = [settings.ORDER_TOPIC, settings.PAYMENT_TOPIC]
GROUP_ID = "notification_service"


# Handler Functions

def store_notification(notification: Notification) -> Notification:
    with Session(engine) as session:
        session.add(notification)
        session.commit()
        session.refresh(notification)
    logger.info(f"Stored {notification.type.value} notification {notification.id} for user {notification.user_id}.")
    return notification


def to_notification_event(notification: Notification) -> NotificationEvent:
    return NotificationEvent(
        id=notification.id,
        type=notification.type.value,
        title=notification.title,
        message=notification.message,
        timestamp=notification.created_at,
        read=notification.read,
        priority=notification.priority.value,
        order_id=str(notification.order_id) if notification.order_id is not None else None,
    )


def log_notification(channel: Channel, recipient: str, message: str, sent: bool):
    """
    Logs an outbound e-mail or SMS to the database.
    """
    with Session(engine) as session:
        session.add(NotificationLog(
            channel=channel,
            recipient=recipient,
            message=message,
            status="Sent" if sent else "Failed",
        ))
        session.commit()
    logger.info(f"Logged {channel.value} notification to {recipient}.")


def dispatch_external(message: OrderStatusMessage, notification: Notification):
    """
    Sends the notification by e-mail and SMS when those channels are enabled
    and the order carries contact details.
    """
    if settings.NOTIFY_EMAIL and message.contact_email:
        sent = send_email(message.contact_email, notification.title, notification.message)
        log_notification(Channel.EMAIL, message.contact_email, f"{notification.title} {notification.message}", sent)
    if settings.NOTIFY_SMS and message.contact_phone:
        sent = send_sms(message.contact_phone, f"{notification.title}: {notification.message}")
        log_notification(Channel.SMS, message.contact_phone, notification.message, sent)


async def handle_order_message(message: OrderStatusMessage, manager: ConnectionManager):
    """
    Processes an order status change: stores the owner's notification and
    pushes it, plus the order update for subscribed sockets.
    """
    notification = await asyncio.to_thread(store_notification, build_order_notification(message))

    await manager.emit_order_update(message.user_id, OrderUpdateEvent(
        order_id=str(message.order_id),
        status=message.status,
        message=message.message,
        timestamp=message.timestamp,
        location=message.location,
    ))
    await manager.emit_notification(message.user_id, to_notification_event(notification))

    await asyncio.to_thread(dispatch_external, message, notification)


async def handle_payment_message(message: PaymentStatusMessage, manager: ConnectionManager):
    """
    Processes a payment intent change: pushes the payment update to the owner
    and raises a notification for completed or failed payments.
    """
    await manager.emit_payment_update(message.user_id, PaymentUpdateEvent(
        order_id=str(message.order_id),
        payment_id=message.payment_id,
        status=message.status,
        timestamp=message.timestamp,
        failure_reason=message.failure_reason,
    ))

    notification = build_payment_notification(message)
    if notification:
        notification = await asyncio.to_thread(store_notification, notification)
        await manager.emit_notification(message.user_id, to_notification_event(notification))
    else:
        logger.info(f"No notification raised for payment status: {message.status}")


async def consume_messages(manager: ConnectionManager):
    """Consumes order and payment events and fans them out."""

    # Initialize Kafka Consumer
    consumer = AIOKafkaConsumer(
        *CONSUME_TOPICS,
        bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
        group_id=GROUP_ID,
        auto_offset_reset="latest",
        enable_auto_commit=True
    )

    try:
        await consumer.start()
        logger.info("Kafka consumer started and connected to the broker.")
        async for msg in consumer:
            topic = msg.topic
            logger.info(f"Received message from {topic}: {msg.value}")
            try:
                if topic == settings.ORDER_TOPIC:
                    await handle_order_message(OrderStatusMessage.model_validate_json(msg.value), manager)
                elif topic == settings.PAYMENT_TOPIC:
                    await handle_payment_message(PaymentStatusMessage.model_validate_json(msg.value), manager)
                else:
                    logger.warning(f"Unhandled topic: {topic}")
            except Exception as e:
                logger.error(f"Error handling message from {topic}: {e}")

    except Exception as e:
        logger.error(f"Error in consumer: {e}")

    finally:
        await consumer.stop()
        logger.info("Kafka consumer stopped.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages application startup and shutdown.
    """
    create_db_and_tables()
    logger.info("Database created and tables ensured.")

    await create_kafka_topics(CONSUME_TOPICS)

    consumer_task = asyncio.create_task(consume_messages(app.state.connection_manager))
    logger.info("Kafka consumer task started.")

    try:
        yield
    finally:
        # Cancel the consumer task on shutdown
        consumer_task.cancel()
        try:
            await consumer_task
        except asyncio.CancelledError:
            logger.info("Kafka consumer task has been cancelled.")

app = FastAPI(lifespan=lifespan, title="Notification Service", version="1.0.0")
app.state.connection_manager = ConnectionManager()


@app.get("/notifications", response_model=list[NotificationRead])
def get_notifications(session: Annotated[Session, Depends(get_session)],
                      current_user: Annotated[dict, Depends(get_current_user)],
                      unread_only: bool = False):
    """
    Retrieves the current user's notifications, newest first.
    """
    statement = select(Notification).where(Notification.user_id == current_user["user_id"])
    if unread_only:
        statement = statement.where(Notification.read == False)  # noqa: E712
    return session.exec(statement.order_by(Notification.created_at.desc(), Notification.id.desc())).all()


@app.get("/notifications/unread-count", response_model=UnreadCount)
def get_unread_count(session: Annotated[Session, Depends(get_session)],
                     current_user: Annotated[dict, Depends(get_current_user)]):
    unread = session.exec(
        select(func.count()).select_from(Notification).where(
            (Notification.user_id == current_user["user_id"]) & (Notification.read == False)  # noqa: E712
        )
    ).one()
    return UnreadCount(unread=unread)


@app.patch("/notifications/read-all", response_model=ReadAllResult)
def read_all_notifications(session: Annotated[Session, Depends(get_session)],
                           current_user: Annotated[dict, Depends(get_current_user)]):
    return ReadAllResult(updated=mark_all_notifications_read(session, current_user["user_id"]))


@app.patch("/notifications/{notification_id}/read", response_model=NotificationRead)
def read_notification(notification_id: int,
                      session: Annotated[Session, Depends(get_session)],
                      current_user: Annotated[dict, Depends(get_current_user)]):
    notification = mark_notification_read(session, current_user["user_id"], notification_id)
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


def authenticate_websocket(websocket: WebSocket, token: str | None) -> dict | None:
    if not token:
        authorization = websocket.headers.get("authorization", "")
        scheme, _, credentials = authorization.partition(" ")
        token = credentials if scheme.lower() == "bearer" else None
    if not token:
        return None
    try:
        return decode_access_token(token)
    except (JWTError, ValueError):
        return None


def read_notification_for(user_id: str, notification_id: int) -> bool:
    with Session(engine) as session:
        return mark_notification_read(session, user_id, notification_id) is not None


def read_all_for(user_id: str) -> int:
    with Session(engine) as session:
        return mark_all_notifications_read(session, user_id)


async def handle_client_frame(websocket: WebSocket, manager: ConnectionManager, user: dict, message: dict):
    """Applies one frame sent by a connected client."""
    event = message.get("event")
    data = message.get("data") or {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {event} frame with non-object data from user {user['user_id']}")
        return
    order_id = data.get("orderId")
    if not isinstance(order_id, (str, int)) or isinstance(order_id, bool):
        order_id = None

    if event == ORDER_SUBSCRIBE and order_id is not None:
        manager.subscribe(websocket, order_id)
        await manager.send(websocket, SUBSCRIBED, {"orderId": str(order_id)})
    elif event == ORDER_UNSUBSCRIBE and order_id is not None:
        manager.unsubscribe(websocket, order_id)
        await manager.send(websocket, UNSUBSCRIBED, {"orderId": str(order_id)})
    elif event == NOTIFICATION_READ and data.get("notificationId") is not None:
        try:
            notification_id = int(data["notificationId"])
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid notification id: {data['notificationId']!r}")
            return
        if not await asyncio.to_thread(read_notification_for, user["user_id"], notification_id):
            logger.warning(f"Notification {notification_id} not found for user {user['user_id']}")
    elif event == NOTIFICATION_READ_ALL:
        updated = await asyncio.to_thread(read_all_for, user["user_id"])
        logger.info(f"Marked {updated} notifications read for user {user['user_id']}")
    else:
        logger.warning(f"Ignoring client frame: {message}")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: str | None = None):
    """
    Real-time channel. Authenticates with a bearer token passed as the
    ``token`` query parameter or the Authorization header.
    """
    manager: ConnectionManager = websocket.app.state.connection_manager
    user = authenticate_websocket(websocket, token)
    if not user:
        logger.warning("Rejected WebSocket connection without valid credentials")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await manager.connect(websocket, user["user_id"], user["role"])
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except (ValueError, KeyError):
                logger.warning(f"Ignoring undecodable frame from user {user['user_id']}")
                continue
            if isinstance(message, dict):
                await handle_client_frame(websocket, manager, user, message)
            else:
                logger.warning(f"Ignoring non-object frame from user {user['user_id']}")
    except WebSocketDisconnect:
        logger.info(f"WebSocket closed by user {user['user_id']}")
    finally:
        manager.disconnect(websocket)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Catches all unhandled exceptions and returns a 500 Internal Server Error.
    """
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )
