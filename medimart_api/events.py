# medimart_api/events.py
"""
Event payloads shared by the services and the tracking client.

Kafka messages (``OrderStatusMessage``, ``PaymentStatusMessage``) travel
between the order and notification services as JSON. WebSocket frames are
``{"event": <name>, "data": {...}}`` with camelCase keys in ``data``.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Server -> client
ORDER_UPDATE = "order:update"
NOTIFICATION_NEW = "notification:new"
PAYMENT_UPDATE = "payment:update"
CONNECTED = "connected"
SUBSCRIBED = "subscribed"
UNSUBSCRIBED = "unsubscribed"

# Client -> server
ORDER_SUBSCRIBE = "order:subscribe"
ORDER_UNSUBSCRIBE = "order:unsubscribe"
NOTIFICATION_READ = "notification:read"
NOTIFICATION_READ_ALL = "notification:read-all"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------- Kafka messages -----------------------------

class OrderStatusMessage(BaseModel):
    order_id: int
    order_number: str
    user_id: str
    status: str
    message: str
    location: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    contact_email: str | None = None
    contact_phone: str | None = None


class PaymentStatusMessage(BaseModel):
    payment_id: int
    order_id: int
    user_id: str
    status: str
    razorpay_order_id: str | None = None
    failure_reason: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


# ---------------------------- WebSocket payloads ----------------------------

class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class OrderUpdateEvent(WireModel):
    order_id: str
    status: str
    message: str
    timestamp: datetime
    location: str | None = None


class NotificationEvent(WireModel):
    id: int
    type: str
    title: str
    message: str
    timestamp: datetime
    read: bool = False
    priority: str = "NORMAL"
    order_id: str | None = None


class PaymentUpdateEvent(WireModel):
    order_id: str
    payment_id: int
    status: str
    timestamp: datetime
    failure_reason: str | None = None


SERVER_EVENT_MODELS: dict[str, type[WireModel]] = {
    ORDER_UPDATE: OrderUpdateEvent,
    NOTIFICATION_NEW: NotificationEvent,
    PAYMENT_UPDATE: PaymentUpdateEvent,
}


def frame(event: str, data: dict | WireModel) -> dict:
    """Wraps a payload into the frame sent over the socket."""
    if isinstance(data, WireModel):
        data = data.to_wire()
    return {"event": event, "data": data}
