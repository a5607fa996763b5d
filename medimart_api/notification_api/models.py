# medimart_api/notification_api/models.py

from datetime import datetime, timezone
from enum import Enum

from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationType(str, Enum):
    ORDER = "ORDER"
    PAYMENT = "PAYMENT"
    DELIVERY = "DELIVERY"
    SYSTEM = "SYSTEM"

class NotificationPriority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"

class Channel(str, Enum):
    EMAIL = "Email"
    SMS = "SMS"

class Notification(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    type: NotificationType = Field(default=NotificationType.SYSTEM)
    title: str
    message: str
    priority: NotificationPriority = Field(default=NotificationPriority.NORMAL)
    read: bool = Field(default=False, index=True)
    order_id: int | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow)

class NotificationLog(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    channel: Channel
    recipient: str
    message: str
    status: str
    timestamp: datetime = Field(default_factory=utcnow)

class NotificationRead(SQLModel):
    id: int
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority
    read: bool
    order_id: int | None
    created_at: datetime

class UnreadCount(SQLModel):
    unread: int

class ReadAllResult(SQLModel):
    updated: int
