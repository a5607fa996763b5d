# medimart_api/notification_api/utils.py

import smtplib
from email.mime.text import MIMEText
from twilio.rest import Client
from sqlmodel import Session, select
import logging, time

from medimart_api import settings
from medimart_api.events import OrderStatusMessage, PaymentStatusMessage
from medimart_api.notification_api.models import (
    Notification, NotificationPriority, NotificationType
)

logger = logging.getLogger(__name__)

ORDER_TITLES = {
    "PENDING": "Order {number} placed",
    "CONFIRMED": "Order {number} confirmed",
    "PROCESSING": "Order {number} is being processed",
    "PACKED": "Order {number} packed",
    "SHIPPED": "Order {number} shipped",
    "OUT_FOR_DELIVERY": "Order {number} is out for delivery",
    "DELIVERED": "Order {number} delivered",
    "CANCELLED": "Order {number} cancelled",
    "RETURNED": "Order {number} returned",
}

DELIVERY_STATUSES = {"SHIPPED", "OUT_FOR_DELIVERY", "DELIVERED"}
HIGH_PRIORITY_STATUSES = {"CANCELLED", "RETURNED"}


def send_email(to_email: str, subject: str, body: str, retries: int = 3) -> bool:
    """
    Sends an email to the specified recipient.

    Args:
        to_email (str): Recipient's email address.
        subject (str): Email subject.
        body (str): Email body.

    Returns:
        bool: True if email sent successfully, False otherwise.
    """

    attempt = 0
    while attempt < retries:
        try:
            msg = MIMEText(body)
            msg['Subject'] = subject
            msg['From'] = settings.USER_EMAIL
            msg['To'] = to_email

            with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT) as server:
                server.starttls()
                server.login(settings.USER_EMAIL, str(settings.USER_PASSWORD))
                server.send_message(msg)

            logger.info(f"Email sent to {to_email}")
            return True
        except Exception as e:
            attempt += 1
            logger.error(f"Failed to send email to {to_email}: {e}")
            time.sleep(2 ** attempt)  # Exponential backoff
    return False

def send_sms(to_number: str, message: str, retries: int = 3) -> bool:
    """
    Sends an SMS to the specified phone number.

    Args:
        to_number (str): Recipient's phone number.
        message (str): SMS message body.

    Returns:
        bool: True if SMS sent successfully, False otherwise.
    """

    attempt = 0
    while attempt < retries:
        try:
            client = Client(settings.TWILIO_ACCOUNT_SID, str(settings.TWILIO_AUTH_TOKEN))
            client.messages.create(
                body=message,
                from_=settings.TWILIO_NUMBER,
                to=to_number
            )
            logger.info(f"SMS sent to {to_number}")
            return True
        except Exception as e:
            attempt += 1
            logger.error(f"Failed to send SMS to {to_number}: {e}")
            time.sleep(2 ** attempt)  # Exponential backoff
    return False


def build_order_notification(message: OrderStatusMessage) -> Notification:
    """Turns an order status change into the owner's notification row."""
    title = ORDER_TITLES.get(message.status, "Order {number} updated").format(number=message.order_number)
    if message.status in DELIVERY_STATUSES:
        notification_type = NotificationType.DELIVERY
    else:
        notification_type = NotificationType.ORDER
    priority = (
        NotificationPriority.HIGH if message.status in HIGH_PRIORITY_STATUSES
        else NotificationPriority.NORMAL
    )
    return Notification(
        user_id=message.user_id,
        type=notification_type,
        title=title,
        message=message.message,
        priority=priority,
        order_id=message.order_id,
    )


def build_payment_notification(message: PaymentStatusMessage) -> Notification | None:
    """
    Payment notifications are only raised for settled intents; created and
    superseded intents stay silent.
    """
    if message.status == "COMPLETED":
        return Notification(
            user_id=message.user_id,
            type=NotificationType.PAYMENT,
            title=f"Payment received for order #{message.order_id}",
            message="Your payment was successful. Thank you for shopping with us!",
            priority=NotificationPriority.NORMAL,
            order_id=message.order_id,
        )
    if message.status == "FAILED":
        return Notification(
            user_id=message.user_id,
            type=NotificationType.PAYMENT,
            title=f"Payment failed for order #{message.order_id}",
            message=(
                f"We could not confirm your payment. Reason: {message.failure_reason or 'Unknown error'}. "
                "Please try again or contact support."
            ),
            priority=NotificationPriority.HIGH,
            order_id=message.order_id,
        )
    return None


def mark_notification_read(session: Session, user_id: str, notification_id: int) -> Notification | None:
    notification = session.get(Notification, notification_id)
    if not notification or notification.user_id != user_id:
        return None
    if not notification.read:
        notification.read = True
        session.add(notification)
        session.commit()
        session.refresh(notification)
    return notification


def mark_all_notifications_read(session: Session, user_id: str) -> int:
    unread = session.exec(
        select(Notification).where((Notification.user_id == user_id) & (Notification.read == False))  # noqa: E712
    ).all()
    for notification in unread:
        notification.read = True
        session.add(notification)
    session.commit()
    return len(unread)
