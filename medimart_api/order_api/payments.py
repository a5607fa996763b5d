# medimart_api/order_api/payments.py
"""
Razorpay payment intents.

An intent is completed only from CREATED, whether through the checkout
verification or through a ``payment.captured`` webhook. Completing an intent
twice with the same payment id is a no-op. SUPERSEDED and FAILED intents are
final: a late capture against one of them is logged for reconciliation and
never touches the order.
"""

import logging

import razorpay
import requests
from razorpay.errors import BadRequestError, GatewayError, ServerError, SignatureVerificationError
from sqlmodel import Session, select

from medimart_api import settings
from medimart_api.order_api.models import (
    IntentStatus, OrderStatus, Orders, OrderTrackingUpdate, Payment,
    PaymentMethod, PaymentStatus, PaymentVerifyRequest, utcnow
)
from medimart_api.order_api.pipeline import apply_transition, is_terminal, lock_order

logger = logging.getLogger(__name__)

PROVIDER_ERRORS = (BadRequestError, GatewayError, ServerError, requests.RequestException)


class PaymentError(Exception):
    """Raised when a payment step cannot be carried out."""


class PaymentVerificationError(PaymentError):
    """Raised when a checkout response cannot be accepted."""


class PaymentSignatureError(PaymentVerificationError):
    """Raised when the provider signature does not match. The intent is marked FAILED."""


class RazorpayGateway:
    """Wraps the Razorpay SDK client: order creation and signature checks."""

    def __init__(self, key_id: str, key_secret: str, webhook_secret: str | None = None):
        self.key_id = key_id
        self.webhook_secret = webhook_secret
        self.client = razorpay.Client(auth=(key_id, key_secret))

    def create_order(self, amount: int, currency: str, receipt: str, notes: dict | None = None) -> dict:
        """
        Creates a provider-side order.

        Args:
            amount (int): Amount in the smallest currency unit (paise).
            currency (str): ISO currency code.
            receipt (str): Our reference, shown in the Razorpay dashboard.
            notes (dict): Free-form key/values stored with the provider order.

        Returns:
            dict: The provider order, including its ``id``.
        """
        return self.client.order.create(data={
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        })

    def verify_payment_signature(self, razorpay_order_id: str, razorpay_payment_id: str, signature: str) -> bool:
        try:
            self.client.utility.verify_payment_signature({
                "razorpay_order_id": razorpay_order_id,
                "razorpay_payment_id": razorpay_payment_id,
                "razorpay_signature": signature,
            })
        except SignatureVerificationError:
            return False
        return True

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        if not self.webhook_secret or not signature:
            return False
        try:
            self.client.utility.verify_webhook_signature(body.decode("utf-8"), signature, self.webhook_secret)
        except (SignatureVerificationError, UnicodeDecodeError):
            return False
        return True


def get_payment_gateway() -> RazorpayGateway:
    return RazorpayGateway(
        key_id=settings.RAZORPAY_KEY_ID,
        key_secret=str(settings.RAZORPAY_KEY_SECRET),
        webhook_secret=str(settings.RAZORPAY_WEBHOOK_SECRET),
    )


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def initiate_payment(
    session: Session,
    gateway: RazorpayGateway,
    order_db: Orders,
    amount: float | None = None,
    currency: str | None = None,
) -> Payment:
    """
    Creates a payment intent for an order.

    The order row is locked while open intents are marked SUPERSEDED and the
    new one is inserted, so concurrent requests leave exactly one CREATED
    intent per order.

    Raises:
        PaymentError: If the order cannot be paid or the provider call fails.
    """
    order_db = lock_order(session, order_db.order_id)
    if is_terminal(OrderStatus(order_db.order_status)):
        raise PaymentError(f"Order is {OrderStatus(order_db.order_status).value} and cannot be paid")
    if order_db.payment_status == PaymentStatus.COMPLETED:
        raise PaymentError("Order has already been paid")
    if order_db.payment_method == PaymentMethod.COD:
        raise PaymentError("Cash on delivery orders are paid on delivery")
    if amount is not None and to_minor_units(amount) != to_minor_units(order_db.order_total):
        raise PaymentError("Amount does not match the order total")

    currency = (currency or settings.PAYMENT_CURRENCY).upper()

    open_intents = session.exec(
        select(Payment).where(
            (Payment.order_id == order_db.order_id) & (Payment.status == IntentStatus.CREATED)
        )
    ).all()
    for intent in open_intents:
        intent.status = IntentStatus.SUPERSEDED
        session.add(intent)
        logger.info(f"Payment intent {intent.razorpay_order_id} superseded for Order {order_db.order_number}")

    try:
        provider_order = gateway.create_order(
            amount=to_minor_units(order_db.order_total),
            currency=currency,
            receipt=f"order_{order_db.order_id}",
            notes={"userId": order_db.user_id, "orderId": str(order_db.order_id)},
        )
    except PROVIDER_ERRORS as e:
        session.rollback()
        logger.error(f"Error creating Razorpay order for Order {order_db.order_number}: {e}")
        raise PaymentError("Failed to create payment order") from e

    payment = Payment(
        order_id=order_db.order_id,
        user_id=order_db.user_id,
        amount=order_db.order_total,
        currency=currency,
        status=IntentStatus.CREATED,
        razorpay_order_id=provider_order["id"],
    )
    order_db.razorpay_order_id = provider_order["id"]
    order_db.updated_at = utcnow()
    session.add(payment)
    session.add(order_db)
    session.commit()
    session.refresh(payment)
    logger.info(f"Payment intent {payment.razorpay_order_id} created for Order {order_db.order_number}")
    return payment


def complete_payment(
    session: Session,
    payment: Payment,
    razorpay_payment_id: str,
    razorpay_signature: str | None = None,
) -> tuple[Orders, OrderTrackingUpdate | None]:
    """
    Commits a confirmed payment: the intent and the order are marked paid and
    a PENDING order is confirmed. The caller commits.
    """
    order_db = lock_order(session, payment.order_id)

    payment.status = IntentStatus.COMPLETED
    payment.razorpay_payment_id = razorpay_payment_id
    payment.razorpay_signature = razorpay_signature
    payment.failure_reason = None
    payment.paid_at = utcnow()
    session.add(payment)

    order_db.payment_status = PaymentStatus.COMPLETED
    order_db.updated_at = utcnow()
    session.add(order_db)

    tracking = None
    if order_db.order_status == OrderStatus.PENDING:
        tracking = apply_transition(
            session, order_db, OrderStatus.CONFIRMED, "Payment received, order confirmed"
        )
    return order_db, tracking


def find_intent(session: Session, razorpay_order_id: str) -> Payment | None:
    return session.exec(
        select(Payment).where(Payment.razorpay_order_id == razorpay_order_id)
    ).first()


def verify_payment(
    session: Session,
    gateway: RazorpayGateway,
    request: PaymentVerifyRequest,
    user_id: str,
) -> tuple[Payment, Orders, OrderTrackingUpdate | None]:
    """
    Verifies the checkout response and commits the payment.

    A failed signature marks the intent FAILED and leaves the order untouched.

    Raises:
        PaymentVerificationError: If the intent is unknown, belongs to someone
            else, is SUPERSEDED or FAILED, or the signature does not match.
    """
    payment = find_intent(session, request.razorpay_order_id)
    if not payment or payment.order_id != request.order_id or payment.user_id != user_id:
        raise PaymentVerificationError("Unknown payment intent")

    if payment.status == IntentStatus.COMPLETED:
        if payment.razorpay_payment_id != request.razorpay_payment_id:
            raise PaymentVerificationError("Payment intent already completed")
        order_db = session.get(Orders, payment.order_id)
        return payment, order_db, None

    if payment.status != IntentStatus.CREATED:
        raise PaymentVerificationError(f"Payment intent is {IntentStatus(payment.status).value}")

    if not gateway.verify_payment_signature(
        request.razorpay_order_id, request.razorpay_payment_id, request.razorpay_signature
    ):
        payment.status = IntentStatus.FAILED
        payment.razorpay_payment_id = request.razorpay_payment_id
        payment.failure_reason = "Invalid payment signature"
        session.add(payment)
        session.commit()
        logger.error(f"Invalid payment signature for intent {request.razorpay_order_id}")
        raise PaymentSignatureError("Invalid payment signature")

    order_db, tracking = complete_payment(
        session, payment, request.razorpay_payment_id, request.razorpay_signature
    )
    session.commit()
    session.refresh(payment)
    session.refresh(order_db)
    if tracking:
        session.refresh(tracking)
    logger.info(f"Payment {payment.razorpay_payment_id} verified for Order {order_db.order_number}")
    return payment, order_db, tracking


def handle_webhook_event(
    session: Session, payload: dict
) -> tuple[Payment, Orders | None, OrderTrackingUpdate | None] | None:
    """
    Applies a Razorpay webhook event whose signature was already checked.

    Both events act on CREATED intents only, like verification does. Returns
    the touched intent with the order and tracking row when the order changed,
    or None when the event is ignored.
    """
    event_type = payload.get("event")
    entity = payload.get("payload", {}).get("payment", {}).get("entity", {})
    payment = find_intent(session, entity.get("order_id", ""))
    if not payment:
        logger.warning(f"No payment intent found for webhook event {event_type}")
        return None

    if event_type not in ("payment.captured", "payment.failed"):
        logger.warning(f"Unhandled webhook event: {event_type}")
        return None

    if payment.status != IntentStatus.CREATED:
        if event_type == "payment.captured" and payment.status != IntentStatus.COMPLETED:
            logger.error(
                f"Payment {entity.get('id')} captured on {IntentStatus(payment.status).value} "
                f"intent {payment.razorpay_order_id}; needs reconciliation"
            )
        else:
            logger.info(f"Ignoring {event_type} for {IntentStatus(payment.status).value} intent {payment.razorpay_order_id}")
        return None

    if event_type == "payment.captured":
        order_db, tracking = complete_payment(session, payment, entity.get("id"))
        session.commit()
        session.refresh(payment)
        session.refresh(order_db)
        if tracking:
            session.refresh(tracking)
        logger.info(f"Payment {payment.razorpay_payment_id} captured for Order ID {payment.order_id}")
        return payment, order_db, tracking

    payment.status = IntentStatus.FAILED
    payment.razorpay_payment_id = entity.get("id")
    payment.failure_reason = entity.get("error_description") or "Unknown error"
    session.add(payment)
    session.commit()
    session.refresh(payment)
    logger.info(f"Payment intent {payment.razorpay_order_id} marked as FAILED")
    return payment, None, None
