# tests/test_payments.py

import os

# Set the TESTING environment variable to use the test database
os.environ["TESTING"] = "1"

import hashlib
import hmac
import json
import pytest
import requests
from fastapi.testclient import TestClient
from razorpay.errors import BadRequestError
from sqlmodel import SQLModel, Session, select
from unittest.mock import AsyncMock, patch

from medimart_api.auth import create_access_token
from medimart_api.db import engine, get_session
from medimart_api.order_api.main import app, produce_message
from medimart_api.order_api.models import IntentStatus, Orders, Payment, PaymentStatus
from medimart_api.order_api.payments import (
    PaymentError, RazorpayGateway, get_payment_gateway, initiate_payment
)

client = TestClient(app)

WEBHOOK_SECRET = "whsec_test"


class FakeRazorpayGateway(RazorpayGateway):
    """Razorpay gateway that hands out provider order ids without network calls."""

    def __init__(self):
        super().__init__("rzp_test_key", "rzp_test_secret", WEBHOOK_SECRET)
        self.created = []

    def create_order(self, amount, currency, receipt, notes=None):
        provider_order = {
            "id": f"order_test{len(self.created) + 1}",
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
        }
        self.created.append(provider_order)
        return provider_order


# ------------------------------ Fixtures ------------------------------

@pytest.fixture(name="create_test_database")
def create_test_database_fixture():
    """
    Overrides the get_session dependency to use the test database session.
    Creates all tables before tests and drops them after tests.
    """
    def override_get_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    SQLModel.metadata.create_all(engine)
    yield
    SQLModel.metadata.drop_all(engine)

    app.dependency_overrides.pop(get_session, None)


@pytest.fixture(name="mock_kafka_producer")
def mock_kafka_producer_fixture():
    mock_producer = AsyncMock()

    async def mock_produce():
        yield mock_producer

    app.dependency_overrides[produce_message] = mock_produce
    yield mock_producer
    app.dependency_overrides.pop(produce_message, None)


@pytest.fixture(name="gateway")
def gateway_fixture():
    gateway = FakeRazorpayGateway()
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield gateway
    app.dependency_overrides.pop(get_payment_gateway, None)


# -------------------------- Helper Functions --------------------------

def auth_headers(user_id: str, role: str = "CUSTOMER") -> dict:
    token = create_access_token({"sub": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


CUSTOMER = auth_headers("customer-1")
OTHER_CUSTOMER = auth_headers("customer-2")


def create_order(payment_method: str = "RAZORPAY") -> dict:
    payload = {
        "items": [{"product_id": "med-101", "product_name": "Insulin pen", "quantity": 1, "price": 650.0}],
        "delivery_address": {
            "full_name": "Asha Rao",
            "phone_number": "+919800000001",
            "address_line1": "12 MG Road",
            "city": "Bengaluru",
            "state": "Karnataka",
            "pincode": "560001",
        },
        "payment_method": payment_method,
    }
    response = client.post("/orders", json=payload, headers=CUSTOMER)
    assert response.status_code == 200, response.json()
    return response.json()


def initiate(order_id: int, headers=CUSTOMER, **body):
    return client.post(f"/orders/{order_id}/payment/initiate", json=body, headers=headers)


def verify(order_id: int, razorpay_order_id: str, payment_id: str, signature: str, headers=CUSTOMER):
    return client.post(
        "/orders/payment/verify",
        json={
            "order_id": order_id,
            "razorpay_order_id": razorpay_order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signature,
        },
        headers=headers,
    )


def sign(razorpay_order_id: str, payment_id: str, secret: str = "rzp_test_secret") -> str:
    message = f"{razorpay_order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def send_webhook(event: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(event).encode()
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return client.post(
        "/orders/payment/webhook",
        content=body,
        headers={"X-Razorpay-Signature": signature, "Content-Type": "application/json"},
    )


def webhook_event(event_type: str, razorpay_order_id: str, payment_id: str = "pay_hook1", **entity) -> dict:
    return {
        "event": event_type,
        "payload": {"payment": {"entity": {"id": payment_id, "order_id": razorpay_order_id, **entity}}},
    }


def get_intent(razorpay_order_id: str) -> Payment:
    with Session(engine) as session:
        return session.exec(select(Payment).where(Payment.razorpay_order_id == razorpay_order_id)).one()


def published_topics(producer: AsyncMock) -> list[str]:
    return [call.args[0] for call in producer.send_and_wait.await_args_list]


# ------------------------------ Test Cases ------------------------------

def test_signature_checks_use_razorpay_scheme():
    gateway = RazorpayGateway("key", "secret", webhook_secret="hook-secret")
    expected = sign("order_abc", "pay_xyz", secret="secret")
    assert gateway.verify_payment_signature("order_abc", "pay_xyz", expected)
    assert not gateway.verify_payment_signature("order_abc", "pay_other", expected)

    body = b'{"event": "payment.captured"}'
    signature = hmac.new(b"hook-secret", body, hashlib.sha256).hexdigest()
    assert gateway.verify_webhook_signature(body, signature)
    assert not gateway.verify_webhook_signature(body, "")
    assert not gateway.verify_webhook_signature(b"\xff", signature)
    assert not RazorpayGateway("key", "secret").verify_webhook_signature(body, signature)


def test_create_order_calls_razorpay_orders_api():
    gateway = RazorpayGateway("key", "secret")
    with patch.object(gateway.client.order, "create", return_value={"id": "order_abc"}) as mock_create:
        provider_order = gateway.create_order(65000, "INR", "order_7", {"orderId": "7"})

    assert provider_order == {"id": "order_abc"}
    mock_create.assert_called_once_with(
        data={"amount": 65000, "currency": "INR", "receipt": "order_7", "notes": {"orderId": "7"}}
    )


# -------------------- Initiate --------------------

def test_initiate_payment(create_test_database, mock_kafka_producer, gateway):
    order = create_order()

    response = initiate(order["order_id"], amount=650.0)
    assert response.status_code == 200, response.json()
    intent = response.json()
    assert intent["razorpay_order_id"] == "order_test1"
    assert intent["amount"] == 65000
    assert intent["currency"] == "INR"
    assert intent["key"] == "rzp_test_key"

    assert gateway.created[0]["amount"] == 65000
    assert gateway.created[0]["receipt"] == f"order_{order['order_id']}"
    assert published_topics(mock_kafka_producer) == ["payment_updates"]

    response = client.get(f"/orders/{order['order_id']}", headers=CUSTOMER)
    assert response.json()["payment_status"] == "PENDING"


def test_initiate_payment_rejections(create_test_database, mock_kafka_producer, gateway):
    order = create_order()

    response = initiate(order["order_id"], amount=100.0)
    assert response.status_code == 400
    assert response.json()["detail"] == "Amount does not match the order total"

    assert initiate(order["order_id"], headers=OTHER_CUSTOMER).status_code == 403
    assert initiate(999).status_code == 404

    cod_order = create_order(payment_method="COD")
    assert initiate(cod_order["order_id"]).status_code == 400

    client.post(f"/orders/{order['order_id']}/cancel", json={"reason": "No longer needed"}, headers=CUSTOMER)
    response = initiate(order["order_id"])
    assert response.status_code == 400
    assert response.json()["detail"] == "Order is CANCELLED and cannot be paid"
    assert gateway.created == []


def test_initiate_payment_provider_failure(create_test_database, mock_kafka_producer, gateway):
    order = create_order()
    errors = (BadRequestError("The amount must be atleast INR 1.00"), requests.ConnectionError("connection refused"))
    for error in errors:
        with patch.object(gateway, "create_order", side_effect=error):
            response = initiate(order["order_id"])

        assert response.status_code == 400
        assert response.json()["detail"] == "Failed to create payment order"

    with Session(engine) as session:
        assert session.exec(select(Payment)).all() == []
    mock_kafka_producer.send_and_wait.assert_not_called()


def test_new_intent_supersedes_open_one(create_test_database, mock_kafka_producer, gateway):
    order = create_order()
    first = initiate(order["order_id"]).json()
    second = initiate(order["order_id"]).json()

    assert get_intent(first["razorpay_order_id"]).status == IntentStatus.SUPERSEDED
    assert get_intent(second["razorpay_order_id"]).status == IntentStatus.CREATED

    signature = sign(first["razorpay_order_id"], "pay_old")
    response = verify(order["order_id"], first["razorpay_order_id"], "pay_old", signature)
    assert response.status_code == 400
    assert response.json()["detail"] == "Payment verification failed"


# -------------------- Verify --------------------

def test_verify_payment_confirms_order(create_test_database, mock_kafka_producer, gateway):
    order = create_order()
    intent = initiate(order["order_id"]).json()

    signature = sign(intent["razorpay_order_id"], "pay_001")
    response = verify(order["order_id"], intent["razorpay_order_id"], "pay_001", signature)
    assert response.status_code == 200, response.json()
    result = response.json()
    assert result["success"] is True
    assert result["status"] == "COMPLETED"
    assert result["payment_id"] == intent["payment_id"]

    order = client.get(f"/orders/{order['order_id']}", headers=CUSTOMER).json()
    assert order["payment_status"] == "COMPLETED"
    assert order["order_status"] == "CONFIRMED"
    assert order["tracking_updates"][0]["message"] == "Payment received, order confirmed"
    assert published_topics(mock_kafka_producer) == ["payment_updates", "payment_updates", "order_updates"]

    # Verifying the same payment again is harmless
    response = verify(order["order_id"], intent["razorpay_order_id"], "pay_001", signature)
    assert response.status_code == 200
    order = client.get(f"/orders/{order['order_id']}", headers=CUSTOMER).json()
    assert len(order["tracking_updates"]) == 1

    response = initiate(order["order_id"])
    assert response.status_code == 409
    assert response.json()["detail"] == "Order has already been paid"


def test_failed_verification_leaves_order_unchanged(create_test_database, mock_kafka_producer, gateway):
    order = create_order()
    intent = initiate(order["order_id"]).json()

    response = verify(order["order_id"], intent["razorpay_order_id"], "pay_002", "not-a-valid-signature")
    assert response.status_code == 400
    assert response.json()["detail"] == "Payment verification failed"

    failed = get_intent(intent["razorpay_order_id"])
    assert failed.status == IntentStatus.FAILED
    assert failed.failure_reason == "Invalid payment signature"

    order = client.get(f"/orders/{order['order_id']}", headers=CUSTOMER).json()
    assert order["payment_status"] == "PENDING"
    assert order["order_status"] == "PENDING"
    assert order["tracking_updates"] == []

    topic, value = mock_kafka_producer.send_and_wait.await_args.args
    assert topic == "payment_updates"
    assert json.loads(value)["status"] == "FAILED"


def test_verify_rejects_foreign_intent(create_test_database, mock_kafka_producer, gateway):
    order = create_order()
    intent = initiate(order["order_id"]).json()
    signature = sign(intent["razorpay_order_id"], "pay_003")

    response = verify(order["order_id"], intent["razorpay_order_id"], "pay_003", signature, headers=OTHER_CUSTOMER)
    assert response.status_code == 400
    assert get_intent(intent["razorpay_order_id"]).status == IntentStatus.CREATED

    response = verify(order["order_id"], "order_unknown", "pay_003", signature)
    assert response.status_code == 400


# -------------------- Webhook --------------------

def test_webhook_captured_completes_payment(create_test_database, mock_kafka_producer, gateway):
    order = create_order()
    intent = initiate(order["order_id"]).json()

    response = send_webhook(webhook_event("payment.captured", intent["razorpay_order_id"]))
    assert response.status_code == 200
    assert response.json() == {"status": "success"}

    payment = get_intent(intent["razorpay_order_id"])
    assert payment.status == IntentStatus.COMPLETED
    assert payment.razorpay_payment_id == "pay_hook1"

    order = client.get(f"/orders/{order['order_id']}", headers=CUSTOMER).json()
    assert order["payment_status"] == "COMPLETED"
    assert order["order_status"] == "CONFIRMED"

    # Razorpay retries deliveries; a repeat is acknowledged without side effects
    response = send_webhook(webhook_event("payment.captured", intent["razorpay_order_id"]))
    assert response.status_code == 200
    order = client.get(f"/orders/{order['order_id']}", headers=CUSTOMER).json()
    assert len(order["tracking_updates"]) == 1


def test_webhook_failed_payment(create_test_database, mock_kafka_producer, gateway):
    order = create_order()
    intent = initiate(order["order_id"]).json()

    event = webhook_event(
        "payment.failed", intent["razorpay_order_id"], "pay_bad",
        error_description="Card declined by issuer",
    )
    assert send_webhook(event).status_code == 200

    payment = get_intent(intent["razorpay_order_id"])
    assert payment.status == IntentStatus.FAILED
    assert payment.failure_reason == "Card declined by issuer"

    order = client.get(f"/orders/{order['order_id']}", headers=CUSTOMER).json()
    assert order["payment_status"] == "PENDING"
    assert order["order_status"] == "PENDING"


def test_webhook_rejects_bad_requests(create_test_database, mock_kafka_producer, gateway):
    order = create_order()
    intent = initiate(order["order_id"]).json()

    response = send_webhook(webhook_event("payment.captured", intent["razorpay_order_id"]), secret="wrong")
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"
    assert get_intent(intent["razorpay_order_id"]).status == IntentStatus.CREATED

    body = b"not json"
    signature = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()
    response = client.post("/orders/payment/webhook", content=body, headers={"X-Razorpay-Signature": signature})
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid payload"

    response = send_webhook(webhook_event("payment.authorized", intent["razorpay_order_id"]))
    assert response.status_code == 200


def test_capture_for_superseded_intent_leaves_order_alone(create_test_database, mock_kafka_producer, gateway):
    order = create_order()
    first = initiate(order["order_id"]).json()
    second = initiate(order["order_id"]).json()

    response = send_webhook(webhook_event("payment.captured", first["razorpay_order_id"], "pay_late"))
    assert response.status_code == 200

    assert get_intent(first["razorpay_order_id"]).status == IntentStatus.SUPERSEDED
    assert get_intent(second["razorpay_order_id"]).status == IntentStatus.CREATED
    order = client.get(f"/orders/{order['order_id']}", headers=CUSTOMER).json()
    assert order["payment_status"] == "PENDING"
    assert order["order_status"] == "PENDING"


def test_failed_intent_is_final(create_test_database, mock_kafka_producer, gateway):
    order = create_order()
    intent = initiate(order["order_id"]).json()
    razorpay_order_id = intent["razorpay_order_id"]

    assert verify(order["order_id"], razorpay_order_id, "pay_004", "not-a-valid-signature").status_code == 400
    published = mock_kafka_producer.send_and_wait.await_count

    # A correct signature cannot revive the intent, and nothing new is published
    response = verify(order["order_id"], razorpay_order_id, "pay_004", sign(razorpay_order_id, "pay_004"))
    assert response.status_code == 400
    assert mock_kafka_producer.send_and_wait.await_count == published

    assert send_webhook(webhook_event("payment.captured", razorpay_order_id, "pay_004")).status_code == 200

    assert get_intent(razorpay_order_id).status == IntentStatus.FAILED
    order = client.get(f"/orders/{order['order_id']}", headers=CUSTOMER).json()
    assert order["payment_status"] == "PENDING"
    assert order["order_status"] == "PENDING"


# -------------------- Concurrency --------------------

def test_initiate_payment_rechecks_order_under_lock(create_test_database, mock_kafka_producer, gateway):
    order = create_order()

    with Session(engine) as session:
        stale_order = session.get(Orders, order["order_id"])
        assert stale_order.payment_status == PaymentStatus.PENDING

        # Another request completes the payment after this session loaded the order
        with Session(engine) as other_session:
            paid = other_session.get(Orders, order["order_id"])
            paid.payment_status = PaymentStatus.COMPLETED
            other_session.add(paid)
            other_session.commit()

        with pytest.raises(PaymentError, match="Order has already been paid"):
            initiate_payment(session, gateway, stale_order)

    assert gateway.created == []
