# medimart_api/order_api/models.py

from datetime import datetime, timezone
from enum import Enum

from pydantic import EmailStr
from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    PACKED = "PACKED"
    SHIPPED = "SHIPPED"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"

class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

class PaymentMethod(str, Enum):
    RAZORPAY = "RAZORPAY"
    UPI = "UPI"
    CARD = "CARD"
    NETBANKING = "NETBANKING"
    WALLET = "WALLET"
    COD = "COD"

class ProductType(str, Enum):
    MEDICINE = "MEDICINE"
    LAB_TEST = "LAB_TEST"
    CONSULTATION = "CONSULTATION"
    HOMECARE = "HOMECARE"
    AMBULANCE = "AMBULANCE"
    INSURANCE = "INSURANCE"

class IntentStatus(str, Enum):
    CREATED = "CREATED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SUPERSEDED = "SUPERSEDED"


# ------------------------------ Checkout input ------------------------------

class DeliveryAddress(SQLModel):
    full_name: str
    phone_number: str
    email: EmailStr | None = None
    address_line1: str
    address_line2: str | None = None
    city: str
    state: str
    pincode: str
    landmark: str | None = None

class CartItem(SQLModel):
    product_id: str
    product_name: str
    product_type: ProductType = ProductType.MEDICINE
    quantity: int = Field(gt=0)
    price: float = Field(ge=0)
    prescription_required: bool = False

class OrderCreate(SQLModel):
    items: list[CartItem]
    delivery_address: DeliveryAddress
    payment_method: PaymentMethod = PaymentMethod.RAZORPAY
    discount: float = Field(default=0, ge=0)
    delivery_slot: str | None = None
    prescription_id: str | None = None
    notes: str | None = None


# ---------------------------------- Tables ----------------------------------

class Orders(SQLModel, table=True):
    order_id: int | None = Field(default=None, primary_key=True)
    order_number: str = Field(index=True, unique=True)
    user_id: str = Field(index=True)
    order_status: OrderStatus = Field(default=OrderStatus.PENDING, index=True)
    payment_status: PaymentStatus = Field(default=PaymentStatus.PENDING)
    payment_method: PaymentMethod = Field(default=PaymentMethod.RAZORPAY)
    subtotal: float = 0
    discount: float = 0
    delivery_fee: float = 0
    tax: float = 0
    order_total: float = 0
    delivery_address: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    delivery_slot: str | None = None
    prescription_id: str | None = None
    notes: str | None = None
    cancellation_reason: str | None = None
    razorpay_order_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

class OrderItem(SQLModel, table=True):
    item_id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.order_id", index=True)
    product_id: str
    product_name: str
    product_type: ProductType = ProductType.MEDICINE
    quantity: int
    price: float
    line_total: float
    prescription_required: bool = False

class OrderTrackingUpdate(SQLModel, table=True):
    tracking_id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.order_id", index=True)
    status: OrderStatus
    message: str
    location: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)

class Payment(SQLModel, table=True):
    payment_id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.order_id", index=True)
    user_id: str = Field(index=True)
    amount: float
    currency: str
    status: IntentStatus = Field(default=IntentStatus.CREATED)
    razorpay_order_id: str = Field(index=True, unique=True)
    razorpay_payment_id: str | None = None
    razorpay_signature: str | None = None
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    paid_at: datetime | None = None


# ------------------------------ Request bodies ------------------------------

class OrderUpdate(SQLModel):
    delivery_slot: str | None = None
    prescription_id: str | None = None
    notes: str | None = None

class OrderStatusUpdate(SQLModel):
    status: OrderStatus
    message: str | None = None
    location: str | None = None

class OrderCancel(SQLModel):
    reason: str = Field(min_length=1)

class PaymentInitiateRequest(SQLModel):
    amount: float | None = None
    currency: str | None = None

class PaymentVerifyRequest(SQLModel):
    order_id: int
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


# ----------------------------- Response bodies -----------------------------

class OrderItemRead(SQLModel):
    product_id: str
    product_name: str
    product_type: ProductType
    quantity: int
    price: float
    line_total: float
    prescription_required: bool

class TrackingUpdateRead(SQLModel):
    status: OrderStatus
    message: str
    location: str | None
    timestamp: datetime

class OrderRead(SQLModel):
    order_id: int
    order_number: str
    user_id: str
    order_status: OrderStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    subtotal: float
    discount: float
    delivery_fee: float
    tax: float
    order_total: float
    delivery_address: DeliveryAddress
    delivery_slot: str | None
    prescription_id: str | None
    notes: str | None
    cancellation_reason: str | None
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemRead] = []
    tracking_updates: list[TrackingUpdateRead] = []

class OrderPage(SQLModel):
    data: list[OrderRead]
    total: int
    page: int
    limit: int
    total_pages: int

class OrderTracking(SQLModel):
    order_id: int
    order_number: str
    order_status: OrderStatus
    tracking_updates: list[TrackingUpdateRead]

class PaymentInitiateResponse(SQLModel):
    payment_id: int
    razorpay_order_id: str
    amount: int  # smallest currency unit (paise)
    currency: str
    key: str

class PaymentVerifyResponse(SQLModel):
    success: bool
    order_id: int
    payment_id: int
    status: IntentStatus
    message: str | None = None
