"""
Order documents, their embedded sub-records, and the tagged facts exchanged with
the payment gateway and the shipment provider.

Order items are snapshots taken at checkout and are frozen. Everything the
lifecycle controller mutates lives in PaymentFacts / ShipmentFacts or in the
status fields of Order itself.
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"


class ShipmentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    ONLINE = "online"
    COD = "cod"
    WALLET = "wallet"


class GeocodingStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


# ── Order sub-records ─────────────────────────────

class Dimensions(BaseModel):
    length: float = 10
    breadth: float = 10
    height: float = 10


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    title: str
    image: str | None = None
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    sku: str | None = None
    category: str | None = None
    weight: float = 1  # kg
    dimensions: Dimensions = Field(default_factory=Dimensions)
    hsn_code: str = "1234"


class Address(BaseModel):
    full_name: str = Field(..., min_length=1)
    address_line1: str = Field(..., min_length=1)
    address_line2: str | None = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = Field(default="India", min_length=1)
    phone: str = Field(..., min_length=1)
    landmark: str | None = None
    latitude: str | None = None
    longitude: str | None = None
    geocoding_status: GeocodingStatus = GeocodingStatus.PENDING
    geocoding_error: str | None = None


class CustomerDetails(BaseModel):
    name: str
    email: str
    mobile: str


class PaymentFacts(BaseModel):
    gateway_order_id: str | None = None
    payment_id: str | None = None
    signature: str | None = None
    payment_method: str | None = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    amount: int | None = None  # minor units, as reported by the gateway
    error: str | None = None


class TrackingEvent(BaseModel):
    status: str | None = None
    location: str | None = None
    timestamp: datetime | None = None
    description: str = ""


class ShippingLabel(BaseModel):
    label_url: str | None = None
    invoice_url: str | None = None
    manifest_url: str | None = None
    generated_at: datetime | None = None


class ShipmentCancellation(BaseModel):
    is_cancelled: bool = False
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    cancelled_by: str | None = None  # customer | admin | system


class ShipmentFacts(BaseModel):
    provider_order_id: str | None = None
    awb_number: str | None = None
    courier_partner: str | None = None
    tracking_url: str | None = None
    shipment_status: ShipmentStatus = ShipmentStatus.PENDING
    estimated_delivery_date: datetime | None = None
    actual_delivery_date: datetime | None = None
    shipment_error: str | None = None
    tracking_history: list[TrackingEvent] = Field(default_factory=list)
    shipping_label: ShippingLabel | None = None
    cancellation: ShipmentCancellation = Field(default_factory=ShipmentCancellation)
    last_tracking_update: TrackingEvent | None = None


class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: OrderStatus
    timestamp: datetime = Field(default_factory=utcnow)
    updated_by: str
    notes: str | None = None


class Order(BaseModel):
    order_id: str
    order_number: str
    user_id: str
    customer: CustomerDetails
    status: OrderStatus = OrderStatus.PENDING
    items: list[OrderItem] = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Address | None = None
    payment_method: PaymentMethod = PaymentMethod.ONLINE
    payment_details: PaymentFacts = Field(default_factory=PaymentFacts)
    shipment_details: ShipmentFacts | None = None
    items_price: Decimal
    shipping_price: Decimal = Decimal("0")
    tax_price: Decimal = Decimal("0")
    total_price: Decimal
    currency: str = "INR"
    paid_at: datetime | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    order_notes: str | None = None
    insurance: bool = False
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def total_minor_units(self) -> int:
        return int((self.total_price * 100).to_integral_value())


class OrderTrackingView(BaseModel):
    """Public projection for the order-number lookup. No financial detail."""
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    shipment_status: ShipmentStatus | None = None
    courier_partner: str | None = None
    tracking_url: str | None = None
    created_at: datetime
    paid_at: datetime | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderTrackingView":
        shipment = order.shipment_details
        return cls(
            order_number=order.order_number,
            status=order.status,
            payment_status=order.payment_details.payment_status,
            shipment_status=shipment.shipment_status if shipment else None,
            courier_partner=shipment.courier_partner if shipment else None,
            tracking_url=shipment.tracking_url if shipment else None,
            created_at=order.created_at,
            paid_at=order.paid_at,
            shipped_at=order.shipped_at,
            delivered_at=order.delivered_at,
            cancelled_at=order.cancelled_at,
        )


# ── Product (inventory aspect) ─────────────────────

class Product(BaseModel):
    product_id: str
    title: str
    price: Decimal
    image: str | None = None
    sku: str | None = None
    shipping_category: str | None = None
    weight_kg: float = 1
    dimensions: Dimensions = Field(default_factory=Dimensions)
    hsn_code: str | None = None
    stock: int = Field(default=0, ge=0)
    reserved_stock: int = 0
    total_sales: int = 0
    status: str = "active"
    last_stock_update: datetime | None = None


# ── Payment gateway facts ─────────────────────────

class PaymentCaptured(BaseModel):
    kind: Literal["captured"] = "captured"
    gateway_order_id: str
    payment_id: str
    amount: int
    method: str | None = None
    signature: str | None = None


class PaymentFailed(BaseModel):
    kind: Literal["failed"] = "failed"
    gateway_order_id: str
    payment_id: str
    reason: str = "Payment processing failed"


class PaymentAuthorized(BaseModel):
    kind: Literal["authorized"] = "authorized"
    gateway_order_id: str
    payment_id: str
    amount: int
    method: str | None = None


PaymentEvent = Annotated[
    Union[PaymentCaptured, PaymentFailed, PaymentAuthorized],
    Field(discriminator="kind"),
]


# ── Shipment provider facts ───────────────────────

class ShipmentResult(BaseModel):
    provider_order_id: str | None = None
    awb_number: str
    courier_partner: str | None = None
    tracking_url: str | None = None
    estimated_delivery: datetime | None = None


class TrackingSnapshot(BaseModel):
    awb_number: str
    status: str = "unknown"
    location: str | None = None
    last_update: datetime | None = None
    estimated_delivery: datetime | None = None
    tracking_history: list[TrackingEvent] = Field(default_factory=list)
    courier_partner: str | None = None
    tracking_url: str | None = None


class CancelResult(BaseModel):
    cancelled: bool
    awb_number: str
    reason: str
    cancellation_id: str | None = None
    error: str | None = None
