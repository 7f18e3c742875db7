"""
Order creation. The request is fully validated by pydantic before this runs;
products are read once to snapshot title/price/shipping attributes into the
order items, and nothing is persisted unless the payment intent (for online
payment) was created.
"""
import logging
import secrets
import string
import time
from decimal import Decimal
from typing import Protocol

from pydantic import BaseModel, Field

from brandmart.errors import ProductNotFound
from brandmart.geocoding import MapboxGeocoder
from brandmart.inventory import InventoryLedger
from brandmart.models import (
    Address,
    CustomerDetails,
    GeocodingStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentFacts,
    PaymentMethod,
)
from brandmart.store import OrderStore, history_entry

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_uppercase + string.digits


class PaymentIntents(Protocol):
    async def create_payment_intent(self, amount_minor: int, currency: str, receipt: str) -> str: ...


class OrderItemRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(default=1, ge=1)


class CreateOrderRequest(BaseModel):
    items: list[OrderItemRequest] = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Address | None = None
    customer: CustomerDetails | None = None
    payment_method: PaymentMethod = PaymentMethod.ONLINE
    shipping_price: Decimal = Field(default=Decimal("0"), ge=0)
    tax_price: Decimal = Field(default=Decimal("0"), ge=0)
    order_notes: str | None = None
    insurance: bool = False


def generate_order_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(4))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def compute_totals(items: list[OrderItem], shipping_price: Decimal, tax_price: Decimal) -> tuple[Decimal, Decimal]:
    """Return (items_price, total_price)."""
    items_price = sum((item.price * item.quantity for item in items), Decimal("0"))
    return items_price, items_price + shipping_price + tax_price


class CheckoutService:
    def __init__(
        self,
        orders: OrderStore,
        inventory: InventoryLedger,
        payments: PaymentIntents,
        geocoder: MapboxGeocoder | None = None,
        currency: str = "INR",
    ):
        self.orders = orders
        self.inventory = inventory
        self.payments = payments
        self.geocoder = geocoder
        self.currency = currency

    async def _locate(self, address: Address) -> Address:
        if address.latitude and address.longitude:
            return address.model_copy(update={"geocoding_status": GeocodingStatus.SUCCESS})
        if self.geocoder is None:
            return address
        return await self.geocoder.geocode(address)

    async def create_order(self, req: CreateOrderRequest, user_id: str, customer: CustomerDetails) -> Order:
        products = await self.inventory.get_products(i.product_id for i in req.items)
        items = []
        for requested in req.items:
            product = products.get(requested.product_id)
            if product is None:
                raise ProductNotFound(requested.product_id)
            items.append(OrderItem(
                product_id=product.product_id,
                title=product.title,
                image=product.image,
                price=product.price,
                quantity=requested.quantity,
                sku=product.sku,
                category=product.shipping_category,
                weight=product.weight_kg,
                dimensions=product.dimensions,
                hsn_code=product.hsn_code or "1234",
            ))

        items_price, total_price = compute_totals(items, req.shipping_price, req.tax_price)
        order_id = generate_order_id()

        payment = PaymentFacts()
        if req.payment_method == PaymentMethod.ONLINE:
            amount_minor = int((total_price * 100).to_integral_value())
            payment.gateway_order_id = await self.payments.create_payment_intent(
                amount_minor, self.currency, order_id
            )

        order = Order(
            order_id=order_id,
            order_number=await self.orders.next_order_number(),
            user_id=user_id,
            customer=req.customer or customer,
            status=OrderStatus.PENDING,
            items=items,
            shipping_address=await self._locate(req.shipping_address),
            billing_address=req.billing_address,
            payment_method=req.payment_method,
            payment_details=payment,
            items_price=items_price,
            shipping_price=req.shipping_price,
            tax_price=req.tax_price,
            total_price=total_price,
            currency=self.currency,
            order_notes=req.order_notes,
            insurance=req.insurance,
        )
        order.status_history.append(history_entry(OrderStatus.PENDING, user_id, "Order placed"))
        await self.orders.insert(order)
        logger.info("Order %s (%s) created for user %s, total %s %s",
                    order.order_id, order.order_number, user_id, total_price, self.currency)
        return order
