"""
Shipment Provider Adapter (Shipyaari).

The provider wants a seller sign-in token on every call. The token and its
validity window live in an explicit ProviderSession handed to the client, so
renewal is visible and testable; the lifecycle controller never sees it.
Every failure surfaces as ProviderError.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from brandmart.config import Settings, settings as default_settings
from brandmart.errors import ProviderError
from brandmart.models import (
    Address,
    CancelResult,
    Order,
    PaymentMethod,
    ShipmentResult,
    ShipmentStatus,
    ShippingLabel,
    TrackingEvent,
    TrackingSnapshot,
    utcnow,
)

logger = logging.getLogger(__name__)

PROVIDER = "shipyaari"

SIGN_IN_TIMEOUT = 30.0
CREATE_TIMEOUT = 45.0
TRACK_TIMEOUT = 30.0
LABELS_TIMEOUT = 60.0  # labels can take longer to generate
CANCEL_TIMEOUT = 30.0

DEFAULT_GST_RATE = 12


@dataclass
class ProviderSession:
    token: str | None = None
    expires_at: datetime | None = None

    def is_valid(self, now: datetime) -> bool:
        return self.token is not None and self.expires_at is not None and now < self.expires_at

    def renew(self, token: str, expires_at: datetime) -> None:
        self.token = token
        self.expires_at = expires_at

    def invalidate(self) -> None:
        self.token = None
        self.expires_at = None


# Provider status strings vary by courier; match on normalized fragments.
_STATUS_FRAGMENTS: list[tuple[str, ShipmentStatus]] = [
    ("out_for_delivery", ShipmentStatus.OUT_FOR_DELIVERY),
    ("undelivered", ShipmentStatus.IN_TRANSIT),
    ("delivered", ShipmentStatus.DELIVERED),
    ("cancel", ShipmentStatus.CANCELLED),
    ("rto", ShipmentStatus.FAILED),
    ("lost", ShipmentStatus.FAILED),
    ("transit", ShipmentStatus.IN_TRANSIT),
    ("picked", ShipmentStatus.IN_TRANSIT),
    ("dispatched", ShipmentStatus.IN_TRANSIT),
    ("shipped", ShipmentStatus.SHIPPED),
    ("booked", ShipmentStatus.PROCESSING),
    ("manifest", ShipmentStatus.PROCESSING),
]


def normalize_tracking_status(raw: str | None) -> ShipmentStatus | None:
    if not raw:
        return None
    key = raw.strip().lower().replace("-", "_").replace(" ", "_")
    for fragment, status in _STATUS_FRAGMENTS:
        if fragment in key:
            return status
    return None


def parse_provider_datetime(value: Any) -> datetime | None:
    """Provider dates arrive as epoch millis (number or digit string) or ISO strings."""
    if value in (None, ""):
        return None
    try:
        if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
            number = float(value)
            if number > 1e11:
                number /= 1000
            return datetime.fromtimestamp(number, tz=timezone.utc)
        if isinstance(value, str):
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except (ValueError, OverflowError, OSError):
        logger.debug("Unparseable provider date: %r", value)
    return None


def build_full_address(address: Address) -> str:
    parts = [address.address_line1, address.address_line2, address.city, address.state]
    return ", ".join(p for p in parts if p)


def _to_int(value: str | None, default: int = 0) -> int:
    digits = "".join(ch for ch in (value or "") if ch.isdigit())
    return int(digits) if digits else default


def _to_float(value: str | None) -> float | None:
    try:
        return float(value) if value else None
    except ValueError:
        return None


class ShipyaariClient:
    def __init__(
        self,
        email: str,
        password: str,
        base_url: str = "https://api-seller.shipyaari.com/api/v1",
        session: ProviderSession | None = None,
        client: httpx.AsyncClient | None = None,
        token_validity: timedelta = timedelta(hours=23),
        clock: Callable[[], datetime] = utcnow,
        config: Settings | None = None,
    ):
        self.email = email
        self.password = password
        self.base_url = base_url.rstrip("/")
        self.session = session or ProviderSession()
        self.token_validity = token_validity
        self.clock = clock
        self.config = config or default_settings
        self._client = client or httpx.AsyncClient()
        self._auth_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "ShipyaariClient":
        config = config or default_settings
        return cls(
            email=config.shipyaari_email,
            password=config.shipyaari_password,
            base_url=config.shipyaari_base_url,
            token_validity=timedelta(hours=config.shipyaari_token_validity_hours),
            config=config,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Session ──────────────────────────────────

    async def authenticate(self) -> str:
        """Return a valid token, signing in again only when the session has expired."""
        async with self._auth_lock:
            if self.session.is_valid(self.clock()):
                return self.session.token
            logger.info("Signing in to Shipyaari as %s", self.email)
            data = await self._request(
                "POST",
                "/seller/signIn",
                "sign_in",
                SIGN_IN_TIMEOUT,
                authorized=False,
                json={"email": self.email, "password": self.password},
            )
            try:
                token = data["data"][0]["token"]
            except (KeyError, IndexError, TypeError) as e:
                raise ProviderError(PROVIDER, "sign-in response carried no token") from e
            self.session.renew(token, self.clock() + self.token_validity)
            return token

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        timeout: float,
        authorized: bool = True,
        **kwargs: Any,
    ) -> dict:
        headers = {"Content-Type": "application/json", "accept": "application/json"}
        if authorized:
            headers["Authorization"] = await self.authenticate()
        try:
            resp = await self._client.request(
                method, f"{self.base_url}{path}", headers=headers, timeout=timeout, **kwargs
            )
        except httpx.TimeoutException as e:
            raise ProviderError(PROVIDER, f"{operation} timed out after {timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise ProviderError(PROVIDER, f"{operation} failed: {e}") from e

        if resp.status_code == 401:
            self.session.invalidate()
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400:
            message = data.get("message") if isinstance(data, dict) else None
            raise ProviderError(
                PROVIDER,
                f"{operation} rejected ({resp.status_code}): {message or resp.text}",
                status_code=resp.status_code,
                body=data if isinstance(data, dict) else None,
            )
        if not isinstance(data, dict) or not data.get("success"):
            message = data.get("message") if isinstance(data, dict) else None
            raise ProviderError(
                PROVIDER,
                f"{operation} unsuccessful: {message or 'Unknown error'}",
                status_code=resp.status_code,
                body=data if isinstance(data, dict) else None,
            )
        return data

    # ── Operations ───────────────────────────────

    async def create_shipment(self, order: Order) -> ShipmentResult:
        logger.info("Creating Shipyaari shipment for order %s", order.order_id)
        data = await self._request(
            "POST",
            "/order/placeOrderApiV3",
            "create_shipment",
            CREATE_TIMEOUT,
            json=self.build_payload(order),
        )
        try:
            placed = data["data"][0]
            awb = (placed.get("awbs") or [{}])[0]
            tracking = awb.get("tracking") or {}
            charges = awb.get("charges") or {}
            awb_number = tracking["awb"]
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise ProviderError(PROVIDER, "create_shipment response carried no AWB") from e
        return ShipmentResult(
            provider_order_id=placed.get("orderId"),
            awb_number=str(awb_number),
            courier_partner=charges.get("partnerName"),
            tracking_url=tracking.get("label"),
            estimated_delivery=parse_provider_datetime(awb.get("pickupDate")),
        )

    async def track(self, awb_number: str) -> TrackingSnapshot:
        try:
            data = await self._request(
                "GET",
                "/tracking/getTracking",
                "track",
                TRACK_TIMEOUT,
                params={"trackingNo": awb_number},
            )
        except ProviderError as e:
            if e.status_code == 404:
                return TrackingSnapshot(awb_number=awb_number, status="not_found")
            raise
        info = data.get("data") or {}
        history = [
            TrackingEvent(
                status=h.get("status"),
                location=h.get("location"),
                timestamp=parse_provider_datetime(h.get("timestamp")),
                description=h.get("description") or h.get("message") or "",
            )
            for h in info.get("trackingHistory") or []
        ]
        return TrackingSnapshot(
            awb_number=awb_number,
            status=info.get("status") or "unknown",
            location=info.get("location"),
            last_update=parse_provider_datetime(info.get("lastUpdate")) or self.clock(),
            estimated_delivery=parse_provider_datetime(info.get("estimatedDelivery")),
            tracking_history=history,
            courier_partner=info.get("courierPartner") or info.get("courier"),
            tracking_url=info.get("trackingUrl"),
        )

    async def cancel(self, awb_number: str, reason: str = "Order cancelled by customer") -> CancelResult:
        try:
            data = await self._request(
                "POST",
                "/cancel",
                "cancel",
                CANCEL_TIMEOUT,
                json={"awbNumber": awb_number, "reason": reason},
            )
        except ProviderError as e:
            message = e.body.get("message")
            if e.status_code == 400 or (message and "cannot be cancelled" in message):
                return CancelResult(
                    cancelled=False,
                    awb_number=awb_number,
                    reason="Shipment cannot be cancelled at current stage",
                    error=message,
                )
            raise
        return CancelResult(
            cancelled=True,
            awb_number=awb_number,
            reason=reason,
            cancellation_id=(data.get("data") or {}).get("cancellationId"),
        )

    async def generate_labels(self, awb_numbers: list[str]) -> ShippingLabel:
        data = await self._request(
            "POST",
            "/labels/fetchLabels",
            "generate_labels",
            LABELS_TIMEOUT,
            json={"awbs": awb_numbers, "source": "API"},
        )
        info = data.get("data") or {}
        return ShippingLabel(
            label_url=info.get("labelUrl") or data.get("labelUrl"),
            invoice_url=info.get("invoiceUrl") or data.get("invoiceUrl"),
            manifest_url=info.get("manifestUrl") or data.get("manifestUrl"),
            generated_at=self.clock(),
        )

    # ── Payload ──────────────────────────────────

    def build_payload(self, order: Order) -> dict:
        cfg = self.config
        address = order.shipping_address
        phone = _to_int(address.phone)
        is_cod = order.payment_method == PaymentMethod.COD
        total = float(order.total_price)
        boxes = []
        for index, item in enumerate(order.items, start=1):
            price = float(item.price)
            dims = item.dimensions
            boxes.append({
                "name": f"box_{index}",
                "type": "parcel",
                "weightUnit": "Kg",
                "deadWeight": item.weight,
                "length": dims.length,
                "breadth": dims.breadth,
                "height": dims.height,
                "qty": item.quantity,
                "discount": 0,
                "measureUnit": "cm",
                "products": [{
                    "name": item.title,
                    "category": item.category or "General",
                    "sku": item.sku or item.product_id,
                    "hsnCode": item.hsn_code,
                    "qty": item.quantity,
                    "unitPrice": price,
                    "discount": 0,
                    "unitTax": round(price * DEFAULT_GST_RATE / 100),
                    "sellingPrice": price,
                    "totalDiscount": 0,
                    "totalPrice": price * item.quantity,
                    "weightUnit": "kg",
                    "deadWeight": item.weight,
                    "length": dims.length,
                    "breadth": dims.breadth,
                    "height": dims.height,
                    "measureUnit": "cm",
                    "images": [item.image] if item.image else [],
                }],
                "codInfo": {
                    "isCod": is_cod,
                    "collectableAmount": total if is_cod else 0,
                    "invoiceValue": total,
                },
                "podInfo": {"isPod": False},
                "insurance": order.insurance,
            })

        return {
            "pickupDetails": {
                "addressType": "warehouse",
                "fullAddress": cfg.seller_address,
                "pincode": cfg.seller_pincode,
                "startTime": cfg.pickup_start_time,
                "endTime": cfg.pickup_end_time,
                "latitude": cfg.seller_latitude,
                "longitude": cfg.seller_longitude,
                "contact": {
                    "name": cfg.seller_contact_name,
                    "mobileNo": cfg.seller_mobile,
                    "alternateMobileNo": cfg.seller_alternate_mobile or cfg.seller_mobile,
                },
            },
            "deliveryDetails": {
                "addressType": "home",
                "fullAddress": build_full_address(address),
                "pincode": _to_int(address.postal_code),
                "startTime": "10",
                "endTime": "20",
                "latitude": _to_float(address.latitude),
                "longitude": _to_float(address.longitude),
                "contact": {
                    "name": address.full_name,
                    "mobileNo": phone,
                    "alternateMobileNo": phone,
                },
                "gstNumber": cfg.business_gst_number,
            },
            "boxInfo": boxes,
            "orderType": "B2C",
            "transit": "FORWARD",
            "courierPartner": "",
            "courierPartnerServices": "",
            "serviceMode": "AIR",
            "giftCharges": 0,
            "shippingCharges": 0,
            "transactionCharges": 0,
            "advanceAmountPaid": 0,
            "servicePriority": "cheapest",
            "source": "",
            "qcType": "DoorStep",
            "returnReason": "",
            "orderFutureDate": "",
            "pickupDate": str(int(self.clock().timestamp() * 1000)),
            "gstNumber": cfg.business_gst_number,
            "childGstNumber": cfg.business_gst_number,
            "parentId": 1,
            "childId": 2,
            "orderId": order.order_id,
            "eWayBillNo": "",
            "brandName": cfg.brand_name,
            "brandLogo": cfg.brand_logo,
        }
