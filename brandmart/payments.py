"""
Payment Gateway Adapter (Razorpay).

Verifies webhook signatures, turns webhook bodies into tagged payment facts and
creates payment intents (gateway-side orders) at checkout. The lifecycle
controller only ever sees PaymentCaptured / PaymentFailed / PaymentAuthorized.
"""
import hashlib
import hmac
import logging

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from brandmart.config import settings
from brandmart.errors import InvalidPayload, ProviderError
from brandmart.models import PaymentAuthorized, PaymentCaptured, PaymentEvent, PaymentFailed

logger = logging.getLogger(__name__)

PROVIDER = "razorpay"


class RazorpayPaymentEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    order_id: str
    amount: int = 0
    method: str | None = None
    status: str | None = None
    error_description: str | None = None


class RazorpayPaymentWrapper(BaseModel):
    entity: RazorpayPaymentEntity


class RazorpayPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payment: RazorpayPaymentWrapper | None = None


class RazorpayWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str
    payload: RazorpayPayload = Field(default_factory=RazorpayPayload)


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


class RazorpayGateway:
    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls) -> "RazorpayGateway":
        return cls(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
            base_url=settings.razorpay_base_url,
            timeout=settings.provider_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool:
        """HMAC-SHA256 of the raw request body, hex encoded, constant-time compared."""
        if not signature or not self.webhook_secret:
            return False
        expected = compute_signature(self.webhook_secret, raw_body)
        # Header values may carry any latin-1 text; compare as bytes.
        return hmac.compare_digest(expected.encode(), signature.encode("utf-8", "surrogateescape"))

    def parse_webhook(self, raw_body: bytes, signature: str | None = None) -> tuple[str, PaymentEvent | None]:
        """
        Returns (event name, fact). The fact is None for events the controller
        does not act on. A captured fact carries the verified signature header.
        Raises InvalidPayload if the body does not validate.
        """
        try:
            hook = RazorpayWebhook.model_validate_json(raw_body)
        except ValidationError as e:
            raise InvalidPayload(str(e)) from e

        if hook.event not in ("payment.captured", "payment.failed", "payment.authorized"):
            return hook.event, None
        if hook.payload.payment is None:
            raise InvalidPayload(f"{hook.event} without payment entity")

        entity = hook.payload.payment.entity
        if hook.event == "payment.captured":
            return hook.event, PaymentCaptured(
                gateway_order_id=entity.order_id,
                payment_id=entity.id,
                amount=entity.amount,
                method=entity.method,
                signature=signature,
            )
        if hook.event == "payment.failed":
            return hook.event, PaymentFailed(
                gateway_order_id=entity.order_id,
                payment_id=entity.id,
                reason=entity.error_description or "Payment processing failed",
            )
        return hook.event, PaymentAuthorized(
            gateway_order_id=entity.order_id,
            payment_id=entity.id,
            amount=entity.amount,
            method=entity.method,
        )

    async def create_payment_intent(self, amount_minor: int, currency: str, receipt: str) -> str:
        """Create a gateway-side order and return its id (the webhook correlation key)."""
        try:
            resp = await self._client.post(
                f"{self.base_url}/orders",
                json={"amount": amount_minor, "currency": currency, "receipt": receipt},
                auth=(self.key_id, self.key_secret),
            )
            resp.raise_for_status()
            gateway_order_id = resp.json()["id"]
        except httpx.HTTPStatusError as e:
            logger.error("Razorpay order creation rejected: %s %s", e.response.status_code, e.response.text)
            raise ProviderError(PROVIDER, f"order creation rejected ({e.response.status_code})") from e
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error("Razorpay order creation failed: %s", e)
            raise ProviderError(PROVIDER, f"order creation failed: {e}") from e
        logger.info("Razorpay order %s created for receipt %s", gateway_order_id, receipt)
        return gateway_order_id
