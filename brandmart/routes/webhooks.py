import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from brandmart.config import settings
from brandmart.errors import InvalidPayload
from brandmart.metrics import webhook_signature_failures_total, webhooks_received_total
from brandmart.redis_client import check_idempotency, forget
from brandmart.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(default=None),
    x_razorpay_event_id: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """
    Payment gateway callback. The signature is checked against the raw body before
    anything is parsed; a bad signature is the only case answered with 400. Once
    processing was attempted the answer is always 200 so the gateway stops retrying.
    Redeliveries are harmless: the order transitions are conditional.
    """
    raw_body = await request.body()
    if not services.gateway.verify_webhook_signature(raw_body, x_razorpay_signature):
        webhook_signature_failures_total.inc()
        client = request.client.host if request.client else "unknown"
        logger.warning("security: rejected razorpay webhook with %s signature from %s",
                       "missing" if not x_razorpay_signature else "invalid", client)
        return JSONResponse(status_code=400, content={"status": "invalid_signature"})

    try:
        event_name, event = services.gateway.parse_webhook(raw_body, x_razorpay_signature)
    except InvalidPayload as e:
        logger.warning("Unparseable razorpay webhook: %s", e)
        webhooks_received_total.labels(event="unknown", outcome="invalid").inc()
        return JSONResponse(status_code=200, content={"status": "ignored"})

    if event is None:
        logger.info("Unhandled razorpay event %s", event_name)
        webhooks_received_total.labels(event=event_name, outcome="unhandled").inc()
        return JSONResponse(status_code=200, content={"status": "ignored", "event": event_name})

    dedup_key = f"webhook:razorpay:{x_razorpay_event_id}" if x_razorpay_event_id else None
    if dedup_key and await check_idempotency(dedup_key, settings.webhook_dedup_ttl_seconds):
        webhooks_received_total.labels(event=event_name, outcome="redelivery").inc()
        return JSONResponse(status_code=200, content={"status": "already_processed", "event": event_name})

    try:
        outcome = await services.controller.handle_payment_event(event)
    except Exception:
        logger.exception("Processing razorpay %s for gateway order %s failed", event_name, event.gateway_order_id)
        webhooks_received_total.labels(event=event_name, outcome="error").inc()
        if dedup_key:
            await forget(dedup_key)
        return JSONResponse(status_code=200, content={"status": "error", "event": event_name})

    if not outcome.ok:
        logger.error("Order %s: %s handled with failed steps %s",
                     outcome.order_id, event_name, ", ".join(outcome.failed_steps()))
    webhooks_received_total.labels(event=event_name, outcome=outcome.action).inc()
    return JSONResponse(
        status_code=200,
        content={
            "status": "ok",
            "event": event_name,
            "action": outcome.action,
            "order_id": outcome.order_id,
            "failed_steps": outcome.failed_steps(),
        },
    )
