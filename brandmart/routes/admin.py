from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from brandmart.auth import Principal, require_roles
from brandmart.errors import ProductNotFound
from brandmart.services import Services, get_services

router = APIRouter(prefix="/admin", tags=["admin"])

admin_only = require_roles("admin")


class CancelShipmentBody(BaseModel):
    reason: str = Field(default="Order cancelled by admin", min_length=1, max_length=500)


class LabelsBody(BaseModel):
    order_ids: list[str] = Field(..., min_length=1)


class StockBody(BaseModel):
    stock: int = Field(..., ge=0)


def _step_response(step, **extra) -> JSONResponse:
    """A provider step that failed is reported as 502 with the recorded error."""
    if not step.ok:
        return JSONResponse(status_code=502, content={"status": "failed", "error": step.error, **extra})
    value = step.value
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    return JSONResponse(status_code=200, content={"status": "ok", "result": value, **extra})


@router.post("/orders/{order_id}/shipment")
async def retry_shipment(
    order_id: str,
    _: Principal = Depends(admin_only),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Create the shipment again for an order stuck in processing after a provider failure."""
    step = await services.controller.retry_shipment(order_id)
    return _step_response(step, order_id=order_id)


@router.get("/orders/{order_id}/tracking")
async def track_shipment(
    order_id: str,
    _: Principal = Depends(admin_only),
    services: Services = Depends(get_services),
) -> JSONResponse:
    step = await services.controller.track_shipment(order_id)
    return _step_response(step, order_id=order_id)


@router.post("/orders/{order_id}/shipment/cancel")
async def cancel_shipment(
    order_id: str,
    body: CancelShipmentBody | None = None,
    principal: Principal = Depends(admin_only),
    services: Services = Depends(get_services),
) -> JSONResponse:
    reason = body.reason if body else CancelShipmentBody().reason
    step = await services.controller.cancel_shipment(order_id, reason, f"admin:{principal.sub}")
    return _step_response(step, order_id=order_id)


@router.post("/shipments/labels")
async def generate_labels(
    body: LabelsBody,
    _: Principal = Depends(admin_only),
    services: Services = Depends(get_services),
) -> JSONResponse:
    step = await services.controller.generate_labels(body.order_ids)
    return _step_response(step)


@router.patch("/products/{product_id}/stock")
async def set_stock(
    product_id: str,
    body: StockBody,
    _: Principal = Depends(admin_only),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Restock or correct a product's stock level. Cancelled orders are not restocked automatically."""
    product = await services.inventory.set_stock(product_id, body.stock)
    if product is None:
        raise ProductNotFound(product_id)
    return JSONResponse(status_code=200, content=product.model_dump(mode="json"))
