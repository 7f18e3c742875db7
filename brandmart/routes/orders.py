from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from brandmart.auth import Principal, auth_required, require_roles
from brandmart.checkout import CreateOrderRequest
from brandmart.errors import Forbidden, OrderNotFound
from brandmart.models import CustomerDetails, Order, OrderStatus, OrderTrackingView
from brandmart.services import Services, get_services

router = APIRouter(prefix="/orders", tags=["orders"])


class CancelOrderBody(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class SetStatusBody(BaseModel):
    status: OrderStatus
    note: str | None = Field(default=None, max_length=500)


def _dump(order: Order) -> dict:
    return order.model_dump(mode="json")


@router.post("")
async def create_order(
    body: CreateOrderRequest,
    principal: Principal = Depends(auth_required),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """
    Place an order. For online payment the response carries the gateway order id
    the client hands to the checkout widget; payment is confirmed later by webhook.
    """
    customer = body.customer or CustomerDetails(
        name=principal.name or body.shipping_address.full_name,
        email=principal.email or "",
        mobile=body.shipping_address.phone,
    )
    order = await services.checkout.create_order(body, principal.sub, customer)
    return JSONResponse(status_code=201, content=_dump(order))


@router.get("/mine")
async def my_orders(
    principal: Principal = Depends(auth_required),
    services: Services = Depends(get_services),
) -> list[dict]:
    return [_dump(o) for o in await services.orders.list_for_user(principal.sub)]


@router.get("/track/{order_number}")
async def track_order(order_number: str, services: Services = Depends(get_services)) -> dict:
    """Public lookup by order number. Only status and carrier fields are exposed."""
    order = await services.orders.get_by_number(order_number)
    if order is None:
        raise OrderNotFound(order_number)
    return OrderTrackingView.from_order(order).model_dump(mode="json")


@router.get("")
async def list_orders(
    status: list[OrderStatus] | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    _: Principal = Depends(require_roles("admin")),
    services: Services = Depends(get_services),
) -> list[dict]:
    return [_dump(o) for o in await services.orders.list_all(statuses=status, limit=limit)]


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    principal: Principal = Depends(auth_required),
    services: Services = Depends(get_services),
) -> dict:
    order = await services.orders.get(order_id)
    if order is None:
        raise OrderNotFound(order_id)
    if not principal.is_admin and order.user_id != principal.sub:
        raise Forbidden("Not the owner of this order")
    return _dump(order)


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    body: CancelOrderBody | None = None,
    principal: Principal = Depends(auth_required),
    services: Services = Depends(get_services),
) -> dict:
    reason = body.reason if body else None
    order = await services.controller.cancel(order_id, principal.sub, principal.is_admin, reason)
    return _dump(order)


@router.patch("/{order_id}/status")
async def set_order_status(
    order_id: str,
    body: SetStatusBody,
    principal: Principal = Depends(require_roles("admin")),
    services: Services = Depends(get_services),
) -> dict:
    order = await services.controller.set_status(order_id, body.status, f"admin:{principal.sub}", body.note)
    return _dump(order)
