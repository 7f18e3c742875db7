import asyncio
from datetime import datetime, timezone

from brandmart.models import OrderStatus, ShipmentFacts, TrackingSnapshot
from brandmart.worker import sweep

from fakes import make_order


def shipped_order(order_id: str, awb: str | None = "AWB123", status=OrderStatus.SHIPPED):
    return make_order(
        order_id,
        gateway_order_id=f"gw-{order_id}",
        status=status,
        shipment_details=ShipmentFacts(awb_number=awb) if awb else None,
    )


async def test_sweep_advances_orders_the_carrier_reports(store, shipper, controller):
    store.orders["ORD-1"] = shipped_order("ORD-1")
    store.orders["ORD-2"] = shipped_order("ORD-2", status=OrderStatus.IN_TRANSIT)
    store.orders["ORD-3"] = make_order("ORD-3", gateway_order_id="gw-3")
    shipper.snapshot = TrackingSnapshot(
        awb_number="AWB123",
        status="Delivered",
        last_update=datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc),
    )

    counts = await sweep(controller, asyncio.Semaphore(2))

    assert counts == {"delivered": 2}
    assert store.orders["ORD-1"].status == OrderStatus.DELIVERED
    assert store.orders["ORD-2"].status == OrderStatus.DELIVERED
    assert store.orders["ORD-3"].status == OrderStatus.PENDING
    assert len(shipper.tracked) == 2


async def test_sweep_survives_provider_errors_and_missing_awb(store, shipper, controller):
    store.orders["ORD-1"] = shipped_order("ORD-1")
    store.orders["ORD-2"] = shipped_order("ORD-2", awb=None)

    counts = await sweep(controller, asyncio.Semaphore(2))

    assert counts == {"error": 1, "skipped": 1}
    assert store.orders["ORD-1"].status == OrderStatus.SHIPPED
