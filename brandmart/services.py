"""
Wiring: one Services bundle per process, built from settings in the API
lifespan and in the worker, or handed in directly by tests.
"""
from dataclasses import dataclass

from fastapi import Request

from brandmart.checkout import CheckoutService
from brandmart.config import settings
from brandmart.db import close_pool, get_pool, init_schema
from brandmart.geocoding import MapboxGeocoder
from brandmart.inventory import InventoryLedger, PostgresInventoryLedger
from brandmart.lifecycle import OrderLifecycleController, ShipmentProvider
from brandmart.payments import RazorpayGateway
from brandmart.shipping import ShipyaariClient
from brandmart.store import OrderStore, PostgresOrderStore


@dataclass
class Services:
    orders: OrderStore
    inventory: InventoryLedger
    gateway: RazorpayGateway
    shipper: ShipmentProvider
    controller: OrderLifecycleController
    checkout: CheckoutService
    geocoder: MapboxGeocoder | None = None
    owns_pool: bool = False

    async def aclose(self) -> None:
        await self.gateway.aclose()
        if isinstance(self.shipper, ShipyaariClient):
            await self.shipper.aclose()
        if self.geocoder is not None:
            await self.geocoder.aclose()
        if self.owns_pool:
            await close_pool()


def assemble(
    orders: OrderStore,
    inventory: InventoryLedger,
    gateway: RazorpayGateway,
    shipper: ShipmentProvider,
    geocoder: MapboxGeocoder | None = None,
    owns_pool: bool = False,
) -> Services:
    controller = OrderLifecycleController(
        orders, inventory, shipper, provider_timeout=settings.provider_timeout_seconds
    )
    checkout = CheckoutService(orders, inventory, gateway, geocoder, currency=settings.currency)
    return Services(
        orders=orders,
        inventory=inventory,
        gateway=gateway,
        shipper=shipper,
        controller=controller,
        checkout=checkout,
        geocoder=geocoder,
        owns_pool=owns_pool,
    )


async def build_services() -> Services:
    pool = await get_pool()
    await init_schema(pool)
    return assemble(
        PostgresOrderStore(pool),
        PostgresInventoryLedger(pool),
        RazorpayGateway.from_settings(),
        ShipyaariClient.from_settings(),
        MapboxGeocoder.from_settings(),
        owns_pool=True,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
