import itertools
import json

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from brandmart.config import settings
from brandmart.lifecycle import OrderLifecycleController
from brandmart.main import create_app
from brandmart.payments import RazorpayGateway, compute_signature
from brandmart.services import assemble

from fakes import FakeShipmentProvider, InMemoryInventoryLedger, InMemoryOrderStore, make_product

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def ledger():
    return InMemoryInventoryLedger(make_product("p1", price="500", stock=10))


@pytest.fixture
def shipper():
    return FakeShipmentProvider()


@pytest.fixture
def controller(store, ledger, shipper):
    return OrderLifecycleController(store, ledger, shipper, provider_timeout=1.0)


@pytest.fixture
def gateway():
    """Razorpay gateway whose order-creation endpoint is served by a mock transport."""
    counter = itertools.count(1)

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(200, json={"id": f"order_gw_{next(counter)}", "amount": body["amount"]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RazorpayGateway("rzp_key", "rzp_secret", WEBHOOK_SECRET, client=client)


@pytest.fixture
def services(store, ledger, shipper, gateway):
    return assemble(store, ledger, gateway, shipper)


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


def token_for(sub: str, role: str = "customer", **claims) -> str:
    return jwt.encode({"sub": sub, "role": role, **claims}, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def bearer(sub: str, role: str = "customer", **claims) -> dict:
    return {"Authorization": f"Bearer {token_for(sub, role, **claims)}"}


def signed(body: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict]:
    raw = json.dumps(body).encode()
    return raw, {"Content-Type": "application/json", "X-Razorpay-Signature": compute_signature(secret, raw)}


def razorpay_event(event: str, gateway_order_id: str, payment_id: str = "pay_1", amount: int = 100000,
                   method: str = "upi", **entity) -> dict:
    return {
        "entity": "event",
        "event": event,
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": gateway_order_id,
                    "amount": amount,
                    "method": method,
                    "status": event.split(".")[-1],
                    **entity,
                }
            }
        },
    }
