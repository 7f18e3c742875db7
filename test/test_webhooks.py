from prometheus_client import REGISTRY

from brandmart.models import OrderStatus

from conftest import razorpay_event, signed
from fakes import make_order

URL = "/webhooks/razorpay"


def signature_failures() -> float:
    return REGISTRY.get_sample_value("webhook_signature_failures_total") or 0.0


def test_captured_payment_ships_order(client, store, ledger):
    store.orders["ORD-1"] = make_order(tax_price="120")
    raw, headers = signed(razorpay_event("payment.captured", "order_gw_1", amount=112000))

    resp = client.post(URL, content=raw, headers=headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["action"] == "shipped"
    assert body["order_id"] == "ORD-1"
    assert body["failed_steps"] == []
    assert store.orders["ORD-1"].status == OrderStatus.SHIPPED
    assert store.orders["ORD-1"].payment_details.signature == headers["X-Razorpay-Signature"]
    assert ledger.products["p1"].stock == 8


def test_invalid_signature_rejected_without_state_change(client, store, ledger):
    store.orders["ORD-1"] = make_order()
    before = signature_failures()
    raw, headers = signed(razorpay_event("payment.captured", "order_gw_1"), secret="not-the-secret")

    resp = client.post(URL, content=raw, headers=headers)

    assert resp.status_code == 400
    assert store.orders["ORD-1"].status == OrderStatus.PENDING
    assert len(store.orders["ORD-1"].status_history) == 1
    assert ledger.products["p1"].stock == 10
    assert signature_failures() == before + 1


def test_missing_signature_rejected(client, store):
    store.orders["ORD-1"] = make_order()
    raw, headers = signed(razorpay_event("payment.captured", "order_gw_1"))
    del headers["X-Razorpay-Signature"]

    resp = client.post(URL, content=raw, headers=headers)

    assert resp.status_code == 400
    assert store.orders["ORD-1"].status == OrderStatus.PENDING


def test_non_ascii_signature_rejected(client, store):
    store.orders["ORD-1"] = make_order()
    raw, headers = signed(razorpay_event("payment.captured", "order_gw_1"))
    headers["X-Razorpay-Signature"] = ("é" * 64).encode("latin-1")

    resp = client.post(URL, content=raw, headers=headers)

    assert resp.status_code == 400
    assert store.orders["ORD-1"].status == OrderStatus.PENDING


def test_tampered_body_rejected(client, store):
    store.orders["ORD-1"] = make_order()
    raw, headers = signed(razorpay_event("payment.captured", "order_gw_1", amount=100))
    tampered = raw.replace(b'"amount": 100', b'"amount": 100000')

    resp = client.post(URL, content=tampered, headers=headers)

    assert resp.status_code == 400


def test_redelivered_capture_is_a_noop(client, store, ledger, shipper):
    store.orders["ORD-1"] = make_order()
    raw, headers = signed(razorpay_event("payment.captured", "order_gw_1"))

    first = client.post(URL, content=raw, headers=headers)
    history = list(store.orders["ORD-1"].status_history)
    second = client.post(URL, content=raw, headers=headers)

    assert first.json()["action"] == "shipped"
    assert second.status_code == 200
    assert second.json()["action"] == "duplicate"
    assert store.orders["ORD-1"].status_history == history
    assert ledger.products["p1"].stock == 8
    assert shipper.created == ["ORD-1"]


def test_unknown_gateway_order_acknowledged(client, store):
    raw, headers = signed(razorpay_event("payment.captured", "order_gw_missing"))

    resp = client.post(URL, content=raw, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["action"] == "not_found"
    assert store.orders == {}


def test_payment_failed_cancels(client, store):
    store.orders["ORD-1"] = make_order()
    raw, headers = signed(razorpay_event("payment.failed", "order_gw_1", error_description="Bank declined"))

    resp = client.post(URL, content=raw, headers=headers)

    assert resp.json()["action"] == "cancelled"
    assert store.orders["ORD-1"].status == OrderStatus.CANCELLED


def test_unhandled_event_ignored(client):
    raw, headers = signed({"event": "refund.created", "payload": {}})

    resp = client.post(URL, content=raw, headers=headers)

    assert resp.status_code == 200
    assert resp.json() == {"status": "ignored", "event": "refund.created"}


def test_malformed_body_ignored(client):
    raw, headers = signed({"event": "payment.captured", "payload": {"payment": {"entity": {}}}})

    resp = client.post(URL, content=raw, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["status"] == "ignored"


def test_processing_error_still_acknowledged(client, store, monkeypatch):
    async def broken(gateway_order_id):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(store, "get_by_gateway_order_id", broken)
    raw, headers = signed(razorpay_event("payment.captured", "order_gw_1"))

    resp = client.post(URL, content=raw, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["status"] == "error"


class UnreachableRedis:
    async def set(self, *args, **kwargs):
        raise ConnectionError("redis down")

    async def delete(self, *keys):
        raise ConnectionError("redis down")


def test_redis_outage_does_not_block_payment(client, store, ledger, monkeypatch):
    async def unreachable():
        return UnreachableRedis()

    monkeypatch.setattr("brandmart.redis_client.get_redis", unreachable)
    store.orders["ORD-1"] = make_order()
    raw, headers = signed(razorpay_event("payment.captured", "order_gw_1"))
    headers["X-Razorpay-Event-Id"] = "evt_1"

    resp = client.post(URL, content=raw, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["action"] == "shipped"
    assert store.orders["ORD-1"].status == OrderStatus.SHIPPED
    assert ledger.products["p1"].stock == 8


def test_redis_outage_while_dropping_dedup_key_still_acknowledged(client, store, monkeypatch):
    async def unreachable():
        return UnreachableRedis()

    async def broken(gateway_order_id):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr("brandmart.redis_client.get_redis", unreachable)
    monkeypatch.setattr(store, "get_by_gateway_order_id", broken)
    raw, headers = signed(razorpay_event("payment.captured", "order_gw_1"))
    headers["X-Razorpay-Event-Id"] = "evt_2"

    resp = client.post(URL, content=raw, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["status"] == "error"
