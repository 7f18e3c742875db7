#!/usr/bin/env python3
"""
Scenario 2: Webhook redelivery and contested stock.

The gateway retries webhooks it thinks were lost. Fire the same signed
payment.captured body 10 times concurrently, plus once with a bad signature.
Then pay for more orders than there is stock, all at once.

Expect:
- Bad signature answered 400
- Every genuine delivery answered 200
- Exactly one "paid" history entry
- Stock decremented once (5 -> 4)
- Contested stock ends at 0, never below; every contested order is still paid

Run: python test/scenario_02_webhook_redelivery.py
Requires: API running (e.g. docker compose up), Postgres.
"""
import asyncio
import os
import sys
import threading
import uuid

_test_dir = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, _test_dir)

from _helper import (
    create_order,
    fetch_order_state,
    fetch_stock,
    seed_product,
    send_capture_webhook,
)

DELIVERIES = 10
CONTESTED_STOCK = 3
CONTESTED_ORDERS = 6


def run_concurrently(calls) -> list[int]:
    statuses: list[int] = []
    lock = threading.Lock()

    def run(call) -> None:
        code, _ = call()
        with lock:
            statuses.append(code)

    threads = [threading.Thread(target=run, args=(call,)) for call in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return statuses


def redelivery() -> bool:
    product_id = f"prod-redeliver-{uuid.uuid4().hex[:8]}"
    asyncio.run(seed_product(product_id, "250", 5))
    status, order = create_order(f"user-{uuid.uuid4().hex[:8]}", product_id)
    if status != 201:
        print(f"  FAIL create order: status={status} body={order}")
        return False
    order_id = order["order_id"]
    gateway_order_id = order["payment_details"]["gateway_order_id"]
    payment_id = f"pay_{uuid.uuid4().hex[:14]}"
    print(f"Order {order_id}, sending {DELIVERIES} concurrent captures of {payment_id}")

    forged_status, _ = send_capture_webhook(gateway_order_id, 25000, payment_id, secret="forged")
    statuses = run_concurrently(
        [lambda: send_capture_webhook(gateway_order_id, 25000, payment_id)] * DELIVERIES
    )

    _, history = asyncio.run(fetch_order_state(order_id))
    stock = asyncio.run(fetch_stock(product_id))

    ok = True
    if forged_status != 400:
        print(f"  FAIL: forged signature answered {forged_status}")
        ok = False
    if statuses != [200] * DELIVERIES:
        print(f"  FAIL: Expected all 200, got {statuses}")
        ok = False
    if history.count("paid") != 1:
        print(f"  FAIL: Expected one paid entry, history {history}")
        ok = False
    if stock != 4:
        print(f"  FAIL: Expected stock 4, got {stock}")
        ok = False
    if ok:
        print(f"  History: {history}, stock {stock}")
    return ok


def contested_stock() -> bool:
    product_id = f"prod-contested-{uuid.uuid4().hex[:8]}"
    asyncio.run(seed_product(product_id, "250", CONTESTED_STOCK))
    orders = []
    for _ in range(CONTESTED_ORDERS):
        status, order = create_order(f"user-{uuid.uuid4().hex[:8]}", product_id)
        if status != 201:
            print(f"  FAIL create order: status={status} body={order}")
            return False
        orders.append(order)
    print(f"{CONTESTED_ORDERS} orders competing for {CONTESTED_STOCK} units of {product_id}")

    statuses = run_concurrently([
        (lambda gw=o["payment_details"]["gateway_order_id"]: send_capture_webhook(gw, 25000))
        for o in orders
    ])

    stock = asyncio.run(fetch_stock(product_id))
    histories = [asyncio.run(fetch_order_state(o["order_id"]))[1] for o in orders]

    ok = True
    if statuses != [200] * CONTESTED_ORDERS:
        print(f"  FAIL: Expected all 200, got {statuses}")
        ok = False
    if stock != 0:
        print(f"  FAIL: Expected stock 0, got {stock}")
        ok = False
    unpaid = [h for h in histories if h.count("paid") != 1]
    if unpaid:
        print(f"  FAIL: Expected every order paid once, got {unpaid}")
        ok = False
    if ok:
        print(f"  Stock {stock} after {CONTESTED_ORDERS} captures")
    return ok


def main() -> None:
    ok = redelivery()
    ok = contested_stock() and ok
    if ok:
        print("Scenario 2 (webhook redelivery): PASSED")
    else:
        sys.exit(1)


if __name__ == "__main__":
    main()
