"""
Worker: tracking sync. Polls the shipment provider for every order in shipped
or in_transit and feeds the snapshot to the lifecycle controller, which moves
the order to in_transit / delivered when the carrier says so.
- Bounded concurrency (worker_concurrency), one sweep every worker_poll_interval_seconds.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m brandmart.worker
"""
import asyncio
import logging
import signal
import sys
import threading

from brandmart.config import settings
from brandmart.lifecycle import OrderLifecycleController
from brandmart.metrics import orders_awaiting_delivery, tracking_polls_total
from brandmart.models import Order, OrderStatus
from brandmart.services import build_services

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090

AWAITING_DELIVERY = (OrderStatus.SHIPPED, OrderStatus.IN_TRANSIT)


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


async def sync_one(controller: OrderLifecycleController, order: Order, sem: asyncio.Semaphore) -> str:
    if not (order.shipment_details and order.shipment_details.awb_number):
        logger.warning("Order %s is %s without an AWB, skipping", order.order_id, order.status.value)
        return "skipped"
    awb = order.shipment_details.awb_number
    async with sem:
        tracking_polls_total.inc()
        try:
            tracked, outcome = await controller.sync_tracking(order)
        except Exception:
            logger.exception("Applying tracking for order %s failed", order.order_id)
            return "error"
    if outcome is None:
        logger.warning("Tracking AWB %s for order %s failed: %s", awb, order.order_id, tracked.error)
        return "error"
    if outcome.action not in ("updated", "unchanged"):
        logger.info("Order %s -> %s (AWB %s)", order.order_id, outcome.action, awb)
    return outcome.action


async def sweep(controller: OrderLifecycleController, sem: asyncio.Semaphore) -> dict[str, int]:
    """One pass over every order awaiting delivery. Returns counts per outcome."""
    orders = await controller.orders.list_all(statuses=AWAITING_DELIVERY, limit=settings.worker_batch_size)
    orders_awaiting_delivery.set(len(orders))
    results = await asyncio.gather(*(sync_one(controller, o, sem) for o in orders))
    counts: dict[str, int] = {}
    for action in results:
        counts[action] = counts.get(action, 0) + 1
    return counts


async def run_worker(shutdown_event: asyncio.Event) -> None:
    services = await build_services()
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Schema ready. Tracking sync every %ds (concurrency=%d, batch=%d) ...",
        settings.worker_poll_interval_seconds,
        settings.worker_concurrency,
        settings.worker_batch_size,
    )
    current: asyncio.Task | None = None
    try:
        while not shutdown_event.is_set():
            current = asyncio.create_task(sweep(services.controller, sem))
            try:
                counts = await current
                logger.info("Tracking sweep done: %s", counts or "nothing to track")
            except Exception:
                logger.exception("Tracking sweep failed")
            current = None
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=settings.worker_poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
    finally:
        if current is not None and not current.done():
            logger.info("Graceful shutdown: waiting for the running sweep (max %ds) ...", GRACEFUL_SHUTDOWN_WAIT_SEC)
            done, _ = await asyncio.wait({current}, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC)
            if not done:
                current.cancel()
                await asyncio.gather(current, return_exceptions=True)
        await services.aclose()
        logger.info("Worker stopped.")


def main() -> None:
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
