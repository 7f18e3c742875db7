"""
Order Lifecycle Controller.

The only writer of Order.status. Every status change is a conditional update
through OrderStore.transition() followed by exactly one appended history entry.
Payment facts arrive from the webhook, shipment facts from the provider
adapter; inventory is decremented once, on the pending -> paid move.

Side-effecting steps report a StepResult instead of raising, so a caller can
tell "the order is paid but a secondary step failed" apart from a real failure.
Provider errors never propagate out of this module.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from brandmart.errors import Forbidden, OrderNotFound, OrderStateError
from brandmart.inventory import DecrementResult, InventoryLedger
from brandmart.metrics import (
    order_transitions_total,
    provider_errors_total,
    shipment_failures_total,
    stock_decrement_failures_total,
)
from brandmart.models import (
    CancelResult,
    Order,
    OrderStatus,
    PaymentAuthorized,
    PaymentCaptured,
    PaymentEvent,
    PaymentFailed,
    PaymentStatus,
    ShipmentResult,
    ShipmentStatus,
    ShippingLabel,
    TrackingEvent,
    TrackingSnapshot,
    utcnow,
)
from brandmart.order_state import (
    AWAITING_PAYMENT,
    CANCELLABLE,
    admin_sources,
    can_cancel,
    is_terminal,
    is_valid_transition,
    sources_for,
)
from brandmart.shipping import normalize_tracking_status
from brandmart.store import OrderStore, history_entry

logger = logging.getLogger(__name__)

S = OrderStatus

ACTOR_WEBHOOK = "razorpay_webhook"
ACTOR_SYSTEM = "system"
ACTOR_SHIPPING = "shipyaari_integration"
ACTOR_TRACKING = "tracking_sync"

# EventOutcome.action values
PAID = "paid"
DUPLICATE = "duplicate"
NOT_FOUND = "not_found"
CANCELLED = "cancelled"
AUTHORIZED = "authorized"
IGNORED = "ignored"
RECONCILE = "reconcile"
SHIPPED = "shipped"
SHIPMENT_FAILED = "shipment_failed"
UPDATED = "updated"
UNCHANGED = "unchanged"


class ShipmentProvider(Protocol):
    async def create_shipment(self, order: Order) -> ShipmentResult: ...

    async def track(self, awb_number: str) -> TrackingSnapshot: ...

    async def cancel(self, awb_number: str, reason: str) -> CancelResult: ...

    async def generate_labels(self, awb_numbers: list[str]) -> ShippingLabel: ...


@dataclass
class StepResult:
    ok: bool
    error: str | None = None
    value: Any = None

    @classmethod
    def success(cls, value: Any = None) -> "StepResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str, value: Any = None) -> "StepResult":
        return cls(ok=False, error=error, value=value)


@dataclass
class EventOutcome:
    action: str
    order_id: str | None = None
    steps: dict[str, StepResult] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(step.ok for step in self.steps.values())

    def failed_steps(self) -> list[str]:
        return [name for name, step in self.steps.items() if not step.ok]


def _describe(e: BaseException) -> str:
    return str(e) or type(e).__name__


class OrderLifecycleController:
    def __init__(
        self,
        orders: OrderStore,
        inventory: InventoryLedger,
        shipper: ShipmentProvider,
        provider_timeout: float = 45.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.orders = orders
        self.inventory = inventory
        self.shipper = shipper
        self.provider_timeout = provider_timeout
        self.clock = clock

    # ── Internals ────────────────────────────────

    async def _transition(
        self,
        order: Order,
        from_statuses: Iterable[OrderStatus],
        to_status: OrderStatus,
        actor: str,
        notes: str | None,
        outcome: EventOutcome | None = None,
        **patch: Any,
    ) -> Order | None:
        """Conditional status update plus its history entry. None if the guard did not match."""
        updated = await self.orders.transition(order.order_id, from_statuses, to_status, **patch)
        if updated is None:
            return None
        order_transitions_total.labels(from_status=order.status.value, to_status=to_status.value).inc()
        logger.info("Order %s: %s -> %s (%s)", order.order_id, order.status.value, to_status.value, actor)
        entry = history_entry(to_status, actor, notes, timestamp=self.clock())
        step = await self._append_history(order.order_id, entry)
        if step.ok:
            updated.status_history.append(entry)
        if outcome is not None:
            outcome.steps[f"history:{to_status.value}"] = step
        return updated

    async def _append_history(self, order_id: str, entry) -> StepResult:
        try:
            await self.orders.append_history(order_id, entry)
        except Exception as e:
            logger.exception("Failed to append %s history entry for order %s", entry.status.value, order_id)
            return StepResult.failure(_describe(e))
        return StepResult.success()

    async def _record_facts(self, order_id: str, **patch: Any) -> StepResult:
        try:
            updated = await self.orders.update_facts(order_id, **patch)
        except Exception as e:
            logger.exception("Failed to record facts on order %s", order_id)
            return StepResult.failure(_describe(e))
        return StepResult.success(updated)

    async def _call_provider(self, operation: str, call: Awaitable[Any]) -> StepResult:
        try:
            value = await asyncio.wait_for(call, timeout=self.provider_timeout)
        except Exception as e:
            provider_errors_total.labels(provider="shipment", operation=operation).inc()
            logger.error("Shipment provider %s failed: %s", operation, _describe(e))
            return StepResult.failure(_describe(e))
        return StepResult.success(value)

    async def _load(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    # ── Payment events ───────────────────────────

    async def handle_payment_event(self, event: PaymentEvent) -> EventOutcome:
        if isinstance(event, PaymentCaptured):
            return await self.on_payment_captured(event)
        if isinstance(event, PaymentFailed):
            return await self.on_payment_failed(event)
        if isinstance(event, PaymentAuthorized):
            return await self.on_payment_authorized(event)
        raise TypeError(f"Unknown payment event: {event!r}")

    async def on_payment_captured(self, event: PaymentCaptured) -> EventOutcome:
        order = await self.orders.get_by_gateway_order_id(event.gateway_order_id)
        if order is None:
            logger.warning("No order for gateway order %s (payment %s), event dropped",
                           event.gateway_order_id, event.payment_id)
            return EventOutcome(NOT_FOUND)

        outcome = EventOutcome(PAID, order.order_id)
        payment = {
            "payment_id": event.payment_id,
            "signature": event.signature,
            "payment_method": event.method,
            "payment_status": PaymentStatus.CAPTURED,
            "amount": event.amount,
            "error": None,
        }

        if order.status not in AWAITING_PAYMENT:
            if order.status == S.CANCELLED and order.payment_details.payment_status != PaymentStatus.CAPTURED:
                logger.warning("Payment %s captured for cancelled order %s, needs refund or reinstatement",
                               event.payment_id, order.order_id)
                outcome.action = RECONCILE
                outcome.steps["payment_facts"] = await self._record_facts(order.order_id, payment=payment)
                return outcome
            logger.info("Duplicate capture for order %s (status=%s), skipped", order.order_id, order.status.value)
            outcome.action = DUPLICATE
            return outcome

        if event.amount != order.total_minor_units:
            logger.warning("Captured amount %d does not match order %s total %d",
                           event.amount, order.order_id, order.total_minor_units)

        paid = await self._transition(
            order,
            AWAITING_PAYMENT,
            S.PAID,
            ACTOR_WEBHOOK,
            f"Payment captured: ₹{event.amount / 100:.2f} via {event.method or 'unknown'}",
            outcome,
            fields={"paid_at": self.clock()},
            payment=payment,
        )
        if paid is None:
            # A concurrent delivery won the conditional update.
            logger.info("Capture for order %s lost the race to another delivery, skipped", order.order_id)
            outcome.action = DUPLICATE
            return outcome

        stock = await self._decrement_inventory(paid)
        outcome.steps["inventory"] = stock
        note = "Order processing for shipment creation"
        if not stock.ok:
            note += f"; stock short for: {stock.error}"

        processing = await self._transition(paid, sources_for(S.PROCESSING), S.PROCESSING, ACTOR_SYSTEM, note, outcome)
        if processing is None:
            logger.warning("Order %s left paid before shipment creation", order.order_id)
            return outcome

        outcome.steps["shipment"] = await self.create_shipment(processing, outcome)
        return outcome

    async def _decrement_inventory(self, order: Order) -> StepResult:
        results: dict[str, DecrementResult | str] = {}
        short: list[str] = []
        for item in order.items:
            try:
                result = await self.inventory.try_decrement(item.product_id, item.quantity)
            except Exception as e:
                logger.exception("Error updating stock for product %s", item.product_id)
                results[item.product_id] = _describe(e)
                short.append(item.product_id)
                stock_decrement_failures_total.inc()
                continue
            results[item.product_id] = result
            if not result.ok:
                logger.error("Stock not decremented for product %s (%s x%d, remaining %d), order %s needs reconciliation",
                             item.product_id, item.title, item.quantity, result.remaining_stock, order.order_id)
                short.append(item.product_id)
                stock_decrement_failures_total.inc()
            else:
                logger.info("Stock updated: %s reduced by %d, remaining %d",
                            item.title, item.quantity, result.remaining_stock)
        if short:
            return StepResult.failure(", ".join(short), value=results)
        return StepResult.success(results)

    async def on_payment_failed(self, event: PaymentFailed) -> EventOutcome:
        order = await self.orders.get_by_gateway_order_id(event.gateway_order_id)
        if order is None:
            logger.warning("No order for gateway order %s (failed payment %s), event dropped",
                           event.gateway_order_id, event.payment_id)
            return EventOutcome(NOT_FOUND)

        outcome = EventOutcome(CANCELLED, order.order_id)
        if order.status not in AWAITING_PAYMENT:
            logger.info("Payment failure for order %s in status %s ignored", order.order_id, order.status.value)
            outcome.action = IGNORED
            return outcome

        cancelled = await self._transition(
            order,
            AWAITING_PAYMENT,
            S.CANCELLED,
            ACTOR_WEBHOOK,
            f"Payment failed: {event.reason}",
            outcome,
            fields={"cancelled_at": self.clock(), "cancellation_reason": "Payment failed"},
            payment={
                "payment_id": event.payment_id,
                "payment_status": PaymentStatus.FAILED,
                "error": event.reason,
            },
        )
        if cancelled is None:
            outcome.action = IGNORED
        return outcome

    async def on_payment_authorized(self, event: PaymentAuthorized) -> EventOutcome:
        order = await self.orders.get_by_gateway_order_id(event.gateway_order_id)
        if order is None:
            logger.warning("No order for gateway order %s (authorized payment %s), event dropped",
                           event.gateway_order_id, event.payment_id)
            return EventOutcome(NOT_FOUND)

        outcome = EventOutcome(AUTHORIZED, order.order_id)
        if order.status not in AWAITING_PAYMENT or order.payment_details.payment_status == PaymentStatus.CAPTURED:
            outcome.action = IGNORED
            return outcome

        outcome.steps["payment_facts"] = await self._record_facts(
            order.order_id,
            payment={
                "payment_id": event.payment_id,
                "payment_method": event.method,
                "payment_status": PaymentStatus.AUTHORIZED,
                "amount": event.amount,
            },
        )
        logger.info("Payment %s authorized for order %s, awaiting capture", event.payment_id, order.order_id)
        return outcome

    # ── Shipment ─────────────────────────────────

    async def create_shipment(self, order: Order, outcome: EventOutcome | None = None) -> StepResult:
        """processing -> shipped. On provider failure the order stays in processing with the error recorded."""
        if order.status != S.PROCESSING:
            return StepResult.failure(f"Order is {order.status.value}, shipment needs processing")

        created = await self._call_provider("create_shipment", self.shipper.create_shipment(order))
        if not created.ok:
            shipment_failures_total.inc()
            logger.error("ALERT: shipment failed for order %s: %s", order.order_id, created.error)
            facts = await self._record_facts(
                order.order_id,
                shipment={"shipment_status": ShipmentStatus.FAILED, "shipment_error": created.error},
            )
            note = await self._append_history(
                order.order_id,
                history_entry(S.PROCESSING, ACTOR_SYSTEM, f"Shipment creation failed: {created.error}",
                              timestamp=self.clock()),
            )
            if outcome is not None:
                outcome.action = SHIPMENT_FAILED
                outcome.steps["shipment_facts"] = facts
                outcome.steps["history:shipment_failed"] = note
            return created

        result: ShipmentResult = created.value
        shipment = {
            "provider_order_id": result.provider_order_id,
            "awb_number": result.awb_number,
            "courier_partner": result.courier_partner,
            "tracking_url": result.tracking_url,
            "estimated_delivery_date": result.estimated_delivery,
            "shipment_status": ShipmentStatus.PROCESSING,
            "shipment_error": None,
        }
        try:
            shipped = await self._transition(
                order,
                sources_for(S.SHIPPED),
                S.SHIPPED,
                ACTOR_SHIPPING,
                f"Shipment created - AWB: {result.awb_number}, Courier: {result.courier_partner}",
                outcome,
                fields={"shipped_at": self.clock()},
                shipment=shipment,
            )
        except Exception as e:
            logger.exception("ALERT: shipment %s created but order %s not updated", result.awb_number, order.order_id)
            return StepResult.failure(_describe(e), value=result)

        if shipped is None:
            logger.warning("Order %s left processing while shipment %s was created", order.order_id, result.awb_number)
            await self._record_facts(order.order_id, shipment=shipment)
            return StepResult.failure("order left processing during shipment creation", value=result)
        if outcome is not None:
            outcome.action = SHIPPED
        logger.info("Shipment created for order %s: AWB %s via %s", order.order_id,
                    result.awb_number, result.courier_partner)
        return StepResult.success(shipped)

    async def retry_shipment(self, order_id: str) -> StepResult:
        order = await self._load(order_id)
        if order.status != S.PROCESSING:
            raise OrderStateError(order.status.value, f"Shipment can only be created for processing orders, not {order.status.value}")
        return await self.create_shipment(order)

    async def apply_tracking(self, order: Order, snapshot: TrackingSnapshot) -> EventOutcome:
        """Record a tracking snapshot and advance shipped -> in_transit -> delivered when it says so."""
        outcome = EventOutcome(UNCHANGED, order.order_id)
        if snapshot.status == "not_found":
            return outcome

        shipment_status = normalize_tracking_status(snapshot.status)
        shipment: dict[str, Any] = {
            "tracking_history": [e.model_dump() for e in snapshot.tracking_history],
            "last_tracking_update": TrackingEvent(
                status=snapshot.status,
                location=snapshot.location,
                timestamp=snapshot.last_update,
            ).model_dump(),
        }
        if snapshot.courier_partner:
            shipment["courier_partner"] = snapshot.courier_partner
        if snapshot.tracking_url:
            shipment["tracking_url"] = snapshot.tracking_url
        if snapshot.estimated_delivery:
            shipment["estimated_delivery_date"] = snapshot.estimated_delivery
        if shipment_status is not None:
            shipment["shipment_status"] = shipment_status

        target = None
        fields: dict[str, Any] = {}
        if shipment_status == ShipmentStatus.DELIVERED:
            target = S.DELIVERED
        elif shipment_status in (ShipmentStatus.IN_TRANSIT, ShipmentStatus.OUT_FOR_DELIVERY):
            target = S.IN_TRANSIT
        if target is not None and not is_valid_transition(order.status, target):
            target = None
        if target == S.DELIVERED:
            delivered_at = snapshot.last_update or self.clock()
            fields["delivered_at"] = delivered_at
            shipment["actual_delivery_date"] = delivered_at

        if target is not None:
            moved = await self._transition(
                order,
                sources_for(target),
                target,
                ACTOR_TRACKING,
                f"Carrier reports {snapshot.status}" + (f" at {snapshot.location}" if snapshot.location else ""),
                outcome,
                fields=fields,
                shipment=shipment,
            )
            if moved is not None:
                outcome.action = target.value
                return outcome

        outcome.steps["shipment_facts"] = await self._record_facts(order.order_id, shipment=shipment)
        outcome.action = UPDATED
        return outcome

    async def sync_tracking(self, order: Order) -> tuple[StepResult, EventOutcome | None]:
        """Poll the carrier for one order and apply what it reports."""
        awb = order.shipment_details.awb_number if order.shipment_details else None
        if not awb:
            raise OrderStateError(order.status.value, "Order has no shipment to track")
        tracked = await self._call_provider("track", self.shipper.track(awb))
        if not tracked.ok:
            return tracked, None
        return tracked, await self.apply_tracking(order, tracked.value)

    async def track_shipment(self, order_id: str) -> StepResult:
        tracked, _ = await self.sync_tracking(await self._load(order_id))
        return tracked

    async def cancel_shipment(self, order_id: str, reason: str, cancelled_by: str) -> StepResult:
        order = await self._load(order_id)
        awb = order.shipment_details.awb_number if order.shipment_details else None
        if not awb:
            raise OrderStateError(order.status.value, "Order has no shipment to cancel")
        cancelled = await self._call_provider("cancel", self.shipper.cancel(awb, reason))
        if cancelled.ok and cancelled.value.cancelled:
            await self._record_facts(order_id, shipment={
                "shipment_status": ShipmentStatus.CANCELLED,
                "cancellation": {
                    "is_cancelled": True,
                    "cancelled_at": self.clock(),
                    "cancel_reason": reason,
                    "cancelled_by": cancelled_by,
                },
            })
        return cancelled

    async def generate_labels(self, order_ids: list[str]) -> StepResult:
        orders = [await self._load(order_id) for order_id in order_ids]
        awbs = [o.shipment_details.awb_number for o in orders
                if o.shipment_details and o.shipment_details.awb_number]
        if not awbs:
            raise OrderStateError("", "None of the orders has a shipment")
        labels = await self._call_provider("generate_labels", self.shipper.generate_labels(awbs))
        if labels.ok:
            for o in orders:
                if o.shipment_details and o.shipment_details.awb_number:
                    await self._record_facts(o.order_id, shipment={"shipping_label": labels.value.model_dump()})
        return labels

    # ── Commands ─────────────────────────────────

    async def cancel(self, order_id: str, requested_by: str, is_admin: bool, reason: str | None = None) -> Order:
        order = await self._load(order_id)
        if not is_admin and order.user_id != requested_by:
            raise Forbidden("Not the owner of this order")
        if not can_cancel(order.status):
            raise OrderStateError(order.status.value, f"Cannot cancel order in status: {order.status.value}")
        actor = "admin" if is_admin else "customer"
        cancelled = await self._transition(
            order,
            CANCELLABLE,
            S.CANCELLED,
            actor,
            reason or f"Cancelled by {actor}",
            fields={"cancelled_at": self.clock(), "cancellation_reason": reason},
        )
        if cancelled is None:
            current = await self._load(order_id)
            raise OrderStateError(current.status.value, f"Cannot cancel order in status: {current.status.value}")
        return cancelled

    async def set_status(self, order_id: str, status: OrderStatus, actor: str, note: str | None = None) -> Order:
        """Admin override: any non-terminal order may be moved to any status."""
        order = await self._load(order_id)
        if is_terminal(order.status):
            raise OrderStateError(order.status.value, f"Order is already {order.status.value}")
        if status == order.status:
            return order
        now = self.clock()
        fields: dict[str, Any] = {}
        if status == S.SHIPPED:
            fields["shipped_at"] = now
        elif status == S.DELIVERED:
            fields["delivered_at"] = now
        elif status == S.CANCELLED:
            fields["cancelled_at"] = now
            fields["cancellation_reason"] = note
        updated = await self._transition(
            order,
            admin_sources(),
            status,
            actor,
            note or f"Status set to {status.value} by admin",
            fields=fields,
        )
        if updated is None:
            current = await self._load(order_id)
            raise OrderStateError(current.status.value, f"Order is already {current.status.value}")
        return updated
