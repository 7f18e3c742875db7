"""
Order lifecycle state machine. Valid transitions enforce business rules; the
lifecycle controller derives every conditional-update guard from this table.
"""
from brandmart.models import OrderStatus

S = OrderStatus

TERMINAL_STATES = frozenset({S.DELIVERED, S.CANCELLED})

# Current status -> statuses reachable by lifecycle events (not admin overrides)
VALID_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    S.PENDING: frozenset({S.CONFIRMED, S.PAID, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.PAID, S.CANCELLED}),
    S.PAID: frozenset({S.PROCESSING, S.CANCELLED}),
    S.PROCESSING: frozenset({S.SHIPPED, S.CANCELLED}),
    S.SHIPPED: frozenset({S.IN_TRANSIT, S.DELIVERED}),
    S.IN_TRANSIT: frozenset({S.DELIVERED}),
    S.DELIVERED: frozenset(),  # terminal
    S.CANCELLED: frozenset(),  # terminal
}


def is_valid_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """True if new is reachable from current by a lifecycle event."""
    return new in VALID_TRANSITIONS.get(current, frozenset())


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATES


def sources_for(target: OrderStatus) -> frozenset[OrderStatus]:
    """All statuses from which target is reachable by a lifecycle event."""
    return frozenset(s for s, allowed in VALID_TRANSITIONS.items() if target in allowed)


def admin_sources() -> frozenset[OrderStatus]:
    """Admins may set any status on an order that has not reached a terminal state."""
    return frozenset(s for s in OrderStatus if s not in TERMINAL_STATES)


# Statuses from which a payment fact may still move the order
AWAITING_PAYMENT = sources_for(S.PAID)

# Owner/admin cancel is allowed only before the parcel leaves
CANCELLABLE = sources_for(S.CANCELLED)


def can_cancel(status: OrderStatus) -> bool:
    return status in CANCELLABLE
