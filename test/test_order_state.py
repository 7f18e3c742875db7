import pytest

from brandmart.models import OrderStatus
from brandmart.order_state import (
    AWAITING_PAYMENT,
    CANCELLABLE,
    admin_sources,
    can_cancel,
    is_terminal,
    is_valid_transition,
    sources_for,
)

S = OrderStatus


@pytest.mark.parametrize("current,new", [
    (S.PENDING, S.PAID),
    (S.CONFIRMED, S.PAID),
    (S.PAID, S.PROCESSING),
    (S.PROCESSING, S.SHIPPED),
    (S.SHIPPED, S.IN_TRANSIT),
    (S.SHIPPED, S.DELIVERED),
    (S.IN_TRANSIT, S.DELIVERED),
    (S.PENDING, S.CANCELLED),
    (S.PROCESSING, S.CANCELLED),
])
def test_lifecycle_transitions_allowed(current, new):
    assert is_valid_transition(current, new)


@pytest.mark.parametrize("current,new", [
    (S.PENDING, S.SHIPPED),
    (S.PAID, S.PAID),
    (S.SHIPPED, S.CANCELLED),
    (S.DELIVERED, S.IN_TRANSIT),
    (S.CANCELLED, S.PAID),
])
def test_lifecycle_transitions_rejected(current, new):
    assert not is_valid_transition(current, new)


def test_terminal_states():
    assert is_terminal(S.DELIVERED)
    assert is_terminal(S.CANCELLED)
    assert not any(is_terminal(s) for s in (S.PENDING, S.PAID, S.SHIPPED, S.IN_TRANSIT))


def test_cancel_only_before_shipping():
    assert CANCELLABLE == {S.PENDING, S.CONFIRMED, S.PAID, S.PROCESSING}
    assert not can_cancel(S.SHIPPED)
    assert not can_cancel(S.CANCELLED)


def test_paid_is_reached_only_while_awaiting_payment():
    assert sources_for(S.PAID) == {S.PENDING, S.CONFIRMED}
    assert AWAITING_PAYMENT == sources_for(S.PAID)


@pytest.mark.parametrize("target,sources", [
    (S.PROCESSING, {S.PAID}),
    (S.SHIPPED, {S.PROCESSING}),
    (S.IN_TRANSIT, {S.SHIPPED}),
    (S.DELIVERED, {S.SHIPPED, S.IN_TRANSIT}),
])
def test_lifecycle_guards_follow_transition_table(target, sources):
    assert sources_for(target) == sources


def test_admin_can_move_any_open_order():
    assert admin_sources() == set(OrderStatus) - {S.DELIVERED, S.CANCELLED}
