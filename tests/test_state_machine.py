"""
Transition table for both fulfilment branches.
"""
import pytest

from orderflow.errors import ValidationError
from orderflow.models.order import DeliveryType, OrderStatus
from orderflow.services.state_machine import TERMINAL_STATES, can_transition, validate_transition


S = OrderStatus
DELIVERY = DeliveryType.DELIVERY
PICKUP = DeliveryType.PICKUP


@pytest.mark.parametrize("current,target,delivery_type", [
    (S.PENDING, S.ACCEPTED, DELIVERY),
    (S.ACCEPTED, S.PACKED, DELIVERY),
    (S.PACKED, S.DISPATCHED, DELIVERY),
    (S.DISPATCHED, S.DELIVERED, DELIVERY),
    (S.PENDING, S.ACCEPTED, PICKUP),
    (S.ACCEPTED, S.READY_FOR_PICKUP, PICKUP),
    (S.READY_FOR_PICKUP, S.DELIVERED, PICKUP),
    (S.PENDING, S.CANCELLED, DELIVERY),
    (S.DISPATCHED, S.CANCELLED, DELIVERY),
    (S.READY_FOR_PICKUP, S.CANCELLED, PICKUP),
])
def test_legal_edges(current, target, delivery_type):
    assert can_transition(current, target, delivery_type)
    validate_transition(current, target, delivery_type)


@pytest.mark.parametrize("current,target,delivery_type", [
    (S.PENDING, S.PACKED, DELIVERY),
    (S.PENDING, S.DELIVERED, DELIVERY),
    (S.ACCEPTED, S.DISPATCHED, DELIVERY),
    (S.PACKED, S.ACCEPTED, DELIVERY),
    (S.ACCEPTED, S.READY_FOR_PICKUP, DELIVERY),
    (S.ACCEPTED, S.PACKED, PICKUP),
    (S.ACCEPTED, S.ACCEPTED, DELIVERY),
])
def test_illegal_edges(current, target, delivery_type):
    assert not can_transition(current, target, delivery_type)
    with pytest.raises(ValidationError):
        validate_transition(current, target, delivery_type)


@pytest.mark.parametrize("terminal", [S.DELIVERED, S.CANCELLED])
def test_terminal_states_have_no_exits(terminal):
    assert terminal in TERMINAL_STATES
    for target in OrderStatus:
        with pytest.raises(ValidationError, match="already"):
            validate_transition(terminal, target, DELIVERY)


def test_accepts_raw_string_values():
    validate_transition("accepted", "ready_for_pickup", "pickup")

    with pytest.raises(ValidationError, match="does not apply"):
        validate_transition("accepted", "ready_for_pickup", "delivery")
