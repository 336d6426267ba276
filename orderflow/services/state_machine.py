"""
Order status transitions.

Delivery orders:  pending -> accepted -> packed -> dispatched -> delivered
Pickup orders:    pending -> accepted -> ready_for_pickup -> delivered

Any state before delivered may also move to cancelled. delivered and
cancelled are terminal.
"""
from orderflow.errors import ValidationError
from orderflow.models.order import DeliveryType, OrderStatus


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ACCEPTED, OrderStatus.CANCELLED}),
    OrderStatus.ACCEPTED: frozenset({
        OrderStatus.PACKED,
        OrderStatus.READY_FOR_PICKUP,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PACKED: frozenset({OrderStatus.DISPATCHED, OrderStatus.CANCELLED}),
    OrderStatus.DISPATCHED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.READY_FOR_PICKUP: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# States that only exist on one fulfilment branch
BRANCH_STATES: dict[OrderStatus, DeliveryType] = {
    OrderStatus.PACKED: DeliveryType.DELIVERY,
    OrderStatus.DISPATCHED: DeliveryType.DELIVERY,
    OrderStatus.READY_FOR_PICKUP: DeliveryType.PICKUP,
}

TERMINAL_STATES = frozenset(
    status for status, targets in TRANSITIONS.items() if not targets
)


def can_transition(current: OrderStatus, target: OrderStatus, delivery_type: DeliveryType) -> bool:
    if target not in TRANSITIONS.get(current, frozenset()):
        return False
    branch = BRANCH_STATES.get(target)
    return branch is None or branch == delivery_type


def validate_transition(current: OrderStatus, target: OrderStatus, delivery_type: DeliveryType) -> None:
    """
    Raise ValidationError unless `current -> target` is a legal edge.

    Args:
        current: Status the order is in now
        target: Requested status
        delivery_type: Fulfilment branch of the order
    """
    current = OrderStatus(current)
    target = OrderStatus(target)
    delivery_type = DeliveryType(delivery_type)

    if current in TERMINAL_STATES:
        raise ValidationError(f"Order is already {current.value}")

    if not can_transition(current, target, delivery_type):
        if target in BRANCH_STATES and BRANCH_STATES[target] != delivery_type:
            raise ValidationError(
                f"Status {target.value} does not apply to {delivery_type.value} orders"
            )
        raise ValidationError(
            f"Cannot transition order from {current.value} to {target.value}"
        )
