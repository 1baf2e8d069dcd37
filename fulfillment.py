"""Order fulfillment lifecycle.

    pending -> confirmed -> preparing -> ready -> delivered
       \\          \\             \\
        +----------+-------------+--> cancelled

Staff and admin drive the forward arrows. A customer may only cancel their
own order, and only while it is still pending.
"""
from database import OrderStatus
from errors import Forbidden, IllegalTransition, ValidationError


INITIAL_STATUS = OrderStatus.PENDING

TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)
ACTIVE_STATUSES = (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PREPARING)


def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus((value or "").strip().lower() if isinstance(value, str) else value)
    except (ValueError, TypeError):
        allowed = ", ".join(s.value for s in OrderStatus)
        raise ValidationError(f"Invalid status; expected one of {allowed}")


def is_terminal(status) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def is_legal(source, target) -> bool:
    return OrderStatus(target) in TRANSITIONS[OrderStatus(source)]


def can_read(order, actor) -> bool:
    return actor.is_staff_or_admin or actor.owns(order)


def check_read(order, actor):
    if not can_read(order, actor):
        raise Forbidden("You do not have access to this order")


def check_transition(order, target, actor):
    """Raise unless ``actor`` may move ``order`` to ``target`` right now."""
    check_read(order, actor)

    source = OrderStatus(order.status)
    target = OrderStatus(target)

    if actor.is_customer and target != OrderStatus.CANCELLED:
        raise Forbidden("Only staff can update the order status")

    if not is_legal(source, target):
        raise IllegalTransition(f"Cannot change order status from {source.value} to {target.value}")

    if actor.is_customer and source != OrderStatus.PENDING:
        raise Forbidden("Orders can only be cancelled by the customer while pending")


def check_delete(order, actor):
    if not actor.is_admin:
        raise Forbidden("Only admins can delete orders")
    if is_terminal(order.status):
        raise IllegalTransition(f"Cannot delete an order that is {order.status}")
