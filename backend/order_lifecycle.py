"""Order status values and the transitions allowed between them."""

from enum import Enum
from typing import Dict, FrozenSet

from errors import InvalidStatusTransitionError, ValidationError


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


STATUS_ALIASES: Dict[str, OrderStatus] = {
    "DELIVERED": OrderStatus.COMPLETED,
    "CANCELLED": OrderStatus.CANCELED,
}

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELED}),
    OrderStatus.PAID: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELED: frozenset(),
}

TERMINAL_STATES: FrozenSet[OrderStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# States an order reaches only after its payment was confirmed.
SETTLED_STATES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.COMPLETED}
)


def parse_status(value) -> OrderStatus:
    normalized = str(value or "").strip().upper()
    if normalized in STATUS_ALIASES:
        return STATUS_ALIASES[normalized]
    try:
        return OrderStatus(normalized)
    except ValueError:
        valid = ", ".join(status.value for status in OrderStatus)
        raise ValidationError(f"Invalid status. Must be one of: {valid}")


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStatusTransitionError(current.value, target.value)
