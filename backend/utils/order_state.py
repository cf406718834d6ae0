from enum import Enum

from utils.errors import InvalidTransitionError


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURN_REQUESTED = "return_requested"
    RETURNED = "returned"
    REFUNDED = "refunded"


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURN_REQUESTED}),
    OrderStatus.RETURN_REQUESTED: frozenset({OrderStatus.RETURNED}),
    OrderStatus.RETURNED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})
TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def parse_status(value) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(value)
    except ValueError:
        raise InvalidTransitionError(f"Unknown order status: {value}")


def can_transition(current, target) -> bool:
    try:
        current = parse_status(current)
        target = parse_status(target)
    except InvalidTransitionError:
        return False
    return target in ALLOWED_TRANSITIONS[current]


def assert_transition(current, target) -> OrderStatus:
    """
    Validate a status edge against the transition table.
    Returns the parsed target status.
    """
    current_status = parse_status(current)
    target_status = parse_status(target)

    if target_status not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidTransitionError(
            f"Cannot change status from {current_status.value} to {target_status.value}"
        )
    return target_status


# -------------------------------
# Payout transaction lifecycle
# -------------------------------

class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


PAYOUT_TRANSITIONS: dict[PayoutStatus, frozenset[PayoutStatus]] = {
    PayoutStatus.PENDING: frozenset({
        PayoutStatus.PROCESSING,
        PayoutStatus.FAILED,
        PayoutStatus.CANCELLED,
    }),
    PayoutStatus.PROCESSING: frozenset({
        PayoutStatus.COMPLETED,
        PayoutStatus.FAILED,
        PayoutStatus.CANCELLED,
    }),
    PayoutStatus.COMPLETED: frozenset(),
    PayoutStatus.FAILED: frozenset(),
    PayoutStatus.CANCELLED: frozenset(),
}


def assert_payout_transition(current, target) -> PayoutStatus:
    try:
        current_status = PayoutStatus(current)
        target_status = PayoutStatus(target)
    except ValueError:
        raise InvalidTransitionError(f"Unknown payout status: {current} -> {target}")

    if target_status not in PAYOUT_TRANSITIONS[current_status]:
        raise InvalidTransitionError(
            f"Cannot change payout from {current_status.value} to {target_status.value}"
        )
    return target_status
