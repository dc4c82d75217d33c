"""
Order status state machine.

    pending ──stock invalid / promo limit exceeded──▶ cancelled
    pending ──stock valid, promo limits ok──────────▶ ready_for_payment
    ready_for_payment ──payment submitted───────────▶ completed
    any non-terminal ──processing error─────────────▶ failed

completed, cancelled and failed are terminal.
"""
from enum import Enum

from common.errors import ValidationError


class OrderStatus(str, Enum):
    PENDING = "pending"
    READY_FOR_PAYMENT = "ready_for_payment"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.FAILED})
NON_TERMINAL_STATUSES = frozenset(set(OrderStatus) - TERMINAL_STATUSES)

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.READY_FOR_PAYMENT, OrderStatus.CANCELLED, OrderStatus.FAILED}),
    OrderStatus.READY_FOR_PAYMENT: frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}


def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except (ValueError, TypeError):
        allowed = ", ".join(status.value for status in OrderStatus)
        raise ValidationError(f"Invalid status. Must be one of: {allowed}")


def is_terminal(status) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def can_transition(source, target) -> bool:
    return OrderStatus(target) in TRANSITIONS[OrderStatus(source)]
