"""Order and payment-record state machines.

Transitions are enforced in two places: `validate_*_transition` for in-process
checks, and conditional `UPDATE ... WHERE status IN (...)` writes in the
services so that concurrent requests cannot both leave the same state.
"""


class OrderStatus:
    PENDING = "PENDING"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus:
    PAYMENT_PENDING = "PAYMENT_PENDING"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


ORDER_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.PENDING: {OrderStatus.AWAITING_PAYMENT, OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.AWAITING_PAYMENT: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    PaymentStatus.PAYMENT_PENDING: {
        PaymentStatus.AUTHORIZED,
        PaymentStatus.CAPTURED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.AUTHORIZED: {PaymentStatus.CAPTURED, PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.CAPTURED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}

# Orders that may still receive a payment.
PRE_PAYMENT_STATES: tuple[str, ...] = (OrderStatus.PENDING, OrderStatus.AWAITING_PAYMENT)
TERMINAL_ORDER_STATES: tuple[str, ...] = (OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.REFUNDED)

# Payment records whose provider reference can still be confirmed.
OPEN_PAYMENT_STATES: tuple[str, ...] = (PaymentStatus.PAYMENT_PENDING, PaymentStatus.AUTHORIZED)


def validate_transition(current: str, new: str) -> None:
    """Raise when an order transition is not allowed by the state machine."""

    if new not in ORDER_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def validate_payment_transition(current: str, new: str) -> None:
    """Raise when a payment-record transition is not allowed."""

    if new not in PAYMENT_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid payment transition: {current} -> {new}")


def sources_for(target: str) -> tuple[str, ...]:
    """All order states from which `target` is reachable in one step."""

    return tuple(sorted(state for state, nexts in ORDER_TRANSITIONS.items() if target in nexts))
