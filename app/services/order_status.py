"""Order and payment status transitions. Two independent axes."""

from enum import Enum

from app.core.exceptions import InvalidTransition
from app.models.order import OrderStatus, PaymentStatus


class Actor(str, Enum):
    SYSTEM = "system"  # payment reconciliation
    ADMIN = "admin"
    CUSTOMER = "customer"


# target -> actors allowed to move an order there, keyed by current status
ORDER_TRANSITIONS: dict[OrderStatus, dict[OrderStatus, frozenset[Actor]]] = {
    OrderStatus.PENDING: {
        OrderStatus.PROCESSING: frozenset({Actor.SYSTEM}),
        OrderStatus.CANCELLED: frozenset({Actor.ADMIN}),
    },
    OrderStatus.PROCESSING: {
        OrderStatus.SHIPPED: frozenset({Actor.ADMIN}),
        OrderStatus.CANCELLED: frozenset({Actor.ADMIN}),
    },
    OrderStatus.SHIPPED: {
        OrderStatus.DELIVERED: frozenset({Actor.ADMIN, Actor.CUSTOMER}),
    },
    OrderStatus.DELIVERED: {},
    OrderStatus.CANCELLED: {},
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}


def is_terminal(status: OrderStatus) -> bool:
    return not ORDER_TRANSITIONS[status]


def allowed_targets(current: OrderStatus, actor: Actor) -> list[OrderStatus]:
    return [target for target, actors in ORDER_TRANSITIONS[current].items() if actor in actors]


def can_transition(current: OrderStatus, target: OrderStatus, actor: Actor = Actor.ADMIN) -> bool:
    return actor in ORDER_TRANSITIONS[current].get(target, frozenset())


def ensure_order_transition(current: OrderStatus, target: OrderStatus, actor: Actor = Actor.ADMIN) -> None:
    if not can_transition(current, target, actor):
        raise InvalidTransition(current.value, target.value, axis="order_status")


def ensure_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    if target not in PAYMENT_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value, axis="payment_status")
