# marketplace/domain/states.py
from enum import Enum

from marketplace.domain.errors import InvalidStateError


class CartStatus(str, Enum):
    ACTIVE = "active"
    CONVERTED = "converted"
    ABANDONED = "abandoned"
    RECOVERED = "recovered"
    MERGED = "merged"


class CartItemStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"


class FulfillmentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETED = "completed"
    FAILED = "failed"


class ItemFulfillmentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    FULFILLED = "fulfilled"
    FAILED = "failed"


class PaymentSessionStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    EXPIRED = "expired"


class PaymentOutcome(str, Enum):
    APPROVED = "approved"
    ERROR = "error"
    AMOUNT_MISMATCH = "amount_mismatch"
    # zaplacone, ale nie bylo do czego podpiac, do recznego rozliczenia
    UNRECONCILED = "unreconciled"


class AbandonedCartStatus(str, Enum):
    ABANDONED = "abandoned"
    RECOVERED = "recovered"


CART_TRANSITIONS = {
    CartStatus.ACTIVE: {CartStatus.CONVERTED, CartStatus.ABANDONED, CartStatus.MERGED},
    CartStatus.ABANDONED: {CartStatus.RECOVERED},
    CartStatus.CONVERTED: set(),
    CartStatus.MERGED: set(),
    CartStatus.RECOVERED: set(),
}

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}

ABANDONED_CART_TRANSITIONS = {
    AbandonedCartStatus.ABANDONED: {AbandonedCartStatus.RECOVERED},
    AbandonedCartStatus.RECOVERED: set(),
}


def can_transition(table: dict, current, target) -> bool:
    current = type(target)(current)
    return target in table.get(current, set())


def ensure_transition(table: dict, current, target, entity: str = "object") -> None:
    if not can_transition(table, current, target):
        raise InvalidStateError(
            f"{entity} cannot move from '{_value(current)}' to '{_value(target)}'",
            current=_value(current),
            target=_value(target),
        )


def _value(status) -> str:
    return status.value if isinstance(status, Enum) else str(status)
