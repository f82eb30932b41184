"""
Order state vocabularies.

An order carries three independent state machines on one row. Each is its
own enum so payment, shipping and overall order status can move on
separate schedules without composite states.
"""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    SHIPPING_FAILED = "shipping_failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class ShippingStatus(str, Enum):
    NONE = "none"
    LABEL_CREATED = "label_created"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    FAILED = "failed"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.SHIPPING_FAILED})

# Forward progress rank; equal ranks may move laterally (shipped <-> in_transit).
SHIPPING_RANK = {
    ShippingStatus.NONE: 0,
    ShippingStatus.LABEL_CREATED: 1,
    ShippingStatus.SHIPPED: 2,
    ShippingStatus.IN_TRANSIT: 2,
    ShippingStatus.DELIVERED: 3,
}


def payment_sources_for(target: PaymentStatus) -> tuple[PaymentStatus, ...]:
    """
    Payment states an order may be in for a write to ``target`` to apply.

    ``paid`` is terminal. A failed attempt may still be paid later when the
    customer retries checkout.
    """
    if target == PaymentStatus.PAID:
        return (PaymentStatus.PENDING, PaymentStatus.FAILED)
    if target == PaymentStatus.FAILED:
        return (PaymentStatus.PENDING,)
    return ()


def shipping_sources_for(target: ShippingStatus) -> tuple[ShippingStatus, ...]:
    """
    Shipping states from which a provider notification may move to ``target``.

    Only forward moves are allowed. ``failed`` is reachable from any
    non-terminal state; leaving ``failed`` requires an explicit label retry,
    which goes through ``label_created``.
    """
    if target == ShippingStatus.FAILED:
        return tuple(s for s in SHIPPING_RANK if s != ShippingStatus.DELIVERED)
    if target == ShippingStatus.LABEL_CREATED:
        return (ShippingStatus.NONE,)
    rank = SHIPPING_RANK[target]
    return tuple(s for s, r in SHIPPING_RANK.items() if r <= rank and s != target and r < 3)
