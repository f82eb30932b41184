"""
Order placement: snapshot → risk verdict → atomic persist.

Scoring happens before the order row exists, so the verdict is written
together with the order and its line items in one commit. The engine
never raises, so placement always ends with a persisted order.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from db.enums import OrderStatus, PaymentStatus, ShippingStatus
from db.models import Customer, Order, OrderLineItem
from orders.inventory import lookup_stock
from risk.engine import RiskAssessment, RiskScoringEngine
from risk.evaluators import LineItemSnapshot, OrderSnapshot

logger = structlog.get_logger()


class InsufficientStockError(Exception):
    """A requested quantity exceeds stock on hand."""

    def __init__(self, product_id: uuid.UUID, available: int, requested: int):
        super().__init__(f"Insufficient stock for {product_id}. Available: {available}, Requested: {requested}")
        self.product_id = product_id
        self.available = available
        self.requested = requested


@dataclass(frozen=True)
class LineItemDraft:
    quantity: int
    unit_price: Decimal
    product_id: uuid.UUID | None = None
    flavor_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class OrderDraft:
    customer_id: uuid.UUID
    line_items: tuple[LineItemDraft, ...]
    shipping_address: dict[str, Any] | None = None
    checkout_session_id: str | None = None
    order_id: uuid.UUID = field(default_factory=uuid.uuid4)

    @property
    def total(self) -> Decimal:
        return sum((Decimal(str(i.unit_price)) * i.quantity for i in self.line_items), Decimal("0.00"))


@dataclass(frozen=True)
class PlacedOrder:
    order: Order
    assessment: RiskAssessment


async def _check_stock(db: AsyncSession, draft: OrderDraft) -> None:
    requested: dict[uuid.UUID, int] = {}
    for item in draft.line_items:
        if item.product_id is not None:
            requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity

    available = await lookup_stock(db, list(requested))
    for product_id, quantity in requested.items():
        on_hand = available.get(product_id, 0)
        if on_hand < quantity:
            raise InsufficientStockError(product_id, on_hand, quantity)


async def place_order(db: AsyncSession, engine: RiskScoringEngine, draft: OrderDraft) -> PlacedOrder:
    """
    Score and persist a new order.

    Raises InsufficientStockError before anything is written when a
    product line cannot be covered.
    """
    await _check_stock(db, draft)

    customer = await db.get(Customer, draft.customer_id)
    snapshot = OrderSnapshot(
        order_id=draft.order_id,
        customer_id=draft.customer_id,
        total=float(draft.total),
        payment_status=PaymentStatus.PENDING.value,
        customer_email=customer.email if customer else None,
        customer_created_at=customer.created_at if customer else None,
        line_items=tuple(
            LineItemSnapshot(
                product_id=str(i.product_id) if i.product_id else None,
                quantity=i.quantity,
                unit_price=float(i.unit_price),
            )
            for i in draft.line_items
        ),
    )
    assessment = await engine.assess(snapshot)

    order = Order(
        order_id=draft.order_id,
        customer_id=draft.customer_id,
        total=draft.total,
        order_status=OrderStatus.PENDING.value,
        payment_status=PaymentStatus.PENDING.value,
        shipping_status=ShippingStatus.NONE.value,
        risk_score=assessment.score,
        risk_flags=list(assessment.flags),
        auto_approved=assessment.auto_approve,
        checkout_session_id=draft.checkout_session_id,
        shipping_address=draft.shipping_address,
        line_items=[
            OrderLineItem(
                product_id=i.product_id,
                flavor_ids=list(i.flavor_ids),
                quantity=i.quantity,
                unit_price=i.unit_price,
            )
            for i in draft.line_items
        ],
    )
    db.add(order)
    await db.commit()

    logger.info(
        "orders.placed",
        order_id=str(order.order_id),
        customer_id=str(draft.customer_id),
        total=float(draft.total),
        risk_score=assessment.score,
        auto_approved=assessment.auto_approve,
    )
    return PlacedOrder(order=order, assessment=assessment)
