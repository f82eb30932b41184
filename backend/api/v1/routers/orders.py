"""
Orders Router: place an order and return its risk verdict.
"""

from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db, get_risk_engine
from db.models import Customer
from orders.placement import InsufficientStockError, LineItemDraft, OrderDraft, place_order
from risk.engine import RiskScoringEngine

router = APIRouter(prefix="/api/v1/orders", tags=["orders"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class LineItemIn(BaseModel):
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    product_id: UUID | None = None
    flavor_ids: list[str] = []


class OrderIn(BaseModel):
    customer_id: UUID
    line_items: list[LineItemIn] = Field(min_length=1)
    shipping_address: dict | None = None
    checkout_session_id: str | None = None

    def to_draft(self) -> OrderDraft:
        return OrderDraft(
            customer_id=self.customer_id,
            line_items=tuple(
                LineItemDraft(
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    product_id=item.product_id,
                    flavor_ids=tuple(item.flavor_ids),
                )
                for item in self.line_items
            ),
            shipping_address=self.shipping_address,
            checkout_session_id=self.checkout_session_id,
        )


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("", status_code=201)
async def create_order(
    body: OrderIn,
    db: AsyncSession = Depends(get_db),
    engine: RiskScoringEngine = Depends(get_risk_engine),
):
    """Score and persist a new order. Stock is checked, not reserved."""
    if await db.get(Customer, body.customer_id) is None:
        raise HTTPException(status_code=404, detail="Customer not found")

    try:
        placed = await place_order(db, engine, body.to_draft())
    except InsufficientStockError as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    return {
        "order_id": str(placed.order.order_id),
        "total": str(placed.order.total),
        "order_status": placed.order.order_status,
        "payment_status": placed.order.payment_status,
        "risk": placed.assessment.to_dict(),
    }
