"""
Inventory collaborator: stock lookup and decrement.

Stock is decremented once per order, inside the same transaction that
moves the order to ``paid``. Custom-pack lines (no product id) carry no
stock of their own and are skipped.
"""

import uuid

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import OrderLineItem, Product, utcnow

logger = structlog.get_logger()


async def lookup_stock(db: AsyncSession, product_ids: list[uuid.UUID]) -> dict[uuid.UUID, int]:
    """Return ``{product_id: stock_on_hand}`` for the products that exist."""
    if not product_ids:
        return {}
    result = await db.execute(
        select(Product.product_id, Product.stock_on_hand).where(Product.product_id.in_(product_ids))
    )
    return {product_id: stock for product_id, stock in result.all()}


async def decrement_stock_for_order(db: AsyncSession, order_id: uuid.UUID) -> int:
    """
    Decrement stock for each product line of ``order_id``.

    Stock floors at zero and a shortfall is logged, never raised.
    Does not commit. Returns the number of product rows touched.
    """
    result = await db.execute(
        select(OrderLineItem.product_id, OrderLineItem.quantity).where(
            OrderLineItem.order_id == order_id,
            OrderLineItem.product_id.is_not(None),
        )
    )
    lines = result.all()
    touched = 0

    for product_id, quantity in lines:
        stmt = (
            update(Product)
            .where(Product.product_id == product_id, Product.stock_on_hand >= quantity)
            .values(stock_on_hand=Product.stock_on_hand - quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        outcome = await db.execute(stmt)
        if outcome.rowcount == 0:
            logger.warning(
                "inventory.insufficient_stock",
                order_id=str(order_id),
                product_id=str(product_id),
                quantity=quantity,
            )
            await db.execute(
                update(Product)
                .where(Product.product_id == product_id)
                .values(stock_on_hand=0, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        touched += 1

    logger.info("inventory.stock_decremented", order_id=str(order_id), products=touched)
    return touched
