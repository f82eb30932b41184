"""Data-layer reads the risk evaluators depend on."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Customer, Order


class OrderHistoryReader:
    """
    Read-only view of a customer's account and order history.

    Every query excludes the order currently being scored so a snapshot
    taken before or after the order row is written scores the same.
    """

    def __init__(self, db: AsyncSession, exclude_order_id: uuid.UUID | None = None):
        self.db = db
        self.exclude_order_id = exclude_order_id

    def _scope(self, stmt, customer_id: uuid.UUID):
        stmt = stmt.where(Order.customer_id == customer_id)
        if self.exclude_order_id is not None:
            stmt = stmt.where(Order.order_id != self.exclude_order_id)
        return stmt

    async def get_customer(self, customer_id: uuid.UUID) -> Customer | None:
        return await self.db.get(Customer, customer_id)

    async def recent_orders(self, customer_id: uuid.UUID, limit: int) -> list[Order]:
        stmt = self._scope(select(Order), customer_id).order_by(Order.created_at.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def recent_paid_totals(self, customer_id: uuid.UUID, limit: int) -> list[float]:
        stmt = (
            self._scope(select(Order.total), customer_id)
            .where(Order.payment_status == "paid")
            .order_by(Order.created_at.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return [float(total) for total in result.scalars().all()]

    async def count_orders_since(self, customer_id: uuid.UUID, since: datetime) -> int:
        stmt = self._scope(select(func.count(Order.order_id)), customer_id).where(Order.created_at >= since)
        result = await self.db.execute(stmt)
        return int(result.scalar() or 0)

    async def orders_since(self, customer_id: uuid.UUID, since: datetime) -> list[Order]:
        stmt = (
            self._scope(select(Order), customer_id)
            .where(Order.created_at >= since)
            .order_by(Order.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
