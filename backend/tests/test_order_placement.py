"""
Tests for order placement: risk verdict persisted with the order.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from db.models import Order
from orders.placement import InsufficientStockError, LineItemDraft, OrderDraft, place_order
from risk.engine import RiskScoringEngine


@pytest.mark.asyncio
class TestPlaceOrder:
    async def test_verdict_is_stored_with_order(self, test_db, session_factory, make_customer, fetch_order):
        customer = await make_customer(email="new.shopper@example.com", is_verified=False, age=timedelta(hours=2))
        draft = OrderDraft(
            customer_id=customer.customer_id,
            line_items=(LineItemDraft(quantity=2, unit_price=Decimal("25.00")),),
            checkout_session_id="cs_new",
        )

        placed = await place_order(test_db, RiskScoringEngine(session_factory), draft)

        assert placed.assessment.score == 50
        stored = await fetch_order(draft.order_id)
        assert stored.total == Decimal("50.00")
        assert (stored.order_status, stored.payment_status, stored.shipping_status) == ("pending", "pending", "none")
        assert stored.risk_score == 50
        assert stored.risk_flags == ["NEW_USER_24H", "EMAIL_NOT_VERIFIED", "FIRST_ORDER", "PAYMENT_PENDING"]
        assert stored.auto_approved is False
        assert stored.checkout_session_id == "cs_new"
        assert len(stored.line_items) == 1

    async def test_product_lines_are_kept(self, test_db, session_factory, make_customer, make_product, fetch_order):
        customer = await make_customer()
        product = await make_product(stock=5)
        draft = OrderDraft(
            customer_id=customer.customer_id,
            line_items=(
                LineItemDraft(quantity=3, unit_price=Decimal("12.50"), product_id=product.product_id),
                LineItemDraft(quantity=1, unit_price=Decimal("20.00"), flavor_ids=("mango", "chili")),
            ),
        )

        placed = await place_order(test_db, RiskScoringEngine(session_factory), draft)

        stored = await fetch_order(draft.order_id)
        assert stored.total == Decimal("57.50")
        assert stored.risk_score == placed.assessment.score
        assert stored.risk_flags == list(placed.assessment.flags)
        assert sorted(item.quantity for item in stored.line_items) == [1, 3]
        custom = next(item for item in stored.line_items if item.product_id is None)
        assert custom.flavor_ids == ["mango", "chili"]

    async def test_stock_is_not_reserved_at_placement(
        self, test_db, session_factory, make_customer, make_product, fetch_product
    ):
        customer = await make_customer()
        product = await make_product(stock=5)
        draft = OrderDraft(
            customer_id=customer.customer_id,
            line_items=(LineItemDraft(quantity=5, unit_price=Decimal("12.50"), product_id=product.product_id),),
        )

        await place_order(test_db, RiskScoringEngine(session_factory), draft)

        assert (await fetch_product(product.product_id)).stock_on_hand == 5

    async def test_insufficient_stock_writes_nothing(self, test_db, session_factory, make_customer, make_product):
        customer = await make_customer()
        product = await make_product(stock=2)
        draft = OrderDraft(
            customer_id=customer.customer_id,
            line_items=(
                LineItemDraft(quantity=2, unit_price=Decimal("12.50"), product_id=product.product_id),
                LineItemDraft(quantity=1, unit_price=Decimal("12.50"), product_id=product.product_id),
            ),
        )

        with pytest.raises(InsufficientStockError) as excinfo:
            await place_order(test_db, RiskScoringEngine(session_factory), draft)

        assert (excinfo.value.available, excinfo.value.requested) == (2, 3)
        count = await test_db.scalar(select(func.count()).select_from(Order))
        assert count == 0

    async def test_unknown_product_has_no_stock(self, test_db, session_factory, make_customer):
        customer = await make_customer()
        draft = OrderDraft(
            customer_id=customer.customer_id,
            line_items=(LineItemDraft(quantity=1, unit_price=Decimal("9.00"), product_id=uuid.uuid4()),),
        )

        with pytest.raises(InsufficientStockError):
            await place_order(test_db, RiskScoringEngine(session_factory), draft)
