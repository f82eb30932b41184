"""
OrderOps Database Models

Tables used by the order risk & fulfillment reconciliation engine.

Tables:
  1. customers            - Shopper accounts (read-only for the engine)
  2. products             - Catalog items; stock lookup/decrement only
  3. orders               - Order record with payment/shipping/order status
  4. order_line_items     - Composition of an order, created with it
  5. order_risk_audit     - High-risk assessments kept for manual review
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how every DateTime column is stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ─── 1. Customers ──────────────────────────────────────────────────────────


class Customer(Base):
    __tablename__ = "customers"

    customer_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(255))
    is_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    orders = relationship("Order", back_populates="customer")


# ─── 2. Products ───────────────────────────────────────────────────────────


class Product(Base):
    __tablename__ = "products"

    product_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False, default=0)
    stock_on_hand = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# ─── 3. Orders ─────────────────────────────────────────────────────────────


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    customer_id = Column(GUID(), ForeignKey("customers.customer_id"), nullable=False)
    total = Column(Numeric(10, 2), nullable=False)

    # Three independent state machines (see db.enums)
    order_status = Column(String(20), nullable=False, default="pending")
    payment_status = Column(String(20), nullable=False, default="pending")
    shipping_status = Column(String(20), nullable=False, default="none")

    # Risk verdict: written once at placement
    risk_score = Column(Integer, nullable=False, default=0)
    risk_flags = Column(JSON, nullable=False, default=list)
    auto_approved = Column(Boolean, nullable=False, default=False)

    # Correlation with the payment gateway
    checkout_session_id = Column(String(255))

    # Shipment facts: only written after a successful label purchase
    shipping_address = Column(JSON)
    shipment_id = Column(String(255))
    tracking_number = Column(String(255))
    tracking_url = Column(Text)
    shipping_label_url = Column(Text)
    shipping_carrier = Column(String(100))
    shipping_service = Column(String(255))
    shipping_cost = Column(Numeric(10, 2))
    shipping_error = Column(Text)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_orders_customer_created", "customer_id", "created_at"),
        Index("ix_orders_payment_status", "payment_status"),
        Index("ix_orders_shipment_id", "shipment_id"),
        Index("ix_orders_tracking_number", "tracking_number"),
        CheckConstraint("risk_score >= 0 AND risk_score <= 100", name="ck_order_risk_score_range"),
        CheckConstraint(
            "order_status IN ('pending', 'confirmed', 'shipped', 'delivered', 'cancelled', 'shipping_failed')",
            name="ck_order_status",
        ),
        CheckConstraint("payment_status IN ('pending', 'paid', 'failed')", name="ck_order_payment_status"),
        CheckConstraint(
            "shipping_status IN ('none', 'label_created', 'shipped', 'in_transit', 'delivered', 'failed')",
            name="ck_order_shipping_status",
        ),
    )

    customer = relationship("Customer", back_populates="orders")
    line_items = relationship(
        "OrderLineItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


# ─── 4. Order line items ───────────────────────────────────────────────────


class OrderLineItem(Base):
    __tablename__ = "order_line_items"

    line_item_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    order_id = Column(GUID(), ForeignKey("orders.order_id"), nullable=False)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=True)  # null for custom packs
    flavor_ids = Column(JSON, nullable=False, default=list)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)

    __table_args__ = (
        Index("ix_line_items_order", "order_id"),
        CheckConstraint("quantity > 0", name="ck_line_item_quantity_positive"),
    )

    order = relationship("Order", back_populates="line_items")


# ─── 5. Risk audit ─────────────────────────────────────────────────────────


class OrderRiskAudit(Base):
    __tablename__ = "order_risk_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(GUID(), nullable=False)
    customer_id = Column(GUID(), nullable=False)
    risk_score = Column(Integer, nullable=False)
    classification = Column(String(20), nullable=False)
    flags = Column(JSON, nullable=False, default=list)
    recommendations = Column(JSON, nullable=False, default=list)
    total = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("ix_risk_audit_order", "order_id"),)
