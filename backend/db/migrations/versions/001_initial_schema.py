"""
Initial schema - customers, products, orders, line items, risk audit

Revision ID: 001
Revises: None
Create Date: 2026-10-12
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # 1. Customers
    op.create_table(
        "customers",
        sa.Column("customer_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(255)),
        sa.Column("is_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )

    # 2. Products
    op.create_table(
        "products",
        sa.Column("product_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit_price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("stock_on_hand", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )

    # 3. Orders
    op.create_table(
        "orders",
        sa.Column("order_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("customer_id", UUID(as_uuid=True), sa.ForeignKey("customers.customer_id"), nullable=False),
        sa.Column("total", sa.Numeric(10, 2), nullable=False),
        sa.Column("order_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("shipping_status", sa.String(20), nullable=False, server_default="none"),
        sa.Column("risk_score", sa.Integer, nullable=False, server_default="0"),
        sa.Column("risk_flags", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("auto_approved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("checkout_session_id", sa.String(255)),
        sa.Column("shipping_address", sa.JSON),
        sa.Column("shipment_id", sa.String(255)),
        sa.Column("tracking_number", sa.String(255)),
        sa.Column("tracking_url", sa.Text),
        sa.Column("shipping_label_url", sa.Text),
        sa.Column("shipping_carrier", sa.String(100)),
        sa.Column("shipping_service", sa.String(255)),
        sa.Column("shipping_cost", sa.Numeric(10, 2)),
        sa.Column("shipping_error", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("risk_score >= 0 AND risk_score <= 100", name="ck_order_risk_score_range"),
        sa.CheckConstraint(
            "order_status IN ('pending', 'confirmed', 'shipped', 'delivered', 'cancelled', 'shipping_failed')",
            name="ck_order_status",
        ),
        sa.CheckConstraint("payment_status IN ('pending', 'paid', 'failed')", name="ck_order_payment_status"),
        sa.CheckConstraint(
            "shipping_status IN ('none', 'label_created', 'shipped', 'in_transit', 'delivered', 'failed')",
            name="ck_order_shipping_status",
        ),
    )
    op.create_index("ix_orders_customer_created", "orders", ["customer_id", "created_at"])
    op.create_index("ix_orders_payment_status", "orders", ["payment_status"])
    op.create_index("ix_orders_shipment_id", "orders", ["shipment_id"])
    op.create_index("ix_orders_tracking_number", "orders", ["tracking_number"])

    # 4. Order line items
    op.create_table(
        "order_line_items",
        sa.Column("line_item_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("order_id", UUID(as_uuid=True), sa.ForeignKey("orders.order_id"), nullable=False),
        sa.Column("product_id", UUID(as_uuid=True), sa.ForeignKey("products.product_id")),
        sa.Column("flavor_ids", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("unit_price", sa.Numeric(10, 2), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_line_item_quantity_positive"),
    )
    op.create_index("ix_line_items_order", "order_line_items", ["order_id"])

    # 5. Risk audit
    op.create_table(
        "order_risk_audit",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("order_id", UUID(as_uuid=True), nullable=False),
        sa.Column("customer_id", UUID(as_uuid=True), nullable=False),
        sa.Column("risk_score", sa.Integer, nullable=False),
        sa.Column("classification", sa.String(20), nullable=False),
        sa.Column("flags", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("recommendations", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("total", sa.Numeric(10, 2), nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_risk_audit_order", "order_risk_audit", ["order_id"])


def downgrade() -> None:
    tables = [
        "order_risk_audit",
        "order_line_items",
        "orders",
        "products",
        "customers",
    ]
    for table in tables:
        op.drop_table(table)
