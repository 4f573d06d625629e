"""Initial schema: sellers, buyers, products, license_keys and orders.

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0000"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

MONEY = sa.Numeric(20, 8)
RATE = sa.Numeric(5, 4)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade() -> None:
    """Create all order engine tables."""
    # Sellers - catalog-owned; only the earnings columns are written here
    op.create_table(
        "sellers",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("commission_rate", RATE, nullable=True),
        sa.Column("pending_earnings", MONEY, nullable=False, server_default="0"),
        sa.Column("total_earnings", MONEY, nullable=False, server_default="0"),
        sa.Column("withdrawn_earnings", MONEY, nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("pending_earnings >= 0", name="ck_seller_pending_non_negative"),
        sa.CheckConstraint("total_earnings >= 0", name="ck_seller_total_non_negative"),
        sa.CheckConstraint("withdrawn_earnings >= 0", name="ck_seller_withdrawn_non_negative"),
        sa.CheckConstraint(
            "commission_rate IS NULL OR (commission_rate >= 0 AND commission_rate <= 1)",
            name="ck_seller_commission_rate_range",
        ),
    )

    # Buyers - keyed by Identity Service subject
    op.create_table(
        "buyers",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("total_purchases", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_spent", MONEY, nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("total_purchases >= 0", name="ck_buyer_purchases_non_negative"),
        sa.CheckConstraint("total_spent >= 0", name="ck_buyer_spent_non_negative"),
    )

    # Products - catalog-owned; only total_sales is written here
    op.create_table(
        "products",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("seller_id", sa.Uuid, sa.ForeignKey("sellers.id"), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("price", MONEY, nullable=False),
        sa.Column("duration", sa.String(50), nullable=True),
        sa.Column("instruction_url", sa.String(500), nullable=True),
        sa.Column("support_contact", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="undetected"),
        sa.Column("approval_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("is_frozen", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("commission_rate", RATE, nullable=True),
        sa.Column("total_sales", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("price > 0", name="ck_product_price_positive"),
        sa.CheckConstraint("total_sales >= 0", name="ck_product_sales_non_negative"),
    )
    op.create_index("ix_products_seller_id", "products", ["seller_id"])
    op.create_index("idx_products_seller_active", "products", ["seller_id", "is_active"])

    # License keys - single use, never deleted
    op.create_table(
        "license_keys",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("product_id", sa.Uuid, sa.ForeignKey("products.id"), nullable=False),
        sa.Column("seller_id", sa.Uuid, nullable=False),
        sa.Column("code", sa.String(255), nullable=False),
        sa.Column("is_used", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("order_id", sa.Uuid, nullable=True),
        sa.Column("used_by", sa.Uuid, nullable=True),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("code", name="uq_license_keys_code"),
        sa.CheckConstraint(
            "(is_used = false AND order_id IS NULL) OR (is_used = true AND order_id IS NOT NULL)",
            name="ck_license_key_usage_linked",
        ),
    )
    op.create_index("ix_license_keys_product_id", "license_keys", ["product_id"])
    op.create_index("ix_license_keys_order_id", "license_keys", ["order_id"])
    op.create_index(
        "idx_license_keys_available", "license_keys", ["product_id", "is_used", "is_active"]
    )

    # Orders - authoritative purchase record
    op.create_table(
        "orders",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("order_code", sa.String(32), nullable=False),
        sa.Column("buyer_id", sa.Uuid, nullable=True),
        sa.Column("buyer_email", sa.String(255), nullable=False),
        sa.Column("seller_id", sa.Uuid, nullable=False),
        sa.Column("product_id", sa.Uuid, sa.ForeignKey("products.id"), nullable=False),
        sa.Column("product_name", sa.String(100), nullable=False),
        sa.Column("product_price", MONEY, nullable=False),
        sa.Column("product_duration", sa.String(50), nullable=True),
        sa.Column("product_instruction_url", sa.String(500), nullable=True),
        sa.Column("product_support_contact", sa.String(255), nullable=True),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="1"),
        sa.Column("total", MONEY, nullable=False),
        sa.Column("commission_rate", RATE, nullable=False),
        sa.Column("commission", MONEY, nullable=False),
        sa.Column("seller_earnings", MONEY, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("payment_address", sa.String(128), nullable=True),
        sa.Column("payment_amount", MONEY, nullable=True),
        sa.Column("payment_currency", sa.String(10), nullable=True),
        sa.Column("payment_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transaction_id", sa.String(128), nullable=True),
        sa.Column("confirmations", sa.Integer, nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("license_key_id", sa.Uuid, nullable=True),
        sa.Column("license_code", sa.String(255), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_reason", sa.String(500), nullable=True),
        sa.Column("is_disputed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("dispute_reason", sa.String(500), nullable=True),
        sa.Column("dispute_opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_resolution", sa.String(20), nullable=True),
        sa.Column("requires_review", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("review_reason", sa.String(100), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("order_code", name="uq_orders_order_code"),
        sa.UniqueConstraint("payment_address", name="uq_orders_payment_address"),
        sa.CheckConstraint("quantity > 0", name="ck_order_quantity_positive"),
        sa.CheckConstraint("total >= 0", name="ck_order_total_non_negative"),
        sa.CheckConstraint("commission >= 0", name="ck_order_commission_non_negative"),
        sa.CheckConstraint("seller_earnings >= 0", name="ck_order_earnings_non_negative"),
    )
    op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"])
    op.create_index("ix_orders_buyer_email", "orders", ["buyer_email"])
    op.create_index("ix_orders_seller_id", "orders", ["seller_id"])
    op.create_index("ix_orders_product_id", "orders", ["product_id"])
    op.create_index("ix_orders_transaction_id", "orders", ["transaction_id"])
    op.create_index("idx_orders_status_payment", "orders", ["status", "payment_status"])
    op.create_index("idx_orders_created_at", "orders", ["created_at"])
    op.create_index("idx_orders_seller_status", "orders", ["seller_id", "status"])


def downgrade() -> None:
    """Drop all order engine tables."""
    op.drop_table("orders")
    op.drop_table("license_keys")
    op.drop_table("products")
    op.drop_table("buyers")
    op.drop_table("sellers")
