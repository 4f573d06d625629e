"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from keymarket.models.api import ApprovalStatus, OrderStatus, PaymentStatus, ProductStatus

# Crypto amounts: 8 decimal places (1 litoshi)
MONEY = Numeric(20, 8)
RATE = Numeric(5, 4)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _enum_column(enum_cls: type, name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda x: [e.value for e in x],
    )


class Seller(Base):
    """
    ORM model for sellers table.

    Owned by the Identity/Catalog services; this service only moves the
    earnings columns, always through paired increment/decrement updates.
    """

    __tablename__ = "sellers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # None means "use the platform default"
    commission_rate: Mapped[Decimal | None] = mapped_column(RATE, nullable=True)

    pending_earnings: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    total_earnings: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    withdrawn_earnings: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("pending_earnings >= 0", name="ck_seller_pending_non_negative"),
        CheckConstraint("total_earnings >= 0", name="ck_seller_total_non_negative"),
        CheckConstraint("withdrawn_earnings >= 0", name="ck_seller_withdrawn_non_negative"),
        CheckConstraint(
            "commission_rate IS NULL OR (commission_rate >= 0 AND commission_rate <= 1)",
            name="ck_seller_commission_rate_range",
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Seller(id={self.id}, pending={self.pending_earnings})>"


class Buyer(Base):
    """
    ORM model for buyers table.

    Keyed by the Identity Service subject; guest purchases have no row.
    """

    __tablename__ = "buyers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_purchases: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_spent: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("total_purchases >= 0", name="ck_buyer_purchases_non_negative"),
        CheckConstraint("total_spent >= 0", name="ck_buyer_spent_non_negative"),
    )


class Product(Base):
    """
    ORM model for products table.

    Catalog-owned. Read for price, availability and commission; only
    total_sales is written here.
    """

    __tablename__ = "products"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    seller_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("sellers.id"), nullable=False, index=True
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    duration: Mapped[str | None] = mapped_column(String(50), nullable=True)
    instruction_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    support_contact: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[ProductStatus] = mapped_column(
        _enum_column(ProductStatus, "product_status"),
        nullable=False,
        default=ProductStatus.UNDETECTED,
    )
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        _enum_column(ApprovalStatus, "approval_status"),
        nullable=False,
        default=ApprovalStatus.PENDING,
    )
    is_frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Product-level override of the seller's rate
    commission_rate: Mapped[Decimal | None] = mapped_column(RATE, nullable=True)

    total_sales: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("price > 0", name="ck_product_price_positive"),
        CheckConstraint("total_sales >= 0", name="ck_product_sales_non_negative"),
        Index("idx_products_seller_active", "seller_id", "is_active"),
    )

    @property
    def is_sellable(self) -> bool:
        """Catalog-side availability, excluding stock."""
        return (
            self.is_active
            and self.approval_status == ApprovalStatus.APPROVED
            and not self.is_frozen
            and self.status != ProductStatus.DISCONTINUED
        )


class LicenseKey(Base):
    """
    ORM model for license_keys table.

    Single-use redeemable credentials. Never deleted, only deactivated.
    """

    __tablename__ = "license_keys"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    product_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("products.id"), nullable=False, index=True
    )
    seller_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)

    code: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    is_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    order_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    used_by: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "(is_used = false AND order_id IS NULL) OR (is_used = true AND order_id IS NOT NULL)",
            name="ck_license_key_usage_linked",
        ),
        Index("idx_license_keys_available", "product_id", "is_used", "is_active"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<LicenseKey(id={self.id}, product_id={self.product_id}, used={self.is_used})>"


class Order(Base):
    """
    ORM model for orders table.

    Authoritative record of one purchase attempt. Product data and the
    monetary split are written once at creation and never recomputed.
    """

    __tablename__ = "orders"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    order_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    # Parties
    buyer_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    buyer_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    seller_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    product_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("products.id"), nullable=False, index=True
    )

    # Product snapshot
    product_name: Mapped[str] = mapped_column(String(100), nullable=False)
    product_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    product_duration: Mapped[str | None] = mapped_column(String(50), nullable=True)
    product_instruction_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    product_support_contact: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Money (computed once at creation)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    total: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    commission: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    seller_earnings: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    # State
    status: Mapped[OrderStatus] = mapped_column(
        _enum_column(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Payment sub-record
    payment_address: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    payment_amount: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    payment_currency: Mapped[str | None] = mapped_column(String(10), nullable=True)
    payment_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    confirmations: Mapped[int | None] = mapped_column(Integer, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Fulfillment
    license_key_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    license_code: Mapped[str | None] = mapped_column(String(255), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Dispute sub-record
    is_disputed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dispute_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    dispute_opened_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    dispute_resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    dispute_resolution: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Operator attention (paid but unfulfillable)
    requires_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Dispute window closed without a dispute
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_quantity_positive"),
        CheckConstraint("total >= 0", name="ck_order_total_non_negative"),
        CheckConstraint("commission >= 0", name="ck_order_commission_non_negative"),
        CheckConstraint("seller_earnings >= 0", name="ck_order_earnings_non_negative"),
        Index("idx_orders_status_payment", "status", "payment_status"),
        Index("idx_orders_created_at", "created_at"),
        Index("idx_orders_seller_status", "seller_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Order(code={self.order_code}, status={self.status}, "
            f"payment_status={self.payment_status}, total={self.total})>"
        )
