"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from keymarket.models.api import OrderStatus, PaymentStatus, ReconciliationOutcome


@dataclass(frozen=True)
class ProductSnapshot:
    """Product data frozen onto an order at creation time."""

    product_id: UUID
    seller_id: UUID
    name: str
    price: Decimal
    duration: str | None
    instruction_url: str | None
    support_contact: str | None

    def __post_init__(self) -> None:
        """Validate snapshot constraints."""
        if self.price <= 0:
            raise ValueError(f"Price must be positive: {self.price}")
        if not self.name:
            raise ValueError("Product name cannot be empty")


@dataclass(frozen=True)
class OrderAmounts:
    """Monetary split computed once at order creation."""

    quantity: int
    unit_price: Decimal
    total: Decimal
    commission_rate: Decimal
    commission: Decimal
    seller_earnings: Decimal

    def __post_init__(self) -> None:
        """Validate ledger invariants."""
        if self.quantity < 1:
            raise ValueError(f"Quantity must be positive: {self.quantity}")
        if self.total != self.unit_price * self.quantity:
            raise ValueError(f"Total {self.total} != {self.quantity} x {self.unit_price}")
        if self.commission + self.seller_earnings != self.total:
            raise ValueError(
                f"Commission {self.commission} + earnings {self.seller_earnings} != {self.total}"
            )
        if self.commission < 0 or self.seller_earnings < 0:
            raise ValueError("Commission and seller earnings cannot be negative")


@dataclass(frozen=True)
class OrderData:
    """Immutable order snapshot returned by the ledger."""

    order_id: UUID
    order_code: str
    status: OrderStatus
    payment_status: PaymentStatus
    buyer_id: UUID | None
    buyer_email: str
    seller_id: UUID
    product: ProductSnapshot
    amounts: OrderAmounts
    payment_address: str | None
    payment_amount: Decimal | None
    payment_currency: str | None
    payment_expires_at: datetime | None
    transaction_id: str | None
    confirmations: int | None
    paid_at: datetime | None
    license_key_id: UUID | None
    license_code: str | None
    delivered_at: datetime | None
    refunded_at: datetime | None
    refund_reason: str | None
    is_disputed: bool
    dispute_reason: str | None
    dispute_opened_at: datetime | None
    dispute_resolved_at: datetime | None
    dispute_resolution: str | None
    requires_review: bool
    review_reason: str | None
    settled_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class OrderPage:
    """A page of orders plus the size of the whole result set."""

    orders: list[OrderData]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit


@dataclass(frozen=True)
class AssignedKey:
    """A license key claimed for an order."""

    key_id: UUID
    product_id: UUID
    code: str


@dataclass(frozen=True)
class BulkAddResult:
    """Partial-success result of a bulk key import."""

    added: int
    duplicates: int
    invalid: int


@dataclass(frozen=True)
class PaymentRequest:
    """Payment instructions handed to the buyer."""

    address: str
    amount: Decimal
    currency: str
    expires_at: datetime


@dataclass(frozen=True)
class PaymentEvent:
    """
    A gateway-originated payment notification.

    payload/signature are the raw credentials checked by the authenticator
    before anything else is looked at.
    """

    transaction_id: str
    address: str | None
    amount: Decimal
    confirmations: int
    payload: bytes
    signature: str
    order_code: str | None = None


@dataclass(frozen=True)
class TransactionOutput:
    """One output of an on-chain transaction."""

    address: str
    amount: Decimal


@dataclass(frozen=True)
class TransactionInfo:
    """Transaction details reported by the gateway."""

    transaction_id: str
    confirmations: int
    outputs: tuple[TransactionOutput, ...] = field(default_factory=tuple)

    def amount_to(self, address: str) -> Decimal:
        """Total amount paid to an address by this transaction."""
        return sum((o.amount for o in self.outputs if o.address == address), Decimal("0"))


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of a single payment notification."""

    outcome: ReconciliationOutcome
    message: str
    order_code: str | None = None

    @property
    def settled(self) -> bool:
        """True when the order is (or already was) completed by this payment."""
        return self.outcome in (ReconciliationOutcome.COMPLETED, ReconciliationOutcome.DUPLICATE)


@dataclass(frozen=True)
class SweepReport:
    """Result of one sweeper pass."""

    expired_orders: int
    deactivated_keys: int
    settled_orders: tuple[str, ...]


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as issued by the Identity Service."""

    subject: str
    role: str
    email: str | None = None

    @property
    def user_id(self) -> UUID | None:
        """Subject as UUID when the Identity Service issued one."""
        try:
            return UUID(self.subject)
        except ValueError:
            return None


class OrderEventType(str, Enum):
    """Events published to the Notifier collaborator."""

    ORDER_CREATED = "order.created"
    ORDER_COMPLETED = "order.completed"
    NEW_SALE = "sale.new"
    ORDER_REFUNDED = "order.refunded"
    DISPUTE_OPENED = "dispute.opened"
    DISPUTE_RESOLVED = "dispute.resolved"
    ORDER_SETTLED = "order.settled"
    PAYMENT_AMOUNT_MISMATCH = "payment.amount_mismatch"
    PAYMENT_FULFILLMENT_FAILED = "payment.fulfillment_failed"


@dataclass(frozen=True)
class OrderEvent:
    """A notification about an order, addressed by role."""

    event_type: OrderEventType
    order_code: str
    seller_id: UUID | None = None
    buyer_id: UUID | None = None
    buyer_email: str | None = None
    amount: Decimal | None = None
    license_code: str | None = None
    detail: str | None = None
