"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Wire format uses camelCase field names; Python attributes stay snake_case.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator
from pydantic.alias_generators import to_camel

# Crypto amounts are Decimal internally and plain JSON numbers on the wire
Amount = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class OrderStatus(str, Enum):
    """Order lifecycle state."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class PaymentStatus(str, Enum):
    """Payment sub-state of an order."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    EXPIRED = "expired"


class DisputeVerdict(str, Enum):
    """Admin verdict closing a dispute."""

    REFUND = "refund"
    UPHOLD = "uphold"


class ProductStatus(str, Enum):
    """Catalog-owned product status (read-only here)."""

    UNDETECTED = "undetected"
    DETECTED = "detected"
    UPDATING = "updating"
    DISCONTINUED = "discontinued"


class ApprovalStatus(str, Enum):
    """Catalog-owned product approval status (read-only here)."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReconciliationOutcome(str, Enum):
    """Outcome of one gateway payment notification."""

    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    PENDING_CONFIRMATIONS = "pending_confirmations"
    UNAUTHENTICATED = "unauthenticated"
    ORDER_NOT_FOUND = "order_not_found"
    AMOUNT_MISMATCH = "amount_mismatch"
    EXPIRED = "expired"
    FULFILLMENT_FAILED = "fulfillment_failed"


class UserRole(str, Enum):
    """Roles issued by the Identity Service."""

    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class CamelModel(BaseModel):
    """Base model serializing to camelCase and accepting either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Purchase Intake Models
# ============================================================================


class CreateOrderRequest(CamelModel):
    """POST /orders request body."""

    product_id: UUID
    email: str = Field(..., min_length=3, max_length=255)

    @field_validator("email")
    @classmethod
    def strip_email(cls, v: str) -> str:
        """Normalize surrounding whitespace; format is checked by the ledger."""
        return v.strip()


class CreateOrderResponse(CamelModel):
    """POST /orders response."""

    order_id: str
    payment_address: str
    amount: Amount
    currency: str
    expires_at: datetime


class PaymentStatusResponse(CamelModel):
    """GET /orders/{id}/payment-status response."""

    payment_status: PaymentStatus
    status: OrderStatus
    expires_at: datetime | None


class PaymentDetailsResponse(CamelModel):
    """GET /payments/order/{id} response."""

    order_id: str
    address: str | None
    amount: Amount | None
    currency: str | None
    payment_uri: str | None
    status: PaymentStatus
    expires_at: datetime | None


# ============================================================================
# Reconciliation Models
# ============================================================================


class ProcessPaymentRequest(CamelModel):
    """POST /orders/process-payment request body (internal)."""

    order_id: str = Field(..., min_length=1, max_length=64)
    transaction_id: str = Field(..., min_length=1, max_length=128)
    confirmations: int = Field(..., ge=0)


class WebhookPayload(CamelModel):
    """POST /payments/webhook request body (gateway push)."""

    transaction_id: str = Field(..., min_length=1, max_length=128)
    address: str = Field(..., min_length=1, max_length=128)
    amount: Decimal = Field(..., gt=0)
    confirmations: int = Field(..., ge=0)
    status: str | None = None


class SimulatePaymentRequest(CamelModel):
    """POST /payments/simulate request body (non-production only)."""

    order_id: str = Field(..., min_length=1, max_length=64)
    confirmations: int = Field(6, ge=0)


class ReconciliationResponse(CamelModel):
    """Acknowledgement for a processed payment notification."""

    outcome: ReconciliationOutcome
    order_id: str | None = None
    message: str


# ============================================================================
# Order View Models
# ============================================================================


class ProductSnapshotResponse(CamelModel):
    """Product data captured when the order was created."""

    name: str
    price: Amount
    duration: str | None = None
    instruction_url: str | None = None
    support_contact: str | None = None


class DisputeInfoResponse(CamelModel):
    """Dispute sub-record."""

    is_disputed: bool
    reason: str | None = None
    opened_at: datetime | None = None
    resolved_at: datetime | None = None
    resolution: str | None = None


class OrderResponse(CamelModel):
    """Full order view for the buyer, the seller or an admin."""

    order_id: str
    status: OrderStatus
    payment_status: PaymentStatus
    buyer_email: str
    product: ProductSnapshotResponse
    amount: int
    total: Amount
    commission: Amount
    seller_earnings: Amount
    payment_address: str | None = None
    transaction_id: str | None = None
    confirmations: int | None = None
    license_key: str | None = None
    delivered_at: datetime | None = None
    refunded_at: datetime | None = None
    dispute: DisputeInfoResponse
    requires_review: bool = False
    review_reason: str | None = None
    created_at: datetime


class OrderListResponse(CamelModel):
    """List of orders."""

    orders: list[OrderResponse]
    total: int


class OrderPageResponse(OrderListResponse):
    """One page of a buyer's or seller's order history, newest first."""

    page: int
    limit: int
    pages: int


# ============================================================================
# Refund / Dispute Models
# ============================================================================


class RefundRequest(CamelModel):
    """POST /orders/{id}/refund request body."""

    reason: str = Field(..., min_length=1, max_length=500)


class RefundRequestResponse(CamelModel):
    """POST /orders/{id}/refund response."""

    order_id: str
    status: OrderStatus
    message: str


class ResolveDisputeRequest(CamelModel):
    """PUT /admin/disputes/{id}/resolve request body."""

    verdict: DisputeVerdict


class AdminRefundRequest(CamelModel):
    """POST /admin/orders/{id}/refund request body."""

    reason: str = Field(..., min_length=1, max_length=500)


# ============================================================================
# Inventory Models
# ============================================================================


class BulkAddKeysRequest(CamelModel):
    """POST /admin/products/{id}/keys request body."""

    codes: list[str] = Field(..., min_length=1, max_length=1000)
    expires_at: datetime | None = None


class BulkAddKeysResponse(CamelModel):
    """POST /admin/products/{id}/keys response."""

    added: int
    duplicates: int
    invalid: int


class StockResponse(CamelModel):
    """GET /admin/products/{id}/stock response."""

    product_id: UUID
    available: int


class SweepResponse(CamelModel):
    """POST /admin/sweep response."""

    expired_orders: int
    deactivated_keys: int
    settled_orders: int


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
