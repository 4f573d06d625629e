"""
API Routes - FastAPI endpoints for orders and payments.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from keymarket.api.dependencies import (
    get_event_notifier,
    get_gateway,
    get_optional_principal,
    get_principal,
    rate_limit,
    require_internal_api_key,
    require_seller,
)
from keymarket.config import settings
from keymarket.db.session import get_db
from keymarket.exceptions import (
    AuthorizationError,
    DataIntegrityError,
    InvalidStateError,
    OrderNotFoundError,
    OrderValidationError,
    OutOfStockError,
    PaymentGatewayError,
    ProductNotFoundError,
    ProductUnavailableError,
    RefundWindowExpiredError,
    WriteVerificationError,
)
from keymarket.models.api import (
    CreateOrderRequest,
    CreateOrderResponse,
    DisputeInfoResponse,
    HealthResponse,
    OrderPageResponse,
    OrderResponse,
    OrderStatus,
    PaymentDetailsResponse,
    PaymentStatusResponse,
    ProcessPaymentRequest,
    ProductSnapshotResponse,
    ReconciliationOutcome,
    ReconciliationResponse,
    RefundRequest,
    RefundRequestResponse,
    SimulatePaymentRequest,
    UserRole,
    WebhookPayload,
)
from keymarket.models.domain import (
    OrderData,
    OrderPage,
    PaymentEvent,
    Principal,
    ReconciliationResult,
)
from keymarket.services.ledger import OrderLedger
from keymarket.services.notifier import Notifier
from keymarket.services.payment_gateway import (
    PaymentGateway,
    SimulatedGateway,
    get_internal_authenticator,
    get_webhook_authenticator,
)
from keymarket.services.reconciliation import PaymentReconciliationEngine

logger = get_logger(__name__)

router = APIRouter()

# Reconciliation outcomes that are not acknowledged with 200
_OUTCOME_STATUS = {
    ReconciliationOutcome.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ReconciliationOutcome.ORDER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ReconciliationOutcome.AMOUNT_MISMATCH: status.HTTP_400_BAD_REQUEST,
    ReconciliationOutcome.EXPIRED: status.HTTP_400_BAD_REQUEST,
}


def order_to_response(order: OrderData, include_key: bool = True) -> OrderResponse:
    """Convert a domain order to the wire view."""
    return OrderResponse(
        order_id=order.order_code,
        status=order.status,
        payment_status=order.payment_status,
        buyer_email=order.buyer_email,
        product=ProductSnapshotResponse(
            name=order.product.name,
            price=order.product.price,
            duration=order.product.duration,
            instruction_url=order.product.instruction_url,
            support_contact=order.product.support_contact,
        ),
        amount=order.amounts.quantity,
        total=order.amounts.total,
        commission=order.amounts.commission,
        seller_earnings=order.amounts.seller_earnings,
        payment_address=order.payment_address,
        transaction_id=order.transaction_id,
        confirmations=order.confirmations,
        license_key=order.license_code if include_key else None,
        delivered_at=order.delivered_at,
        refunded_at=order.refunded_at,
        dispute=DisputeInfoResponse(
            is_disputed=order.is_disputed,
            reason=order.dispute_reason,
            opened_at=order.dispute_opened_at,
            resolved_at=order.dispute_resolved_at,
            resolution=order.dispute_resolution,
        ),
        requires_review=order.requires_review,
        review_reason=order.review_reason,
        created_at=order.created_at,
    )


def reconciliation_response(result: ReconciliationResult) -> ReconciliationResponse:
    """Acknowledge with 200, or raise the HTTP error for a rejecting outcome."""
    status_code = _OUTCOME_STATUS.get(result.outcome)
    if status_code is not None:
        raise HTTPException(status_code=status_code, detail=result.message)
    return ReconciliationResponse(
        outcome=result.outcome,
        order_id=result.order_code,
        message=result.message,
    )


# ============================================================================
# Purchase intake
# ============================================================================


@router.post("/orders", response_model=CreateOrderResponse)
async def create_order(
    request: CreateOrderRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal | None = Depends(get_optional_principal),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_event_notifier),
    _rate_limit: None = Depends(rate_limit),
) -> CreateOrderResponse:
    """
    Create a pending order and issue its payment address.

    Open to guests (identified by email only).
    """
    ledger = OrderLedger(db, notifier=notifier)
    buyer_id = principal.user_id if principal else None

    try:
        order = await ledger.create(request.product_id, request.email, buyer_id=buyer_id)
    except OrderValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc
    except OutOfStockError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="OUT_OF_STOCK",
        ) from exc
    except (ProductNotFoundError, ProductUnavailableError) as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Product not found or unavailable",
        ) from exc

    engine = PaymentReconciliationEngine(db, gateway, get_internal_authenticator(), notifier)
    try:
        payment = await engine.request_payment(order.order_code)
    except PaymentGatewayError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment gateway unavailable",
        ) from exc

    return CreateOrderResponse(
        order_id=order.order_code,
        payment_address=payment.address,
        amount=payment.amount,
        currency=payment.currency,
        expires_at=payment.expires_at,
    )


@router.get("/orders/{order_id}/payment-status", response_model=PaymentStatusResponse)
async def get_payment_status(
    order_id: str,
    db: AsyncSession = Depends(get_db),
) -> PaymentStatusResponse:
    """Poll payment state. Expires the order on read once its window has passed."""
    ledger = OrderLedger(db)
    try:
        order = await ledger.expire_if_overdue(order_id)
    except OrderNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found",
        ) from exc

    return PaymentStatusResponse(
        payment_status=order.payment_status,
        status=order.status,
        expires_at=order.payment_expires_at,
    )


def page_to_response(page: OrderPage, include_key: bool) -> OrderPageResponse:
    """Convert a page of domain orders to the wire view."""
    return OrderPageResponse(
        orders=[order_to_response(order, include_key=include_key) for order in page.orders],
        total=page.total,
        page=page.page,
        limit=page.limit,
        pages=page.pages,
    )


# Declared before /orders/{order_id} so the path parameter doesn't capture them
@router.get("/orders/my-purchases", response_model=OrderPageResponse)
async def list_my_purchases(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
    status_filter: OrderStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> OrderPageResponse:
    """The caller's purchase history, newest first. Guest orders are not linked to an account."""
    if principal.user_id is None:
        return OrderPageResponse(orders=[], total=0, page=page, limit=limit, pages=0)

    ledger = OrderLedger(db)
    result = await ledger.list_for_buyer(principal.user_id, status_filter, page, limit)
    return page_to_response(result, include_key=True)


@router.get("/orders/my-sales", response_model=OrderPageResponse)
async def list_my_sales(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_seller),
    status_filter: OrderStatus | None = Query(None, alias="status"),
    product_id: UUID | None = Query(None, alias="productId"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> OrderPageResponse:
    """The caller's sales, newest first. License keys are never shown to sellers."""
    ledger = OrderLedger(db)
    result = await ledger.list_for_seller(principal.user_id, status_filter, product_id, page, limit)
    return page_to_response(result, include_key=False)


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> OrderResponse:
    """
    Order details for its buyer, its seller, or an admin.

    Orders the caller has no part in are reported as not found.
    """
    ledger = OrderLedger(db)
    try:
        order = await ledger.get(order_id)
    except OrderNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found",
        ) from exc

    is_admin = principal.role == UserRole.ADMIN.value
    is_buyer = principal.user_id is not None and principal.user_id == order.buyer_id
    is_seller = principal.user_id is not None and principal.user_id == order.seller_id
    if not (is_admin or is_buyer or is_seller):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found",
        )

    return order_to_response(order, include_key=is_admin or is_buyer)


@router.post("/orders/{order_id}/refund", response_model=RefundRequestResponse)
async def request_refund(
    order_id: str,
    request: RefundRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
    notifier: Notifier = Depends(get_event_notifier),
    _rate_limit: None = Depends(rate_limit),
) -> RefundRequestResponse:
    """
    Buyer refund request. Opens a dispute for admin review; nothing is
    refunded until an admin resolves it.
    """
    ledger = OrderLedger(db, notifier=notifier)
    try:
        order = await ledger.request_refund(order_id, request.reason, principal.user_id)
    except OrderNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found",
        ) from exc
    except AuthorizationError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the buyer can request a refund",
        ) from exc
    except RefundWindowExpiredError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Refund period has expired ({exc.window_hours} hours)",
        ) from exc
    except InvalidStateError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only completed orders can be refunded",
        ) from exc

    return RefundRequestResponse(
        order_id=order.order_code,
        status=order.status,
        message="Refund request submitted. An admin will review your request.",
    )


# ============================================================================
# Reconciliation entry points
# ============================================================================


@router.post("/orders/process-payment", response_model=ReconciliationResponse)
async def process_payment(
    request: ProcessPaymentRequest,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(require_internal_api_key),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_event_notifier),
) -> ReconciliationResponse:
    """
    Internal reconciliation entry point.

    The paid amount is read from the gateway's view of the transaction,
    never from the caller.
    """
    ledger = OrderLedger(db)
    try:
        order = await ledger.get(request.order_id)
    except OrderNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found",
        ) from exc

    try:
        transaction = await gateway.fetch_transaction(request.transaction_id)
    except PaymentGatewayError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment gateway unavailable",
        ) from exc

    if transaction is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Transaction not found",
        )

    amount = (
        transaction.amount_to(order.payment_address) if order.payment_address else Decimal("0")
    )
    event = PaymentEvent(
        transaction_id=request.transaction_id,
        address=order.payment_address,
        amount=amount,
        # The caller can only lower the confirmation count, never raise it
        confirmations=min(request.confirmations, transaction.confirmations),
        payload=request.model_dump_json(by_alias=True).encode("utf-8"),
        signature=api_key,
        order_code=order.order_code,
    )

    engine = PaymentReconciliationEngine(db, gateway, get_internal_authenticator(), notifier)
    try:
        result = await engine.handle_external_event(event)
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return reconciliation_response(result)


@router.post("/payments/webhook", response_model=ReconciliationResponse)
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_event_notifier),
    x_webhook_signature: str = Header("", description="Hex HMAC-SHA256 of the raw body"),
) -> ReconciliationResponse:
    """
    Gateway push notification.

    The signature covers the raw body, so the body is read before parsing.
    """
    payload = await request.body()

    try:
        body = WebhookPayload.model_validate_json(payload)
    except ValidationError as exc:
        logger.warning("webhook_payload_invalid", errors=exc.error_count())
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Malformed webhook payload",
        ) from exc

    logger.info(
        "payment_webhook_received",
        transaction_id=body.transaction_id,
        confirmations=body.confirmations,
        gateway_status=body.status,
    )

    event = PaymentEvent(
        transaction_id=body.transaction_id,
        address=body.address,
        amount=body.amount,
        confirmations=body.confirmations,
        payload=payload,
        signature=x_webhook_signature,
    )
    engine = PaymentReconciliationEngine(db, gateway, get_webhook_authenticator(), notifier)
    try:
        result = await engine.handle_external_event(event)
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return reconciliation_response(result)


@router.get("/payments/order/{order_id}", response_model=PaymentDetailsResponse)
async def get_payment_details(
    order_id: str,
    db: AsyncSession = Depends(get_db),
) -> PaymentDetailsResponse:
    """Payment instructions for an order. Expires the order on read like payment-status."""
    ledger = OrderLedger(db)
    try:
        order = await ledger.expire_if_overdue(order_id)
    except OrderNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found",
        ) from exc

    payment_uri = None
    if order.payment_address and order.payment_amount is not None:
        amount = format(order.payment_amount.normalize(), "f")
        payment_uri = f"litecoin:{order.payment_address}?amount={amount}"

    return PaymentDetailsResponse(
        order_id=order.order_code,
        address=order.payment_address,
        amount=order.payment_amount,
        currency=order.payment_currency,
        payment_uri=payment_uri,
        status=order.payment_status,
        expires_at=order.payment_expires_at,
    )


@router.post("/payments/simulate", response_model=ReconciliationResponse)
async def simulate_payment(
    request: SimulatePaymentRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_event_notifier),
) -> ReconciliationResponse:
    """
    Development only: pay an order in full through the simulated gateway.

    Runs the same signed-webhook path a real payment would.
    """
    if settings.is_production:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

    if not isinstance(gateway, SimulatedGateway):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment simulation requires the simulated gateway",
        )

    ledger = OrderLedger(db)
    try:
        order = await ledger.get(request.order_id)
    except OrderNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found",
        ) from exc

    if order.payment_address is None or order.payment_amount is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Order has no payment request",
        )

    transaction_id = f"sim_{uuid.uuid4().hex}"
    gateway.record_transaction(
        transaction_id, order.payment_address, order.payment_amount, request.confirmations
    )

    body = WebhookPayload(
        transaction_id=transaction_id,
        address=order.payment_address,
        amount=order.payment_amount,
        confirmations=request.confirmations,
        status="confirmed",
    )
    payload = body.model_dump_json(by_alias=True).encode("utf-8")
    authenticator = get_webhook_authenticator()
    event = PaymentEvent(
        transaction_id=transaction_id,
        address=order.payment_address,
        amount=order.payment_amount,
        confirmations=request.confirmations,
        payload=payload,
        signature=authenticator.sign(payload),
    )

    logger.info(
        "payment_simulated",
        order_code=order.order_code,
        transaction_id=transaction_id,
        requested_by=principal.subject,
    )

    engine = PaymentReconciliationEngine(db, gateway, authenticator, notifier)
    return reconciliation_response(await engine.handle_external_event(event))


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
