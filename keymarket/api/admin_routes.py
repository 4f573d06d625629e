"""
Admin API Routes - Disputes, refunds, inventory and housekeeping.

All routes require the admin role from an Identity Service token.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from keymarket.api.dependencies import get_event_notifier, require_admin
from keymarket.api.routes import order_to_response
from keymarket.db.session import get_db
from keymarket.exceptions import (
    DataIntegrityError,
    InvalidStateError,
    OrderNotFoundError,
    ProductNotFoundError,
)
from keymarket.models.api import (
    AdminRefundRequest,
    BulkAddKeysRequest,
    BulkAddKeysResponse,
    OrderListResponse,
    OrderResponse,
    ResolveDisputeRequest,
    StockResponse,
    SweepResponse,
)
from keymarket.models.domain import Principal
from keymarket.services.inventory import InventoryAllocator
from keymarket.services.ledger import OrderLedger
from keymarket.services.notifier import Notifier
from keymarket.services.sweeper import ExpirySweeper

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# ============================================================================
# Disputes & Refunds
# ============================================================================


@router.get("/disputes", response_model=OrderListResponse)
async def list_disputes(
    include_resolved: bool = Query(False, alias="includeResolved"),
    db: AsyncSession = Depends(get_db),
    _admin: Principal = Depends(require_admin),
) -> OrderListResponse:
    """Open disputes, oldest first. Resolved ones on request."""
    ledger = OrderLedger(db)
    orders = await ledger.list_disputes(include_resolved=include_resolved)
    return OrderListResponse(
        orders=[order_to_response(order) for order in orders],
        total=len(orders),
    )


@router.put("/disputes/{order_id}/resolve", response_model=OrderResponse)
async def resolve_dispute(
    order_id: str,
    request: ResolveDisputeRequest,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
    notifier: Notifier = Depends(get_event_notifier),
) -> OrderResponse:
    """Close a dispute with a refund or uphold verdict."""
    sweeper = ExpirySweeper(db, notifier=notifier)
    try:
        order = await sweeper.resolve_dispute(order_id, request.verdict)
    except OrderNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found",
        ) from exc
    except InvalidStateError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Order is {exc.current}, not disputed",
        ) from exc
    except DataIntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    logger.info(
        "admin_dispute_resolved",
        order_code=order.order_code,
        verdict=request.verdict.value,
        admin=admin.subject,
    )
    return order_to_response(order)


@router.post("/orders/{order_id}/refund", response_model=OrderResponse)
async def refund_order(
    order_id: str,
    request: AdminRefundRequest,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
    notifier: Notifier = Depends(get_event_notifier),
) -> OrderResponse:
    """Refund a completed order directly, reversing balances and releasing its key."""
    ledger = OrderLedger(db, notifier=notifier)
    try:
        order = await ledger.refund(order_id, request.reason)
    except OrderNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found",
        ) from exc
    except InvalidStateError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot refund an order that is {exc.current}",
        ) from exc
    except DataIntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    logger.info("admin_order_refunded", order_code=order.order_code, admin=admin.subject)
    return order_to_response(order)


# ============================================================================
# Inventory
# ============================================================================


@router.post("/products/{product_id}/keys", response_model=BulkAddKeysResponse)
async def add_keys(
    product_id: UUID,
    request: BulkAddKeysRequest,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
) -> BulkAddKeysResponse:
    """Import license keys. Duplicates and malformed codes are counted, not fatal."""
    allocator = InventoryAllocator(db)
    try:
        result = await allocator.bulk_add(product_id, request.codes, expires_at=request.expires_at)
    except ProductNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Product not found",
        ) from exc

    logger.info(
        "admin_keys_imported",
        product_id=str(product_id),
        added=result.added,
        admin=admin.subject,
    )
    return BulkAddKeysResponse(
        added=result.added,
        duplicates=result.duplicates,
        invalid=result.invalid,
    )


@router.get("/products/{product_id}/stock", response_model=StockResponse)
async def get_stock(
    product_id: UUID,
    db: AsyncSession = Depends(get_db),
    _admin: Principal = Depends(require_admin),
) -> StockResponse:
    """Count of assignable keys."""
    allocator = InventoryAllocator(db)
    available = await allocator.stock_count(product_id)
    return StockResponse(product_id=product_id, available=available)


# ============================================================================
# Housekeeping
# ============================================================================


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
    notifier: Notifier = Depends(get_event_notifier),
) -> SweepResponse:
    """Run one sweeper pass now instead of waiting for the scheduler."""
    report = await ExpirySweeper(db, notifier=notifier).run_once()
    logger.info("admin_sweep_triggered", admin=admin.subject)
    return SweepResponse(
        expired_orders=report.expired_orders,
        deactivated_keys=report.deactivated_keys,
        settled_orders=len(report.settled_orders),
    )
