"""
Order Ledger - Authoritative record of every purchase attempt.

NO DICTIONARIES - All operations use strongly typed domain models.

Every transition runs as lock-on-load plus a compare-and-swap UPDATE
guarded by the order's status and version. Seller, buyer and product
counters move only through paired SQL-side increments/decrements.
"""

import re
import uuid
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from keymarket.config import settings
from keymarket.db.models import Buyer, Order, Product, Seller, as_utc
from keymarket.exceptions import (
    AuthorizationError,
    DataIntegrityError,
    InvalidStateError,
    OrderNotFoundError,
    OrderValidationError,
    OutOfStockError,
    ProductNotFoundError,
    ProductUnavailableError,
    RefundWindowExpiredError,
    WriteVerificationError,
)
from keymarket.models.api import (
    ApprovalStatus,
    DisputeVerdict,
    OrderStatus,
    PaymentStatus,
    ProductStatus,
)
from keymarket.models.domain import (
    AssignedKey,
    OrderAmounts,
    OrderData,
    OrderEvent,
    OrderEventType,
    OrderPage,
    ProductSnapshot,
)
from keymarket.observability.metrics import metrics
from keymarket.services.inventory import InventoryAllocator
from keymarket.services.notifier import Notifier, get_notifier

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MONEY_QUANTUM = Decimal("0.00000001")
ORDER_CODE_PREFIX = "ORD-"
REVIEW_PAID_BUT_UNFULFILLABLE = "paid_but_unfulfillable"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _new_order_code() -> str:
    return ORDER_CODE_PREFIX + uuid.uuid4().hex[:8].upper()


def compute_amounts(unit_price: Decimal, quantity: int, commission_rate: Decimal) -> OrderAmounts:
    """
    Split an order total into platform commission and seller earnings.

    Commission is rounded half-up to 8 places; earnings take the remainder
    so the two always sum to the total exactly.
    """
    total = unit_price * quantity
    commission = (total * commission_rate).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
    return OrderAmounts(
        quantity=quantity,
        unit_price=unit_price,
        total=total,
        commission_rate=commission_rate,
        commission=commission,
        seller_earnings=total - commission,
    )


def resolve_commission_rate(product: Product, seller: Seller | None) -> Decimal:
    """Product override, then seller rate, then the platform default."""
    if product.commission_rate is not None:
        return product.commission_rate
    if seller is not None and seller.commission_rate is not None:
        return seller.commission_rate
    return settings.default_commission_rate


class OrderLedger:
    """
    Service for order state transitions.

    With autocommit=False the caller owns the transaction and must call
    publish_pending() after committing (or discard_pending() after a
    rollback) so events never describe uncommitted state.
    """

    def __init__(
        self,
        session: AsyncSession,
        notifier: Notifier | None = None,
        autocommit: bool = True,
    ) -> None:
        """Initialize with database session."""
        self.session = session
        self.notifier = notifier or get_notifier()
        self.autocommit = autocommit
        self.allocator = InventoryAllocator(session, autocommit=False)
        self._outbox: list[OrderEvent] = []

    # ========================================================================
    # Creation
    # ========================================================================

    async def create(
        self,
        product_id: UUID,
        buyer_email: str,
        buyer_id: UUID | None = None,
        quantity: int = 1,
    ) -> OrderData:
        """
        Create a pending order with a frozen product snapshot and money split.

        Raises:
            OrderValidationError: Malformed email or quantity
            ProductNotFoundError: Product missing or inactive
            ProductUnavailableError: Product not approved, frozen or discontinued
            OutOfStockError: No key available at intake time
        """
        email = buyer_email.strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise OrderValidationError("email", "Please provide a valid email address")
        if quantity < 1:
            raise OrderValidationError("quantity", "Quantity must be at least 1")

        product = await self.session.get(Product, product_id)
        if product is None or not product.is_active:
            raise ProductNotFoundError(product_id)

        if product.approval_status != ApprovalStatus.APPROVED:
            raise ProductUnavailableError(product_id, "not approved")
        if product.is_frozen:
            raise ProductUnavailableError(product_id, "frozen")
        if product.status == ProductStatus.DISCONTINUED:
            raise ProductUnavailableError(product_id, "discontinued")

        if not await self.allocator.reserve_check(product_id):
            raise OutOfStockError(product_id)

        seller = await self.session.get(Seller, product.seller_id)
        snapshot = ProductSnapshot(
            product_id=product.id,
            seller_id=product.seller_id,
            name=product.name,
            price=product.price,
            duration=product.duration,
            instruction_url=product.instruction_url,
            support_contact=product.support_contact,
        )
        amounts = compute_amounts(snapshot.price, quantity, resolve_commission_rate(product, seller))

        if buyer_id is not None:
            await self._ensure_buyer(buyer_id, email)

        order_code = _new_order_code()
        while await self._find_by_code(order_code) is not None:
            order_code = _new_order_code()

        now = _utc_now()
        order = Order(
            order_code=order_code,
            buyer_id=buyer_id,
            buyer_email=email,
            seller_id=snapshot.seller_id,
            product_id=snapshot.product_id,
            product_name=snapshot.name,
            product_price=snapshot.price,
            product_duration=snapshot.duration,
            product_instruction_url=snapshot.instruction_url,
            product_support_contact=snapshot.support_contact,
            quantity=amounts.quantity,
            total=amounts.total,
            commission_rate=amounts.commission_rate,
            commission=amounts.commission,
            seller_earnings=amounts.seller_earnings,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            payment_expires_at=now + timedelta(minutes=settings.payment_window_minutes),
            created_at=now,
            updated_at=now,
        )
        self.session.add(order)
        await self.session.flush()

        verified = await self.session.get(Order, order.id)
        if verified is None:
            raise WriteVerificationError(f"Order {order_code} not found after insert")

        await self._commit()
        metrics.orders_created_total.inc()
        logger.info(
            "order_created",
            order_code=order_code,
            product_id=str(product_id),
            seller_id=str(snapshot.seller_id),
            total=str(amounts.total),
            commission=str(amounts.commission),
            seller_earnings=str(amounts.seller_earnings),
        )

        data = self._order_to_domain(verified)
        await self._emit(self._event(OrderEventType.ORDER_CREATED, data))
        return data

    # ========================================================================
    # Lookups
    # ========================================================================

    async def get(self, reference: str) -> OrderData:
        """
        Get an order by code (ORD-XXXXXXXX) or UUID.

        Raises:
            OrderNotFoundError: No such order
        """
        return self._order_to_domain(await self._load(reference))

    async def find_by_payment_address(self, address: str) -> OrderData | None:
        """Order that owns a payment address, in any state."""
        result = await self.session.execute(
            select(Order)
            .where(Order.payment_address == address)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        return self._order_to_domain(order) if order else None

    async def list_disputes(self, include_resolved: bool = False) -> list[OrderData]:
        """Orders currently disputed (optionally every order that ever was)."""
        stmt = select(Order).order_by(Order.dispute_opened_at)
        if include_resolved:
            stmt = stmt.where(Order.dispute_opened_at.is_not(None))
        else:
            stmt = stmt.where(Order.status == OrderStatus.DISPUTED)
        result = await self.session.execute(stmt)
        return [self._order_to_domain(o) for o in result.scalars().all()]

    async def list_for_buyer(
        self,
        buyer_id: UUID,
        status: OrderStatus | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> OrderPage:
        """A buyer's purchase history, newest first."""
        return await self._page([Order.buyer_id == buyer_id], status, page, limit)

    async def list_for_seller(
        self,
        seller_id: UUID,
        status: OrderStatus | None = None,
        product_id: UUID | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> OrderPage:
        """A seller's sales, newest first, optionally narrowed to one product."""
        conditions = [Order.seller_id == seller_id]
        if product_id is not None:
            conditions.append(Order.product_id == product_id)
        return await self._page(conditions, status, page, limit)

    async def _page(
        self, conditions: list, status: OrderStatus | None, page: int, limit: int
    ) -> OrderPage:
        if page < 1:
            raise OrderValidationError("page", "Page must be at least 1")
        if limit < 1:
            raise OrderValidationError("limit", "Limit must be at least 1")
        if status is not None:
            conditions = [*conditions, Order.status == status]

        total = await self.session.scalar(select(func.count(Order.id)).where(*conditions))
        result = await self.session.execute(
            select(Order)
            .where(*conditions)
            .order_by(Order.created_at.desc(), Order.order_code)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return OrderPage(
            orders=[self._order_to_domain(o) for o in result.scalars().all()],
            total=int(total or 0),
            page=page,
            limit=limit,
        )

    # ========================================================================
    # Payment sub-record
    # ========================================================================

    async def attach_payment_address(
        self, order_id: UUID, address: str, amount: Decimal, currency: str
    ) -> OrderData:
        """
        Store the payment address exactly once.

        Returns the stored sub-record; if another caller attached an
        address first, theirs is returned unchanged.
        """
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.payment_address.is_(None))
            .values(
                payment_address=address,
                payment_amount=amount,
                payment_currency=currency,
                updated_at=_utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self._commit()

        order = await self._load_by_id(order_id)
        await self.session.refresh(order)
        if result.rowcount == 0:
            logger.info(
                "payment_address_already_attached",
                order_code=order.order_code,
                address=order.payment_address,
            )
        return self._order_to_domain(order)

    # ========================================================================
    # Transitions
    # ========================================================================

    async def complete(
        self,
        reference: str,
        key: AssignedKey,
        transaction_id: str,
        confirmations: int | None = None,
    ) -> OrderData:
        """
        pending -> completed, applying every side effect exactly once.

        Idempotent: an already-completed order is returned unchanged.

        Raises:
            OrderNotFoundError: No such order
            InvalidStateError: Order is neither pending nor completed
        """
        order = await self._load(reference, lock=True)

        if order.status == OrderStatus.COMPLETED:
            logger.info(
                "order_complete_idempotent",
                order_code=order.order_code,
                transaction_id=transaction_id,
                stored_transaction_id=order.transaction_id,
            )
            return self._order_to_domain(order)

        if order.status != OrderStatus.PENDING:
            raise InvalidStateError(order.order_code, order.status.value, "complete")

        now = _utc_now()
        swapped = await self._swap(
            order,
            OrderStatus.PENDING,
            status=OrderStatus.COMPLETED,
            payment_status=PaymentStatus.PAID,
            transaction_id=transaction_id,
            confirmations=confirmations,
            paid_at=now,
            license_key_id=key.key_id,
            license_code=key.code,
            delivered_at=now,
        )
        if not swapped:
            if order.status == OrderStatus.COMPLETED:
                logger.info("order_complete_idempotent", order_code=order.order_code)
                return self._order_to_domain(order)
            raise InvalidStateError(order.order_code, order.status.value, "complete")

        await self._credit(order)
        await self._commit()
        await self.session.refresh(order)

        metrics.orders_completed_total.inc()
        metrics.order_total_amount.observe(float(order.total))
        logger.info(
            "order_completed",
            order_code=order.order_code,
            transaction_id=transaction_id,
            license_key_id=str(key.key_id),
            seller_earnings=str(order.seller_earnings),
        )

        data = self._order_to_domain(order)
        await self._emit(self._event(OrderEventType.ORDER_COMPLETED, data, license_code=key.code))
        await self._emit(self._event(OrderEventType.NEW_SALE, data))
        return data

    async def fail_unfulfillable(
        self, reference: str, transaction_id: str, confirmations: int | None = None
    ) -> OrderData:
        """
        pending -> failed for an order that was paid but has no key to deliver.

        The order is flagged for operator review; nothing is credited.

        Raises:
            InvalidStateError: Order is not pending
        """
        order = await self._load(reference, lock=True)
        if order.status != OrderStatus.PENDING:
            raise InvalidStateError(order.order_code, order.status.value, "fail")

        now = _utc_now()
        swapped = await self._swap(
            order,
            OrderStatus.PENDING,
            status=OrderStatus.FAILED,
            payment_status=PaymentStatus.PAID,
            transaction_id=transaction_id,
            confirmations=confirmations,
            paid_at=now,
            requires_review=True,
            review_reason=REVIEW_PAID_BUT_UNFULFILLABLE,
        )
        if not swapped:
            raise InvalidStateError(order.order_code, order.status.value, "fail")

        await self._commit()
        await self.session.refresh(order)

        data = self._order_to_domain(order)
        await self._emit(
            self._event(
                OrderEventType.PAYMENT_FULFILLMENT_FAILED,
                data,
                detail=f"transaction {transaction_id} received but no license key available",
            )
        )
        return data

    async def refund(self, reference: str, reason: str) -> OrderData:
        """
        completed -> refunded, reversing every effect of complete().

        Raises:
            InvalidStateError: Order is not completed
        """
        order = await self._load(reference, lock=True)
        if order.status != OrderStatus.COMPLETED:
            raise InvalidStateError(order.order_code, order.status.value, "refund")
        return await self._refund(order, OrderStatus.COMPLETED, reason)

    async def open_dispute(self, reference: str, reason: str) -> OrderData:
        """
        completed -> disputed.

        Raises:
            InvalidStateError: Order is not completed
        """
        order = await self._load(reference, lock=True)
        if order.status != OrderStatus.COMPLETED:
            raise InvalidStateError(order.order_code, order.status.value, "open dispute")

        swapped = await self._swap(
            order,
            OrderStatus.COMPLETED,
            status=OrderStatus.DISPUTED,
            is_disputed=True,
            dispute_reason=reason,
            dispute_opened_at=_utc_now(),
            dispute_resolved_at=None,
            dispute_resolution=None,
        )
        if not swapped:
            raise InvalidStateError(order.order_code, order.status.value, "open dispute")

        await self._commit()
        await self.session.refresh(order)

        metrics.disputes_opened_total.inc()
        logger.info("dispute_opened", order_code=order.order_code, reason=reason)

        data = self._order_to_domain(order)
        await self._emit(self._event(OrderEventType.DISPUTE_OPENED, data, detail=reason))
        return data

    async def request_refund(
        self, reference: str, reason: str, buyer_id: UUID | None, now: datetime | None = None
    ) -> OrderData:
        """
        Buyer-initiated refund request: opens a dispute for admin review.

        Only the purchasing buyer may ask, and only within the refund
        window after delivery.

        Raises:
            AuthorizationError: Caller is not the order's buyer
            InvalidStateError: Order is not completed
            RefundWindowExpiredError: Delivery was too long ago
        """
        order = await self._load(reference)
        if buyer_id is None or order.buyer_id != buyer_id:
            raise AuthorizationError("order buyer")
        if order.status != OrderStatus.COMPLETED:
            raise InvalidStateError(order.order_code, order.status.value, "request refund")

        now = now or _utc_now()
        delivered_at = as_utc(order.delivered_at)
        window = timedelta(hours=settings.refund_window_hours)
        if delivered_at is None or now - delivered_at > window:
            raise RefundWindowExpiredError(order.order_code, settings.refund_window_hours)

        return await self.open_dispute(reference, reason)

    async def resolve_dispute(self, reference: str, verdict: DisputeVerdict) -> OrderData:
        """
        Close an open dispute.

        REFUND routes through the refund path; UPHOLD returns the order to
        completed. Either way the resolution is recorded.

        Raises:
            InvalidStateError: Order is not disputed
        """
        order = await self._load(reference, lock=True)
        if order.status != OrderStatus.DISPUTED:
            raise InvalidStateError(order.order_code, order.status.value, "resolve dispute")

        now = _utc_now()
        if verdict == DisputeVerdict.REFUND:
            data = await self._refund(
                order,
                OrderStatus.DISPUTED,
                order.dispute_reason or "dispute resolved with refund",
                is_disputed=False,
                dispute_resolved_at=now,
                dispute_resolution=verdict.value,
            )
        else:
            swapped = await self._swap(
                order,
                OrderStatus.DISPUTED,
                status=OrderStatus.COMPLETED,
                is_disputed=False,
                dispute_resolved_at=now,
                dispute_resolution=verdict.value,
            )
            if not swapped:
                raise InvalidStateError(order.order_code, order.status.value, "resolve dispute")
            await self._commit()
            await self.session.refresh(order)
            data = self._order_to_domain(order)

        metrics.disputes_resolved_total.labels(verdict=verdict.value).inc()
        logger.info("dispute_resolved", order_code=data.order_code, verdict=verdict.value)
        await self._emit(self._event(OrderEventType.DISPUTE_RESOLVED, data, detail=verdict.value))
        return data

    async def expire_pending(self, as_of: datetime) -> list[str]:
        """
        Fail every pending, unpaid order whose payment window closed by `as_of`.

        Pure state change: nothing was allocated or credited for these
        orders. Returns the expired order codes.
        """
        candidates = await self.session.execute(
            select(Order.id, Order.order_code).where(
                Order.status == OrderStatus.PENDING,
                Order.payment_status == PaymentStatus.PENDING,
                Order.payment_expires_at <= as_of,
            )
        )
        rows = candidates.all()
        if not rows:
            return []

        stmt = (
            update(Order)
            .where(
                Order.id.in_([row.id for row in rows]),
                Order.status == OrderStatus.PENDING,
                Order.payment_status == PaymentStatus.PENDING,
            )
            .values(
                status=OrderStatus.FAILED,
                payment_status=PaymentStatus.EXPIRED,
                version=Order.version + 1,
                updated_at=_utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self._commit()

        codes = [row.order_code for row in rows]
        count = result.rowcount or 0
        metrics.orders_expired_total.inc(count)
        logger.info("pending_orders_expired", count=count, as_of=as_of.isoformat())
        return codes if count == len(rows) else await self._codes_in_state(codes, PaymentStatus.EXPIRED)

    async def expire_if_overdue(self, reference: str, now: datetime | None = None) -> OrderData:
        """Lazy expiry on read: expire this order if its window has closed."""
        order = await self._load(reference)
        now = now or _utc_now()
        expires_at = as_utc(order.payment_expires_at)

        if (
            order.status == OrderStatus.PENDING
            and order.payment_status == PaymentStatus.PENDING
            and expires_at is not None
            and expires_at <= now
        ):
            swapped = await self._swap(
                order,
                OrderStatus.PENDING,
                status=OrderStatus.FAILED,
                payment_status=PaymentStatus.EXPIRED,
            )
            if swapped:
                await self._commit()
                await self.session.refresh(order)
                metrics.orders_expired_total.inc()
                logger.info("order_expired_on_read", order_code=order.order_code)

        return self._order_to_domain(order)

    async def mark_settled(self, delivered_before: datetime) -> list[OrderData]:
        """
        Stamp completed, undisputed orders whose dispute window has closed.

        Each order is settled at most once.
        """
        result = await self.session.execute(
            select(Order).where(
                Order.status == OrderStatus.COMPLETED,
                Order.is_disputed.is_(False),
                Order.settled_at.is_(None),
                Order.delivered_at <= delivered_before,
            )
        )
        settled: list[OrderData] = []
        now = _utc_now()
        for order in result.scalars().all():
            stmt = (
                update(Order)
                .where(
                    Order.id == order.id,
                    Order.status == OrderStatus.COMPLETED,
                    Order.settled_at.is_(None),
                )
                .values(settled_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            swapped = await self.session.execute(stmt)
            if swapped.rowcount == 1:
                settled.append(order)
        await self._commit()

        data: list[OrderData] = []
        for order in settled:
            await self.session.refresh(order)
            item = self._order_to_domain(order)
            data.append(item)
            await self._emit(self._event(OrderEventType.ORDER_SETTLED, item))
        if data:
            metrics.orders_settled_total.inc(len(data))
            logger.info("orders_settled", count=len(data))
        return data

    # ========================================================================
    # Outbox
    # ========================================================================

    async def publish_pending(self) -> None:
        """Publish events queued while the caller owned the transaction."""
        events, self._outbox = self._outbox, []
        for event in events:
            await self.notifier.publish(event)

    def discard_pending(self) -> None:
        """Drop queued events after a rollback."""
        self._outbox = []

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _refund(
        self, order: Order, expected: OrderStatus, reason: str, **extra: object
    ) -> OrderData:
        """Reverse complete(): release the key, debit counters, mark refunded."""
        swapped = await self._swap(
            order,
            expected,
            status=OrderStatus.REFUNDED,
            payment_status=PaymentStatus.REFUNDED,
            refunded_at=_utc_now(),
            refund_reason=reason,
            **extra,
        )
        if not swapped:
            raise InvalidStateError(order.order_code, order.status.value, "refund")

        await self._debit(order)
        if order.license_key_id is not None:
            await self.allocator.release(order.license_key_id)

        await self._commit()
        await self.session.refresh(order)

        metrics.order_refunds_total.inc()
        logger.info(
            "order_refunded",
            order_code=order.order_code,
            reason=reason,
            seller_earnings=str(order.seller_earnings),
        )

        data = self._order_to_domain(order)
        await self._emit(self._event(OrderEventType.ORDER_REFUNDED, data, detail=reason))
        return data

    async def _swap(self, order: Order, expected: OrderStatus, **values: object) -> bool:
        """
        Compare-and-swap the order row from `expected`.

        On success the ORM object is refreshed; on failure it is reloaded so
        the caller can inspect the state that won.
        """
        stmt = (
            update(Order)
            .where(
                Order.id == order.id,
                Order.status == expected,
                Order.version == order.version,
            )
            .values(version=Order.version + 1, updated_at=_utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.refresh(order)

        if result.rowcount != 1:
            logger.warning(
                "order_transition_conflict",
                order_code=order.order_code,
                expected=expected.value,
                current=order.status.value,
            )
            return False
        return True

    async def _credit(self, order: Order) -> None:
        """
        Paired increments applied once per completed order.

        Raises:
            DataIntegrityError: Seller row is missing
        """
        seller_result = await self.session.execute(
            update(Seller)
            .where(Seller.id == order.seller_id)
            .values(
                pending_earnings=Seller.pending_earnings + order.seller_earnings,
                total_earnings=Seller.total_earnings + order.seller_earnings,
            )
            .execution_options(synchronize_session=False)
        )
        if seller_result.rowcount != 1:
            raise DataIntegrityError(f"Seller {order.seller_id} for {order.order_code} not found")
        await self.session.execute(
            update(Product)
            .where(Product.id == order.product_id)
            .values(total_sales=Product.total_sales + order.quantity)
            .execution_options(synchronize_session=False)
        )
        if order.buyer_id is not None:
            await self._ensure_buyer(order.buyer_id, order.buyer_email)
            await self.session.execute(
                update(Buyer)
                .where(Buyer.id == order.buyer_id)
                .values(
                    total_purchases=Buyer.total_purchases + 1,
                    total_spent=Buyer.total_spent + order.total,
                )
                .execution_options(synchronize_session=False)
            )

    async def _debit(self, order: Order) -> None:
        """
        Exact reversal of _credit using the amounts stored on the order.

        Raises:
            DataIntegrityError: Seller balance would go negative
        """
        seller_result = await self.session.execute(
            update(Seller)
            .where(
                Seller.id == order.seller_id,
                Seller.pending_earnings >= order.seller_earnings,
                Seller.total_earnings >= order.seller_earnings,
            )
            .values(
                pending_earnings=Seller.pending_earnings - order.seller_earnings,
                total_earnings=Seller.total_earnings - order.seller_earnings,
            )
            .execution_options(synchronize_session=False)
        )
        if seller_result.rowcount != 1:
            logger.error(
                "seller_balance_underflow",
                order_code=order.order_code,
                seller_id=str(order.seller_id),
                seller_earnings=str(order.seller_earnings),
            )
            raise DataIntegrityError(
                f"Refund of {order.order_code} would drive seller {order.seller_id} balance negative"
            )

        product_result = await self.session.execute(
            update(Product)
            .where(Product.id == order.product_id, Product.total_sales >= order.quantity)
            .values(total_sales=Product.total_sales - order.quantity)
            .execution_options(synchronize_session=False)
        )
        if product_result.rowcount != 1:
            logger.warning("product_sales_counter_skipped", order_code=order.order_code)

        if order.buyer_id is not None:
            buyer_result = await self.session.execute(
                update(Buyer)
                .where(
                    Buyer.id == order.buyer_id,
                    Buyer.total_purchases >= 1,
                    Buyer.total_spent >= order.total,
                )
                .values(
                    total_purchases=Buyer.total_purchases - 1,
                    total_spent=Buyer.total_spent - order.total,
                )
                .execution_options(synchronize_session=False)
            )
            if buyer_result.rowcount != 1:
                logger.warning("buyer_counter_skipped", order_code=order.order_code)

    async def _ensure_buyer(self, buyer_id: UUID, email: str) -> None:
        """Create the buyer row on first purchase."""
        if await self.session.get(Buyer, buyer_id) is None:
            self.session.add(Buyer(id=buyer_id, email=email))
            await self.session.flush()

    async def _load(self, reference: str, lock: bool = False) -> Order:
        """
        Load an order by code or UUID.

        Raises:
            OrderNotFoundError: No such order
        """
        # Always overwrite the identity map; state checks must see the latest row
        stmt = select(Order).execution_options(populate_existing=True)
        try:
            stmt = stmt.where(Order.id == UUID(reference))
        except ValueError:
            stmt = stmt.where(Order.order_code == reference.upper())
        if lock:
            stmt = stmt.with_for_update()

        result = await self.session.execute(stmt)
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(reference)
        return order

    async def _load_by_id(self, order_id: UUID) -> Order:
        return await self._load(str(order_id))

    async def _find_by_code(self, order_code: str) -> Order | None:
        result = await self.session.execute(select(Order).where(Order.order_code == order_code))
        return result.scalar_one_or_none()

    async def _codes_in_state(self, codes: list[str], payment_status: PaymentStatus) -> list[str]:
        result = await self.session.execute(
            select(Order.order_code).where(
                Order.order_code.in_(codes), Order.payment_status == payment_status
            )
        )
        return list(result.scalars().all())

    async def _commit(self) -> None:
        if self.autocommit:
            await self.session.commit()

    async def _emit(self, event: OrderEvent) -> None:
        if self.autocommit:
            await self.notifier.publish(event)
        else:
            self._outbox.append(event)

    def _event(
        self,
        event_type: OrderEventType,
        data: OrderData,
        license_code: str | None = None,
        detail: str | None = None,
    ) -> OrderEvent:
        return OrderEvent(
            event_type=event_type,
            order_code=data.order_code,
            seller_id=data.seller_id,
            buyer_id=data.buyer_id,
            buyer_email=data.buyer_email,
            amount=data.amounts.total,
            license_code=license_code,
            detail=detail,
        )

    def _order_to_domain(self, order: Order) -> OrderData:
        """Convert ORM order to domain model."""
        return OrderData(
            order_id=order.id,
            order_code=order.order_code,
            status=OrderStatus(order.status),
            payment_status=PaymentStatus(order.payment_status),
            buyer_id=order.buyer_id,
            buyer_email=order.buyer_email,
            seller_id=order.seller_id,
            product=ProductSnapshot(
                product_id=order.product_id,
                seller_id=order.seller_id,
                name=order.product_name,
                price=order.product_price,
                duration=order.product_duration,
                instruction_url=order.product_instruction_url,
                support_contact=order.product_support_contact,
            ),
            amounts=OrderAmounts(
                quantity=order.quantity,
                unit_price=order.product_price,
                total=order.total,
                commission_rate=order.commission_rate,
                commission=order.commission,
                seller_earnings=order.seller_earnings,
            ),
            payment_address=order.payment_address,
            payment_amount=order.payment_amount,
            payment_currency=order.payment_currency,
            payment_expires_at=as_utc(order.payment_expires_at),
            transaction_id=order.transaction_id,
            confirmations=order.confirmations,
            paid_at=as_utc(order.paid_at),
            license_key_id=order.license_key_id,
            license_code=order.license_code,
            delivered_at=as_utc(order.delivered_at),
            refunded_at=as_utc(order.refunded_at),
            refund_reason=order.refund_reason,
            is_disputed=order.is_disputed,
            dispute_reason=order.dispute_reason,
            dispute_opened_at=as_utc(order.dispute_opened_at),
            dispute_resolved_at=as_utc(order.dispute_resolved_at),
            dispute_resolution=order.dispute_resolution,
            requires_review=order.requires_review,
            review_reason=order.review_reason,
            settled_at=as_utc(order.settled_at),
            created_at=as_utc(order.created_at) or order.created_at,
            updated_at=as_utc(order.updated_at) or order.updated_at,
        )
