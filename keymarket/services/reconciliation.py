"""
Payment Reconciliation Engine - Matches gateway payments to pending orders.

NO DICTIONARIES - Events and results are strongly typed.

handle_external_event() runs a fixed sequence of gates and stops at the
first one that fails. Business rejections come back as a typed
ReconciliationResult; only storage failures raise.
"""

import time
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from keymarket.config import settings
from keymarket.exceptions import (
    InvalidStateError,
    OrderNotFoundError,
    OutOfStockError,
    PaymentAlreadyRequestedError,
)
from keymarket.models.api import OrderStatus, PaymentStatus, ReconciliationOutcome
from keymarket.models.domain import (
    AssignedKey,
    OrderData,
    OrderEvent,
    OrderEventType,
    PaymentEvent,
    PaymentRequest,
    ReconciliationResult,
)
from keymarket.observability.metrics import metrics
from keymarket.observability.tracing import add_span_attributes, get_tracer, set_span_error
from keymarket.services.inventory import InventoryAllocator
from keymarket.services.ledger import OrderLedger
from keymarket.services.notifier import Notifier, get_notifier
from keymarket.services.payment_gateway import EventAuthenticator, PaymentGateway

logger = get_logger(__name__)
tracer = get_tracer(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class PaymentReconciliationEngine:
    """
    Service driving orders from pending to completed (or failed).

    The key assignment and the ledger completion share one transaction;
    either both commit or neither does.
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        authenticator: EventAuthenticator,
        notifier: Notifier | None = None,
    ) -> None:
        """Initialize with database session and collaborators."""
        self.session = session
        self.gateway = gateway
        self.authenticator = authenticator
        self.notifier = notifier or get_notifier()
        self.ledger = OrderLedger(session, notifier=self.notifier)

    async def request_payment(self, reference: str, amount: Decimal | None = None) -> PaymentRequest:
        """
        Issue payment instructions for an order, at most one address per order.

        A repeated call returns the stored request instead of asking the
        gateway for a second address.

        Raises:
            OrderNotFoundError: No such order
            InvalidStateError: Order is no longer pending
            PaymentAlreadyRequestedError: Repeated call with a different amount
            PaymentGatewayError: Gateway could not issue an address
        """
        order = await self.ledger.get(reference)
        amount = order.amounts.total if amount is None else amount

        if order.payment_address is not None:
            if order.payment_amount is not None and order.payment_amount != amount:
                raise PaymentAlreadyRequestedError(order.order_code, order.payment_address)
            return self._payment_request(order)

        if order.status != OrderStatus.PENDING:
            raise InvalidStateError(order.order_code, order.status.value, "request payment")

        address = await self.gateway.create_address(order.order_code)
        stored = await self.ledger.attach_payment_address(
            order.order_id, address, amount, settings.payment_currency
        )
        if stored.payment_address != address:
            logger.warning(
                "payment_request_race_lost",
                order_code=order.order_code,
                discarded_address=address,
                stored_address=stored.payment_address,
            )
        else:
            logger.info(
                "payment_requested",
                order_code=order.order_code,
                address=address,
                amount=str(amount),
            )
        return self._payment_request(stored)

    async def handle_external_event(self, event: PaymentEvent) -> ReconciliationResult:
        """
        Single entry point for gateway payment notifications.

        Gates, in order:
        1. Authenticate the source (before any lookup)
        2. Require the confirmation threshold
        3. Locate the pending order
        4. Match the amount within tolerance
        5. Reject payments after the payment window
        6. Assign a key (failing the order if none is left)
        7. Complete the order
        """
        start_time = time.monotonic()
        with tracer.start_as_current_span("reconcile_payment") as span:
            add_span_attributes(
                span,
                transaction_id=event.transaction_id,
                confirmations=event.confirmations,
                order_code=event.order_code,
            )
            try:
                result = await self._reconcile(event)
            except Exception as exc:
                set_span_error(span, exc)
                metrics.record_error(type(exc).__name__, "reconcile_payment")
                raise
            add_span_attributes(span, outcome=result.outcome.value)

        metrics.record_reconciliation(result.outcome.value, time.monotonic() - start_time)
        return result

    async def _reconcile(self, event: PaymentEvent) -> ReconciliationResult:
        # Gate 1: authentication
        if not self.authenticator.authenticate(event):
            logger.warning(
                "payment_event_authentication_failed",
                transaction_id=event.transaction_id,
            )
            return ReconciliationResult(
                ReconciliationOutcome.UNAUTHENTICATED, "Invalid event credentials"
            )

        # Gate 2: confirmations
        if event.confirmations < settings.required_confirmations:
            logger.info(
                "payment_awaiting_confirmations",
                transaction_id=event.transaction_id,
                confirmations=event.confirmations,
                required=settings.required_confirmations,
            )
            return ReconciliationResult(
                ReconciliationOutcome.PENDING_CONFIRMATIONS,
                f"Waiting for {settings.required_confirmations} confirmations "
                f"({event.confirmations} so far)",
                event.order_code,
            )

        # Gate 3: locate
        order = await self._locate(event)
        if order is None:
            logger.warning(
                "payment_event_order_not_found",
                transaction_id=event.transaction_id,
                address=event.address,
                order_code=event.order_code,
            )
            return ReconciliationResult(ReconciliationOutcome.ORDER_NOT_FOUND, "Order not found")

        if order.status != OrderStatus.PENDING or order.payment_status != PaymentStatus.PENDING:
            return self._not_pending(order, event)

        # Gate 4: amount
        expected = order.payment_amount if order.payment_amount is not None else order.amounts.total
        if abs(event.amount - expected) > settings.amount_tolerance:
            return await self._amount_mismatch(order, event, expected)

        # Gate 5: expiry
        if order.payment_expires_at is not None and order.payment_expires_at <= _utc_now():
            logger.info(
                "payment_after_expiry",
                order_code=order.order_code,
                transaction_id=event.transaction_id,
                expired_at=order.payment_expires_at.isoformat(),
            )
            return ReconciliationResult(
                ReconciliationOutcome.EXPIRED, "Payment window has expired", order.order_code
            )

        # Gates 6 + 7: assign and complete in one transaction
        allocator = InventoryAllocator(self.session, autocommit=False)
        ledger = OrderLedger(self.session, notifier=self.notifier, autocommit=False)
        try:
            try:
                key = await allocator.assign(
                    order.product.product_id, order.order_id, order.buyer_id
                )
            except OutOfStockError:
                return await self._fulfillment_failed(order, event, ledger)
            return await self._complete(order, event, key, ledger)
        except Exception:
            await self.session.rollback()
            ledger.discard_pending()
            raise

    async def _locate(self, event: PaymentEvent) -> OrderData | None:
        if event.order_code is not None:
            try:
                return await self.ledger.get(event.order_code)
            except OrderNotFoundError:
                return None
        if event.address is None:
            return None
        return await self.ledger.find_by_payment_address(event.address)

    def _not_pending(self, order: OrderData, event: PaymentEvent) -> ReconciliationResult:
        if order.transaction_id == event.transaction_id:
            logger.info(
                "payment_event_duplicate",
                order_code=order.order_code,
                transaction_id=event.transaction_id,
                status=order.status.value,
            )
            return ReconciliationResult(
                ReconciliationOutcome.DUPLICATE, "Payment already processed", order.order_code
            )

        logger.warning(
            "payment_for_non_pending_order",
            order_code=order.order_code,
            transaction_id=event.transaction_id,
            status=order.status.value,
            payment_status=order.payment_status.value,
        )
        return ReconciliationResult(
            ReconciliationOutcome.ORDER_NOT_FOUND, "No pending order for this payment"
        )

    async def _amount_mismatch(
        self, order: OrderData, event: PaymentEvent, expected: Decimal
    ) -> ReconciliationResult:
        """Flag for manual reconciliation; the order stays pending."""
        metrics.amount_mismatches_total.inc()
        logger.warning(
            "payment_amount_mismatch",
            order_code=order.order_code,
            transaction_id=event.transaction_id,
            expected=str(expected),
            received=str(event.amount),
        )
        await self.notifier.publish(
            OrderEvent(
                event_type=OrderEventType.PAYMENT_AMOUNT_MISMATCH,
                order_code=order.order_code,
                seller_id=order.seller_id,
                buyer_id=order.buyer_id,
                buyer_email=order.buyer_email,
                amount=event.amount,
                detail=f"expected {expected}, received {event.amount} in {event.transaction_id}",
            )
        )
        return ReconciliationResult(
            ReconciliationOutcome.AMOUNT_MISMATCH,
            f"Payment amount mismatch: expected {expected}, received {event.amount}",
            order.order_code,
        )

    async def _fulfillment_failed(
        self, order: OrderData, event: PaymentEvent, ledger: OrderLedger
    ) -> ReconciliationResult:
        """Money arrived but no key is left: fail the order and raise the alarm."""
        try:
            failed = await ledger.fail_unfulfillable(
                order.order_code, event.transaction_id, event.confirmations
            )
        except InvalidStateError:
            # Another delivery moved the order on while we looked for a key
            await self.session.rollback()
            ledger.discard_pending()
            return self._not_pending(await self.ledger.get(order.order_code), event)

        await self.session.commit()
        await ledger.publish_pending()

        metrics.fulfillment_failures_total.inc()
        logger.error(
            "payment_received_fulfillment_failed",
            order_code=failed.order_code,
            product_id=str(failed.product.product_id),
            transaction_id=event.transaction_id,
            amount=str(event.amount),
        )
        return ReconciliationResult(
            ReconciliationOutcome.FULFILLMENT_FAILED,
            "Payment received, fulfillment failed: no license key available",
            failed.order_code,
        )

    async def _complete(
        self, order: OrderData, event: PaymentEvent, key: AssignedKey, ledger: OrderLedger
    ) -> ReconciliationResult:
        try:
            completed = await ledger.complete(
                order.order_code, key, event.transaction_id, event.confirmations
            )
        except InvalidStateError:
            await self.session.rollback()
            ledger.discard_pending()
            return self._not_pending(await self.ledger.get(order.order_code), event)

        if completed.license_key_id != key.key_id:
            # A concurrent delivery completed the order first; give our key back
            await self.session.rollback()
            ledger.discard_pending()
            return self._not_pending(completed, event)

        await self.session.commit()
        await ledger.publish_pending()

        logger.info(
            "payment_reconciled",
            order_code=completed.order_code,
            transaction_id=event.transaction_id,
            confirmations=event.confirmations,
        )
        return ReconciliationResult(
            ReconciliationOutcome.COMPLETED, "Payment confirmed, key delivered", completed.order_code
        )

    def _payment_request(self, order: OrderData) -> PaymentRequest:
        if order.payment_address is None or order.payment_expires_at is None:
            raise InvalidStateError(order.order_code, order.status.value, "read payment request")
        return PaymentRequest(
            address=order.payment_address,
            amount=order.payment_amount if order.payment_amount is not None else order.amounts.total,
            currency=order.payment_currency or settings.payment_currency,
            expires_at=order.payment_expires_at,
        )
