"""
Expiry & Dispute Sweeper - Periodic housekeeping over the ledger.

One pass expires overdue pending orders, deactivates stale keys and
settles completed orders whose dispute window closed quietly. Scheduling
is external (scripts/run_sweeper.py or POST /admin/sweep).
"""

import asyncio
import time
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from keymarket.config import settings
from keymarket.models.api import DisputeVerdict
from keymarket.models.domain import OrderData, SweepReport
from keymarket.observability.metrics import metrics
from keymarket.services.inventory import InventoryAllocator
from keymarket.services.ledger import OrderLedger
from keymarket.services.notifier import Notifier, get_notifier

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class ExpirySweeper:
    """Service running one sweep pass over a session."""

    def __init__(self, session: AsyncSession, notifier: Notifier | None = None) -> None:
        """Initialize with database session."""
        self.session = session
        self.notifier = notifier or get_notifier()
        self.ledger = OrderLedger(session, notifier=self.notifier)
        self.allocator = InventoryAllocator(session)

    async def run_once(self, now: datetime | None = None) -> SweepReport:
        """
        Run one pass. Each step commits on its own, so a failure in a later
        step never undoes an earlier one.
        """
        now = now or _utc_now()
        start_time = time.monotonic()

        expired = await self.ledger.expire_pending(now)
        deactivated = await self.allocator.expire_stale(now)
        settled = await self.ledger.mark_settled(now - timedelta(days=settings.dispute_window_days))

        report = SweepReport(
            expired_orders=len(expired),
            deactivated_keys=deactivated,
            settled_orders=tuple(order.order_code for order in settled),
        )
        duration = time.monotonic() - start_time
        metrics.sweep_duration_seconds.observe(duration)
        logger.info(
            "sweep_completed",
            expired_orders=report.expired_orders,
            deactivated_keys=report.deactivated_keys,
            settled_orders=len(report.settled_orders),
            duration_seconds=duration,
        )
        return report

    async def resolve_dispute(self, reference: str, verdict: DisputeVerdict) -> OrderData:
        """Admin-triggered dispute resolution."""
        return await self.ledger.resolve_dispute(reference, verdict)


async def run_forever(
    session_factory: Callable[[], AbstractAsyncContextManager[AsyncSession]],
    interval_seconds: float | None = None,
    stop: asyncio.Event | None = None,
) -> None:
    """
    Run sweep passes on a fixed interval until `stop` is set.

    A failed pass is logged and retried on the next tick.
    """
    interval = interval_seconds if interval_seconds is not None else settings.sweeper_interval_seconds
    stop = stop or asyncio.Event()

    logger.info("sweeper_started", interval_seconds=interval)
    while not stop.is_set():
        try:
            async with session_factory() as session:
                await ExpirySweeper(session).run_once()
        except Exception as exc:
            metrics.record_error(type(exc).__name__, "sweep")
            logger.error("sweep_failed", error=str(exc), exc_info=True)

        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("sweeper_stopped")
