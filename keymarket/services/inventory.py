"""
Inventory Allocator - Owns the pool of license keys per product.

Guarantees at-most-once assignment: selection and mark-used are a single
compare-and-swap UPDATE, so two concurrent callers can never claim the
same key.
"""

import re
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import ColumnElement, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from keymarket.config import settings
from keymarket.db.models import LicenseKey, Product
from keymarket.exceptions import (
    LicenseKeyNotFoundError,
    OutOfStockError,
    ProductNotFoundError,
    WriteVerificationError,
)
from keymarket.models.domain import AssignedKey, BulkAddResult
from keymarket.observability.metrics import metrics

logger = get_logger(__name__)

KEY_CODE_PATTERN = re.compile(r"^[A-Za-z0-9-]+$")


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _available(product_id: UUID, now: datetime) -> tuple[ColumnElement[bool], ...]:
    """WHERE clause for keys that can be handed out right now."""
    return (
        LicenseKey.product_id == product_id,
        LicenseKey.is_used.is_(False),
        LicenseKey.is_active.is_(True),
        or_(LicenseKey.expires_at.is_(None), LicenseKey.expires_at > now),
    )


class InventoryAllocator:
    """
    Service for license key allocation.

    With autocommit=False the caller owns the transaction; the
    reconciliation engine uses this to make assign + complete atomic.
    """

    def __init__(self, session: AsyncSession, autocommit: bool = True) -> None:
        """Initialize with database session."""
        self.session = session
        self.autocommit = autocommit

    async def reserve_check(self, product_id: UUID) -> bool:
        """
        Fast read-only pre-check: is at least one key available?

        Does not hold anything; assign() may still fail with OutOfStockError.
        """
        stmt = select(LicenseKey.id).where(*_available(product_id, _utc_now())).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def stock_count(self, product_id: UUID) -> int:
        """Number of keys currently available for a product."""
        stmt = select(func.count(LicenseKey.id)).where(*_available(product_id, _utc_now()))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def assign(self, product_id: UUID, order_id: UUID, buyer_id: UUID | None) -> AssignedKey:
        """
        Atomically claim one available key for an order.

        Candidate selection skips rows locked by concurrent callers; the
        claim itself only succeeds if the key is still unused. A lost race
        moves on to the next candidate.

        Raises:
            OutOfStockError: No key available at the moment of the attempt
        """
        for attempt in range(1, settings.assign_max_attempts + 1):
            now = _utc_now()
            candidate_stmt = (
                select(LicenseKey.id, LicenseKey.code)
                .where(*_available(product_id, now))
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            candidate = (await self.session.execute(candidate_stmt)).first()

            if candidate is None:
                metrics.out_of_stock_total.inc()
                logger.warning(
                    "key_assignment_out_of_stock",
                    product_id=str(product_id),
                    order_id=str(order_id),
                    attempt=attempt,
                )
                raise OutOfStockError(product_id)

            claim = (
                update(LicenseKey)
                .where(
                    LicenseKey.id == candidate.id,
                    LicenseKey.is_used.is_(False),
                    LicenseKey.is_active.is_(True),
                )
                .values(
                    is_used=True,
                    order_id=order_id,
                    used_by=buyer_id,
                    used_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(claim)

            if result.rowcount == 1:
                if self.autocommit:
                    await self.session.commit()
                metrics.keys_assigned_total.inc()
                logger.info(
                    "key_assigned",
                    product_id=str(product_id),
                    order_id=str(order_id),
                    key_id=str(candidate.id),
                    attempt=attempt,
                )
                return AssignedKey(key_id=candidate.id, product_id=product_id, code=candidate.code)

            logger.debug(
                "key_assignment_lost_race",
                product_id=str(product_id),
                key_id=str(candidate.id),
                attempt=attempt,
            )

        metrics.out_of_stock_total.inc()
        logger.warning(
            "key_assignment_contention_exhausted",
            product_id=str(product_id),
            order_id=str(order_id),
            attempts=settings.assign_max_attempts,
        )
        raise OutOfStockError(product_id)

    async def release(self, key_id: UUID) -> bool:
        """
        Return a used key to the available pool (refund flow only).

        Releasing an already-available key is a no-op and returns False.

        Raises:
            LicenseKeyNotFoundError: Key doesn't exist
        """
        stmt = (
            update(LicenseKey)
            .where(LicenseKey.id == key_id, LicenseKey.is_used.is_(True))
            .values(
                is_used=False,
                order_id=None,
                used_by=None,
                used_at=None,
                updated_at=_utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)

        if result.rowcount == 0:
            exists = await self.session.execute(select(LicenseKey.id).where(LicenseKey.id == key_id))
            if exists.scalar_one_or_none() is None:
                raise LicenseKeyNotFoundError(key_id)
            logger.info("key_release_noop", key_id=str(key_id))
            return False

        if self.autocommit:
            await self.session.commit()
        metrics.keys_released_total.inc()
        logger.info("key_released", key_id=str(key_id))
        return True

    async def bulk_add(
        self,
        product_id: UUID,
        codes: list[str],
        expires_at: datetime | None = None,
        notes: str | None = None,
    ) -> BulkAddResult:
        """
        Import keys for a product with partial success.

        Codes are trimmed and compared case-sensitively. Exact duplicates
        (within the batch or against stored keys) are counted and skipped
        rather than failing the batch.

        Raises:
            ProductNotFoundError: Product doesn't exist
        """
        product = await self.session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)

        invalid = 0
        duplicates = 0
        unique_codes: list[str] = []
        seen: set[str] = set()
        for raw in codes:
            code = raw.strip()
            if not code or len(code) > 255 or not KEY_CODE_PATTERN.match(code):
                invalid += 1
                continue
            if code in seen:
                duplicates += 1
                continue
            seen.add(code)
            unique_codes.append(code)

        for attempt in (1, 2):
            existing = await self._existing_codes(unique_codes)
            to_insert = [c for c in unique_codes if c not in existing]

            self.session.add_all(
                [
                    LicenseKey(
                        product_id=product_id,
                        seller_id=product.seller_id,
                        code=code,
                        expires_at=expires_at,
                        notes=notes,
                    )
                    for code in to_insert
                ]
            )
            try:
                await self.session.flush()
            except IntegrityError:
                # A concurrent import stored one of our codes; re-diff once
                await self.session.rollback()
                if attempt == 2:
                    raise WriteVerificationError(
                        f"Key import for product {product_id} kept colliding with concurrent imports"
                    )
                logger.warning("key_import_conflict_retry", product_id=str(product_id))
                product = await self.session.get(Product, product_id)
                if product is None:
                    raise ProductNotFoundError(product_id)
                continue

            if self.autocommit:
                await self.session.commit()

            result = BulkAddResult(
                added=len(to_insert),
                duplicates=duplicates + len(existing),
                invalid=invalid,
            )
            metrics.record_key_import(result.added, result.duplicates, result.invalid)
            logger.info(
                "keys_imported",
                product_id=str(product_id),
                added=result.added,
                duplicates=result.duplicates,
                invalid=result.invalid,
            )
            return result

        raise WriteVerificationError(f"Key import for product {product_id} did not complete")

    async def expire_stale(self, now: datetime | None = None) -> int:
        """
        Deactivate unused keys past their expiry. Orders are not touched.

        Returns the number of keys deactivated.
        """
        now = now or _utc_now()
        stmt = (
            update(LicenseKey)
            .where(
                LicenseKey.is_active.is_(True),
                LicenseKey.is_used.is_(False),
                LicenseKey.expires_at.is_not(None),
                LicenseKey.expires_at <= now,
            )
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if self.autocommit:
            await self.session.commit()

        count = result.rowcount or 0
        if count:
            metrics.keys_deactivated_total.inc(count)
            logger.info("stale_keys_deactivated", count=count)
        return count

    async def _existing_codes(self, codes: list[str]) -> set[str]:
        """Codes from the list that are already stored (any product)."""
        if not codes:
            return set()
        found: set[str] = set()
        # Chunk to stay under bind-parameter limits
        for start in range(0, len(codes), 500):
            chunk = codes[start : start + 500]
            result = await self.session.execute(
                select(LicenseKey.code).where(LicenseKey.code.in_(chunk))
            )
            found.update(result.scalars().all())
        return found
