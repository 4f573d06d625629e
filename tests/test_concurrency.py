"""
Concurrency tests for key assignment.

Many callers racing for a small pool must each get a distinct key, and
the pool must never hand out more keys than it holds.
"""

import asyncio
from uuid import uuid4

import pytest

from keymarket.exceptions import OutOfStockError
from keymarket.services.inventory import InventoryAllocator


async def _assign_in_own_session(session_factory, product_id):
    async with session_factory() as db_session:
        return await InventoryAllocator(db_session).assign(product_id, uuid4(), None)


class TestConcurrentAssign:
    """Racing assign() calls through separate sessions."""

    @pytest.mark.parametrize(
        ("callers", "keys"),
        [
            (1, 1),
            (3, 5),
            (4, 4),
            (8, 5),
            (6, 1),
            (3, 0),
        ],
    )
    async def test_min_of_callers_and_keys_succeed(
        self, session_factory, seed_product, callers, keys
    ):
        """min(N, K) callers succeed with distinct keys; the rest are out of stock."""
        seeded = await seed_product(stock=keys)

        results = await asyncio.gather(
            *(_assign_in_own_session(session_factory, seeded.product_id) for _ in range(callers)),
            return_exceptions=True,
        )

        assigned = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(assigned) == min(callers, keys)
        assert len({key.key_id for key in assigned}) == len(assigned)
        assert {key.code for key in assigned} <= set(seeded.codes)
        assert len(failures) == max(0, callers - keys)
        assert all(isinstance(f, OutOfStockError) for f in failures)

        async with session_factory() as db_session:
            remaining = await InventoryAllocator(db_session).stock_count(seeded.product_id)
        assert remaining == keys - len(assigned)

    async def test_pool_drains_to_zero(self, session_factory, seed_product):
        """Stock is exactly zero after the race."""
        seeded = await seed_product(stock=3)

        await asyncio.gather(
            *(_assign_in_own_session(session_factory, seeded.product_id) for _ in range(6)),
            return_exceptions=True,
        )

        async with session_factory() as db_session:
            assert await InventoryAllocator(db_session).stock_count(seeded.product_id) == 0
