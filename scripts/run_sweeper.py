#!/usr/bin/env python3
"""
Expiry Sweeper Runner

Expires overdue pending orders, deactivates stale license keys and
settles orders whose dispute window closed. Runs on a fixed interval,
or a single pass with --once (cron style).

Usage:
    python scripts/run_sweeper.py
    python scripts/run_sweeper.py --once
    python scripts/run_sweeper.py --interval 60
"""

import argparse
import asyncio
import os
import signal
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from keymarket.config import settings
from keymarket.db.session import close_engines, get_session
from keymarket.observability import get_logger, setup_logging
from keymarket.services.sweeper import ExpirySweeper, run_forever

setup_logging()
logger = get_logger(__name__)


async def run_once() -> None:
    """Run a single sweep pass."""
    async with get_session() as session:
        report = await ExpirySweeper(session).run_once()
    logger.info(
        "sweeper_single_pass_done",
        expired_orders=report.expired_orders,
        deactivated_keys=report.deactivated_keys,
        settled_orders=len(report.settled_orders),
    )


async def run_loop(interval: int) -> None:
    """Sweep until SIGINT/SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await run_forever(get_session, interval_seconds=interval, stop=stop)


async def run(args: argparse.Namespace) -> None:
    try:
        if args.once:
            await run_once()
        else:
            await run_loop(args.interval)
    finally:
        await close_engines()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Run the order expiry sweeper")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument(
        "--interval",
        type=int,
        default=settings.sweeper_interval_seconds,
        help="Seconds between passes (default: SWEEPER_INTERVAL_SECONDS)",
    )
    args = parser.parse_args()

    if not settings.database_url:
        logger.error("database_url_not_set")
        sys.exit(1)

    asyncio.run(run(args))


if __name__ == "__main__":
    main()
