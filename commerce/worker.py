"""
Coupon Expiry Worker - Moves AVAILABLE coupons past expiry to EXPIRED.

Runs off the request path on a fixed interval.

Usage:
    # Sweep forever (every COUPON_SWEEP_INTERVAL_SECONDS)
    python -m commerce.worker

    # Single sweep (for cron)
    python -m commerce.worker --once

    # Create missing tables first
    python -m commerce.worker --create-schema --once
"""

import argparse
import asyncio
import logging
import sys
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager

from prometheus_client import start_http_server
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.config import settings
from commerce.db.session import close_engines, create_schema, get_session
from commerce.observability import get_logger, setup_logging
from commerce.services.coupons import CouponAllocator

logger = get_logger(__name__)

SessionProvider = Callable[[], AbstractAsyncContextManager[AsyncSession]]


async def sweep_once(session_provider: SessionProvider = get_session) -> int:
    """Run one expiry sweep. Returns the number of coupons expired."""
    async with session_provider() as session:
        return await CouponAllocator(session).sweep_expired()


async def run_loop(
    interval_seconds: float,
    session_provider: SessionProvider = get_session,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Sweep on an interval until stop_event is set."""
    stop = stop_event or asyncio.Event()
    logger.info("coupon_sweeper_started", interval_seconds=interval_seconds)

    while not stop.is_set():
        try:
            await sweep_once(session_provider)
        except Exception as e:
            logger.error("coupon_sweep_error", error=str(e), exc_info=True)

        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except TimeoutError:
            pass

    logger.info("coupon_sweeper_stopped")


async def _run(args: argparse.Namespace) -> None:
    try:
        if args.create_schema:
            await create_schema()
            logger.info("schema_created")

        if args.once:
            expired = await sweep_once()
            logger.info("coupon_sweep_finished", coupons_expired=expired)
        else:
            await run_loop(args.interval)
    finally:
        await close_engines()


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Expire coupons past their expiry date")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.coupon_sweep_interval_seconds,
        help="Seconds between sweeps (default: COUPON_SWEEP_INTERVAL_SECONDS)",
    )
    parser.add_argument(
        "--create-schema", action="store_true", help="Create missing tables before sweeping"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    if args.interval <= 0:
        parser.error("--interval must be positive")

    setup_logging()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if settings.metrics_enabled and not args.once:
        start_http_server(settings.metrics_port)
        logger.info("metrics_server_started", port=settings.metrics_port)

    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        logger.info("coupon_sweeper_interrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()
