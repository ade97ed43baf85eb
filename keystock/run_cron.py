#!/usr/bin/env python3
"""
KeyStock - Standalone Worker

Runs the background jobs without the HTTP app:
1. payment_timeout - stuck carts, expired reservations, payment timeouts (every minute)
2. cart_cleanup - expire and purge stale carts (at startup, then daily)
3. stock_sync - optional one-shot stock backfill at startup

Uses the same database configuration as the API service.
"""
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)

from keystock.jobs import build_scheduler  # noqa: E402
from keystock.services.payment_gateway import payos_client  # noqa: E402

_shutdown: Optional[asyncio.Event] = None


def handle_shutdown(signum, frame=None):
    """Handle shutdown signals gracefully."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    if _shutdown is not None:
        _shutdown.set()


async def run():
    global _shutdown
    _shutdown = asyncio.Event()

    logger.info("=" * 60)
    logger.info("KeyStock Worker")
    logger.info("=" * 60)
    logger.info(f"Started at: {datetime.now(timezone.utc).isoformat()}")
    logger.info(f"PAYOS_API_KEY: {'set' if os.getenv('PAYOS_API_KEY') else 'NOT SET'}")

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle_shutdown, sig)
        except NotImplementedError:
            signal.signal(sig, handle_shutdown)

    scheduler = build_scheduler()
    try:
        await scheduler.start()
        logger.info("Worker running. Press Ctrl+C to stop.")
        await _shutdown.wait()
    finally:
        logger.info("Stopping job scheduler...")
        await scheduler.stop()
        await payos_client.close()
        logger.info("Worker stopped.")


def main():
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
