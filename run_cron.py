#!/usr/bin/env python3
"""
Dropship Engine - Standalone Cron Runner v1.0.0

Runs the supplier reconciliation sweep as a standalone service.

Jobs managed:
1. supplier_order_status_sync - poll suppliers for open orders
   (every SUPPLIER_SYNC_INTERVAL_MINUTES, default 30 min)

Usage:
    python run_cron.py          # run forever
    python run_cron.py --once   # run one sweep and exit
"""
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone

# Setup logging first
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)

# Validate required environment variables
REQUIRED_VARS = ["DATABASE_URL"]
missing = [var for var in REQUIRED_VARS if not os.getenv(var)]
if missing:
    logger.error(f"Missing required environment variables: {missing}")
    sys.exit(1)

# Import after env validation
from dropship_engine.core.config import settings  # noqa: E402
from dropship_engine.jobs.supplier_sync import (  # noqa: E402
    SupplierSyncRunner,
    run_supplier_order_status_sync_job,
)

# Graceful shutdown flag
_shutdown = False


def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    global _shutdown
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    _shutdown = True


async def main():
    """Main entry point for cron service."""
    global _shutdown

    logger.info("=" * 60)
    logger.info("Dropship Engine Cron Service v1.0.0")
    logger.info("=" * 60)
    logger.info(f"Started at: {datetime.now(timezone.utc).isoformat()}")
    logger.info(f"ENVIRONMENT: {settings.ENVIRONMENT}")
    logger.info(f"Sync interval: {settings.SUPPLIER_SYNC_INTERVAL_MINUTES} min")

    if "--once" in sys.argv:
        await run_supplier_order_status_sync_job()
        return

    # Register signal handlers
    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    runner = SupplierSyncRunner()
    try:
        await runner.start()

        # Keep running until shutdown
        logger.info("Cron service running. Press Ctrl+C to stop.")
        while not _shutdown:
            await asyncio.sleep(10)  # Check every 10 seconds

    except Exception as e:
        logger.error(f"Cron service error: {e}")
        raise
    finally:
        logger.info("Stopping supplier sync...")
        await runner.stop()
        logger.info("Cron service stopped.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)
