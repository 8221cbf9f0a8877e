"""
Supplier Sync Jobs

Background job for supplier order reconciliation:
- Order Status Sync - poll suppliers for PROCESSING/SHIPPED orders and merge
  status, tracking and fulfillment

Schedule: every SUPPLIER_SYNC_INTERVAL_MINUTES (default 30).
"""
import asyncio
import logging
from typing import List, Optional

from dropship_engine.core.config import settings
from dropship_engine.services.dropship import DropshippingService, ReconcileResult

logger = logging.getLogger(__name__)

# Alert after this many failed sweeps in a row
MAX_CONSECUTIVE_FAILURES = 3


async def run_supplier_order_status_sync_job(
    service: Optional[DropshippingService] = None,
) -> Optional[ReconcileResult]:
    """
    Run one reconciliation sweep.

    Pass a long-lived service to share adapters (and therefore rate gates)
    with the rest of the process; otherwise a private one is created and
    closed.
    """
    job_name = "supplier_order_status_sync"

    if not settings.SUPPLIER_SYNC_ENABLED:
        logger.info(f"[{job_name}] Disabled via SUPPLIER_SYNC_ENABLED")
        return None

    logger.info(f"[{job_name}] Starting supplier order status sync")

    owns_service = service is None
    service = service or DropshippingService()
    try:
        result = await service.check_order_updates()
    finally:
        if owns_service:
            await service.close()

    failed = [r for r in result.results if not r.success]
    logger.info(
        f"[{job_name}] Complete: suppliers={result.suppliers_checked}, "
        f"checked={result.total_orders}, updated={result.updated_orders}, errors={len(failed)}"
    )
    for r in failed:
        logger.warning(
            f"[{job_name}] supplier={r.supplier_id} supplier_order={r.supplier_order_id}: "
            f"{r.error_code} {r.error_message}"
        )
    if result.rate_limited_supplier_ids:
        logger.warning(f"[{job_name}] Rate limited suppliers: {result.rate_limited_supplier_ids}")

    return result


class SupplierSyncRunner:
    """
    Runs the status sync on a fixed interval inside a long-lived process.
    """

    def __init__(
        self,
        service: Optional[DropshippingService] = None,
        interval_seconds: Optional[float] = None,
    ):
        self._service = service
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else settings.SUPPLIER_SYNC_INTERVAL_MINUTES * 60
        )
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._consecutive_failures = 0
        self.last_result: Optional[ReconcileResult] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the sync loop."""
        if self._running:
            logger.warning("Supplier sync already running")
            return

        if self._service is None:
            self._service = DropshippingService()

        self._running = True
        logger.info(f"Starting supplier sync every {self.interval_seconds:.0f}s")
        self._tasks = [asyncio.create_task(self._sync_loop())]

    async def stop(self):
        """Stop the sync loop and release supplier clients."""
        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        if self._service is not None:
            await self._service.close()

        logger.info("Supplier sync stopped")

    async def run_once(self) -> Optional[ReconcileResult]:
        result = await run_supplier_order_status_sync_job(self._service)
        self.last_result = result
        if result is not None and not result.success:
            self._consecutive_failures += 1
            if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                logger.error(
                    f"Supplier sync has reported errors {self._consecutive_failures} sweeps in a row"
                )
        else:
            self._consecutive_failures = 0
        return result

    async def _sync_loop(self):
        """Main loop for the status sync job."""
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Supplier sync job error: {e}")

            await asyncio.sleep(self.interval_seconds)
