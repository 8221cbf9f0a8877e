"""
Dropshipping Service

Entry points used by the rest of the store:
- process_new_order(order_id): fan out a paid order, then auto-dispatch
- send_order_to_supplier(supplier_order_id): dispatch or retry one order
- check_order_updates(): one reconciliation sweep (scheduler)

One instance per process. It owns the SupplierAdapterPool, so every path
into a given supplier shares the same rate gate and token lock.
"""
import asyncio
import logging
from typing import Optional

from dropship_engine.core.config import settings
from dropship_engine.core.database import AsyncSessionLocal
from dropship_engine.services.dropship.dispatcher import DispatchResult, OrderDispatcher
from dropship_engine.services.dropship.fanout import FanoutResult, OrderFanoutEngine
from dropship_engine.services.dropship.reconciler import ReconcileResult, StatusReconciler
from dropship_engine.services.suppliers import SupplierAdapterPool
from dropship_engine.services.suppliers.token_repository import DatabaseTokenStore, TokenRepository

logger = logging.getLogger(__name__)


class DropshippingService:
    """
    Usage:
        service = DropshippingService()
        result = await service.process_new_order(order.id)
        ...
        await service.close()
    """

    def __init__(
        self,
        session_factory=None,
        adapters: Optional[SupplierAdapterPool] = None,
        auto_dispatch: Optional[bool] = None,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self.adapters = adapters or SupplierAdapterPool(
            TokenRepository(DatabaseTokenStore(self._session_factory))
        )
        self.auto_dispatch = settings.DROPSHIP_AUTO_DISPATCH if auto_dispatch is None else auto_dispatch
        self.fanout = OrderFanoutEngine(self._session_factory)
        self.dispatcher = OrderDispatcher(self.adapters, self._session_factory)
        self.reconciler = StatusReconciler(self.adapters, self._session_factory)

    async def process_new_order(self, order_id: int) -> FanoutResult:
        """
        Create supplier orders for a paid customer order.

        Dispatch outcomes are attached to each supplier result; a failed
        dispatch never turns a successful fan-out into a failure.
        """
        result = await self.fanout.fan_out(order_id)
        if not self.auto_dispatch:
            return result

        to_dispatch = [
            r for r in result.supplier_results
            if r.success and r.supplier_order_id and r.supplier_has_credentials
        ]
        if not to_dispatch:
            return result

        # Different suppliers have independent gates; dispatch them together
        dispatches = await asyncio.gather(
            *(self.dispatcher.dispatch(r.supplier_order_id) for r in to_dispatch),
            return_exceptions=True,
        )
        for group, dispatch in zip(to_dispatch, dispatches):
            if isinstance(dispatch, BaseException):
                if not isinstance(dispatch, Exception):
                    raise dispatch
                logger.error(
                    f"[FANOUT] Order {order_id}: dispatch of supplier order "
                    f"{group.supplier_order_id} crashed: {dispatch!r}"
                )
                dispatch = DispatchResult(
                    supplier_order_id=group.supplier_order_id,
                    success=False,
                    error_code="UNEXPECTED_ERROR",
                    error_message=str(dispatch),
                )
            group.dispatch = dispatch
            if not dispatch.success:
                logger.warning(
                    f"[FANOUT] Order {order_id}: auto-dispatch of supplier order "
                    f"{group.supplier_order_id} failed: {dispatch.error_message}"
                )
        return result

    async def send_order_to_supplier(self, supplier_order_id: int) -> DispatchResult:
        return await self.dispatcher.dispatch(supplier_order_id)

    async def check_order_updates(self) -> ReconcileResult:
        return await self.reconciler.reconcile()

    async def close(self) -> None:
        await self.adapters.close()
