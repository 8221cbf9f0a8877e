"""
Supplier Order Status Reconciler

Polls suppliers for open SupplierOrders and merges what they report:
    SupplierOrder.status/tracking -> OrderItem mirror -> Order.fulfillment_status

Rules:
- PROCESSING/SHIPPED/ERROR orders with an external id are polled
- Only forward state-machine transitions are applied; UNKNOWN or a
  regression leaves the status alone and adds an audit note
- Fulfillment is recomputed when an order first reaches SHIPPED/COMPLETED
- Suppliers run concurrently, one task each; orders within a supplier run
  sequentially through that supplier's rate gate, each in its own session
- An order that has not changed since its last note gets no repeat note
- A RateLimitedError stops that supplier's sweep; any other failure is
  recorded against the one order and the sweep continues

Every write sets a field to a value, so re-running a sweep converges.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from dropship_engine.core.config import settings
from dropship_engine.core.database import AsyncSessionLocal
from dropship_engine.core.exceptions import DropshipBaseError, RateLimitedError
from dropship_engine.core.utils import utcnow
from dropship_engine.models.order import FulfillmentStatus, Order, OrderItem
from dropship_engine.models.supplier import Supplier, SupplierStatus
from dropship_engine.models.supplier_order import (
    RECONCILE_STATUSES,
    SHIPPED_STATUSES,
    SupplierOrder,
    SupplierOrderStatus,
    can_transition,
)
from dropship_engine.services.suppliers import SupplierAdapterPool
from dropship_engine.services.suppliers.base import BaseSupplierAdapter, OrderStatusInfo

logger = logging.getLogger(__name__)


@dataclass
class OrderUpdateResult:
    """Outcome for one polled SupplierOrder."""
    supplier_order_id: Optional[int]
    supplier_id: int
    success: bool
    order_id: Optional[int] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    raw_status: Optional[str] = None
    changed: bool = False
    fulfillment_status: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retry_after_seconds: Optional[float] = None


@dataclass
class ReconcileResult:
    success: bool
    total_orders: int = 0
    updated_orders: int = 0
    suppliers_checked: int = 0
    results: List[OrderUpdateResult] = field(default_factory=list)
    rate_limited_supplier_ids: List[int] = field(default_factory=list)


def compute_fulfillment_status(items: List[OrderItem]) -> Optional[FulfillmentStatus]:
    """
    FULFILLED if every item shipped via a supplier, PARTIALLY_FULFILLED if
    some did, None (leave as is) if none did.
    """
    if not items:
        return None
    shipped = [
        item for item in items
        if item.supplier_order_id is not None and item.supplier_order_status in SHIPPED_STATUSES
    ]
    if len(shipped) == len(items):
        return FulfillmentStatus.FULFILLED
    if shipped:
        return FulfillmentStatus.PARTIALLY_FULFILLED
    return None


class StatusReconciler:
    def __init__(
        self,
        adapters: SupplierAdapterPool,
        session_factory=None,
        batch_size: Optional[int] = None,
        clock=utcnow,
    ):
        self.adapters = adapters
        self._session_factory = session_factory or AsyncSessionLocal
        self.batch_size = batch_size or settings.SUPPLIER_SYNC_BATCH_SIZE
        self._clock = clock

    async def reconcile(self) -> ReconcileResult:
        """Run one sweep over every active supplier with credentials."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Supplier.id).where(
                    Supplier.status == SupplierStatus.ACTIVE,
                    Supplier.api_key.isnot(None),
                    Supplier.api_endpoint.isnot(None),
                )
            )
            supplier_ids = list(result.scalars().all())

        sweep = ReconcileResult(success=True, suppliers_checked=len(supplier_ids))
        touched_order_ids = set()
        if not supplier_ids:
            logger.info("[RECONCILE] No active suppliers with credentials")
            return sweep

        outcomes = await asyncio.gather(
            *(self.reconcile_supplier(supplier_id) for supplier_id in supplier_ids),
            return_exceptions=True,
        )

        for supplier_id, outcome in zip(supplier_ids, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(f"[RECONCILE] Supplier {supplier_id} sweep crashed: {outcome!r}")
                sweep.success = False
                sweep.results.append(OrderUpdateResult(
                    supplier_order_id=None,
                    supplier_id=supplier_id,
                    success=False,
                    error_code=outcome.code if isinstance(outcome, DropshipBaseError) else "UNEXPECTED_ERROR",
                    error_message=str(outcome),
                ))
                continue

            for order_result in outcome:
                sweep.results.append(order_result)
                if order_result.supplier_order_id is not None:
                    sweep.total_orders += 1
                if order_result.changed:
                    sweep.updated_orders += 1
                if not order_result.success:
                    sweep.success = False
                if order_result.retry_after_seconds is not None and supplier_id not in sweep.rate_limited_supplier_ids:
                    sweep.rate_limited_supplier_ids.append(supplier_id)
                if order_result.order_id is not None and order_result.fulfillment_status is not None:
                    touched_order_ids.add(order_result.order_id)

        # Supplier tasks for the same order may have raced; settle on committed state
        if touched_order_ids:
            await self.refresh_fulfillment(sorted(touched_order_ids))

        logger.info(
            f"[RECONCILE] Sweep done: {sweep.suppliers_checked} suppliers, "
            f"{sweep.total_orders} orders checked, {sweep.updated_orders} updated"
        )
        return sweep

    async def reconcile_supplier(self, supplier_id: int) -> List[OrderUpdateResult]:
        results: List[OrderUpdateResult] = []

        async with self._session_factory() as db:
            supplier = await db.get(Supplier, supplier_id)
            if supplier is None:
                return results

            try:
                adapter = await self.adapters.get(supplier)
                adapter.ensure_ready()
            except DropshipBaseError as e:
                logger.error(f"[RECONCILE] Supplier {supplier_id}: {e.message}")
                return [OrderUpdateResult(
                    supplier_order_id=None,
                    supplier_id=supplier_id,
                    success=False,
                    error_code=e.code,
                    error_message=e.message,
                )]

            query = await db.execute(
                select(SupplierOrder.id)
                .where(
                    SupplierOrder.supplier_id == supplier_id,
                    SupplierOrder.status.in_(RECONCILE_STATUSES),
                    SupplierOrder.external_order_id.isnot(None),
                )
                .order_by(SupplierOrder.last_checked_at.asc().nullsfirst(), SupplierOrder.id)
                .limit(self.batch_size)
            )
            supplier_order_ids = list(query.scalars().all())
        logger.info(f"[RECONCILE] Supplier {supplier_id}: {len(supplier_order_ids)} open order(s)")

        for supplier_order_id in supplier_order_ids:
            result = await self._reconcile_one(adapter, supplier_id, supplier_order_id)
            results.append(result)
            if result.retry_after_seconds is not None:
                logger.warning(
                    f"[RECONCILE] Supplier {supplier_id}: rate limited, "
                    f"stopping sweep for {result.retry_after_seconds:.0f}s"
                )
                break

        return results

    async def _reconcile_one(
        self,
        adapter: BaseSupplierAdapter,
        supplier_id: int,
        supplier_order_id: int,
    ) -> OrderUpdateResult:
        """Poll and merge one SupplierOrder in its own session."""
        try:
            async with self._session_factory() as db:
                return await self._poll_and_apply(db, adapter, supplier_order_id)
        except SQLAlchemyError as e:
            logger.error(f"[RECONCILE] Supplier order {supplier_order_id}: database error: {e}")
            return OrderUpdateResult(
                supplier_order_id=supplier_order_id,
                supplier_id=supplier_id,
                success=False,
                error_code="DATABASE_ERROR",
                error_message=str(e),
            )

    async def _poll_and_apply(
        self,
        db,
        adapter: BaseSupplierAdapter,
        supplier_order_id: int,
    ) -> OrderUpdateResult:
        query = await db.execute(
            select(SupplierOrder)
            .options(selectinload(SupplierOrder.items))
            .where(SupplierOrder.id == supplier_order_id)
        )
        supplier_order = query.scalar_one()
        previous = supplier_order.status
        base = dict(
            supplier_order_id=supplier_order.id,
            supplier_id=supplier_order.supplier_id,
            order_id=supplier_order.order_id,
            previous_status=previous.value,
        )

        try:
            info = await adapter.get_order_status(supplier_order.external_order_id)
        except DropshipBaseError as e:
            logger.warning(f"[RECONCILE] Supplier order {supplier_order_id}: {e.code} {e.message}")
            now = self._clock()
            supplier_order.last_checked_at = now
            supplier_order.append_note(
                f"Status check failed ({e.code}): {e.message}", at=now, skip_repeat=True
            )
            try:
                await db.commit()
            except SQLAlchemyError as db_error:
                await db.rollback()
                logger.error(f"[RECONCILE] Supplier order {supplier_order_id}: could not record failure: {db_error}")
            return OrderUpdateResult(
                **base,
                success=False,
                new_status=previous.value,
                error_code=e.code,
                error_message=e.message,
                retry_after_seconds=e.wait_seconds if isinstance(e, RateLimitedError) else None,
            )

        try:
            changed, fulfillment = await self.apply_status(db, supplier_order, info)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"[RECONCILE] Supplier order {supplier_order_id}: failed to save update: {e}")
            return OrderUpdateResult(
                **base,
                success=False,
                raw_status=info.raw_status,
                error_code="DATABASE_ERROR",
                error_message=str(e),
            )

        return OrderUpdateResult(
            **base,
            success=True,
            new_status=supplier_order.status.value,
            raw_status=info.raw_status,
            changed=changed,
            fulfillment_status=fulfillment.value if fulfillment else None,
        )

    async def apply_status(self, db, supplier_order: SupplierOrder, info: OrderStatusInfo):
        """
        Merge one status report into the SupplierOrder and its items.

        Returns:
            (status_changed, new fulfillment status or None)
        """
        now = self._clock()
        previous = supplier_order.status
        new = info.status
        supplier_order.last_checked_at = now

        if new == SupplierOrderStatus.UNKNOWN:
            supplier_order.append_note(
                f"Unrecognized supplier status {info.raw_status!r}; status left at {previous.value}",
                at=now,
                skip_repeat=True,
            )
            self._mirror_items(supplier_order)
            return False, None

        if new != previous and not can_transition(previous, new):
            supplier_order.append_note(
                f"Ignored supplier status {info.raw_status!r} ({new.value}); "
                f"not a valid transition from {previous.value}",
                at=now,
                skip_repeat=True,
            )
            self._mirror_items(supplier_order)
            return False, None

        if info.tracking_number:
            supplier_order.tracking_number = info.tracking_number
        if info.tracking_url:
            supplier_order.tracking_url = info.tracking_url
        if info.carrier:
            supplier_order.carrier = info.carrier
        if info.estimated_delivery:
            supplier_order.estimated_delivery = info.estimated_delivery

        if new == previous:
            self._mirror_items(supplier_order)
            return False, None

        supplier_order.status = new
        if new == SupplierOrderStatus.ERROR:
            supplier_order.error_message = f"Supplier reported status {info.raw_status}"
        elif previous == SupplierOrderStatus.ERROR:
            supplier_order.error_message = None
        supplier_order.append_note(
            f"Status updated {previous.value} -> {new.value} (supplier: {info.raw_status})",
            at=now,
        )
        self._mirror_items(supplier_order)
        logger.info(f"[RECONCILE] Supplier order {supplier_order.id}: {previous.value} -> {new.value}")

        fulfillment = None
        if new in SHIPPED_STATUSES and previous not in SHIPPED_STATUSES and supplier_order.order_id:
            fulfillment = await self._update_fulfillment(db, supplier_order.order_id)
        return True, fulfillment

    @staticmethod
    def _mirror_items(supplier_order: SupplierOrder) -> None:
        for item in supplier_order.items:
            item.supplier_order_status = supplier_order.status
            item.supplier_tracking_number = supplier_order.tracking_number
            item.supplier_tracking_url = supplier_order.tracking_url

    async def refresh_fulfillment(self, order_ids: List[int]) -> None:
        """Recompute fulfillment for orders from committed item state."""
        async with self._session_factory() as db:
            for order_id in order_ids:
                await self._update_fulfillment(db, order_id)
            await db.commit()

    async def _update_fulfillment(self, db, order_id: int) -> Optional[FulfillmentStatus]:
        result = await db.execute(
            select(Order).options(selectinload(Order.items)).where(Order.id == order_id)
        )
        order = result.scalar_one_or_none()
        if order is None:
            return None

        status = compute_fulfillment_status(order.items)
        if status is not None and order.fulfillment_status != status:
            logger.info(f"[RECONCILE] Order {order.order_number}: fulfillment {order.fulfillment_status.value} -> {status.value}")
            order.fulfillment_status = status
        return status
