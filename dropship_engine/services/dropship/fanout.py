"""
Order Fan-out Engine

Splits one paid customer order into one SupplierOrder per supplier.

Flow:
1. Group unassigned items by product.supplier_id (items without a supplier
   are fulfilled in-house and ignored)
2. Skip groups whose supplier is missing or not ACTIVE
3. Cost = sum(unit cost x qty) + supplier.average_shipping, where unit cost
   is product.cost_price or DROPSHIP_DEFAULT_COST_RATIO x sale price
4. Create SupplierOrder(PENDING), link items, set item profit

Each group is committed in its own session, so a failure on one supplier
never rolls back another supplier's SupplierOrder.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from dropship_engine.core.config import settings
from dropship_engine.core.database import AsyncSessionLocal
from dropship_engine.core.exceptions import DropshipBaseError, RecordNotFoundError
from dropship_engine.models.order import Order, OrderItem
from dropship_engine.models.supplier import Supplier, SupplierStatus
from dropship_engine.models.supplier_order import SupplierOrder, SupplierOrderStatus

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass
class SupplierFanoutResult:
    """Outcome for one supplier group."""
    supplier_id: int
    success: bool
    item_count: int = 0
    supplier_order_id: Optional[int] = None
    total_cost: Optional[Decimal] = None
    skipped: bool = False
    supplier_has_credentials: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    dispatch: Optional[object] = None  # DispatchResult, attached by DropshippingService


@dataclass
class FanoutResult:
    order_id: int
    success: bool
    supplier_results: List[SupplierFanoutResult] = field(default_factory=list)
    unassigned_item_ids: List[int] = field(default_factory=list)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def created_supplier_order_ids(self) -> List[int]:
        return [r.supplier_order_id for r in self.supplier_results if r.supplier_order_id]


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENTS, rounding=ROUND_HALF_UP)


class OrderFanoutEngine:
    """
    Partition customer orders across suppliers.

    Usage:
        engine = OrderFanoutEngine()
        result = await engine.fan_out(order.id)
    """

    def __init__(
        self,
        session_factory=None,
        cost_ratio: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self.cost_ratio = Decimal(str(cost_ratio if cost_ratio is not None else settings.DROPSHIP_DEFAULT_COST_RATIO))
        self.currency = currency or settings.DROPSHIP_DEFAULT_CURRENCY

    @staticmethod
    def generate_idempotency_key(order_number: str, supplier_id: int, items: List[OrderItem]) -> str:
        """
        Deterministic key for one supplier group.

        Key = order number + supplier + hash of (item id, quantity) pairs
        """
        items_str = "|".join(f"{item.id}:{item.quantity}" for item in sorted(items, key=lambda i: i.id))
        items_hash = hashlib.sha256(items_str.encode()).hexdigest()[:16]
        return f"{order_number}-S{supplier_id}-{items_hash}"

    def unit_cost(self, item: OrderItem) -> Decimal:
        """Supplier cost per unit for one line."""
        product = item.product
        if product is not None and product.cost_price is not None:
            return _money(product.cost_price)
        return _money(Decimal(str(item.price)) * self.cost_ratio)

    async def fan_out(self, order_id: int) -> FanoutResult:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Order)
                .options(selectinload(Order.items).selectinload(OrderItem.product))
                .where(Order.id == order_id)
            )
            order = result.scalar_one_or_none()
            if order is None:
                error = RecordNotFoundError(f"Order {order_id} not found")
                logger.warning(f"[FANOUT] {error.message}")
                return FanoutResult(
                    order_id=order_id,
                    success=False,
                    error_code=error.code,
                    error_message=error.message,
                )

            order_number = order.order_number
            groups: Dict[int, List[int]] = {}
            for item in order.items:
                if item.supplier_order_id is not None:
                    logger.debug(f"[FANOUT] Item {item.id} already on supplier order {item.supplier_order_id}")
                    continue
                if item.product is None or item.product.supplier_id is None:
                    continue
                groups.setdefault(item.product.supplier_id, []).append(item.id)

        if not groups:
            logger.info(f"[FANOUT] Order {order_number}: nothing to send to suppliers")
            return FanoutResult(order_id=order_id, success=True)

        logger.info(f"[FANOUT] Order {order_number}: {len(groups)} supplier group(s)")

        fanout = FanoutResult(order_id=order_id, success=True)
        for supplier_id, item_ids in groups.items():
            group_result = await self._create_supplier_order(order_id, order_number, supplier_id, item_ids)
            fanout.supplier_results.append(group_result)
            if group_result.supplier_order_id is None:
                fanout.unassigned_item_ids.extend(item_ids)
            if not group_result.success:
                fanout.success = False

        return fanout

    async def _create_supplier_order(
        self,
        order_id: int,
        order_number: str,
        supplier_id: int,
        item_ids: List[int],
    ) -> SupplierFanoutResult:
        async with self._session_factory() as db:
            try:
                supplier = await db.get(Supplier, supplier_id)
                if supplier is None or supplier.status != SupplierStatus.ACTIVE:
                    reason = "not found" if supplier is None else "not active"
                    logger.warning(
                        f"[FANOUT] Order {order_number}: supplier {supplier_id} {reason}, "
                        f"leaving {len(item_ids)} item(s) unassigned"
                    )
                    return SupplierFanoutResult(
                        supplier_id=supplier_id,
                        success=True,
                        item_count=len(item_ids),
                        skipped=True,
                        error_message=f"Supplier {supplier_id} {reason}",
                    )

                result = await db.execute(
                    select(OrderItem)
                    .options(selectinload(OrderItem.product))
                    .where(OrderItem.id.in_(item_ids), OrderItem.supplier_order_id.is_(None))
                )
                items = list(result.scalars().all())
                if not items:
                    return SupplierFanoutResult(supplier_id=supplier_id, success=True, skipped=True)

                items_cost = Decimal("0")
                unit_costs = {}
                for item in items:
                    unit_costs[item.id] = self.unit_cost(item)
                    items_cost += unit_costs[item.id] * item.quantity
                shipping = _money(supplier.average_shipping)
                total_cost = _money(items_cost + shipping)

                supplier_order = SupplierOrder(
                    supplier_id=supplier_id,
                    order_id=order_id,
                    status=SupplierOrderStatus.PENDING,
                    total_cost=total_cost,
                    shipping_cost=shipping,
                    currency=self.currency,
                    idempotency_key=self.generate_idempotency_key(order_number, supplier_id, items),
                )
                supplier_order.append_note(f"Auto-generated from customer order #{order_number}")
                db.add(supplier_order)
                await db.flush()

                for item in items:
                    item.supplier_order_id = supplier_order.id
                    item.supplier_order_status = SupplierOrderStatus.PENDING
                    item.profit_amount = _money(Decimal(str(item.total)) - unit_costs[item.id] * item.quantity)

                await db.commit()

                logger.info(
                    f"[FANOUT] Order {order_number}: supplier order {supplier_order.id} "
                    f"for supplier {supplier_id} ({len(items)} items, cost {total_cost})"
                )
                return SupplierFanoutResult(
                    supplier_id=supplier_id,
                    success=True,
                    item_count=len(items),
                    supplier_order_id=supplier_order.id,
                    total_cost=total_cost,
                    supplier_has_credentials=supplier.has_credentials,
                )

            except (SQLAlchemyError, DropshipBaseError) as e:
                await db.rollback()
                logger.error(f"[FANOUT] Order {order_number}: supplier {supplier_id} group failed: {e}")
                return SupplierFanoutResult(
                    supplier_id=supplier_id,
                    success=False,
                    item_count=len(item_ids),
                    error_code=e.code if isinstance(e, DropshipBaseError) else "DATABASE_ERROR",
                    error_message=str(e),
                )
