"""
Order Dispatcher

Sends a PENDING SupplierOrder to its supplier.

On success: external_order_id, status PROCESSING (mirrored to items), any
tracking returned synchronously, dispatched_at.
On failure: error_message set, failure appended to notes, status stays
PENDING so the order can be re-dispatched. Database errors come back as a
failed result (DATABASE_ERROR) rather than an exception.

A SupplierOrder that already has an external id is never sent twice.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from dropship_engine.core.database import AsyncSessionLocal
from dropship_engine.core.exceptions import (
    ConfigurationError,
    DropshipBaseError,
    RateLimitedError,
    RecordNotFoundError,
)
from dropship_engine.core.utils import utcnow
from dropship_engine.models.order import Order, OrderItem
from dropship_engine.models.supplier_order import SupplierOrder, SupplierOrderStatus
from dropship_engine.services.suppliers import SupplierAdapterPool
from dropship_engine.services.suppliers.base import (
    OrderLineItem,
    ShippingAddress,
    SupplierOrderRequest,
)

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    """Result of sending one SupplierOrder."""
    supplier_order_id: int
    success: bool
    external_order_id: Optional[str] = None
    status: Optional[str] = None
    already_dispatched: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retry_after_seconds: Optional[float] = None


class OrderDispatcher:
    def __init__(self, adapters: SupplierAdapterPool, session_factory=None, clock=utcnow):
        self.adapters = adapters
        self._session_factory = session_factory or AsyncSessionLocal
        self._clock = clock

    async def _load(self, db, supplier_order_id: int) -> Optional[SupplierOrder]:
        result = await db.execute(
            select(SupplierOrder)
            .options(
                selectinload(SupplierOrder.supplier),
                selectinload(SupplierOrder.items).selectinload(OrderItem.product),
                selectinload(SupplierOrder.items).selectinload(OrderItem.variant),
                selectinload(SupplierOrder.order).selectinload(Order.shipping_address),
            )
            .where(SupplierOrder.id == supplier_order_id)
        )
        return result.scalar_one_or_none()

    def build_request(self, supplier_order: SupplierOrder) -> SupplierOrderRequest:
        """Translate local records into the adapter's order request."""
        order = supplier_order.order
        if order is None or order.shipping_address is None:
            raise ConfigurationError(
                f"Supplier order {supplier_order.id} has no customer shipping address",
                supplier_id=supplier_order.supplier_id,
            )
        address = order.shipping_address

        line_items = []
        for item in supplier_order.items:
            product = item.product
            if product is None or not product.supplier_product_id:
                raise ConfigurationError(
                    f"Order item {item.id} has no supplier product id",
                    supplier_id=supplier_order.supplier_id,
                )
            line_items.append(OrderLineItem(
                product_id=product.supplier_product_id,
                quantity=item.quantity,
                variant_id=item.variant.supplier_variant_id if item.variant else None,
                sku=product.sku,
                name=item.product_name or product.name,
                unit_cost=product.cost_price,
            ))
        if not line_items:
            raise ConfigurationError(
                f"Supplier order {supplier_order.id} has no items",
                supplier_id=supplier_order.supplier_id,
            )

        return SupplierOrderRequest(
            order_number=supplier_order.idempotency_key
            or f"{order.order_number}-S{supplier_order.supplier_id}",
            shipping_address=ShippingAddress(
                name=address.recipient_name or order.customer_name or "",
                address1=address.address_line1,
                address2=address.address_line2,
                city=address.city,
                state=address.state_province,
                postal_code=address.postal_code,
                country_code=address.country_code,
                phone=address.phone or order.customer_phone,
                email=order.customer_email,
            ),
            line_items=line_items,
            customer_email=order.customer_email,
        )

    async def dispatch(self, supplier_order_id: int) -> DispatchResult:
        try:
            return await self._dispatch(supplier_order_id)
        except SQLAlchemyError as e:
            logger.error(f"[DISPATCH] Supplier order {supplier_order_id}: database error: {e}")
            return DispatchResult(
                supplier_order_id=supplier_order_id,
                success=False,
                error_code="DATABASE_ERROR",
                error_message=str(e),
            )

    async def _dispatch(self, supplier_order_id: int) -> DispatchResult:
        async with self._session_factory() as db:
            supplier_order = await self._load(db, supplier_order_id)
            if supplier_order is None:
                error = RecordNotFoundError(f"Supplier order {supplier_order_id} not found")
                return DispatchResult(
                    supplier_order_id=supplier_order_id,
                    success=False,
                    error_code=error.code,
                    error_message=error.message,
                )

            if supplier_order.external_order_id or supplier_order.status != SupplierOrderStatus.PENDING:
                logger.info(
                    f"[DISPATCH] Supplier order {supplier_order_id} already dispatched "
                    f"({supplier_order.external_order_id}), skipping"
                )
                return DispatchResult(
                    supplier_order_id=supplier_order_id,
                    success=True,
                    external_order_id=supplier_order.external_order_id,
                    status=supplier_order.status.value,
                    already_dispatched=True,
                )

            supplier = supplier_order.supplier
            try:
                if not supplier.is_active or not supplier.has_credentials:
                    raise ConfigurationError(
                        f"Supplier {supplier.name} is inactive or missing API credentials",
                        supplier_id=supplier.id,
                    )
                adapter = await self.adapters.get(supplier)
                adapter.ensure_ready()
                request = self.build_request(supplier_order)
                response = await adapter.create_order(request)

            except DropshipBaseError as e:
                supplier_order.error_message = e.message
                supplier_order.append_note(f"Dispatch failed ({e.code}): {e.message}", at=self._clock())
                status = supplier_order.status.value
                logger.error(f"[DISPATCH] Supplier order {supplier_order_id} failed: {e.code} {e.message}")
                try:
                    await db.commit()
                except SQLAlchemyError as db_error:
                    await db.rollback()
                    logger.error(f"[DISPATCH] Supplier order {supplier_order_id}: could not record failure: {db_error}")
                return DispatchResult(
                    supplier_order_id=supplier_order_id,
                    success=False,
                    status=status,
                    error_code=e.code,
                    error_message=e.message,
                    retry_after_seconds=e.wait_seconds if isinstance(e, RateLimitedError) else None,
                )

            now = self._clock()
            supplier_order.external_order_id = response.external_order_id
            supplier_order.status = SupplierOrderStatus.PROCESSING
            supplier_order.dispatched_at = now
            supplier_order.error_message = None
            if response.tracking_number:
                supplier_order.tracking_number = response.tracking_number
            if response.tracking_url:
                supplier_order.tracking_url = response.tracking_url
            if response.carrier:
                supplier_order.carrier = response.carrier
            if response.estimated_delivery:
                supplier_order.estimated_delivery = response.estimated_delivery
            supplier_order.append_note(
                f"Sent to supplier API as {request.order_number}; "
                f"external order {response.external_order_id} ({response.raw_status or 'no status'})",
                at=now,
            )

            for item in supplier_order.items:
                item.supplier_order_status = SupplierOrderStatus.PROCESSING
                if supplier_order.tracking_number:
                    item.supplier_tracking_number = supplier_order.tracking_number
                if supplier_order.tracking_url:
                    item.supplier_tracking_url = supplier_order.tracking_url

            try:
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                # The supplier has the order; keep its id in the log and result for manual linking
                logger.error(
                    f"[DISPATCH] Supplier order {supplier_order_id} accepted by supplier as "
                    f"{response.external_order_id} but could not be saved: {e}"
                )
                return DispatchResult(
                    supplier_order_id=supplier_order_id,
                    success=False,
                    external_order_id=response.external_order_id,
                    error_code="DATABASE_ERROR",
                    error_message=str(e),
                )

            logger.info(
                f"[DISPATCH] Supplier order {supplier_order_id} -> supplier {supplier.id}: "
                f"external_order_id={response.external_order_id}"
            )
            return DispatchResult(
                supplier_order_id=supplier_order_id,
                success=True,
                external_order_id=response.external_order_id,
                status=SupplierOrderStatus.PROCESSING.value,
            )
