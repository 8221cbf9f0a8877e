"""
Generic REST supplier adapter

For suppliers that speak plain REST with a static API key:
    POST orders          -> {id, status, tracking_number, ...}
    GET  orders/{id}     -> {status | fulfillment_status, tracking fields}

Tracking fields are accepted at the top level or under `tracking_info`,
which covers the Oberlo/Modalyst style payloads as well.
"""
import logging
from typing import Any, Dict

from dropship_engine.core.exceptions import (
    ExternalOrderNotFoundError,
    MalformedResponseError,
    RemoteError,
)
from dropship_engine.core.utils import parse_vendor_datetime
from dropship_engine.models.supplier import SupplierType
from dropship_engine.models.supplier_order import SupplierOrderStatus
from dropship_engine.services.suppliers import register_adapter
from dropship_engine.services.suppliers.base import (
    BaseSupplierAdapter,
    OrderStatusInfo,
    SupplierOrderRequest,
    SupplierOrderResponse,
    text_or_none,
)

logger = logging.getLogger(__name__)


@register_adapter(SupplierType.GENERIC)
class GenericRestAdapter(BaseSupplierAdapter):
    """Bearer-token REST supplier."""

    STATUS_MAP = {
        "OPEN": SupplierOrderStatus.PROCESSING,
        "ACCEPTED": SupplierOrderStatus.PROCESSING,
        "FULFILLED": SupplierOrderStatus.SHIPPED,
        "PARTIALLY_FULFILLED": SupplierOrderStatus.PROCESSING,
        "IN_TRANSIT": SupplierOrderStatus.SHIPPED,
    }

    @property
    def supplier_type(self) -> SupplierType:
        return SupplierType.GENERIC

    def default_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key or ''}",
        }

    def build_order_payload(self, request: SupplierOrderRequest) -> Dict[str, Any]:
        address = request.shipping_address
        return {
            "order_id": request.order_number,
            "customer_order_id": request.order_number,
            "shipping_address": {
                "name": address.name,
                "address1": address.address1,
                "address2": address.address2,
                "city": address.city,
                "state": address.state,
                "country": address.country_code,
                "postal_code": address.postal_code,
                "phone": address.phone,
                "email": address.email or request.customer_email,
            },
            "items": [
                {
                    "product_id": item.product_id,
                    "variant_id": item.variant_id,
                    "sku": item.sku,
                    "name": item.name,
                    "quantity": item.quantity,
                    "price": str(item.unit_cost) if item.unit_cost is not None else None,
                }
                for item in request.line_items
            ],
            "notes": request.remark,
        }

    @staticmethod
    def _tracking(data: Dict[str, Any]) -> Dict[str, Any]:
        nested = data.get("tracking_info") if isinstance(data.get("tracking_info"), dict) else {}
        return {
            "tracking_number": text_or_none(
                data.get("tracking_number") or data.get("trackingNumber") or nested.get("tracking_number")
            ),
            "tracking_url": text_or_none(
                data.get("tracking_url") or data.get("trackingUrl") or nested.get("tracking_url")
            ),
            "carrier": text_or_none(
                data.get("carrier") or data.get("shipping_carrier") or nested.get("carrier")
            ),
            "estimated_delivery": parse_vendor_datetime(
                data.get("estimated_delivery") or data.get("estimatedDelivery")
            ),
        }

    async def create_order(self, request: SupplierOrderRequest) -> SupplierOrderResponse:
        logger.info(f"[GENERIC] Supplier {self.supplier_id}: creating order {request.order_number}")
        data = await self.http.request_json("POST", "orders", json=self.build_order_payload(request))
        if not isinstance(data, dict):
            raise MalformedResponseError(f"{self.config.name} order create returned non-object")

        external_id = data.get("id") or data.get("order_id") or data.get("orderId")
        if not external_id:
            raise MalformedResponseError(f"{self.config.name} order create returned no order id")

        raw_status = text_or_none(data.get("status"))
        return SupplierOrderResponse(
            external_order_id=str(external_id),
            raw_status=raw_status,
            status=self.map_status(raw_status) if raw_status else SupplierOrderStatus.PROCESSING,
            **self._tracking(data),
        )

    async def get_order_status(self, external_order_id: str) -> OrderStatusInfo:
        try:
            data = await self.http.request_json("GET", f"orders/{external_order_id}")
        except RemoteError as e:
            if e.status_code == 404:
                raise ExternalOrderNotFoundError(
                    f"{self.config.name} order {external_order_id} not found",
                    external_order_id=external_order_id,
                ) from e
            raise
        if not isinstance(data, dict):
            raise MalformedResponseError(f"{self.config.name} order status returned non-object")

        raw_status = str(data.get("status") or data.get("fulfillment_status") or "")
        return OrderStatusInfo(
            external_order_id=external_order_id,
            raw_status=raw_status,
            status=self.map_status(raw_status),
            **self._tracking(data),
        )
