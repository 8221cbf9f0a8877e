"""
AliExpress dropshipping adapter

X-API-KEY auth. Responses are {"code": "0", "result": {...}}; any other
code is a failure.
"""
import logging
from typing import Any, Dict

from dropship_engine.core.exceptions import (
    ExternalOrderNotFoundError,
    MalformedResponseError,
    RemoteError,
)
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


@register_adapter(SupplierType.ALIEXPRESS)
class AliExpressAdapter(BaseSupplierAdapter):

    STATUS_MAP = {
        "PLACE_ORDER_SUCCESS": SupplierOrderStatus.PROCESSING,
        "WAIT_SELLER_SEND_GOODS": SupplierOrderStatus.PROCESSING,
        "WAIT_BUYER_ACCEPT_GOODS": SupplierOrderStatus.SHIPPED,
        "WAIT_GROUP_SUCCESS": SupplierOrderStatus.SHIPPED,
        "FINISH": SupplierOrderStatus.COMPLETED,
        "IN_CANCEL": SupplierOrderStatus.CANCELLED,
    }

    @property
    def supplier_type(self) -> SupplierType:
        return SupplierType.ALIEXPRESS

    def default_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-API-KEY": self.config.api_key or "",
        }

    def _result(self, payload: Any, path: str) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"AliExpress {path}: expected JSON object")
        code = payload.get("code")
        if str(code) != "0":
            message = str(payload.get("msg") or payload.get("message") or "Unknown error")
            raise RemoteError(
                f"AliExpress {path} failed: {message} (code={code})",
                body_excerpt=message[:200],
                vendor_code=code,
            )
        result = payload.get("result")
        if not isinstance(result, dict):
            raise MalformedResponseError(f"AliExpress {path}: missing result object")
        return result

    async def create_order(self, request: SupplierOrderRequest) -> SupplierOrderResponse:
        address = request.shipping_address
        path = "drop/shipping/order/create"
        body = {
            "out_order_id": request.order_number,
            "logistic_address": {
                "contact_person": address.name,
                "address": address.address1,
                "address2": address.address2,
                "city": address.city,
                "province": address.state,
                "zip": address.postal_code,
                "country": address.country_code,
                "phone_number": address.phone,
            },
            "product_items": [
                {
                    "product_id": item.product_id,
                    "product_count": item.quantity,
                    "sku_attr": item.variant_id,
                    "logistics_service_name": request.shipping_method,
                }
                for item in request.line_items
            ],
        }

        logger.info(f"[ALIEXPRESS] Supplier {self.supplier_id}: creating order {request.order_number}")
        result = self._result(await self.http.request_json("POST", path, json=body), path)

        order_id = result.get("order_id")
        if isinstance(order_id, list):
            order_id = order_id[0] if order_id else None
        if not order_id:
            raise MalformedResponseError(f"AliExpress order create for {request.order_number} returned no order id")

        return SupplierOrderResponse(external_order_id=str(order_id), raw_status="PLACE_ORDER_SUCCESS")

    async def get_order_status(self, external_order_id: str) -> OrderStatusInfo:
        path = "drop/shipping/order/get"
        try:
            payload = await self.http.request_json("GET", path, params={"order_id": external_order_id})
            result = self._result(payload, path)
        except RemoteError as e:
            if e.status_code == 404 or "not exist" in (e.body_excerpt or "").lower():
                raise ExternalOrderNotFoundError(
                    f"AliExpress order {external_order_id} not found",
                    external_order_id=external_order_id,
                ) from e
            raise

        logistics = result.get("logistics_info") if isinstance(result.get("logistics_info"), dict) else {}
        raw_status = str(result.get("order_status") or "")
        return OrderStatusInfo(
            external_order_id=external_order_id,
            raw_status=raw_status,
            status=self.map_status(raw_status),
            tracking_number=text_or_none(logistics.get("tracking_number")),
            tracking_url=text_or_none(logistics.get("tracking_url")),
            carrier=text_or_none(logistics.get("logistics_company")),
        )
