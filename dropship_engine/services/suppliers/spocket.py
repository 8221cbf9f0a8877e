"""
Spocket adapter

Same REST shape as the generic adapter; the order body uses Spocket's
field names and splits the recipient name.
"""
from typing import Any, Dict

from dropship_engine.models.supplier import SupplierType
from dropship_engine.models.supplier_order import SupplierOrderStatus
from dropship_engine.services.suppliers import register_adapter
from dropship_engine.services.suppliers.base import SupplierOrderRequest
from dropship_engine.services.suppliers.generic import GenericRestAdapter


@register_adapter(SupplierType.SPOCKET)
class SpocketAdapter(GenericRestAdapter):

    DEFAULT_BASE_URL = "https://api.spocket.co/"

    STATUS_MAP = {
        **GenericRestAdapter.STATUS_MAP,
        "PAID": SupplierOrderStatus.PROCESSING,
        "AWAITING_FULFILLMENT": SupplierOrderStatus.PROCESSING,
        "REFUNDED": SupplierOrderStatus.CANCELLED,
    }

    @property
    def supplier_type(self) -> SupplierType:
        return SupplierType.SPOCKET

    def build_order_payload(self, request: SupplierOrderRequest) -> Dict[str, Any]:
        address = request.shipping_address
        return {
            "order_reference": request.order_number,
            "shipping_details": {
                "first_name": address.first_name,
                "last_name": address.last_name,
                "address1": address.address1,
                "address2": address.address2,
                "city": address.city,
                "province": address.state,
                "zip": address.postal_code,
                "country": address.country_code,
                "phone": address.phone,
                "email": address.email or request.customer_email,
            },
            "line_items": [
                {
                    "product_id": item.product_id,
                    "variant_id": item.variant_id,
                    "quantity": item.quantity,
                }
                for item in request.line_items
            ],
        }
