from dropship_engine.models.supplier import Supplier, SupplierStatus, SupplierType
from dropship_engine.models.supplier_order import (
    SupplierOrder,
    SupplierOrderStatus,
    SHIPPED_STATUSES,
    RECONCILE_STATUSES,
    can_transition,
)
from dropship_engine.models.order import (
    Address,
    FulfillmentStatus,
    Order,
    OrderItem,
    Product,
    ProductVariant,
)

__all__ = [
    "Supplier",
    "SupplierStatus",
    "SupplierType",
    "SupplierOrder",
    "SupplierOrderStatus",
    "SHIPPED_STATUSES",
    "RECONCILE_STATUSES",
    "can_transition",
    "Address",
    "FulfillmentStatus",
    "Order",
    "OrderItem",
    "Product",
    "ProductVariant",
]
