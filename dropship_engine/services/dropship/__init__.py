"""
Dropship Fulfillment Services

Components:
- fanout: split a paid order into per-supplier SupplierOrders
- dispatcher: send a SupplierOrder to its supplier
- reconciler: poll suppliers and merge status into orders
- service: DropshippingService facade over the three
"""
from dropship_engine.services.dropship.fanout import (
    OrderFanoutEngine,
    FanoutResult,
    SupplierFanoutResult,
)
from dropship_engine.services.dropship.dispatcher import (
    OrderDispatcher,
    DispatchResult,
)
from dropship_engine.services.dropship.reconciler import (
    StatusReconciler,
    ReconcileResult,
    OrderUpdateResult,
    compute_fulfillment_status,
)
from dropship_engine.services.dropship.service import DropshippingService

__all__ = [
    # Fan-out
    "OrderFanoutEngine",
    "FanoutResult",
    "SupplierFanoutResult",
    # Dispatch
    "OrderDispatcher",
    "DispatchResult",
    # Reconciliation
    "StatusReconciler",
    "ReconcileResult",
    "OrderUpdateResult",
    "compute_fulfillment_status",
    # Facade
    "DropshippingService",
]
