from dropship_engine.jobs.supplier_sync import (
    run_supplier_order_status_sync_job,
    SupplierSyncRunner,
)

__all__ = ["run_supplier_order_status_sync_job", "SupplierSyncRunner"]
