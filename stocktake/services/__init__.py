from stocktake.services.audit_service import AuditService, DbAuditSink
from stocktake.services.conflict_resolution_service import (
    ConflictResolutionService, evaluate_product, evaluate_zone,
)
from stocktake.services.report_service import InventoryReportService
from stocktake.services.run_lifecycle_service import RunLifecycleService
from stocktake.services.run_store import RunStore
from stocktake.services.shop_reset_service import ShopResetService

__all__ = [
    "AuditService",
    "DbAuditSink",
    "ConflictResolutionService",
    "evaluate_product",
    "evaluate_zone",
    "InventoryReportService",
    "RunLifecycleService",
    "RunStore",
    "ShopResetService",
]
