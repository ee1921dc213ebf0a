from stocktake.models.directory import Shop, ShopUser, Zone, Product
from stocktake.models.counting import (
    CountType, RunStatus, ResolutionRule,
    InventorySession, CountingRun, CountLine, CountConflict,
)
from stocktake.models.audit_log import AuditLog

__all__ = [
    # Directory
    "Shop",
    "ShopUser",
    "Zone",
    "Product",
    # Counting
    "CountType",
    "RunStatus",
    "ResolutionRule",
    "InventorySession",
    "CountingRun",
    "CountLine",
    "CountConflict",
    # Audit
    "AuditLog",
]
