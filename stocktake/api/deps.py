from functools import lru_cache
import logging

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from stocktake.config import settings
from stocktake.core.capabilities import StoreCapabilities
from stocktake.core.errors import ErrorCode, ErrorKind, LifecycleError
from stocktake.database import get_db, async_session_factory
from stocktake.services.audit_service import DbAuditSink
from stocktake.services.collaborators import AuditSink, Clock, SystemClock
from stocktake.services.conflict_resolution_service import ConflictResolutionService
from stocktake.services.report_service import InventoryReportService
from stocktake.services.run_lifecycle_service import RunLifecycleService
from stocktake.services.shop_reset_service import ShopResetService


logger = logging.getLogger(__name__)


@lru_cache()
def get_capabilities() -> StoreCapabilities:
    """Run store capabilities, resolved once per process."""
    capabilities = StoreCapabilities.from_settings(settings)
    logger.info(
        "Run store capabilities: owner_user_id=%s operator_display_name=%s (schema v%d)",
        capabilities.owner_user_id,
        capabilities.operator_display_name,
        capabilities.schema_version,
    )
    return capabilities


def get_clock() -> Clock:
    return SystemClock()


def get_audit_sink() -> AuditSink:
    return DbAuditSink(async_session_factory)


async def get_run_lifecycle_service(
    db: AsyncSession = Depends(get_db),
    capabilities: StoreCapabilities = Depends(get_capabilities),
    clock: Clock = Depends(get_clock),
    audit_sink: AuditSink = Depends(get_audit_sink),
) -> RunLifecycleService:
    return RunLifecycleService(
        db,
        capabilities=capabilities,
        clock=clock,
        audit_sink=audit_sink,
    )


async def get_conflict_resolution_service(
    db: AsyncSession = Depends(get_db),
    capabilities: StoreCapabilities = Depends(get_capabilities),
) -> ConflictResolutionService:
    return ConflictResolutionService(db, capabilities=capabilities)


async def get_shop_reset_service(
    db: AsyncSession = Depends(get_db),
    capabilities: StoreCapabilities = Depends(get_capabilities),
    audit_sink: AuditSink = Depends(get_audit_sink),
) -> ShopResetService:
    return ShopResetService(db, capabilities=capabilities, audit_sink=audit_sink)


async def get_inventory_report_service(
    db: AsyncSession = Depends(get_db),
    capabilities: StoreCapabilities = Depends(get_capabilities),
) -> InventoryReportService:
    return InventoryReportService(db, capabilities=capabilities)


_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.PRECONDITION: status.HTTP_409_CONFLICT,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
}


def http_status_for(error: LifecycleError) -> int:
    # An unknown or disabled operator is a bad request, not a state conflict
    if error.code == ErrorCode.OWNER_INVALID:
        return status.HTTP_400_BAD_REQUEST
    return _STATUS_BY_KIND[error.kind]


def raise_for_error(error: LifecycleError) -> None:
    """Translate a service failure into an HTTPException."""
    raise HTTPException(
        status_code=http_status_for(error),
        detail=error.to_dict(),
    )
