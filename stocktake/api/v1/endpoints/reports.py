"""
Inventory Report API Endpoints.

Finalized zone figures of a shop, as JSON or as CSV downloads.
"""
from uuid import UUID

from fastapi import APIRouter, Depends, Response

from stocktake.api.deps import get_clock, get_inventory_report_service, raise_for_error
from stocktake.schemas.counting import FinalizedZonesResponse
from stocktake.services.collaborators import Clock
from stocktake.services.report_service import (
    InventoryReportService, build_sku_csv, build_zones_csv,
)

router = APIRouter()


async def _finalized_zones(shop_id: UUID, service: InventoryReportService):
    result = await service.get_finalized_zones(shop_id)
    if result.error:
        raise_for_error(result.error)
    return result


def _csv_response(content: str, prefix: str, clock: Clock) -> Response:
    filename = f"{prefix}_{clock.utcnow().strftime('%Y%m%d_%H%M%S')}.csv"
    return Response(
        content=content.encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename={filename}"}
    )


@router.get(
    "/shops/{shop_id}/reports/inventory/zones",
    response_model=FinalizedZonesResponse,
    summary="Get Finalized Zones"
)
async def get_finalized_zones(
    shop_id: UUID,
    service: InventoryReportService = Depends(get_inventory_report_service),
):
    """Final figures of every zone completed in the latest session."""
    result = await _finalized_zones(shop_id, service)
    return FinalizedZonesResponse.model_validate(result)


@router.get(
    "/shops/{shop_id}/reports/inventory/zones.csv",
    summary="Export Zones Report"
)
async def export_zones_csv(
    shop_id: UUID,
    service: InventoryReportService = Depends(get_inventory_report_service),
    clock: Clock = Depends(get_clock),
):
    """One block per zone: operator, completion time and counted items."""
    result = await _finalized_zones(shop_id, service)
    return _csv_response(build_zones_csv(result.zones), "inventory_zones", clock)


@router.get(
    "/shops/{shop_id}/reports/inventory/sku.csv",
    summary="Export SKU Report"
)
async def export_sku_csv(
    shop_id: UUID,
    service: InventoryReportService = Depends(get_inventory_report_service),
    clock: Clock = Depends(get_clock),
):
    """Validated quantity of every product per zone."""
    result = await _finalized_zones(shop_id, service)
    return _csv_response(build_sku_csv(result.zones), "inventory_sku", clock)
