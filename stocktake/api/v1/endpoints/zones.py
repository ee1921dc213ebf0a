"""
Zone API Endpoints.

Zone occupancy of a shop and the conflict detail of a single zone.
"""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from stocktake.api.deps import (
    get_conflict_resolution_service, get_run_lifecycle_service, raise_for_error,
)
from stocktake.schemas.counting import (
    ObservationResponse, RunHeaderResponse, ZoneConflictItemResponse,
    ZoneConflictsResponse, ZoneStatusListResponse,
)
from stocktake.services.conflict_resolution_service import ConflictResolutionService
from stocktake.services.run_lifecycle_service import RunLifecycleService

router = APIRouter()


@router.get(
    "/shops/{shop_id}/zones",
    response_model=ZoneStatusListResponse,
    summary="List Zone Statuses"
)
async def list_zone_statuses(
    shop_id: UUID,
    count_type: Optional[int] = Query(None, description="Only this count decides whether a zone is busy"),
    include_disabled: bool = Query(False),
    service: RunLifecycleService = Depends(get_run_lifecycle_service),
):
    """Every zone with the state of each count type in the latest session."""
    result = await service.list_zone_statuses(
        shop_id, count_type=count_type, include_disabled=include_disabled
    )
    if result.error:
        raise_for_error(result.error)
    return ZoneStatusListResponse.model_validate(result)


@router.get(
    "/zones/{zone_id}/conflicts",
    response_model=ZoneConflictsResponse,
    summary="Get Zone Conflicts"
)
async def get_zone_conflicts(
    zone_id: UUID,
    service: ConflictResolutionService = Depends(get_conflict_resolution_service),
):
    """Conflicting products of the zone with the quantity of each count."""
    result = await service.get_zone_conflicts(zone_id)
    if result.error:
        raise_for_error(result.error)
    return ZoneConflictsResponse(
        zone_id=result.zone_id,
        zone_code=result.zone_code,
        zone_label=result.zone_label,
        session_id=result.session_id,
        has_conflicts=bool(result.items),
        runs=[RunHeaderResponse.model_validate(run) for run in result.runs],
        items=[
            ZoneConflictItemResponse(
                product_code=item.product.code,
                sku=item.product.sku,
                name=item.product.name,
                ean=item.product.ean,
                qty_c1=item.quantity_for(1),
                qty_c2=item.quantity_for(2),
                qty_c3=item.quantity_for(3),
                counts=[ObservationResponse.model_validate(o) for o in item.counts],
                sample_variance=item.sample_variance,
            )
            for item in result.items
        ],
    )
