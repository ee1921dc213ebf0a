"""
Shop Inventory API Endpoints.
"""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status

from stocktake.api.deps import get_run_lifecycle_service, get_shop_reset_service, raise_for_error
from stocktake.schemas.counting import (
    InventorySummaryResponse, ShopResetRequest, ShopResetResponse,
)
from stocktake.services.run_lifecycle_service import RunLifecycleService
from stocktake.services.shop_reset_service import ShopResetService

router = APIRouter()


@router.get(
    "/shops/{shop_id}/inventory/summary",
    response_model=InventorySummaryResponse,
    summary="Get Inventory Summary"
)
async def get_inventory_summary(
    shop_id: UUID,
    service: RunLifecycleService = Depends(get_run_lifecycle_service),
):
    """Open session, runs in progress, completed runs and zones in conflict."""
    summary = await service.get_inventory_summary(shop_id)
    if summary.error:
        raise_for_error(summary.error)
    return InventorySummaryResponse.model_validate(summary)


@router.post(
    "/shops/{shop_id}/inventory/reset",
    response_model=ShopResetResponse,
    status_code=status.HTTP_200_OK,
    summary="Reset Shop Inventory"
)
async def reset_shop_inventory(
    shop_id: UUID,
    data: Optional[ShopResetRequest] = None,
    service: ShopResetService = Depends(get_shop_reset_service),
):
    """Delete every counting session, run, line and conflict of the shop."""
    result = await service.reset_shop_inventory(shop_id, actor=data.actor if data else None)
    return ShopResetResponse.model_validate(result)
