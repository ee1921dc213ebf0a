"""
Counting Run API Endpoints.

Start, complete, restart and release counting runs of a zone, plus the
resume lookup and completed run detail used by counting devices.
"""
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from stocktake.api.deps import get_run_lifecycle_service, raise_for_error
from stocktake.schemas.counting import (
    StartRunRequest, StartRunResponse,
    CompleteRunRequest, CompleteRunResponse,
    RestartRunRequest, RestartRunResponse,
    ReleaseRunRequest, ReleaseRunResponse,
    RunResponse, RunDetailResponse,
)
from stocktake.services.code_validation import ScanLine
from stocktake.services.run_lifecycle_service import RunLifecycleService

router = APIRouter()


# ============================================================================
# ZONE RUNS
# ============================================================================

@router.post(
    "/zones/{zone_id}/runs/start",
    response_model=StartRunResponse,
    summary="Start Counting Run"
)
async def start_run(
    zone_id: UUID,
    data: StartRunRequest,
    service: RunLifecycleService = Depends(get_run_lifecycle_service),
):
    """Start a run on the zone, or resume the caller's open run."""
    result = await service.start_run(zone_id, data.shop_id, data.owner_user_id, data.count_type)
    if result.error:
        raise_for_error(result.error)
    return StartRunResponse(
        run=RunResponse.model_validate(result.run),
        was_existing_run=result.was_existing_run,
    )


@router.post(
    "/zones/{zone_id}/runs/complete",
    response_model=CompleteRunResponse,
    summary="Complete Counting Run"
)
async def complete_run(
    zone_id: UUID,
    data: CompleteRunRequest,
    service: RunLifecycleService = Depends(get_run_lifecycle_service),
):
    """Persist the scanned lines of the caller's open run."""
    lines = [
        ScanLine(code=item.ean, quantity=item.quantity, is_manual=item.is_manual)
        for item in data.items
    ]
    result = await service.complete_run(
        zone_id,
        data.owner_user_id,
        data.count_type,
        lines,
        run_id=data.run_id,
        completed_at=data.completed_at,
    )
    if result.error:
        raise_for_error(result.error)
    return CompleteRunResponse.model_validate(result)


@router.post(
    "/zones/{zone_id}/runs/restart",
    response_model=RestartRunResponse,
    summary="Restart Counting Run"
)
async def restart_run(
    zone_id: UUID,
    data: RestartRunRequest,
    service: RunLifecycleService = Depends(get_run_lifecycle_service),
):
    """Close whatever run is open for the count type so it can start afresh."""
    result = await service.restart_run(
        zone_id, data.owner_user_id, data.count_type, restarted_at=data.restarted_at
    )
    if result.error:
        raise_for_error(result.error)
    return RestartRunResponse.model_validate(result)


@router.post(
    "/zones/{zone_id}/runs/release",
    response_model=ReleaseRunResponse,
    summary="Release Counting Run"
)
async def release_run(
    zone_id: UUID,
    data: ReleaseRunRequest,
    service: RunLifecycleService = Depends(get_run_lifecycle_service),
):
    """Abandon the caller's open run without saving any line."""
    result = await service.release_run(zone_id, data.owner_user_id, data.run_id)
    if result.error:
        raise_for_error(result.error)
    return ReleaseRunResponse.model_validate(result)


@router.get(
    "/zones/{zone_id}/runs/active",
    response_model=RunResponse,
    summary="Get Active Run"
)
async def get_active_run(
    zone_id: UUID,
    owner_user_id: UUID,
    count_type: int = Query(..., ge=1, le=3),
    service: RunLifecycleService = Depends(get_run_lifecycle_service),
):
    """Get the caller's open run on the zone for resuming."""
    run = await service.find_active_run(zone_id, count_type, owner_user_id)
    if not run:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active run"
        )
    return RunResponse.model_validate(run)


# ============================================================================
# RUN DETAIL
# ============================================================================

@router.get(
    "/runs/{run_id}",
    response_model=RunDetailResponse,
    summary="Get Completed Run"
)
async def get_run(
    run_id: UUID,
    service: RunLifecycleService = Depends(get_run_lifecycle_service),
):
    """Get a completed run with its aggregated lines."""
    result = await service.get_completed_run_detail(run_id)
    if result.error:
        raise_for_error(result.error)
    return RunDetailResponse.model_validate(result)
