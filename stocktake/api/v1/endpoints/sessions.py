"""
Inventory Session API Endpoints.

Conflicting and resolved products of a session, and session completion.
"""
from uuid import UUID

from fastapi import APIRouter, Depends

from stocktake.api.deps import (
    get_conflict_resolution_service, get_run_lifecycle_service, raise_for_error,
)
from stocktake.schemas.counting import (
    ConflictItemResponse, ResolvedItemResponse, ObservationResponse,
    SessionConflictsResponse, SessionResolvedResponse, CompleteSessionResponse,
)
from stocktake.services.conflict_resolution_service import (
    ConflictResolutionService, ProductOutcome,
)
from stocktake.services.run_lifecycle_service import RunLifecycleService

router = APIRouter()


def _outcome_fields(outcome: ProductOutcome) -> dict:
    return {
        "zone_id": outcome.zone_id,
        "zone_code": outcome.zone_code,
        "zone_label": outcome.zone_label,
        "product_code": outcome.product.code,
        "sku": outcome.product.sku,
        "name": outcome.product.name,
        "ean": outcome.product.ean,
        "observations": [ObservationResponse.model_validate(o) for o in outcome.observations],
    }


# ============================================================================
# CONFLICTS
# ============================================================================

@router.get(
    "/sessions/{session_id}/conflicts",
    response_model=SessionConflictsResponse,
    summary="Get Session Conflicts"
)
async def get_session_conflicts(
    session_id: UUID,
    service: ConflictResolutionService = Depends(get_conflict_resolution_service),
):
    """Products whose counts still disagree, with every observation."""
    result = await service.get_session_conflicts(session_id)
    if result.error:
        raise_for_error(result.error)
    return SessionConflictsResponse(
        session_id=session_id,
        conflicts=[
            ConflictItemResponse(
                **_outcome_fields(outcome),
                sample_variance=outcome.evaluation.sample_variance,
            )
            for outcome in result.conflicts
        ],
    )


@router.get(
    "/sessions/{session_id}/resolved",
    response_model=SessionResolvedResponse,
    summary="Get Resolved Products"
)
async def get_session_resolved(
    session_id: UUID,
    service: ConflictResolutionService = Depends(get_conflict_resolution_service),
):
    """Products settled by matching counts or by majority of three."""
    result = await service.get_session_conflicts(session_id)
    if result.error:
        raise_for_error(result.error)
    return SessionResolvedResponse(
        session_id=session_id,
        resolved=[
            ResolvedItemResponse(
                **_outcome_fields(outcome),
                quantity=outcome.evaluation.quantity,
                rule=outcome.evaluation.rule.value,
                resolved_at=outcome.evaluation.resolved_at,
            )
            for outcome in result.resolved
        ],
    )


# ============================================================================
# COMPLETION
# ============================================================================

@router.post(
    "/sessions/{session_id}/complete",
    response_model=CompleteSessionResponse,
    summary="Complete Inventory Session"
)
async def complete_session(
    session_id: UUID,
    service: RunLifecycleService = Depends(get_run_lifecycle_service),
):
    """Close the session once no run is in progress."""
    result = await service.complete_session(session_id)
    if result.error:
        raise_for_error(result.error)
    return CompleteSessionResponse.model_validate(result)
