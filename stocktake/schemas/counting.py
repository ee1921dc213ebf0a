"""
Counting Schemas - request and response bodies of the counting API.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, List, Dict
from uuid import UUID

from pydantic import Field

from stocktake.schemas.base import BaseResponseSchema, BaseCreateSchema


# ============================================================================
# RUN REQUESTS
# ============================================================================

class StartRunRequest(BaseCreateSchema):
    """Schema for starting (or resuming) a counting run."""
    shop_id: UUID
    owner_user_id: UUID
    count_type: int


class CountLineInput(BaseCreateSchema):
    """One raw scan. Codes and quantities are validated by the service."""
    ean: Optional[str] = None
    quantity: Decimal
    is_manual: bool = False


class CompleteRunRequest(BaseCreateSchema):
    """Schema for completing a counting run."""
    owner_user_id: UUID
    count_type: int
    run_id: Optional[UUID] = None
    completed_at: Optional[datetime] = None
    items: List[CountLineInput] = Field(default_factory=list)


class RestartRunRequest(BaseCreateSchema):
    owner_user_id: UUID
    count_type: int
    restarted_at: Optional[datetime] = None


class ReleaseRunRequest(BaseCreateSchema):
    owner_user_id: UUID
    run_id: UUID


class ShopResetRequest(BaseCreateSchema):
    actor: Optional[str] = Field(None, max_length=200)


# ============================================================================
# RUN RESPONSES
# ============================================================================

class RunResponse(BaseResponseSchema):
    run_id: UUID
    session_id: UUID
    zone_id: UUID
    count_type: int
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    owner_user_id: Optional[UUID] = None
    owner_display_name: Optional[str] = None


class StartRunResponse(BaseResponseSchema):
    run: RunResponse
    was_existing_run: bool


class CompleteRunResponse(BaseResponseSchema):
    run_id: UUID
    session_id: UUID
    zone_id: UUID
    count_type: int
    completed_at: datetime
    item_count: int
    total_quantity: Decimal
    conflict_lines: int = 0


class RestartRunResponse(BaseResponseSchema):
    zone_id: UUID
    count_type: int
    closed_runs: int
    closed_any: bool
    restarted_at: datetime


class ReleaseRunResponse(BaseResponseSchema):
    run_id: UUID
    session_deleted: bool


class CountLineResponse(BaseResponseSchema):
    product_code: str
    sku: str
    name: str
    ean: Optional[str] = None
    product_id: Optional[UUID] = None
    quantity: Decimal
    is_manual: bool


class RunDetailResponse(BaseResponseSchema):
    run: RunResponse
    lines: List[CountLineResponse]


# ============================================================================
# SESSION RESPONSES
# ============================================================================

class SessionResponse(BaseResponseSchema):
    session_id: UUID
    name: str
    started_at: datetime
    completed_at: Optional[datetime] = None


class CompleteSessionResponse(BaseResponseSchema):
    session_id: UUID
    completed_at: datetime
    already_completed: bool = False


class ObservationResponse(BaseResponseSchema):
    run_id: UUID
    count_type: int
    quantity: Decimal
    operator: Optional[str] = None
    completed_at: datetime


class ConflictItemResponse(BaseResponseSchema):
    zone_id: UUID
    zone_code: Optional[str] = None
    zone_label: Optional[str] = None
    product_code: str
    sku: str
    name: str
    ean: Optional[str] = None
    observations: List[ObservationResponse]
    sample_variance: Optional[float] = None


class ResolvedItemResponse(BaseResponseSchema):
    zone_id: UUID
    zone_code: Optional[str] = None
    zone_label: Optional[str] = None
    product_code: str
    sku: str
    name: str
    ean: Optional[str] = None
    quantity: Decimal
    rule: str
    resolved_at: datetime
    observations: List[ObservationResponse]


class SessionConflictsResponse(BaseResponseSchema):
    session_id: UUID
    conflicts: List[ConflictItemResponse]


class SessionResolvedResponse(BaseResponseSchema):
    session_id: UUID
    resolved: List[ResolvedItemResponse]


class RunHeaderResponse(BaseResponseSchema):
    run_id: UUID
    count_type: int
    completed_at: datetime
    operator: Optional[str] = None


class ZoneConflictItemResponse(BaseResponseSchema):
    product_code: str
    sku: str
    name: str
    ean: Optional[str] = None
    qty_c1: Optional[Decimal] = None
    qty_c2: Optional[Decimal] = None
    qty_c3: Optional[Decimal] = None
    counts: List[ObservationResponse]
    sample_variance: Optional[float] = None


class ZoneConflictsResponse(BaseResponseSchema):
    zone_id: UUID
    zone_code: str
    zone_label: str
    session_id: Optional[UUID] = None
    has_conflicts: bool
    runs: List[RunHeaderResponse]
    items: List[ZoneConflictItemResponse]


# ============================================================================
# SHOP RESPONSES
# ============================================================================

class ConflictZoneResponse(BaseResponseSchema):
    zone_id: UUID
    zone_code: str
    zone_label: str
    conflict_lines: int


class InventorySummaryResponse(BaseResponseSchema):
    shop_id: UUID
    open_session: Optional[SessionResponse] = None
    open_runs: List[RunResponse]
    completed_runs: List[RunResponse]
    conflict_zones: List[ConflictZoneResponse]


class CountStatusResponse(BaseResponseSchema):
    count_type: int
    status: str
    run_id: Optional[UUID] = None
    owner_user_id: Optional[UUID] = None
    owner_display_name: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ZoneStatusResponse(BaseResponseSchema):
    zone_id: UUID
    code: str
    label: str
    disabled: bool
    is_busy: bool
    busy_by: Optional[str] = None
    active_run_id: Optional[UUID] = None
    active_count_type: Optional[int] = None
    active_started_at: Optional[datetime] = None
    count_statuses: List[CountStatusResponse]


class ZoneStatusListResponse(BaseResponseSchema):
    shop_id: UUID
    session_id: Optional[UUID] = None
    zones: List[ZoneStatusResponse]


class FinalizedItemResponse(BaseResponseSchema):
    code: str
    sku: str
    name: str
    ean: Optional[str] = None
    quantity: Decimal


class FinalizedZoneResponse(BaseResponseSchema):
    zone_id: UUID
    zone_code: str
    zone_label: str
    run_id: UUID
    count_type: int
    completed_at: datetime
    operator: Optional[str] = None
    items: List[FinalizedItemResponse]


class FinalizedZonesResponse(BaseResponseSchema):
    shop_id: UUID
    session_id: Optional[UUID] = None
    zones: List[FinalizedZoneResponse]


class ShopResetResponse(BaseResponseSchema):
    shop_id: UUID
    shop_name: Optional[str] = None
    zones: int
    runs: int
    lines: int
    conflicts: int
    sessions: int


class ErrorResponse(BaseResponseSchema):
    code: str
    title: str
    detail: str
    metadata: Optional[Dict[str, Any]] = None
    errors: Optional[List[Dict[str, str]]] = None
