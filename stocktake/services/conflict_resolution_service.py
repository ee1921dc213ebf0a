"""
Conflict Resolution Engine.

Compares the completed runs of each zone in a session product by product
and splits products into still-conflicting and resolved sets. The
computation is pure over persisted completed runs; the ``count_conflicts``
table is only a projection of its unresolved output, rebuilt for a zone
whenever one of its runs completes.

Rules, per product:
- every observation within tolerance: resolved, "counts matched"
- disagreement with fewer than three observations: unresolved
- three observations, two of which agree: resolved, "majority of three"
- three observations all disagreeing: unresolved, needs manual adjudication
"""
import logging
import statistics
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from itertools import combinations
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from stocktake.config import settings
from stocktake.core.capabilities import StoreCapabilities
from stocktake.core.errors import LifecycleError, location_not_found, session_not_found
from stocktake.models.counting import CountingRun, ResolutionRule
from stocktake.services.run_store import RunStore, ProjectionRow, quantity_key

logger = logging.getLogger(__name__)

MAX_OBSERVATIONS = 3


@dataclass
class Observation:
    run_id: UUID
    count_type: int
    quantity: Decimal
    operator: Optional[str]
    completed_at: datetime


@dataclass
class Evaluation:
    resolved: bool
    quantity: Optional[Decimal] = None
    rule: Optional[ResolutionRule] = None
    resolved_at: Optional[datetime] = None
    sample_variance: Optional[float] = None


@dataclass
class ProductInfo:
    code: str
    sku: str
    name: str
    ean: Optional[str] = None
    product_id: Optional[UUID] = None


@dataclass
class ProductOutcome:
    """Evaluation of one product in one zone, with its observations."""
    zone_id: UUID
    product: ProductInfo
    observations: List[Observation]
    evaluation: Evaluation
    zone_code: Optional[str] = None
    zone_label: Optional[str] = None


@dataclass
class SessionConflictsResult:
    session_id: UUID
    conflicts: List[ProductOutcome] = field(default_factory=list)
    resolved: List[ProductOutcome] = field(default_factory=list)
    error: Optional[LifecycleError] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class RunHeader:
    """A run taking part in a zone comparison."""
    run_id: UUID
    count_type: int
    completed_at: datetime
    operator: Optional[str] = None


@dataclass
class ZoneConflictItem:
    product: ProductInfo
    counts: List[Observation]
    sample_variance: Optional[float] = None

    def quantity_for(self, count_type: int) -> Optional[Decimal]:
        for observation in self.counts:
            if observation.count_type == count_type:
                return observation.quantity
        return None


@dataclass
class ZoneConflictsResult:
    zone_id: UUID
    zone_code: Optional[str] = None
    zone_label: Optional[str] = None
    session_id: Optional[UUID] = None
    runs: List[RunHeader] = field(default_factory=list)
    items: List[ZoneConflictItem] = field(default_factory=list)
    error: Optional[LifecycleError] = None

    @property
    def success(self) -> bool:
        return self.error is None


# ============================================================================
# PURE CORE
# ============================================================================

def _agree(a: Decimal, b: Decimal, tolerance: Decimal) -> bool:
    return abs(a - b) <= tolerance


def _latest(observations: Sequence[Observation]) -> Observation:
    return max(observations, key=lambda o: (o.completed_at, o.count_type))


def evaluate_product(
    observations: Sequence[Observation],
    tolerance: Decimal = Decimal("0"),
) -> Evaluation:
    """
    Apply the resolution rules to the observations of one product.

    Raises ValueError for an empty set or more than three observations;
    counting never produces a fourth count type.
    """
    if not observations:
        raise ValueError("At least one observation is required")
    if len(observations) > MAX_OBSERVATIONS:
        raise ValueError(f"At most {MAX_OBSERVATIONS} observations can be resolved")

    quantities = [o.quantity for o in observations]
    latest = _latest(observations)

    if max(quantities) - min(quantities) <= tolerance:
        distinct = set(quantities)
        quantity = distinct.pop() if len(distinct) == 1 else latest.quantity
        return Evaluation(
            resolved=True,
            quantity=quantity,
            rule=ResolutionRule.COUNTS_MATCHED,
            resolved_at=latest.completed_at,
        )

    if len(observations) == MAX_OBSERVATIONS:
        agreeing = [
            (a, b) for a, b in combinations(observations, 2)
            if _agree(a.quantity, b.quantity, tolerance)
        ]
        if agreeing:
            # Several pairs can only agree under a tolerance; the most recent pair wins
            pair = max(agreeing, key=lambda p: (_latest(p).completed_at, _latest(p).count_type))
            quantity = pair[0].quantity if pair[0].quantity == pair[1].quantity else _latest(pair).quantity
            return Evaluation(
                resolved=True,
                quantity=quantity,
                rule=ResolutionRule.MAJORITY_OF_THREE,
                resolved_at=latest.completed_at,
            )

    return Evaluation(
        resolved=False,
        sample_variance=float(statistics.variance(quantities)),
    )


def latest_runs_by_type(runs: Sequence[CountingRun]) -> List[CountingRun]:
    """Latest completed run of each count type, ordered by count type."""
    latest: Dict[int, CountingRun] = {}
    for run in runs:
        current = latest.get(run.count_type)
        if current is None or run.completed_at >= current.completed_at:
            latest[run.count_type] = run
    return [latest[count_type] for count_type in sorted(latest)]


def evaluate_zone(
    zone_id: UUID,
    runs: Sequence[CountingRun],
    tolerance: Decimal = Decimal("0"),
) -> List[ProductOutcome]:
    """
    Evaluate every product seen in a zone's completed runs.

    Only the latest completed run of each count type takes part, and a
    product missing from one of those runs was observed as zero there. A
    zone with a single participating run has nothing to compare yet.
    """
    participating = latest_runs_by_type(runs)
    if len(participating) < 2:
        return []

    products: Dict[str, ProductInfo] = {}
    per_run: List[Tuple[CountingRun, Dict[str, Decimal]]] = []
    for run in participating:
        quantities = {}
        for line in run.lines:
            quantities[line.product_code] = Decimal(line.quantity)
            products.setdefault(line.product_code, ProductInfo(
                code=line.product_code,
                sku=line.sku,
                name=line.name,
                ean=line.ean,
                product_id=line.product_id,
            ))
        per_run.append((run, quantities))

    outcomes = []
    for code in sorted(products):
        observations = [
            Observation(
                run_id=run.id,
                count_type=run.count_type,
                quantity=quantities.get(code, Decimal("0")),
                operator=run.operator_display_name,
                completed_at=run.completed_at,
            )
            for run, quantities in per_run
        ]
        outcomes.append(ProductOutcome(
            zone_id=zone_id,
            product=products[code],
            observations=observations,
            evaluation=evaluate_product(observations, tolerance),
        ))
    return outcomes


def projection_rows(outcomes: Sequence[ProductOutcome]) -> List[ProjectionRow]:
    return [
        ProjectionRow(
            product_code=outcome.product.code,
            quantities={
                quantity_key(o.count_type): float(o.quantity) for o in outcome.observations
            },
            sample_variance=outcome.evaluation.sample_variance,
        )
        for outcome in outcomes
        if not outcome.evaluation.resolved
    ]


async def refresh_zone_projection(
    store: RunStore,
    session_id: UUID,
    zone_id: UUID,
    computed_at: datetime,
    tolerance: Decimal = Decimal("0"),
) -> int:
    """Rebuild a zone's conflict rows inside the caller's transaction."""
    runs = await store.completed_runs(session_id, zone_id=zone_id)
    rows = projection_rows(evaluate_zone(zone_id, runs, tolerance))
    await store.replace_zone_conflicts(session_id, zone_id, rows, computed_at)
    return len(rows)


# ============================================================================
# SERVICE
# ============================================================================

class ConflictResolutionService:
    """Read-only view of a session's conflicting and resolved products."""

    def __init__(
        self,
        db: AsyncSession,
        capabilities: Optional[StoreCapabilities] = None,
        tolerance: Optional[Decimal] = None,
    ):
        self.db = db
        self.store = RunStore(db, capabilities or StoreCapabilities.from_settings(settings))
        self.tolerance = settings.CONFLICT_TOLERANCE if tolerance is None else tolerance

    async def get_session_conflicts(self, session_id: UUID) -> SessionConflictsResult:
        async with self.db.begin():
            session = await self.store.get_session(session_id)
            if session is None:
                return SessionConflictsResult(
                    session_id=session_id, error=session_not_found(session_id)
                )

            runs_by_zone: Dict[UUID, List[CountingRun]] = {}
            for run in await self.store.completed_runs(session_id):
                runs_by_zone.setdefault(run.zone_id, []).append(run)
            zones = await self.store.get_zones(list(runs_by_zone))

        result = SessionConflictsResult(session_id=session_id)
        for zone_id in sorted(runs_by_zone, key=lambda z: zones[z].code if z in zones else str(z)):
            zone = zones.get(zone_id)
            for outcome in evaluate_zone(zone_id, runs_by_zone[zone_id], self.tolerance):
                if zone is not None:
                    outcome.zone_code = zone.code
                    outcome.zone_label = zone.label
                if outcome.evaluation.resolved:
                    result.resolved.append(outcome)
                else:
                    result.conflicts.append(outcome)

        logger.debug(
            "Session %s: %d conflicting, %d resolved products",
            session_id, len(result.conflicts), len(result.resolved),
        )
        return result

    async def get_zone_conflicts(self, zone_id: UUID) -> ZoneConflictsResult:
        """
        Conflicting products of one zone, with the quantity of each count.

        Looks at the session of the zone's latest completed run; a zone with
        no completed run, or whose counts all agree, has no items.
        """
        async with self.db.begin():
            zones = await self.store.get_zones([zone_id])
            zone = zones.get(zone_id)
            if zone is None:
                return ZoneConflictsResult(zone_id=zone_id, error=location_not_found(zone_id))

            result = ZoneConflictsResult(zone_id=zone_id, zone_code=zone.code, zone_label=zone.label)
            session_id = await self.store.latest_completed_session_id(zone_id)
            if session_id is None:
                return result
            result.session_id = session_id

            runs = await self.store.completed_runs(session_id, zone_id=zone_id)
            participating = latest_runs_by_type(runs)
            labels = await self.store.owner_labels(participating)

        outcomes = [
            outcome for outcome in evaluate_zone(zone_id, runs, self.tolerance)
            if not outcome.evaluation.resolved
        ]
        if not outcomes:
            logger.debug("Zone %s has no active conflict", zone_id)
            return result

        result.runs = [
            RunHeader(
                run_id=run.id,
                count_type=run.count_type,
                completed_at=run.completed_at,
                operator=labels.get(run.id),
            )
            for run in participating
        ]
        for outcome in outcomes:
            for observation in outcome.observations:
                observation.operator = labels.get(observation.run_id) or observation.operator
            result.items.append(ZoneConflictItem(
                product=outcome.product,
                counts=outcome.observations,
                sample_variance=outcome.evaluation.sample_variance,
            ))
        return result
