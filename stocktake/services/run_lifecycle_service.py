"""
Run Lifecycle Manager.

State machine of counting runs: start, complete, restart and release, plus
the session and read operations that sit next to them. The single shared
resource is the database; each operation is one transaction, and the only
mutual exclusion unit is (zone, count type):

- the zone row is locked before the open-run check (PostgreSQL),
- SQLite serializes writers with BEGIN IMMEDIATE,
- the ``uq_counting_runs_open_slot`` partial unique index rejects a second
  open run whatever the isolation level, and Start retries the whole unit
  when it loses that race.

Business failures come back as typed results; only infrastructure faults
raise, after the transaction has been rolled back.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from stocktake.config import settings
from stocktake.core import errors
from stocktake.core.capabilities import StoreCapabilities
from stocktake.core.errors import FieldError, LifecycleError
from stocktake.models.counting import CountType, CountingRun, InventorySession, RunStatus
from stocktake.services.code_validation import ScanLine, validate_lines, aggregate_lines
from stocktake.services.collaborators import (
    AuditSink,
    Clock,
    OwnerDirectory,
    OwnerInfo,
    ProductCatalog,
    SystemClock,
    SqlOwnerDirectory,
    SqlProductCatalog,
    SqlZoneRegistry,
    ZoneRegistry,
)
from stocktake.services.conflict_resolution_service import refresh_zone_projection
from stocktake.services.run_store import RunStore, ConflictZoneRow

logger = logging.getLogger(__name__)


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class RunHandle:
    run_id: UUID
    session_id: UUID
    zone_id: UUID
    count_type: int
    status: str
    started_at: datetime
    owner_user_id: Optional[UUID] = None
    owner_display_name: Optional[str] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_run(cls, run: CountingRun) -> "RunHandle":
        return cls(
            run_id=run.id,
            session_id=run.session_id,
            zone_id=run.zone_id,
            count_type=run.count_type,
            status=run.status,
            started_at=run.started_at,
            owner_user_id=run.owner_user_id,
            owner_display_name=run.operator_display_name,
            completed_at=run.completed_at,
        )


@dataclass
class LineInfo:
    product_code: str
    sku: str
    name: str
    ean: Optional[str]
    product_id: Optional[UUID]
    quantity: Decimal
    is_manual: bool


@dataclass
class StartRunResult:
    run: Optional[RunHandle] = None
    was_existing_run: bool = False
    error: Optional[LifecycleError] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class CompleteRunResult:
    run_id: Optional[UUID] = None
    session_id: Optional[UUID] = None
    zone_id: Optional[UUID] = None
    count_type: Optional[int] = None
    completed_at: Optional[datetime] = None
    item_count: int = 0
    total_quantity: Decimal = Decimal("0")
    conflict_lines: int = 0
    error: Optional[LifecycleError] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class RestartRunResult:
    zone_id: Optional[UUID] = None
    count_type: Optional[int] = None
    closed_runs: int = 0
    restarted_at: Optional[datetime] = None
    error: Optional[LifecycleError] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def closed_any(self) -> bool:
        return self.closed_runs > 0


@dataclass
class ReleaseRunResult:
    run_id: Optional[UUID] = None
    session_deleted: bool = False
    error: Optional[LifecycleError] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class CompleteSessionResult:
    session_id: Optional[UUID] = None
    completed_at: Optional[datetime] = None
    already_completed: bool = False
    error: Optional[LifecycleError] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class SessionInfo:
    session_id: UUID
    name: str
    started_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_session(cls, session: InventorySession) -> "SessionInfo":
        return cls(
            session_id=session.id,
            name=session.name,
            started_at=session.started_at,
            completed_at=session.completed_at,
        )


@dataclass
class InventorySummary:
    shop_id: UUID
    open_session: Optional[SessionInfo] = None
    open_runs: List[RunHandle] = field(default_factory=list)
    completed_runs: List[RunHandle] = field(default_factory=list)
    conflict_zones: List[ConflictZoneRow] = field(default_factory=list)
    error: Optional[LifecycleError] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class RunDetailResult:
    run: Optional[RunHandle] = None
    lines: List[LineInfo] = field(default_factory=list)
    error: Optional[LifecycleError] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class CountStatus:
    """State of one count type on a zone."""
    count_type: int
    status: str = "not_started"
    run_id: Optional[UUID] = None
    owner_user_id: Optional[UUID] = None
    owner_display_name: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class ZoneStatus:
    zone_id: UUID
    code: str
    label: str
    disabled: bool
    is_busy: bool = False
    busy_by: Optional[str] = None
    active_run_id: Optional[UUID] = None
    active_count_type: Optional[int] = None
    active_started_at: Optional[datetime] = None
    count_statuses: List[CountStatus] = field(default_factory=list)


@dataclass
class ZoneStatusList:
    shop_id: UUID
    session_id: Optional[UUID] = None
    zones: List[ZoneStatus] = field(default_factory=list)
    error: Optional[LifecycleError] = None

    @property
    def success(self) -> bool:
        return self.error is None


class _Refused(Exception):
    """Carries a business failure out of a transaction block."""

    def __init__(self, error: LifecycleError):
        super().__init__(error.detail)
        self.error = error


def _check_count_type(count_type: int) -> Optional[LifecycleError]:
    if count_type not in {c.value for c in CountType}:
        return errors.validation_failed(
            [FieldError(field="count_type", message="Count type must be 1, 2 or 3.")],
            detail="Unsupported count type.",
        )
    return None


# ============================================================================
# SERVICE
# ============================================================================

class RunLifecycleService:
    """
    Service for counting run lifecycle operations.

    All collaborators default to the SQL-backed implementations sharing this
    service's session; tests inject their own clock, audit sink or settings.
    """

    def __init__(
        self,
        db: AsyncSession,
        capabilities: Optional[StoreCapabilities] = None,
        clock: Optional[Clock] = None,
        audit_sink: Optional[AuditSink] = None,
        owners: Optional[OwnerDirectory] = None,
        zones: Optional[ZoneRegistry] = None,
        catalog: Optional[ProductCatalog] = None,
        tolerance: Optional[Decimal] = None,
        require_distinct_second_counter: Optional[bool] = None,
        max_start_attempts: Optional[int] = None,
    ):
        self.db = db
        self.capabilities = capabilities or StoreCapabilities.from_settings(settings)
        self.store = RunStore(db, self.capabilities)
        self.clock = clock or SystemClock()
        self.audit_sink = audit_sink
        self.owners = owners or SqlOwnerDirectory(db)
        self.zones = zones or SqlZoneRegistry(db)
        self.catalog = catalog or SqlProductCatalog(db)
        self.tolerance = settings.CONFLICT_TOLERANCE if tolerance is None else tolerance
        self.require_distinct_second_counter = (
            settings.REQUIRE_DISTINCT_SECOND_COUNTER
            if require_distinct_second_counter is None
            else require_distinct_second_counter
        )
        self.max_start_attempts = max_start_attempts or settings.START_RUN_MAX_ATTEMPTS

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_run(
        self,
        zone_id: UUID,
        shop_id: UUID,
        owner_id: UUID,
        count_type: int,
    ) -> StartRunResult:
        """
        Open a run for (zone, count type) or resume the caller's open run.

        Retries when a concurrent start wins the open-run index; the retry
        re-reads and reports the winner as ConflictOtherOwner.
        """
        invalid = _check_count_type(count_type)
        if invalid:
            return StartRunResult(error=invalid)

        attempt = 1
        while True:
            try:
                async with self.db.begin():
                    result = await self._start_once(zone_id, shop_id, owner_id, count_type)
                break
            except IntegrityError:
                if attempt >= self.max_start_attempts:
                    logger.error(
                        "Start of count %s on zone %s still racing after %d attempts",
                        count_type, zone_id, attempt,
                    )
                    raise
                logger.warning(
                    "Concurrent start on zone %s count %s, retrying (attempt %d)",
                    zone_id, count_type, attempt,
                )
                attempt += 1

        if result.error:
            logger.warning(
                "Start refused on zone %s count %s: %s",
                zone_id, count_type, result.error.code.value,
            )
        elif result.was_existing_run:
            logger.info("Resumed run %s on zone %s", result.run.run_id, zone_id)
        else:
            logger.info(
                "Started run %s on zone %s count %s by %s",
                result.run.run_id, zone_id, count_type, result.run.owner_display_name,
            )
        return result

    async def _start_once(
        self,
        zone_id: UUID,
        shop_id: UUID,
        owner_id: UUID,
        count_type: int,
    ) -> StartRunResult:
        zone = await self.zones.get(zone_id, shop_id)
        if zone is None:
            return StartRunResult(error=errors.location_not_found(zone_id))
        if zone.disabled:
            return StartRunResult(error=errors.location_disabled(zone_id))

        owner = await self.owners.get_member(shop_id, owner_id)
        if owner is None:
            return StartRunResult(error=errors.owner_invalid(owner_id, shop_id))

        await self.zones.lock(zone_id)

        session = await self.store.find_open_session(shop_id)
        if count_type == CountType.SECOND:
            if session is None or not await self.store.has_completed_run(
                zone_id, CountType.FIRST, session.id
            ):
                return StartRunResult(error=errors.sequential_prerequisite_missing(zone_id))

        existing = await self.store.find_open_run(zone_id, count_type, lock=True)
        if existing is not None:
            if self.store.is_owned_by(existing, owner):
                return StartRunResult(run=RunHandle.from_run(existing), was_existing_run=True)
            label = await self.store.owner_label(existing)
            return StartRunResult(error=errors.conflict_other_owner(label))

        now = self.clock.utcnow()
        if session is None:
            session = await self.store.create_session(shop_id, now)
        run = await self.store.create_run(session.id, zone_id, count_type, owner, now)
        handle = RunHandle.from_run(run)
        handle.owner_display_name = owner.display_name
        return StartRunResult(run=handle)

    # ------------------------------------------------------------------
    # Complete
    # ------------------------------------------------------------------

    async def complete_run(
        self,
        zone_id: UUID,
        owner_id: UUID,
        count_type: int,
        lines: Sequence[ScanLine],
        run_id: Optional[UUID] = None,
        completed_at: Optional[datetime] = None,
    ) -> CompleteRunResult:
        """
        Persist the aggregated lines of the caller's open run and close it.

        Lines are validated as a whole before anything is read; duplicate
        scans of a product are summed so only one line per product is stored.
        """
        invalid = _check_count_type(count_type)
        if invalid:
            return CompleteRunResult(error=invalid)

        normalized, field_errors = validate_lines(lines)
        if field_errors:
            logger.warning(
                "Completion on zone %s rejected: %d invalid field(s)", zone_id, len(field_errors)
            )
            return CompleteRunResult(error=errors.validation_failed(field_errors))
        aggregated = aggregate_lines(normalized)

        try:
            async with self.db.begin():
                zone = await self.zones.get(zone_id)
                if zone is None:
                    raise _Refused(errors.location_not_found(zone_id))
                if zone.disabled:
                    raise _Refused(errors.location_disabled(zone_id, action="complete a count"))

                owner = await self.owners.get_member(zone.shop_id, owner_id)
                if owner is None:
                    raise _Refused(errors.owner_invalid(owner_id, zone.shop_id))

                await self.zones.lock(zone_id)
                run = await self._resolve_run_to_complete(zone_id, owner, count_type, run_id)

                if count_type == CountType.SECOND and self.require_distinct_second_counter:
                    first = await self.store.latest_completed_run(
                        zone_id, CountType.FIRST, run.session_id
                    )
                    if first is not None and self.store.is_owned_by(first, owner):
                        raise _Refused(errors.same_operator_as_first_count())

                completed_at = completed_at or self.clock.utcnow()
                products = await self.catalog.resolve(zone.shop_id, [line.code for line in aggregated])
                await self.store.complete_run(
                    run,
                    [(line, products[line.code]) for line in aggregated],
                    completed_at,
                )
                conflict_lines = await refresh_zone_projection(
                    self.store, run.session_id, zone_id, self.clock.utcnow(), self.tolerance
                )
                result = CompleteRunResult(
                    run_id=run.id,
                    session_id=run.session_id,
                    zone_id=zone_id,
                    count_type=count_type,
                    completed_at=completed_at,
                    item_count=len(aggregated),
                    total_quantity=sum((line.quantity for line in aggregated), Decimal("0")),
                    conflict_lines=conflict_lines,
                )
        except _Refused as refused:
            logger.warning(
                "Completion on zone %s refused: %s", zone_id, refused.error.code.value
            )
            return CompleteRunResult(error=refused.error)

        logger.info(
            "Completed run %s on zone %s: %d products, total %s",
            result.run_id, zone_id, result.item_count, result.total_quantity,
        )
        await self._audit(
            "inventories.complete.success",
            f"{owner.display_name} completed the {CountType(count_type).label} of zone "
            f"{zone.code} ({zone.label}): {result.item_count} products, "
            f"total quantity {result.total_quantity}.",
            actor=owner.display_name,
            details={
                "run_id": result.run_id,
                "session_id": result.session_id,
                "zone_id": zone_id,
                "count_type": count_type,
                "items": result.item_count,
                "total_quantity": result.total_quantity,
            },
        )
        return result

    async def _resolve_run_to_complete(
        self,
        zone_id: UUID,
        owner: OwnerInfo,
        count_type: int,
        run_id: Optional[UUID],
    ) -> CountingRun:
        if run_id is None:
            run = await self.store.find_open_run(zone_id, count_type, lock=True)
            if run is None or not self.store.is_owned_by(run, owner):
                raise _Refused(errors.run_not_found())
            return run

        run = await self.store.get_run(run_id)
        if run is None:
            raise _Refused(errors.run_not_found("The requested run does not exist."))
        if run.zone_id != zone_id:
            raise _Refused(errors.run_zone_mismatch(run_id, zone_id))
        if not run.is_open:
            raise _Refused(errors.run_not_found("The requested run is no longer in progress."))
        if not self.store.is_owned_by(run, owner):
            raise _Refused(errors.not_owner(await self.store.owner_label(run)))
        if run.count_type != count_type:
            raise _Refused(errors.run_not_found(
                f"The requested run is not a {CountType(count_type).label}."
            ))
        return run

    # ------------------------------------------------------------------
    # Restart
    # ------------------------------------------------------------------

    async def restart_run(
        self,
        zone_id: UUID,
        owner_id: UUID,
        count_type: int,
        restarted_at: Optional[datetime] = None,
    ) -> RestartRunResult:
        """Close every open run of (zone, count type), whoever holds it."""
        invalid = _check_count_type(count_type)
        if invalid:
            return RestartRunResult(error=invalid)

        async with self.db.begin():
            zone = await self.zones.get(zone_id)
            if zone is None:
                return RestartRunResult(error=errors.location_not_found(zone_id))
            if zone.disabled:
                return RestartRunResult(
                    error=errors.location_disabled(zone_id, action="restart a count")
                )
            owner = await self.owners.get_member(zone.shop_id, owner_id)
            if owner is None:
                return RestartRunResult(error=errors.owner_invalid(owner_id, zone.shop_id))

            await self.zones.lock(zone_id)
            restarted_at = restarted_at or self.clock.utcnow()
            closed = await self.store.close_open_runs(zone_id, count_type, restarted_at)

        logger.info(
            "Restarted zone %s count %s by %s, %d run(s) closed",
            zone_id, count_type, owner.display_name, closed,
        )
        if closed:
            message = (
                f"{owner.display_name} relaunched the {CountType(count_type).label} of zone "
                f"{zone.code} and closed {closed} active count(s)."
            )
        else:
            message = (
                f"{owner.display_name} relaunched the {CountType(count_type).label} of zone "
                f"{zone.code}; no count was in progress."
            )
        await self._audit(
            "inventories.restart",
            message,
            actor=owner.display_name,
            details={"zone_id": zone_id, "count_type": count_type, "closed_runs": closed},
        )
        return RestartRunResult(
            zone_id=zone_id,
            count_type=count_type,
            closed_runs=closed,
            restarted_at=restarted_at,
        )

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_run(
        self,
        zone_id: UUID,
        owner_id: UUID,
        run_id: UUID,
    ) -> ReleaseRunResult:
        """Abandon the caller's open run without persisting any line."""
        async with self.db.begin():
            run = await self.store.get_run(run_id)
            if run is None or run.zone_id != zone_id or not run.is_open:
                return ReleaseRunResult(error=errors.run_not_found())

            zone = await self.zones.get(zone_id)
            if zone is None:
                return ReleaseRunResult(error=errors.location_not_found(zone_id))
            owner = await self.owners.get_member(zone.shop_id, owner_id)
            if owner is None:
                return ReleaseRunResult(error=errors.owner_invalid(owner_id, zone.shop_id))
            if not self.store.is_owned_by(run, owner):
                return ReleaseRunResult(error=errors.not_owner(await self.store.owner_label(run)))

            session_id = run.session_id
            await self.store.release_run(run, self.clock.utcnow())
            session_deleted = await self.store.delete_session_if_only_released(session_id)

        logger.info(
            "Released run %s on zone %s%s",
            run_id, zone_id, " and dropped its empty session" if session_deleted else "",
        )
        await self._audit(
            "inventories.release",
            f"{owner.display_name} released the {CountType(run.count_type).label} "
            f"of zone {zone.code}.",
            actor=owner.display_name,
            details={"run_id": run_id, "zone_id": zone_id, "session_deleted": session_deleted},
        )
        return ReleaseRunResult(run_id=run_id, session_deleted=session_deleted)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def complete_session(
        self,
        session_id: UUID,
        completed_at: Optional[datetime] = None,
    ) -> CompleteSessionResult:
        async with self.db.begin():
            session = await self.store.get_session(session_id)
            if session is None:
                return CompleteSessionResult(error=errors.session_not_found(session_id))
            if session.completed_at is not None:
                return CompleteSessionResult(
                    session_id=session_id,
                    completed_at=session.completed_at,
                    already_completed=True,
                )
            open_runs = await self.store.count_open_runs(session_id)
            if open_runs:
                return CompleteSessionResult(
                    error=errors.session_has_open_runs(session_id, open_runs)
                )
            completed_at = completed_at or self.clock.utcnow()
            await self.store.complete_session(session, completed_at)

        logger.info("Completed inventory session %s", session_id)
        return CompleteSessionResult(session_id=session_id, completed_at=completed_at)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_active_run(
        self,
        zone_id: UUID,
        count_type: int,
        owner_id: UUID,
    ) -> Optional[RunHandle]:
        """The caller's open run on (zone, count type), if any."""
        async with self.db.begin():
            zone = await self.zones.get(zone_id)
            if zone is None:
                return None
            owner = await self.owners.get_member(zone.shop_id, owner_id)
            if owner is None:
                return None
            run = await self.store.find_open_run(zone_id, count_type)
            if run is None or not self.store.is_owned_by(run, owner):
                return None
            return RunHandle.from_run(run)

    async def get_inventory_summary(self, shop_id: UUID) -> InventorySummary:
        async with self.db.begin():
            shop = await self.store.get_shop(shop_id)
            if shop is None:
                return InventorySummary(shop_id=shop_id, error=errors.shop_not_found(shop_id))

            summary = InventorySummary(shop_id=shop_id)
            summary.open_runs = [
                RunHandle.from_run(run) for run in await self.store.list_open_runs(shop_id)
            ]
            session = await self.store.find_open_session(shop_id)
            if session is not None:
                summary.open_session = SessionInfo.from_session(session)
                summary.completed_runs = [
                    RunHandle.from_run(run)
                    for run in await self.store.completed_runs(session.id)
                ]
                summary.conflict_zones = await self.store.conflict_zones(session.id)
        return summary

    async def list_zone_statuses(
        self,
        shop_id: UUID,
        count_type: Optional[int] = None,
        include_disabled: bool = False,
    ) -> ZoneStatusList:
        """
        Every zone of the shop with the state of each count type.

        States come from the shop's latest session. Count types 1 and 2 are
        always listed; 3 only once a tie-break was started or is requested.
        With ``count_type``, a zone is busy only when that count is open.
        """
        if count_type is not None:
            invalid = _check_count_type(count_type)
            if invalid:
                return ZoneStatusList(shop_id=shop_id, error=invalid)

        async with self.db.begin():
            shop = await self.store.get_shop(shop_id)
            if shop is None:
                return ZoneStatusList(shop_id=shop_id, error=errors.shop_not_found(shop_id))

            zones = await self.store.list_zones(shop_id, include_disabled=include_disabled)
            session = await self.store.latest_session(shop_id)
            runs: List[CountingRun] = []
            if session is not None and zones:
                runs = await self.store.session_zone_runs(session.id, [zone.id for zone in zones])
            labels = await self.store.owner_labels(runs)

        # Runs arrive newest first, so the first match is the current one
        open_runs = {}
        completed_runs = {}
        for run in runs:
            target = open_runs if run.is_open else completed_runs
            target.setdefault((run.zone_id, run.count_type), run)

        count_types = {CountType.FIRST.value, CountType.SECOND.value}
        count_types.update(run.count_type for run in runs)
        if count_type is not None:
            count_types.add(count_type)

        listing = ZoneStatusList(shop_id=shop_id, session_id=session.id if session else None)
        for zone in zones:
            item = ZoneStatus(zone_id=zone.id, code=zone.code, label=zone.label, disabled=zone.disabled)
            for value in sorted(count_types):
                status = CountStatus(count_type=value)
                run = open_runs.get((zone.id, value))
                if run is not None:
                    status.status = "in_progress"
                else:
                    run = completed_runs.get((zone.id, value))
                    if run is not None:
                        status.status = "completed"
                if run is not None:
                    status.run_id = run.id
                    status.owner_user_id = run.owner_user_id
                    status.owner_display_name = labels.get(run.id)
                    status.started_at = run.started_at
                    status.completed_at = run.completed_at
                item.count_statuses.append(status)

            active = [
                run for (zone_id, value), run in open_runs.items()
                if zone_id == zone.id and (count_type is None or value == count_type)
            ]
            if active:
                current = max(active, key=lambda r: r.started_at)
                item.is_busy = True
                item.busy_by = labels.get(current.id)
                item.active_run_id = current.id
                item.active_count_type = current.count_type
                item.active_started_at = current.started_at
            listing.zones.append(item)
        return listing

    async def get_completed_run_detail(self, run_id: UUID) -> RunDetailResult:
        async with self.db.begin():
            run = await self.store.get_run(run_id, with_lines=True)
            if run is None or run.status != RunStatus.COMPLETED.value:
                return RunDetailResult(
                    error=errors.run_not_found("No completed run matches the given id.")
                )
            return RunDetailResult(
                run=RunHandle.from_run(run),
                lines=[
                    LineInfo(
                        product_code=line.product_code,
                        sku=line.sku,
                        name=line.name,
                        ean=line.ean,
                        product_id=line.product_id,
                        quantity=Decimal(line.quantity),
                        is_manual=line.is_manual,
                    )
                    for line in run.lines
                ],
            )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def _audit(self, action: str, message: str, actor=None, details=None) -> None:
        if self.audit_sink is None:
            return
        try:
            await self.audit_sink.record(action, message, actor=actor, details=details)
        except Exception:
            logger.warning("Audit record %s could not be written", action, exc_info=True)
