"""
Run Store - transactional persistence for sessions, runs and count lines.

Every method runs inside the caller's transaction; none of them commits.
Exclusivity of open runs is enforced by the ``uq_counting_runs_open_slot``
partial unique index, so a racing insert surfaces as ``IntegrityError`` at
flush time.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select, func, delete, update, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from stocktake.core.capabilities import StoreCapabilities
from stocktake.models.counting import (
    CountType, RunStatus, InventorySession, CountingRun, CountLine, CountConflict,
)
from stocktake.models.directory import Shop, ShopUser, Zone
from stocktake.services.code_validation import AggregatedLine
from stocktake.services.collaborators import OwnerInfo, ProductRef

logger = logging.getLogger(__name__)

# Bumped whenever the shape of count_conflicts rows changes.
CONFLICT_PROJECTION_VERSION = 1


@dataclass
class ResetTotals:
    zones: int = 0
    runs: int = 0
    lines: int = 0
    conflicts: int = 0
    sessions: int = 0


@dataclass
class ConflictZoneRow:
    zone_id: UUID
    zone_code: str
    zone_label: str
    conflict_lines: int


@dataclass
class ProjectionRow:
    product_code: str
    quantities: Dict[str, float] = field(default_factory=dict)
    sample_variance: Optional[float] = None


class RunStore:
    """SQL persistence for counting runs, scoped by zone and count type."""

    def __init__(self, db: AsyncSession, capabilities: StoreCapabilities):
        self.db = db
        self.capabilities = capabilities

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    def is_owned_by(self, run: CountingRun, owner: OwnerInfo) -> bool:
        if self.capabilities.owner_user_id and run.owner_user_id is not None:
            return run.owner_user_id == owner.id
        if run.operator_display_name is None:
            return False
        return run.operator_display_name.strip().casefold() == owner.display_name.strip().casefold()

    async def owner_label(self, run: CountingRun) -> Optional[str]:
        if run.operator_display_name:
            return run.operator_display_name
        if run.owner_user_id is None:
            return None
        result = await self.db.execute(
            select(ShopUser.display_name).where(ShopUser.id == run.owner_user_id)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def get_shop(self, shop_id: UUID) -> Optional[Shop]:
        return await self.db.get(Shop, shop_id)

    async def get_session(self, session_id: UUID) -> Optional[InventorySession]:
        return await self.db.get(InventorySession, session_id)

    async def find_open_session(self, shop_id: UUID) -> Optional[InventorySession]:
        result = await self.db.execute(
            select(InventorySession)
            .where(
                InventorySession.shop_id == shop_id,
                InventorySession.completed_at.is_(None),
            )
            .order_by(InventorySession.started_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_session(self, shop_id: UUID) -> Optional[InventorySession]:
        """The shop's open session, else the one it started last."""
        session = await self.find_open_session(shop_id)
        if session is not None:
            return session
        result = await self.db.execute(
            select(InventorySession)
            .where(InventorySession.shop_id == shop_id)
            .order_by(InventorySession.started_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_session(self, shop_id: UUID, started_at: datetime) -> InventorySession:
        session = InventorySession(
            shop_id=shop_id,
            name=f"Inventory {started_at:%Y-%m-%d %H:%M}",
            started_at=started_at,
        )
        self.db.add(session)
        await self.db.flush()
        logger.info("Opened inventory session %s for shop %s", session.id, shop_id)
        return session

    async def count_open_runs(self, session_id: UUID) -> int:
        result = await self.db.execute(
            select(func.count(CountingRun.id)).where(
                CountingRun.session_id == session_id,
                CountingRun.status == RunStatus.OPEN.value,
            )
        )
        return result.scalar() or 0

    async def complete_session(self, session: InventorySession, completed_at: datetime) -> None:
        session.completed_at = completed_at
        await self.db.flush()

    async def delete_session_if_only_released(self, session_id: UUID) -> bool:
        """Drop a session whose runs were all released. Returns True if deleted."""
        result = await self.db.execute(
            select(func.count(CountingRun.id)).where(
                CountingRun.session_id == session_id,
                CountingRun.status != RunStatus.RELEASED.value,
            )
        )
        if result.scalar():
            return False

        await self.db.execute(
            delete(CountingRun).where(CountingRun.session_id == session_id)
        )
        await self.db.execute(
            delete(InventorySession).where(InventorySession.id == session_id)
        )
        return True

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def get_run(self, run_id: UUID, with_lines: bool = False) -> Optional[CountingRun]:
        query = select(CountingRun).where(CountingRun.id == run_id)
        if with_lines:
            query = query.options(selectinload(CountingRun.lines))
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def find_open_run(
        self,
        zone_id: UUID,
        count_type: int,
        lock: bool = False,
    ) -> Optional[CountingRun]:
        query = (
            select(CountingRun)
            .where(
                CountingRun.zone_id == zone_id,
                CountingRun.count_type == count_type,
                CountingRun.status == RunStatus.OPEN.value,
            )
            .order_by(CountingRun.started_at.desc())
            .limit(1)
        )
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def list_open_runs(self, shop_id: UUID) -> List[CountingRun]:
        result = await self.db.execute(
            select(CountingRun)
            .join(Zone, Zone.id == CountingRun.zone_id)
            .where(
                Zone.shop_id == shop_id,
                CountingRun.status == RunStatus.OPEN.value,
            )
            .order_by(CountingRun.started_at)
        )
        return list(result.scalars().all())

    async def create_run(
        self,
        session_id: UUID,
        zone_id: UUID,
        count_type: int,
        owner: OwnerInfo,
        started_at: datetime,
    ) -> CountingRun:
        run = CountingRun(
            session_id=session_id,
            zone_id=zone_id,
            count_type=count_type,
            status=RunStatus.OPEN.value,
            started_at=started_at,
        )
        if self.capabilities.owner_user_id:
            run.owner_user_id = owner.id
        if self.capabilities.operator_display_name:
            run.operator_display_name = owner.display_name
        self.db.add(run)
        await self.db.flush()
        return run

    async def has_completed_run(self, zone_id: UUID, count_type: int, session_id: UUID) -> bool:
        result = await self.db.execute(
            select(func.count(CountingRun.id)).where(
                CountingRun.zone_id == zone_id,
                CountingRun.count_type == count_type,
                CountingRun.session_id == session_id,
                CountingRun.status == RunStatus.COMPLETED.value,
            )
        )
        return bool(result.scalar())

    async def latest_completed_run(
        self,
        zone_id: UUID,
        count_type: int,
        session_id: UUID,
    ) -> Optional[CountingRun]:
        result = await self.db.execute(
            select(CountingRun)
            .where(
                CountingRun.zone_id == zone_id,
                CountingRun.count_type == count_type,
                CountingRun.session_id == session_id,
                CountingRun.status == RunStatus.COMPLETED.value,
            )
            .order_by(CountingRun.completed_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def complete_run(
        self,
        run: CountingRun,
        lines: Sequence[Tuple[AggregatedLine, ProductRef]],
        completed_at: datetime,
    ) -> List[CountLine]:
        persisted = []
        for line, product in lines:
            count_line = CountLine(
                run_id=run.id,
                product_code=line.code,
                product_id=product.product_id,
                sku=product.sku,
                name=product.name,
                ean=product.ean,
                quantity=line.quantity,
                is_manual=line.is_manual,
                counted_at=completed_at,
            )
            self.db.add(count_line)
            persisted.append(count_line)

        run.status = RunStatus.COMPLETED.value
        run.completed_at = completed_at
        await self.db.flush()
        return persisted

    async def close_open_runs(self, zone_id: UUID, count_type: int, closed_at: datetime) -> int:
        """Mark every open run of the slot as restarted, whoever owns it."""
        result = await self.db.execute(
            update(CountingRun)
            .where(
                CountingRun.zone_id == zone_id,
                CountingRun.count_type == count_type,
                CountingRun.status == RunStatus.OPEN.value,
            )
            .values(status=RunStatus.RESTARTED.value, closed_at=closed_at)
        )
        return result.rowcount or 0

    async def release_run(self, run: CountingRun, closed_at: datetime) -> None:
        run.status = RunStatus.RELEASED.value
        run.closed_at = closed_at
        await self.db.flush()

    async def completed_runs(
        self,
        session_id: UUID,
        zone_id: Optional[UUID] = None,
    ) -> List[CountingRun]:
        """Completed runs of a session with their lines, oldest first."""
        query = (
            select(CountingRun)
            .where(
                CountingRun.session_id == session_id,
                CountingRun.status == RunStatus.COMPLETED.value,
            )
            .options(selectinload(CountingRun.lines))
            .order_by(CountingRun.completed_at)
            .execution_options(populate_existing=True)
        )
        if zone_id is not None:
            query = query.where(CountingRun.zone_id == zone_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_zones(self, zone_ids: Sequence[UUID]) -> Dict[UUID, Zone]:
        if not zone_ids:
            return {}
        result = await self.db.execute(select(Zone).where(Zone.id.in_(list(zone_ids))))
        return {zone.id: zone for zone in result.scalars().all()}

    # ------------------------------------------------------------------
    # Zone listings and reports
    # ------------------------------------------------------------------

    async def list_zones(self, shop_id: UUID, include_disabled: bool = False) -> List[Zone]:
        query = select(Zone).where(Zone.shop_id == shop_id).order_by(Zone.code)
        if not include_disabled:
            query = query.where(Zone.disabled.is_(False))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def session_zone_runs(
        self,
        session_id: UUID,
        zone_ids: Sequence[UUID],
    ) -> List[CountingRun]:
        """Open and completed runs of the given zones in a session, newest first."""
        if not zone_ids:
            return []
        result = await self.db.execute(
            select(CountingRun)
            .where(
                CountingRun.session_id == session_id,
                CountingRun.zone_id.in_(list(zone_ids)),
                CountingRun.status.in_([RunStatus.OPEN.value, RunStatus.COMPLETED.value]),
            )
            .order_by(CountingRun.started_at.desc())
        )
        return list(result.scalars().all())

    async def latest_completed_session_id(self, zone_id: UUID) -> Optional[UUID]:
        """Session of the zone's most recently completed run."""
        result = await self.db.execute(
            select(CountingRun.session_id)
            .where(
                CountingRun.zone_id == zone_id,
                CountingRun.status == RunStatus.COMPLETED.value,
            )
            .order_by(CountingRun.completed_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def finalized_zone_runs(self, session_id: UUID) -> List[CountingRun]:
        """
        The run that holds each zone's final figures in a session.

        That is the completed run with the highest count type, the latest one
        when a count type was completed more than once.
        """
        runs = await self.completed_runs(session_id)
        finalized: Dict[UUID, CountingRun] = {}
        for run in runs:
            current = finalized.get(run.zone_id)
            if current is None or (run.count_type, run.completed_at) > (
                current.count_type, current.completed_at
            ):
                finalized[run.zone_id] = run
        return list(finalized.values())

    async def owner_labels(self, runs: Sequence[CountingRun]) -> Dict[UUID, Optional[str]]:
        """Display label of each run's operator, keyed by run id."""
        missing = {
            run.owner_user_id for run in runs
            if not run.operator_display_name and run.owner_user_id is not None
        }
        names: Dict[UUID, str] = {}
        if missing:
            result = await self.db.execute(
                select(ShopUser.id, ShopUser.display_name).where(ShopUser.id.in_(list(missing)))
            )
            names = dict(result.all())
        return {
            run.id: run.operator_display_name or names.get(run.owner_user_id)
            for run in runs
        }

    # ------------------------------------------------------------------
    # Conflict projection
    # ------------------------------------------------------------------

    async def replace_zone_conflicts(
        self,
        session_id: UUID,
        zone_id: UUID,
        rows: Sequence[ProjectionRow],
        computed_at: datetime,
    ) -> int:
        await self.db.execute(
            delete(CountConflict).where(
                CountConflict.session_id == session_id,
                CountConflict.zone_id == zone_id,
            )
        )
        for row in rows:
            self.db.add(CountConflict(
                session_id=session_id,
                zone_id=zone_id,
                product_code=row.product_code,
                quantities=row.quantities,
                sample_variance=row.sample_variance,
                projection_version=CONFLICT_PROJECTION_VERSION,
                computed_at=computed_at,
            ))
        await self.db.flush()
        return len(rows)

    async def conflict_zones(self, session_id: UUID) -> List[ConflictZoneRow]:
        result = await self.db.execute(
            select(Zone.id, Zone.code, Zone.label, func.count(CountConflict.id))
            .join(CountConflict, CountConflict.zone_id == Zone.id)
            .where(CountConflict.session_id == session_id)
            .group_by(Zone.id, Zone.code, Zone.label)
            .order_by(Zone.code)
        )
        return [
            ConflictZoneRow(zone_id=zone_id, zone_code=code, zone_label=label, conflict_lines=count)
            for zone_id, code, label, count in result.all()
        ]

    # ------------------------------------------------------------------
    # Shop reset
    # ------------------------------------------------------------------

    async def reset_shop(self, shop_id: UUID) -> ResetTotals:
        """Delete every session, run, line and conflict of a shop."""
        shop_zones = select(Zone.id).where(Zone.shop_id == shop_id)
        shop_sessions = select(InventorySession.id).where(InventorySession.shop_id == shop_id)
        run_scope = or_(
            CountingRun.zone_id.in_(shop_zones),
            CountingRun.session_id.in_(shop_sessions),
        )
        shop_runs = select(CountingRun.id).where(run_scope)
        conflict_scope = or_(
            CountConflict.zone_id.in_(shop_zones),
            CountConflict.session_id.in_(shop_sessions),
        )

        totals = ResetTotals()
        totals.zones = (await self.db.execute(
            select(func.count(func.distinct(CountingRun.zone_id))).where(run_scope)
        )).scalar() or 0
        totals.runs = (await self.db.execute(
            select(func.count(CountingRun.id)).where(run_scope)
        )).scalar() or 0
        totals.lines = (await self.db.execute(
            select(func.count(CountLine.id)).where(CountLine.run_id.in_(shop_runs))
        )).scalar() or 0
        totals.conflicts = (await self.db.execute(
            select(func.count(CountConflict.id)).where(conflict_scope)
        )).scalar() or 0

        # Sessions referenced by the shop's runs, plus the shop's own sessions
        session_ids = set((await self.db.execute(shop_sessions)).scalars().all())
        session_ids.update((await self.db.execute(
            select(CountingRun.session_id).where(run_scope).distinct()
        )).scalars().all())
        totals.sessions = len(session_ids)

        # Children first: lines, conflicts, runs, then sessions
        await self.db.execute(
            delete(CountLine)
            .where(CountLine.run_id.in_(shop_runs))
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            delete(CountConflict)
            .where(conflict_scope)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            delete(CountingRun)
            .where(run_scope)
            .execution_options(synchronize_session=False)
        )
        if session_ids:
            await self.db.execute(
                delete(InventorySession)
                .where(InventorySession.id.in_(session_ids))
                .execution_options(synchronize_session=False)
            )
        return totals


def quantity_key(count_type: int) -> str:
    """Key of a count type in the projection's ``quantities`` map."""
    return CountType(count_type).name.lower()
