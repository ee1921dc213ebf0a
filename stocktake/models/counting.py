"""
Counting Models - inventory sessions, counting runs and count lines.

Models for zone-by-zone stock counting including:
- Inventory sessions (one open campaign per shop)
- Counting runs (one pass over a zone for a count type, by one operator)
- Aggregated count lines persisted when a run completes
- Conflict projection rows recomputed from completed runs
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Optional, List
from uuid import UUID, uuid4

from sqlalchemy import (
    String, SmallInteger, ForeignKey, Index, Boolean, Numeric, Float, CheckConstraint, text
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stocktake.database import Base
from stocktake.db_types import JSONType, UUIDType, UTCDateTime
from stocktake.models.directory import utcnow


# ============================================================================
# ENUMS
# ============================================================================

class CountType(IntEnum):
    """Pass number of a counting run."""
    FIRST = 1       # First pass
    SECOND = 2      # Independent second pass
    TIEBREAK = 3    # Third pass triggered by a disagreement

    @property
    def label(self) -> str:
        return {1: "first count", 2: "second count", 3: "tie-break count"}[self.value]


class RunStatus(str, Enum):
    """Lifecycle state of a counting run."""
    OPEN = "open"              # Started, slot held
    COMPLETED = "completed"    # Lines persisted
    RELEASED = "released"      # Abandoned by its owner, no lines
    RESTARTED = "restarted"    # Closed by a restart, no lines


class ResolutionRule(str, Enum):
    """How a product's retained quantity was settled."""
    COUNTS_MATCHED = "counts_matched"
    MAJORITY_OF_THREE = "majority_of_three"


OPEN_RUN_CLAUSE = text("status = 'open'")
OPEN_SESSION_CLAUSE = text("completed_at IS NULL")


# ============================================================================
# MODELS
# ============================================================================

class InventorySession(Base):
    """
    A counting campaign for a shop.
    Created implicitly by the first run started while no session is open.
    """
    __tablename__ = "inventory_sessions"
    __table_args__ = (
        Index(
            "uq_inventory_sessions_open_shop", "shop_id",
            unique=True,
            sqlite_where=OPEN_SESSION_CLAUSE,
            postgresql_where=OPEN_SESSION_CLAUSE,
        ),
        Index("idx_isess_shop", "shop_id", "started_at"),
    )

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    shop_id: Mapped[UUID] = mapped_column(UUIDType, ForeignKey("shops.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    # Relationships
    runs: Mapped[List["CountingRun"]] = relationship(back_populates="session")


class CountingRun(Base):
    """
    One pass of counting a zone for one count type, owned by one operator.

    At most one run per (zone, count type) may be open; the partial unique
    index below is what the start operation relies on.
    """
    __tablename__ = "counting_runs"
    __table_args__ = (
        Index(
            "uq_counting_runs_open_slot", "zone_id", "count_type",
            unique=True,
            sqlite_where=OPEN_RUN_CLAUSE,
            postgresql_where=OPEN_RUN_CLAUSE,
        ),
        Index("idx_cr_session_zone", "session_id", "zone_id"),
        Index("idx_cr_zone_type_status", "zone_id", "count_type", "status"),
        CheckConstraint("count_type BETWEEN 1 AND 3", name="ck_counting_runs_count_type"),
    )

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    session_id: Mapped[UUID] = mapped_column(
        UUIDType, ForeignKey("inventory_sessions.id"), nullable=False
    )
    zone_id: Mapped[UUID] = mapped_column(UUIDType, ForeignKey("zones.id"), nullable=False)
    count_type: Mapped[int] = mapped_column(SmallInteger, nullable=False)

    # Owner (either column may be unused depending on store capabilities)
    owner_user_id: Mapped[Optional[UUID]] = mapped_column(UUIDType)
    operator_display_name: Mapped[Optional[str]] = mapped_column(String(200))

    status: Mapped[RunStatus] = mapped_column(
        String(20), nullable=False, default=RunStatus.OPEN.value
    )
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)  # released / restarted

    # Relationships
    session: Mapped["InventorySession"] = relationship(back_populates="runs")
    lines: Mapped[List["CountLine"]] = relationship(
        back_populates="run", order_by="CountLine.product_code"
    )

    @property
    def is_open(self) -> bool:
        return self.status == RunStatus.OPEN.value


class CountLine(Base):
    """
    Aggregated quantity of one product within a completed run.
    Raw duplicate scans are summed before they reach this table.
    """
    __tablename__ = "count_lines"
    __table_args__ = (
        Index("idx_cl_run", "run_id"),
        Index("idx_cl_run_code", "run_id", "product_code", unique=True),
        CheckConstraint("quantity >= 0", name="ck_count_lines_quantity"),
    )

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    run_id: Mapped[UUID] = mapped_column(
        UUIDType, ForeignKey("counting_runs.id"), nullable=False
    )

    # Product reference (product_id is empty for codes unknown to the catalog)
    product_code: Mapped[str] = mapped_column(String(64), nullable=False)
    product_id: Mapped[Optional[UUID]] = mapped_column(UUIDType)
    sku: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    ean: Mapped[Optional[str]] = mapped_column(String(64))

    quantity: Mapped[Decimal] = mapped_column(Numeric(15, 3), nullable=False)
    is_manual: Mapped[bool] = mapped_column(Boolean, default=False)
    counted_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Relationships
    run: Mapped["CountingRun"] = relationship(back_populates="lines")


class CountConflict(Base):
    """
    Projection of an unresolved product disagreement for a zone.

    Rebuilt for the zone every time one of its runs completes; the
    conflict resolution service remains the source of truth.
    """
    __tablename__ = "count_conflicts"
    __table_args__ = (
        Index("idx_cc_session_zone", "session_id", "zone_id"),
    )

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    session_id: Mapped[UUID] = mapped_column(
        UUIDType, ForeignKey("inventory_sessions.id"), nullable=False
    )
    zone_id: Mapped[UUID] = mapped_column(UUIDType, ForeignKey("zones.id"), nullable=False)
    product_code: Mapped[str] = mapped_column(String(64), nullable=False)
    quantities: Mapped[dict] = mapped_column(JSONType, nullable=False)  # count type -> quantity
    sample_variance: Mapped[Optional[float]] = mapped_column(Float)
    projection_version: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=1)
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
