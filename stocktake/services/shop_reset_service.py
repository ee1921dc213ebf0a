"""
Shop Reset - administrative teardown of all counting state of a shop.

Irreversible: every session, run, count line and conflict row under the
shop is deleted in one transaction. Directory data (zones, operators,
products) is left untouched.
"""
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from stocktake.config import settings
from stocktake.core.capabilities import StoreCapabilities
from stocktake.services.collaborators import AuditSink
from stocktake.services.run_store import RunStore

logger = logging.getLogger(__name__)


@dataclass
class ShopResetResult:
    shop_id: UUID
    shop_name: Optional[str] = None
    zones: int = 0
    runs: int = 0
    lines: int = 0
    conflicts: int = 0
    sessions: int = 0

    @property
    def shop_found(self) -> bool:
        return self.shop_name is not None


class ShopResetService:
    def __init__(
        self,
        db: AsyncSession,
        capabilities: Optional[StoreCapabilities] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.db = db
        self.store = RunStore(db, capabilities or StoreCapabilities.from_settings(settings))
        self.audit_sink = audit_sink

    async def reset_shop_inventory(self, shop_id: UUID, actor: Optional[str] = None) -> ShopResetResult:
        async with self.db.begin():
            shop = await self.store.get_shop(shop_id)
            totals = await self.store.reset_shop(shop_id)

        result = ShopResetResult(
            shop_id=shop_id,
            shop_name=shop.name if shop is not None else None,
            zones=totals.zones,
            runs=totals.runs,
            lines=totals.lines,
            conflicts=totals.conflicts,
            sessions=totals.sessions,
        )
        logger.info(
            "Reset inventory of shop %s: %d zones, %d runs, %d lines, %d conflicts, %d sessions",
            shop_id, result.zones, result.runs, result.lines, result.conflicts, result.sessions,
        )

        if self.audit_sink is not None:
            label = result.shop_name or str(shop_id)
            try:
                await self.audit_sink.record(
                    "inventories.reset",
                    f"Inventory of shop {label} reset: {result.runs} runs, {result.lines} lines, "
                    f"{result.conflicts} conflicts and {result.sessions} sessions removed.",
                    actor=actor,
                    details={
                        "shop_id": shop_id,
                        "zones": result.zones,
                        "runs": result.runs,
                        "lines": result.lines,
                        "conflicts": result.conflicts,
                        "sessions": result.sessions,
                    },
                )
            except Exception:
                logger.warning("Audit record inventories.reset could not be written", exc_info=True)
        return result
