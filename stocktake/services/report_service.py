"""
Inventory reports.

Final figures of every zone of a shop's latest session, as read from each
zone's finalizing run, plus the two CSV exports built from them:

- zones.csv: one block per zone (operator, completion time, counted items)
- sku.csv: one row per product and zone with the validated quantity

Both files use ``;`` as separator and start with a UTF-8 byte order mark so
spreadsheet tools pick the right encoding.
"""
import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from stocktake.config import settings
from stocktake.core.capabilities import StoreCapabilities
from stocktake.core.errors import LifecycleError, shop_not_found
from stocktake.services.run_store import RunStore

logger = logging.getLogger(__name__)

CSV_DELIMITER = ";"
CSV_BOM = "\ufeff"
QUANTITY_STEP = Decimal("0.001")


@dataclass
class FinalizedItem:
    code: str
    sku: str
    name: str
    quantity: Decimal
    ean: Optional[str] = None


@dataclass
class FinalizedZone:
    zone_id: UUID
    zone_code: str
    zone_label: str
    run_id: UUID
    count_type: int
    completed_at: datetime
    operator: Optional[str] = None
    items: List[FinalizedItem] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        if self.zone_label and self.zone_label != self.zone_code:
            return f"{self.zone_code} - {self.zone_label}"
        return self.zone_code


@dataclass
class FinalizedZonesResult:
    shop_id: UUID
    session_id: Optional[UUID] = None
    zones: List[FinalizedZone] = field(default_factory=list)
    error: Optional[LifecycleError] = None

    @property
    def success(self) -> bool:
        return self.error is None


def format_quantity(quantity: Decimal) -> str:
    """Up to three decimals, no trailing zeros: 12, 1.5, 0.125."""
    text = format(quantity.quantize(QUANTITY_STEP), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _writer(buffer: io.StringIO):
    return csv.writer(buffer, delimiter=CSV_DELIMITER, lineterminator="\n")


def build_zones_csv(zones: Sequence[FinalizedZone]) -> str:
    buffer = io.StringIO()
    buffer.write(CSV_BOM)
    writer = _writer(buffer)
    for index, zone in enumerate(zones):
        if index:
            writer.writerow([])
        writer.writerow(["Zone", zone.display_name, "Operator", zone.operator or "-"])
        writer.writerow(["Completed at", zone.completed_at.strftime("%Y-%m-%d %H:%M")])
        writer.writerow(["EAN/RFID", "SKU/item", "Description", "Quantity"])
        for item in zone.items:
            writer.writerow([
                item.ean or item.code,
                item.sku,
                item.name,
                format_quantity(item.quantity),
            ])
    return buffer.getvalue()


def build_sku_csv(zones: Sequence[FinalizedZone]) -> str:
    rows = [
        (item.sku, zone.display_name, item.quantity)
        for zone in zones
        for item in zone.items
    ]
    rows.sort(key=lambda row: (row[0], row[1]))

    buffer = io.StringIO()
    buffer.write(CSV_BOM)
    writer = _writer(buffer)
    writer.writerow(["SKU/item", "Zone", "Validated quantity"])
    for sku, zone_name, quantity in rows:
        writer.writerow([sku, zone_name, format_quantity(quantity)])
    return buffer.getvalue()


class InventoryReportService:
    """Read-only summaries of finalized zones."""

    def __init__(self, db: AsyncSession, capabilities: Optional[StoreCapabilities] = None):
        self.db = db
        self.store = RunStore(db, capabilities or StoreCapabilities.from_settings(settings))

    async def get_finalized_zones(self, shop_id: UUID) -> FinalizedZonesResult:
        async with self.db.begin():
            shop = await self.store.get_shop(shop_id)
            if shop is None:
                return FinalizedZonesResult(shop_id=shop_id, error=shop_not_found(shop_id))

            result = FinalizedZonesResult(shop_id=shop_id)
            session = await self.store.latest_session(shop_id)
            if session is None:
                return result
            result.session_id = session.id

            runs = await self.store.finalized_zone_runs(session.id)
            zones = await self.store.get_zones([run.zone_id for run in runs])
            labels = await self.store.owner_labels(runs)

        for run in runs:
            zone = zones.get(run.zone_id)
            if zone is None:
                continue
            result.zones.append(FinalizedZone(
                zone_id=zone.id,
                zone_code=zone.code,
                zone_label=zone.label,
                run_id=run.id,
                count_type=run.count_type,
                completed_at=run.completed_at,
                operator=labels.get(run.id),
                items=[
                    FinalizedItem(
                        code=line.product_code,
                        sku=line.sku,
                        name=line.name,
                        quantity=line.quantity,
                        ean=line.ean,
                    )
                    for line in sorted(run.lines, key=lambda l: l.sku)
                ],
            ))
        result.zones.sort(key=lambda z: z.zone_code)

        logger.debug("Shop %s: %d finalized zones", shop_id, len(result.zones))
        return result
