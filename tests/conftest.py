from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List
from uuid import UUID

import pytest
from sqlalchemy import select, func

from stocktake.core.capabilities import StoreCapabilities
from stocktake.database import build_engine, build_session_factory, init_db
from stocktake.models import Shop, ShopUser, Zone, Product
from stocktake.services.code_validation import ScanLine
from stocktake.services.collaborators import FixedClock
from stocktake.services.conflict_resolution_service import ConflictResolutionService
from stocktake.services.report_service import InventoryReportService
from stocktake.services.run_lifecycle_service import RunLifecycleService
from stocktake.services.shop_reset_service import ShopResetService


@dataclass
class Seed:
    shop_id: UUID
    other_shop_id: UUID
    alice: UUID
    bob: UUID
    carol: UUID
    dave_disabled: UUID
    erin_other_shop: UUID
    zone_b1: UUID
    zone_b2: UUID
    zone_disabled: UUID
    zone_other_shop: UUID


EAN_FILM_A = "3760000000011"
EAN_FILM_B = "3760000000028"
SKU_POSTER = "POSTER_01"


class RecordingAuditSink:
    def __init__(self):
        self.entries: List[dict] = []

    async def record(self, action, message, actor=None, details=None):
        self.entries.append({
            "action": action,
            "message": message,
            "actor": actor,
            "details": details,
        })

    def actions(self) -> List[str]:
        return [entry["action"] for entry in self.entries]


class FailingAuditSink:
    async def record(self, action, message, actor=None, details=None):
        raise RuntimeError("audit store unavailable")


def lines(*items) -> List[ScanLine]:
    """Build scan lines from (code, quantity[, manual]) tuples."""
    built = []
    for item in items:
        code, quantity = item[0], item[1]
        manual = item[2] if len(item) > 2 else False
        built.append(ScanLine(code=code, quantity=Decimal(str(quantity)), is_manual=manual))
    return built


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'stocktake.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def seed(session_factory) -> Seed:
    shop = Shop(name="Boutique Centre")
    other_shop = Shop(name="Boutique Nord")
    async with session_factory() as session, session.begin():
        session.add_all([shop, other_shop])
        await session.flush()

        alice = ShopUser(shop_id=shop.id, login="alice", display_name="Alice")
        bob = ShopUser(shop_id=shop.id, login="bob", display_name="Bob")
        carol = ShopUser(shop_id=shop.id, login="carol", display_name="Carol", is_admin=True)
        dave = ShopUser(shop_id=shop.id, login="dave", display_name="Dave", disabled=True)
        erin = ShopUser(shop_id=other_shop.id, login="erin", display_name="Erin")

        zone_b1 = Zone(shop_id=shop.id, code="B1", label="DVD aisle")
        zone_b2 = Zone(shop_id=shop.id, code="B2", label="Blu-ray aisle")
        zone_b3 = Zone(shop_id=shop.id, code="B3", label="Storage", disabled=True)
        zone_s1 = Zone(shop_id=other_shop.id, code="S1", label="Front desk")

        session.add_all([alice, bob, carol, dave, erin, zone_b1, zone_b2, zone_b3, zone_s1])
        session.add_all([
            Product(shop_id=shop.id, sku="DVD-001", name="Film A", ean=EAN_FILM_A),
            Product(shop_id=shop.id, sku="DVD-002", name="Film B", ean=EAN_FILM_B),
            Product(shop_id=shop.id, sku=SKU_POSTER, name="Poster", ean=None),
        ])
        await session.flush()

        return Seed(
            shop_id=shop.id,
            other_shop_id=other_shop.id,
            alice=alice.id,
            bob=bob.id,
            carol=carol.id,
            dave_disabled=dave.id,
            erin_other_shop=erin.id,
            zone_b1=zone_b1.id,
            zone_b2=zone_b2.id,
            zone_disabled=zone_b3.id,
            zone_other_shop=zone_s1.id,
        )


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def capabilities():
    return StoreCapabilities(owner_user_id=True, operator_display_name=True)


@pytest.fixture
async def open_sessions():
    opened = []
    yield opened
    for session in opened:
        await session.close()


@pytest.fixture
def lifecycle(session_factory, open_sessions, clock, audit_sink, capabilities):
    """Build a lifecycle service on a fresh session, like one request would."""
    def make(**overrides):
        session = session_factory()
        open_sessions.append(session)
        options = dict(
            capabilities=capabilities,
            clock=clock,
            audit_sink=audit_sink,
            tolerance=Decimal("0"),
            require_distinct_second_counter=True,
        )
        options.update(overrides)
        return RunLifecycleService(session, **options)
    return make


@pytest.fixture
def conflicts(session_factory, open_sessions, capabilities):
    def make(tolerance=Decimal("0")):
        session = session_factory()
        open_sessions.append(session)
        return ConflictResolutionService(session, capabilities=capabilities, tolerance=tolerance)
    return make


@pytest.fixture
def shop_reset(session_factory, open_sessions, capabilities, audit_sink):
    def make(**overrides):
        session = session_factory()
        open_sessions.append(session)
        options = dict(capabilities=capabilities, audit_sink=audit_sink)
        options.update(overrides)
        return ShopResetService(session, **options)
    return make


@pytest.fixture
def reports(session_factory, open_sessions, capabilities):
    def make():
        session = session_factory()
        open_sessions.append(session)
        return InventoryReportService(session, capabilities=capabilities)
    return make


@pytest.fixture
def count_rows(session_factory):
    """Count rows of a model in a short read-only transaction."""
    async def count(model, *criteria):
        async with session_factory() as session, session.begin():
            query = select(func.count()).select_from(model)
            if criteria:
                query = query.where(*criteria)
            return (await session.execute(query)).scalar()
    return count
