"""
Read-only collaborators consumed by the counting core.

Shops, operators, zones and the product catalog are administered elsewhere;
the counting services see them only through the small interfaces below.
The SQL-backed implementations run inside the caller's session so their
reads share the lifecycle transaction.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Protocol
from uuid import UUID

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from stocktake.models.directory import ShopUser, Zone, Product


# ============================================================================
# CLOCK
# ============================================================================

class Clock(Protocol):
    def utcnow(self) -> datetime: ...


class SystemClock:
    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Clock frozen at a settable instant."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)

    def utcnow(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, delta) -> datetime:
        self.now = self.now + delta
        return self.now


# ============================================================================
# OWNER DIRECTORY
# ============================================================================

@dataclass(frozen=True)
class OwnerInfo:
    id: UUID
    shop_id: UUID
    display_name: str
    is_admin: bool = False


class OwnerDirectory(Protocol):
    async def get_member(self, shop_id: UUID, owner_id: UUID) -> Optional[OwnerInfo]: ...


class SqlOwnerDirectory:
    """Enabled shop membership looked up in ``shop_users``."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_member(self, shop_id: UUID, owner_id: UUID) -> Optional[OwnerInfo]:
        result = await self.db.execute(
            select(ShopUser).where(
                ShopUser.id == owner_id,
                ShopUser.shop_id == shop_id,
                ShopUser.disabled.is_(False),
            )
        )
        user = result.scalar_one_or_none()
        if user is None:
            return None
        return OwnerInfo(
            id=user.id,
            shop_id=user.shop_id,
            display_name=user.display_name,
            is_admin=user.is_admin,
        )


# ============================================================================
# ZONE REGISTRY
# ============================================================================

@dataclass(frozen=True)
class ZoneInfo:
    id: UUID
    shop_id: UUID
    code: str
    label: str
    disabled: bool


class ZoneRegistry(Protocol):
    async def get(self, zone_id: UUID, shop_id: Optional[UUID] = None) -> Optional[ZoneInfo]: ...

    async def lock(self, zone_id: UUID) -> None: ...


class SqlZoneRegistry:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, zone_id: UUID, shop_id: Optional[UUID] = None) -> Optional[ZoneInfo]:
        query = select(Zone).where(Zone.id == zone_id)
        if shop_id is not None:
            query = query.where(Zone.shop_id == shop_id)
        result = await self.db.execute(query)
        zone = result.scalar_one_or_none()
        if zone is None:
            return None
        return ZoneInfo(
            id=zone.id,
            shop_id=zone.shop_id,
            code=zone.code,
            label=zone.label,
            disabled=zone.disabled,
        )

    async def lock(self, zone_id: UUID) -> None:
        """Row-lock the zone for the rest of the caller's transaction."""
        # SQLite ignores FOR UPDATE; its writers are serialized by BEGIN IMMEDIATE.
        await self.db.execute(
            select(Zone.id).where(Zone.id == zone_id).with_for_update()
        )


# ============================================================================
# PRODUCT CATALOG
# ============================================================================

@dataclass(frozen=True)
class ProductRef:
    code: str
    product_id: Optional[UUID]
    sku: str
    name: str
    ean: Optional[str]

    @classmethod
    def placeholder(cls, code: str) -> "ProductRef":
        return cls(
            code=code,
            product_id=None,
            sku=f"UNK-{code}"[:32],
            name=f"Unknown product {code}",
            ean=code,
        )


class ProductCatalog(Protocol):
    async def resolve(self, shop_id: UUID, codes: Iterable[str]) -> Dict[str, ProductRef]: ...


class SqlProductCatalog:
    """Resolves scanned codes against a shop's products by EAN, then SKU."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve(self, shop_id: UUID, codes: Iterable[str]) -> Dict[str, ProductRef]:
        codes = list(dict.fromkeys(codes))
        if not codes:
            return {}

        result = await self.db.execute(
            select(Product).where(
                Product.shop_id == shop_id,
                or_(Product.ean.in_(codes), Product.sku.in_(codes)),
            )
        )
        by_ean: Dict[str, Product] = {}
        by_sku: Dict[str, Product] = {}
        for product in result.scalars().all():
            if product.ean:
                by_ean.setdefault(product.ean, product)
            by_sku.setdefault(product.sku, product)

        resolved: Dict[str, ProductRef] = {}
        for code in codes:
            product = by_ean.get(code) or by_sku.get(code)
            if product is None:
                resolved[code] = ProductRef.placeholder(code)
            else:
                resolved[code] = ProductRef(
                    code=code,
                    product_id=product.id,
                    sku=product.sku,
                    name=product.name,
                    ean=product.ean,
                )
        return resolved


# ============================================================================
# AUDIT SINK
# ============================================================================

class AuditSink(Protocol):
    async def record(
        self,
        action: str,
        message: str,
        actor: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None: ...
