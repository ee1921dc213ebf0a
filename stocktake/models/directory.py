"""
Directory Models - shops, operators, zones and products.

These tables are owned by the administration and catalog services. The
counting core only reads them (membership checks, zone metadata, product
resolution) and never writes to them.
"""
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import String, Boolean, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from stocktake.database import Base
from stocktake.db_types import UUIDType, UTCDateTime


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Shop(Base):
    """A retail location whose stock is counted."""
    __tablename__ = "shops"

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    kind: Mapped[str] = mapped_column(String(30), nullable=False, default="boutique")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class ShopUser(Base):
    """An operator allowed to count in a shop."""
    __tablename__ = "shop_users"
    __table_args__ = (
        UniqueConstraint("shop_id", "display_name", name="uq_shop_users_display_name"),
        Index("idx_shop_users_shop", "shop_id"),
    )

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    shop_id: Mapped[UUID] = mapped_column(UUIDType, ForeignKey("shops.id"), nullable=False)
    login: Mapped[str] = mapped_column(String(100), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    disabled: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class Zone(Base):
    """A physical area of a shop counted as one unit (called a location in the UI)."""
    __tablename__ = "zones"
    __table_args__ = (
        UniqueConstraint("shop_id", "code", name="uq_zones_shop_code"),
        Index("idx_zones_shop", "shop_id"),
    )

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    shop_id: Mapped[UUID] = mapped_column(UUIDType, ForeignKey("shops.id"), nullable=False)
    code: Mapped[str] = mapped_column(String(20), nullable=False)
    label: Mapped[str] = mapped_column(String(200), nullable=False)
    disabled: Mapped[bool] = mapped_column(Boolean, default=False)


class Product(Base):
    """Catalog entry resolved from a scanned code (EAN) or SKU."""
    __tablename__ = "products"
    __table_args__ = (
        Index("idx_products_shop_ean", "shop_id", "ean"),
        Index("idx_products_shop_sku", "shop_id", "sku"),
    )

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    shop_id: Mapped[UUID] = mapped_column(UUIDType, ForeignKey("shops.id"), nullable=False)
    sku: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    ean: Mapped[Optional[str]] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
