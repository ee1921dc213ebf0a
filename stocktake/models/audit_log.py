import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from stocktake.database import Base
from stocktake.db_types import JSONType, UUIDType, UTCDateTime


class AuditLog(Base):
    """
    Audit log model for tracking counting activity.
    Records: runs completed, restarted, released, shop inventories reset.
    """
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Action details
    action: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    # Actions: inventories.complete.success, inventories.restart,
    #          inventories.release, inventories.reset

    # Who performed the action (display label, free form)
    actor: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Human-readable description
    message: Mapped[str] = mapped_column(Text, nullable=False)

    # Structured context (zone, run, totals)
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Timestamp
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True
    )

    def __repr__(self) -> str:
        return f"<AuditLog(action='{self.action}', actor='{self.actor}')>"
