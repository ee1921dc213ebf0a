from typing import Optional, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stocktake.models.audit_log import AuditLog


class AuditService:
    """
    Audit service for logging counting activity.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        action: str,
        message: str,
        actor: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        """
        Create an audit log entry.

        Args:
            action: The action performed (inventories.reset, ...)
            message: Human-readable description
            actor: Display label of whoever performed the action
            details: Structured context (zone, run, totals)

        Returns:
            The created AuditLog entry
        """
        audit_log = AuditLog(
            action=action,
            actor=actor,
            message=message,
            details=details,
        )
        self.db.add(audit_log)
        await self.db.flush()
        return audit_log

class DbAuditSink:
    """
    Audit sink that persists entries through its own session.

    Entries are written after the lifecycle transaction commits, so a failed
    audit write can never roll back counting work.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        action: str,
        message: str,
        actor: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with self.session_factory() as session, session.begin():
            await AuditService(session).log(action, message, actor=actor, details=details)
