"""
Audit Service - records admin actions in the caller's transaction
"""
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.auth import Actor, require_role
from marketplace.core.exceptions import InternalError
from marketplace.core.logging import get_logger
from marketplace.core.results import ActionResult
from marketplace.db.models.audit_log import AuditLog, AuditAction
from marketplace.db.models.user import UserRole

logger = get_logger(__name__)


class AuditService:
    def __init__(self, db: AsyncSession):
        self.db = db

    def record(
        self,
        actor_id: int,
        action: AuditAction,
        entity_type: str,
        entity_id: Any = None,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditLog:
        """Stage an audit row. Not flushed; commits with the action it describes."""
        entry = AuditLog(
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            details=details,
        )
        self.db.add(entry)
        return entry

    async def list_audit_logs(
        self,
        actor: Actor,
        limit: int = 100,
        action: Optional[AuditAction] = None,
    ) -> ActionResult[list[AuditLog]]:
        auth = require_role(actor, [UserRole.ADMIN])
        if not auth.allowed:
            return ActionResult.fail(auth.error)

        query = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)
        if action is not None:
            query = query.where(AuditLog.action == action)
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            logger.error("Failed to list audit logs", extra_data={"error": str(e)}, exc_info=True)
            return ActionResult.fail(InternalError())
        return ActionResult.ok(list(result.scalars().all()))
