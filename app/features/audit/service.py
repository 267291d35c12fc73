"""
Audit sinks.

Both sinks write through their own short transaction and never raise:
a failed audit write is logged and dropped so it cannot break the
operation being audited. Callers dispatch them with fire_and_forget.
"""
from typing import Any, Dict, Optional
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.features.audit.models import AuditLog, PermissionAuditEvent, PermissionAuditEventType
from app.utils import get_logger


log = get_logger(__name__)


class PermissionAuditRecord(BaseModel):
    """Input for PermissionAuditService.record."""
    workspace_id: str
    event_type: PermissionAuditEventType
    actor_id: str
    target_user_id: Optional[str] = None
    target_role_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None


class AuditService:
    """Generic audit trail for role CRUD and permission edits."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def log(
        self,
        workspace_id: str,
        actor_id: Optional[str],
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Create an audit log entry.

        Args:
            workspace_id: Workspace context
            actor_id: User performing the action
            action: Action performed ("create", "update", "delete")
            entity_type: Type of entity ("custom_role", "role_permission")
            entity_id: ID of the entity
            details: Additional details, e.g. before/after snapshots
        """
        try:
            async with self.session_factory.begin() as db:
                db.add(AuditLog(
                    workspace_id=workspace_id,
                    actor_id=actor_id,
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    details=details,
                ))
        except Exception as e:
            log.error(f"Failed to write audit log {action} {entity_type}:{entity_id}: {e}")
            return

        log.info(f"Audit: actor={actor_id} action={action} entity={entity_type}:{entity_id} workspace={workspace_id}")


class PermissionAuditService:
    """Permission audit trail with before/after state."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(self, event: PermissionAuditRecord) -> None:
        """Record a permission audit event. Never raises."""
        try:
            async with self.session_factory.begin() as db:
                db.add(PermissionAuditEvent(**event.model_dump()))
        except Exception as e:
            log.error(f"Failed to record permission audit event {event.event_type.value}: {e}")
            return

        log.debug(
            f"Permission audit: {event.event_type.value} by {event.actor_id} in workspace {event.workspace_id}"
        )
