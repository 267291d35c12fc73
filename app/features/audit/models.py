"""
Audit models for role and permission changes.

- AuditLog: generic who-did-what trail for role CRUD and permission edits
- PermissionAuditEvent: richer permission trail with before/after snapshots
"""
import enum
from typing import Any, Dict
from sqlalchemy import String, JSON, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid


class AuditAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class PermissionAuditEventType(str, enum.Enum):
    ROLE_CREATED = "role_created"
    ROLE_UPDATED = "role_updated"
    ROLE_DELETED = "role_deleted"
    PERMISSION_CHANGED = "permission_changed"


class AuditLog(Base, TimestampMixin):
    """
    Audit log for tracking role and permission actions.

    Tracks who did what to which entity, and in which workspace.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Context
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, actor_id={self.actor_id}, action={self.action}, entity={self.entity_type})>"


class PermissionAuditEvent(Base, TimestampMixin):
    """Permission audit trail entry with state snapshots."""
    __tablename__ = "permission_audit_events"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[PermissionAuditEventType] = mapped_column(
        SQLEnum(PermissionAuditEventType, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        index=True,
    )
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    target_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_role_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    before_state: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    after_state: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<PermissionAuditEvent(id={self.id}, event_type={self.event_type}, actor_id={self.actor_id})>"
