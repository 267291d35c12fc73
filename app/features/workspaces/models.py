"""
Workspace membership model.

Membership is owned by the workspace feature; the role and permission
services only read it.
"""
import enum
from sqlalchemy import String, ForeignKey, Enum as SQLEnum, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid


class WorkspaceRole(str, enum.Enum):
    """System roles a member can hold."""
    OWNER = "owner"
    ADMIN = "admin"
    DEVELOPER = "developer"
    VIEWER = "viewer"


class WorkspaceMember(Base, TimestampMixin):
    """
    A user's membership in a workspace.

    Every member holds a system role. A member may additionally be assigned a
    custom role, which then drives permission resolution (except for owners).
    """
    __tablename__ = "workspace_members"
    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_members_workspace_user"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    role: Mapped[WorkspaceRole] = mapped_column(
        SQLEnum(WorkspaceRole, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=WorkspaceRole.VIEWER,
    )
    custom_role_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("custom_roles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<WorkspaceMember(workspace_id={self.workspace_id}, user_id={self.user_id}, role={self.role})>"
