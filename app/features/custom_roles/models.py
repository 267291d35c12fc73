"""
Custom role and permission override models.

System roles (owner, admin, developer, viewer) are not stored; only
workspace-defined custom roles and their explicit overrides live here.
"""
from sqlalchemy import String, Text, Boolean, Integer, ForeignKey, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid
from app.features.custom_roles.catalog import BaseRole


class CustomRole(Base, TimestampMixin):
    """
    Workspace-defined role layered over an optional base role.

    Permissions resolve from explicit RolePermission rows first, then from
    the base role's defaults. A role created from a template keeps its
    template_id for resetting.
    """
    __tablename__ = "custom_roles"
    __table_args__ = (
        UniqueConstraint("workspace_id", "name", name="uq_custom_roles_workspace_name"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Identity and display
    name: Mapped[str] = mapped_column(String(50), nullable=False)  # slug, unique per workspace
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#6366f1")
    icon: Mapped[str] = mapped_column(String(50), nullable=False, default="shield")

    # Inheritance source (null = deny everything not explicitly granted)
    base_role: Mapped[BaseRole | None] = mapped_column(
        SQLEnum(BaseRole, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=True,
    )

    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    template_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<CustomRole(id={self.id}, name={self.name!r}, workspace_id={self.workspace_id})>"


class RolePermission(Base, TimestampMixin):
    """Explicit grant or deny of one permission for a custom role."""
    __tablename__ = "role_permissions"
    __table_args__ = (
        UniqueConstraint("role_id", "resource_type", "permission", name="uq_role_permissions_role_resource_permission"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    role_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("custom_roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    permission: Mapped[str] = mapped_column(String(50), nullable=False)
    granted: Mapped[bool] = mapped_column(Boolean, nullable=False)

    def __repr__(self) -> str:
        return f"<RolePermission(role_id={self.role_id}, {self.resource_type}:{self.permission}={self.granted})>"
