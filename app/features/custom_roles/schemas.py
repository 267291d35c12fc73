"""
Pydantic schemas for custom roles and the permission matrix.

Request and response models for role CRUD, permission mutations, resolved
permission views and role templates.
"""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.custom_roles.catalog import AVAILABLE_ICONS, BaseRole
from app.features.workspaces.models import WorkspaceRole


ROLE_NAME_PATTERN = r"^[a-z0-9]+(-[a-z0-9]+)*$"
COLOR_PATTERN = r"^#[0-9a-fA-F]{6}$"


def _check_icon(v: Optional[str]) -> Optional[str]:
    if v is not None and v not in AVAILABLE_ICONS:
        raise ValueError(f"Icon must be one of: {', '.join(AVAILABLE_ICONS)}")
    return v


# ============================================================================
# Role Schemas
# ============================================================================

class CustomRoleCreate(BaseModel):
    """Schema for creating a custom role."""
    name: str = Field(..., min_length=2, max_length=50, pattern=ROLE_NAME_PATTERN, description="Slug, unique per workspace")
    display_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    color: Optional[str] = Field(None, pattern=COLOR_PATTERN)
    icon: Optional[str] = None
    base_role: Optional[BaseRole] = Field(None, description="Role to inherit defaults from")

    @field_validator("icon")
    @classmethod
    def icon_available(cls, v: Optional[str]) -> Optional[str]:
        return _check_icon(v)


class CustomRoleUpdate(BaseModel):
    """
    Schema for updating a custom role.

    Only fields that are explicitly set are applied; pass base_role=None to
    remove inheritance.
    """
    name: Optional[str] = Field(None, min_length=2, max_length=50, pattern=ROLE_NAME_PATTERN)
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    color: Optional[str] = Field(None, pattern=COLOR_PATTERN)
    icon: Optional[str] = None
    base_role: Optional[BaseRole] = None
    is_active: Optional[bool] = None

    @field_validator("icon")
    @classmethod
    def icon_available(cls, v: Optional[str]) -> Optional[str]:
        return _check_icon(v)


class CustomRoleClone(BaseModel):
    """Schema for cloning a role under a new name."""
    name: str = Field(..., min_length=2, max_length=50, pattern=ROLE_NAME_PATTERN)
    display_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)


class CustomRoleResponse(BaseModel):
    """Schema for custom role response."""
    id: str
    workspace_id: str
    name: str
    display_name: str
    description: Optional[str]
    color: str
    icon: str
    base_role: Optional[BaseRole]
    is_system: bool
    is_active: bool
    priority: int
    template_id: Optional[str]
    created_by: str
    created_at: datetime
    updated_at: datetime
    member_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class SystemRoleInfo(BaseModel):
    """Synthetic system role with its live member count."""
    name: str
    display_name: str
    description: str
    color: str
    icon: str
    is_system: bool = True
    member_count: int = 0


class RoleListResponse(BaseModel):
    system_roles: List[SystemRoleInfo]
    custom_roles: List[CustomRoleResponse]


class WorkspaceMemberResponse(BaseModel):
    id: str
    workspace_id: str
    user_id: str
    role: WorkspaceRole
    custom_role_id: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionSet(BaseModel):
    """One explicit grant or deny. Validated against the catalog by the service."""
    resource_type: str
    permission: str
    granted: bool


class RolePermissionResponse(BaseModel):
    role_id: str
    resource_type: str
    permission: str
    granted: bool

    model_config = ConfigDict(from_attributes=True)


class PermissionChange(BaseModel):
    """Before/after of a single permission mutation (before is None when no override existed)."""
    role_id: str
    resource_type: str
    permission: str
    before: Optional[bool]
    after: bool


class PermissionEntry(BaseModel):
    permission: str
    granted: bool
    inherited: bool
    inherited_from: Optional[str] = None


class ResourcePermissions(BaseModel):
    resource_type: str
    permissions: List[PermissionEntry]


class ResolvedPermissions(BaseModel):
    """Base for responses carrying a fully resolved permission grid."""
    resources: List[ResourcePermissions]

    def to_permission_map(self) -> Dict[str, Dict[str, bool]]:
        """Flatten to resource -> permission -> granted."""
        return {
            resource.resource_type: {entry.permission: entry.granted for entry in resource.permissions}
            for resource in self.resources
        }


class PermissionMatrixResponse(ResolvedPermissions):
    """Full matrix for one role: explicit overrides merged with inherited defaults."""
    role_id: str
    role_name: str
    display_name: str
    base_role: Optional[BaseRole]
    is_system: bool = False


class EffectivePermissionsResponse(ResolvedPermissions):
    """Resolved permissions for a workspace member."""
    user_id: str
    workspace_id: str
    system_role: WorkspaceRole
    custom_role_id: Optional[str] = None
    custom_role_name: Optional[str] = None


# ============================================================================
# Template Schemas
# ============================================================================

class RoleTemplate(BaseModel):
    """Pre-built role archetype."""
    id: str
    name: str
    display_name: str
    description: str
    color: str
    icon: str
    base_role: BaseRole
    permissions: Dict[str, Dict[str, bool]]


class CreateRoleFromTemplate(BaseModel):
    """Schema for instantiating a template, with optional overrides."""
    template_id: str
    name: Optional[str] = Field(None, min_length=2, max_length=50, pattern=ROLE_NAME_PATTERN)
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    color: Optional[str] = Field(None, pattern=COLOR_PATTERN)
    icon: Optional[str] = None
    customizations: Optional[Dict[str, Dict[str, bool]]] = Field(
        None,
        description="resource -> permission -> granted, applied over the template map",
    )

    @field_validator("icon")
    @classmethod
    def icon_available(cls, v: Optional[str]) -> Optional[str]:
        return _check_icon(v)
