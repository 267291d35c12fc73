"""
Static permission catalog.

- Resource types and the fixed permission vocabulary of each
- Default grants for every system base role
- System role display definitions
- Resolution of a single (role, resource, permission) triple

The tables are module-private and never handed out directly. Public
accessors return deep copies.
"""
import copy
import enum
from typing import NamedTuple, Optional

from app.core.exceptions import BadRequestError
from app.features.workspaces.models import WorkspaceRole


# A base role is one of the system roles, used as an inheritance source
BaseRole = WorkspaceRole


class ResourceType(str, enum.Enum):
    PROJECTS = "projects"
    AGENTS = "agents"
    STORIES = "stories"
    DEPLOYMENTS = "deployments"
    SECRETS = "secrets"
    INTEGRATIONS = "integrations"
    WORKSPACE = "workspace"
    COST_MANAGEMENT = "cost_management"


class BulkAction(str, enum.Enum):
    ALLOW_ALL = "allow_all"
    DENY_ALL = "deny_all"


# ============================================================================
# Resource Catalog
# ============================================================================

_RESOURCE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    ResourceType.PROJECTS.value: ("create", "read", "update", "delete", "manage_settings"),
    ResourceType.AGENTS.value: ("view", "create_custom", "assign_tasks", "pause_cancel", "configure"),
    ResourceType.STORIES.value: ("create", "read", "update", "delete", "assign", "change_status"),
    ResourceType.DEPLOYMENTS.value: ("view", "trigger", "approve", "rollback", "configure"),
    ResourceType.SECRETS.value: ("view_masked", "create", "update", "delete", "view_plaintext"),
    ResourceType.INTEGRATIONS.value: ("view", "connect", "disconnect", "configure"),
    ResourceType.WORKSPACE.value: (
        "view_members",
        "invite_members",
        "remove_members",
        "manage_roles",
        "manage_billing",
        "view_audit_log",
        "manage_settings",
    ),
    ResourceType.COST_MANAGEMENT.value: (
        "view_own_usage",
        "view_workspace_usage",
        "set_budgets",
        "export_reports",
    ),
}


# ============================================================================
# Base Role Defaults
# ============================================================================

def _expand(granted: dict[str, set[str]]) -> dict[str, dict[str, bool]]:
    """Turn {resource: {granted perms}} into a complete resource -> perm -> bool map."""
    return {
        resource: {perm: perm in granted.get(resource, set()) for perm in perms}
        for resource, perms in _RESOURCE_PERMISSIONS.items()
    }


_ALL = {resource: set(perms) for resource, perms in _RESOURCE_PERMISSIONS.items()}

_BASE_ROLE_DEFAULTS: dict[str, dict[str, dict[str, bool]]] = {
    BaseRole.OWNER.value: _expand(_ALL),
    BaseRole.ADMIN.value: _expand({
        **_ALL,
        "secrets": _ALL["secrets"] - {"view_plaintext"},
        "workspace": _ALL["workspace"] - {"manage_billing"},
    }),
    BaseRole.DEVELOPER.value: _expand({
        "projects": {"create", "read", "update"},
        "agents": {"view", "create_custom", "assign_tasks", "pause_cancel"},
        "stories": {"create", "read", "update", "assign", "change_status"},
        "deployments": {"view", "trigger"},
        "secrets": {"view_masked"},
        "integrations": {"view"},
        "workspace": {"view_members"},
        "cost_management": {"view_own_usage"},
    }),
    BaseRole.VIEWER.value: _expand({
        "projects": {"read"},
        "agents": {"view"},
        "stories": {"read"},
        "deployments": {"view"},
        "integrations": {"view"},
        "workspace": {"view_members"},
        "cost_management": {"view_own_usage"},
    }),
}


# ============================================================================
# System Roles
# ============================================================================

SYSTEM_ROLE_NAMES: tuple[str, ...] = tuple(role.value for role in BaseRole)

_SYSTEM_ROLE_DEFINITIONS: tuple[dict[str, str], ...] = (
    {
        "name": "owner",
        "display_name": "Owner",
        "description": "Full access to all workspace features and settings",
        "color": "#ef4444",
        "icon": "crown",
    },
    {
        "name": "admin",
        "display_name": "Admin",
        "description": "Manage workspace settings, members, and projects",
        "color": "#f59e0b",
        "icon": "shield",
    },
    {
        "name": "developer",
        "display_name": "Developer",
        "description": "Create and manage projects and agents",
        "color": "#3b82f6",
        "icon": "code",
    },
    {
        "name": "viewer",
        "display_name": "Viewer",
        "description": "Read-only access to workspace content",
        "color": "#6b7280",
        "icon": "eye",
    },
)

AVAILABLE_ICONS: tuple[str, ...] = (
    "shield", "key", "lock", "user", "users", "star", "crown", "settings", "code", "eye",
    "edit", "terminal", "database", "server", "globe", "briefcase", "clipboard",
    "check-circle", "alert-triangle", "zap",
)


# ============================================================================
# Accessors
# ============================================================================

def get_resource_definitions() -> dict[str, list[str]]:
    """Resource types and their permissions (copy)."""
    return {resource: list(perms) for resource, perms in _RESOURCE_PERMISSIONS.items()}


def get_base_role_defaults() -> dict[str, dict[str, dict[str, bool]]]:
    """Default grants per base role (deep copy)."""
    return copy.deepcopy(_BASE_ROLE_DEFAULTS)


def get_system_role_definitions() -> list[dict[str, str]]:
    return [dict(definition) for definition in _SYSTEM_ROLE_DEFINITIONS]


def resource_types() -> list[str]:
    return list(_RESOURCE_PERMISSIONS)


def permissions_for(resource_type: str) -> tuple[str, ...]:
    """Permission names of a resource type, or an empty tuple if unknown."""
    return _RESOURCE_PERMISSIONS.get(resource_type, ())


def role_value(role) -> Optional[str]:
    """Plain string value of a role given as enum member or string."""
    return role.value if isinstance(role, enum.Enum) else role


def is_system_role(name: Optional[str]) -> bool:
    return role_value(name) in SYSTEM_ROLE_NAMES


def base_role_default(base_role: Optional[str], resource_type: str, permission: str) -> Optional[bool]:
    """Default value for the triple, or None when the base role or pair is undefined."""
    if not base_role:
        return None
    return _BASE_ROLE_DEFAULTS.get(role_value(base_role), {}).get(resource_type, {}).get(permission)


# ============================================================================
# Validation
# ============================================================================

def validate_resource_type(resource_type: str) -> None:
    if resource_type not in _RESOURCE_PERMISSIONS:
        raise BadRequestError(
            f"Invalid resource type: {resource_type}. Valid types: {', '.join(_RESOURCE_PERMISSIONS)}"
        )


def validate_permission(resource_type: str, permission: str) -> None:
    """
    Reject any pair outside the catalog.

    Raises:
        BadRequestError: Unknown resource type or permission
    """
    validate_resource_type(resource_type)
    valid_permissions = _RESOURCE_PERMISSIONS[resource_type]
    if permission not in valid_permissions:
        raise BadRequestError(
            f'Invalid permission "{permission}" for resource type "{resource_type}". '
            f"Valid permissions: {', '.join(valid_permissions)}"
        )


# ============================================================================
# Resolution
# ============================================================================

class Resolution(NamedTuple):
    granted: bool
    inherited: bool
    inherited_from: Optional[str] = None


def resolve(
    explicit: Optional[bool],
    base_role: Optional[str],
    resource_type: str,
    permission: str,
) -> Resolution:
    """
    Resolve one permission: explicit override, then base role default, then deny.

    Args:
        explicit: Stored override value, or None when no override exists
        base_role: Base role to inherit from (None for no inheritance)
        resource_type: Resource type name
        permission: Permission name
    """
    if explicit is not None:
        return Resolution(granted=explicit, inherited=False)

    default = base_role_default(base_role, resource_type, permission)
    if default is None:
        return Resolution(granted=False, inherited=False)

    return Resolution(granted=default, inherited=True, inherited_from=role_value(base_role))
