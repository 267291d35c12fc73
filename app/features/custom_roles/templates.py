"""
Role template registry.

Pre-built role archetypes that can be instantiated into a workspace as
custom roles. A template stores a partial permission map over its base
role; only entries that differ from the base role's defaults are written
as explicit overrides, so the rest keeps following the base role.
"""
import copy
from typing import Dict, Optional, TYPE_CHECKING
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.background import fire_and_forget
from app.core.exceptions import BadRequestError, NotFoundError
from app.features.audit.models import AuditAction, PermissionAuditEventType
from app.features.audit.service import PermissionAuditRecord
from app.features.custom_roles import catalog
from app.features.custom_roles.catalog import BaseRole
from app.features.custom_roles.models import CustomRole, RolePermission
from app.features.custom_roles.role_service import ROLE_NAME_MAX_LENGTH
from app.features.custom_roles.schemas import (
    CreateRoleFromTemplate,
    CustomRoleCreate,
    CustomRoleResponse,
    PermissionSet,
    RoleTemplate,
)
from app.utils import get_logger

if TYPE_CHECKING:
    from app.features.audit.service import AuditService, PermissionAuditService
    from app.features.custom_roles.cache_service import PermissionCacheService
    from app.features.custom_roles.matrix_service import PermissionMatrixService
    from app.features.custom_roles.role_service import CustomRoleService


log = get_logger(__name__)

MAX_NAME_SUFFIX = 100

PermissionMap = Dict[str, Dict[str, bool]]


def _only(resource_type: str, *granted: str) -> Dict[str, bool]:
    """Full permission row for one resource, granting only the named permissions."""
    return {perm: perm in granted for perm in catalog.permissions_for(resource_type)}


def _all_except(resource_type: str, *denied: str) -> Dict[str, bool]:
    return {perm: perm not in denied for perm in catalog.permissions_for(resource_type)}


# ============================================================================
# Templates
# ============================================================================

_ROLE_TEMPLATES: tuple[RoleTemplate, ...] = (
    RoleTemplate(
        id="qa_lead",
        name="qa-lead",
        display_name="QA Lead",
        description="Quality assurance team lead with test management, agent oversight, and deployment approval access",
        color="#8b5cf6",
        icon="check-circle",
        base_role=BaseRole.DEVELOPER,
        permissions={
            "stories": _all_except("stories", "delete"),
            "agents": _only("agents", "view", "assign_tasks", "pause_cancel"),
            "deployments": _only("deployments", "view", "approve", "rollback"),
            "projects": _only("projects", "read"),
            "workspace": _only("workspace", "view_members", "view_audit_log"),
        },
    ),
    RoleTemplate(
        id="devops_engineer",
        name="devops-engineer",
        display_name="DevOps Engineer",
        description="DevOps engineer with full deployment, integration, and secret management access",
        color="#059669",
        icon="server",
        base_role=BaseRole.DEVELOPER,
        permissions={
            "deployments": _all_except("deployments"),
            "integrations": _all_except("integrations"),
            "secrets": _all_except("secrets", "view_plaintext"),
            "stories": _only("stories", "read"),
            "agents": _only("agents", "view"),
        },
    ),
    RoleTemplate(
        id="contractor",
        name="contractor",
        display_name="Contractor / External",
        description="External contractor with limited read access and story status updates only",
        color="#d97706",
        icon="briefcase",
        base_role=BaseRole.VIEWER,
        permissions={
            "projects": _only("projects", "read"),
            "stories": _only("stories", "read", "update", "change_status"),
            "agents": _only("agents", "view"),
            "deployments": _only("deployments"),
            "secrets": _only("secrets"),
            "workspace": _only("workspace"),
        },
    ),
    RoleTemplate(
        id="project_manager",
        name="project-manager",
        display_name="Project Manager",
        description="Project manager with full story management, agent oversight, and cost reporting access",
        color="#0284c7",
        icon="clipboard",
        base_role=BaseRole.DEVELOPER,
        permissions={
            "stories": _all_except("stories"),
            "projects": _only("projects", "read", "update"),
            "agents": _only("agents", "view", "assign_tasks"),
            "cost_management": _all_except("cost_management", "set_budgets"),
            "deployments": _only("deployments", "view"),
            "secrets": _only("secrets"),
        },
    ),
    RoleTemplate(
        id="billing_admin",
        name="billing-admin",
        display_name="Billing Admin",
        description="Billing administrator with full cost management and workspace billing access",
        color="#dc2626",
        icon="settings",
        base_role=BaseRole.VIEWER,
        permissions={
            "cost_management": _all_except("cost_management"),
            "workspace": _only("workspace", "view_members", "manage_billing", "view_audit_log"),
            "projects": _only("projects"),
            "agents": _only("agents"),
            "deployments": _only("deployments"),
        },
    ),
    RoleTemplate(
        id="read_only_stakeholder",
        name="read-only-stakeholder",
        display_name="Read-Only Stakeholder",
        description="View-only access to projects, stories, and deployments with no modification permissions",
        color="#6b7280",
        icon="eye",
        base_role=BaseRole.VIEWER,
        permissions={
            "projects": _only("projects", "read"),
            "stories": _only("stories", "read"),
            "agents": _only("agents", "view"),
            "deployments": _only("deployments", "view"),
            "secrets": _only("secrets"),
            "integrations": _only("integrations", "view"),
            "cost_management": _only("cost_management"),
        },
    ),
)

_TEMPLATES_BY_ID: dict[str, RoleTemplate] = {template.id: template for template in _ROLE_TEMPLATES}


# ============================================================================
# Registry
# ============================================================================

def list_templates() -> list[RoleTemplate]:
    """All templates (deep copies)."""
    return [template.model_copy(deep=True) for template in _ROLE_TEMPLATES]


def get_template(template_id: str) -> RoleTemplate:
    """
    Get one template (deep copy).

    Raises:
        NotFoundError: Unknown template id
    """
    template = _TEMPLATES_BY_ID.get(template_id)
    if template is None:
        raise NotFoundError(f"Role template \"{template_id}\" not found")
    return template.model_copy(deep=True)


def compute_overrides(base_role: Optional[BaseRole], permissions: PermissionMap) -> list[PermissionSet]:
    """
    Entries of a permission map that differ from the base role's defaults.

    With no base role every entry is an override, since the fallback is deny.
    """
    overrides = []
    for resource_type, perms in permissions.items():
        for permission, granted in perms.items():
            if catalog.base_role_default(base_role, resource_type, permission) != granted:
                overrides.append(PermissionSet(resource_type=resource_type, permission=permission, granted=granted))
    return overrides


def get_template_permissions(template_id: str) -> list[PermissionSet]:
    """Explicit overrides a template writes when instantiated."""
    template = get_template(template_id)
    return compute_overrides(template.base_role, template.permissions)


def merge_permissions(template_permissions: PermissionMap, customizations: Optional[PermissionMap]) -> PermissionMap:
    """Apply customizations over a template map, entry by entry."""
    merged = copy.deepcopy(template_permissions)
    for resource_type, perms in (customizations or {}).items():
        merged.setdefault(resource_type, {}).update(perms)
    return merged


def validate_customizations(customizations: PermissionMap) -> None:
    """
    Raises:
        BadRequestError: Any resource type or permission outside the catalog
    """
    for resource_type, perms in customizations.items():
        catalog.validate_resource_type(resource_type)
        for permission in perms:
            catalog.validate_permission(resource_type, permission)


# ============================================================================
# Service
# ============================================================================

class RoleTemplateService:
    """Instantiates templates into workspaces and resets roles back to them."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        role_service: "CustomRoleService",
        matrix_service: "PermissionMatrixService",
        cache_service: "PermissionCacheService",
        audit_service: "AuditService",
        permission_audit_service: "PermissionAuditService",
    ):
        self.session_factory = session_factory
        self.role_service = role_service
        self.matrix_service = matrix_service
        self.cache_service = cache_service
        self.audit_service = audit_service
        self.permission_audit_service = permission_audit_service

    def list_templates(self) -> list[RoleTemplate]:
        return list_templates()

    def get_template(self, template_id: str) -> RoleTemplate:
        return get_template(template_id)

    def get_template_permissions(self, template_id: str) -> list[PermissionSet]:
        return get_template_permissions(template_id)

    async def create_role_from_template(
        self,
        workspace_id: str,
        data: CreateRoleFromTemplate,
        actor_id: str,
    ) -> CustomRoleResponse:
        """
        Create a custom role from a template with optional customizations.

        The role name defaults to the template's and is made unique with a
        numeric suffix ("qa-lead", "qa-lead-2", ...).

        Raises:
            NotFoundError: Unknown template
            BadRequestError: Invalid customizations, no free name, or role limit reached
        """
        template = get_template(data.template_id)

        if data.customizations:
            validate_customizations(data.customizations)

        name = await self.generate_unique_name(data.name or template.name, workspace_id)

        role = await self.role_service.create_role(
            workspace_id,
            CustomRoleCreate(
                name=name,
                display_name=data.display_name or template.display_name,
                description=data.description or template.description,
                color=data.color or template.color,
                icon=data.icon or template.icon,
                base_role=template.base_role,
            ),
            actor_id,
            template_id=template.id,
        )

        merged = merge_permissions(template.permissions, data.customizations)
        overrides = compute_overrides(template.base_role, merged)
        if overrides:
            try:
                await self.matrix_service.set_bulk_permissions(role.id, workspace_id, overrides, actor_id)
            except Exception:
                # Role insert and overrides commit separately; remove the role if overrides fail
                async with self.session_factory.begin() as db:
                    await db.execute(delete(CustomRole).where(CustomRole.id == role.id))
                log.error(f"Rolled back role \"{role.name}\" after failing to apply template \"{template.id}\"")
                raise

        fire_and_forget(
            self.permission_audit_service.record(PermissionAuditRecord(
                workspace_id=workspace_id,
                event_type=PermissionAuditEventType.ROLE_CREATED,
                actor_id=actor_id,
                target_role_id=role.id,
                after_state={
                    "templateId": template.id,
                    "templateName": template.display_name,
                    "permissionsApplied": len(overrides),
                },
            )),
            "permission audit role_created",
        )

        log.info(f"Created role \"{role.name}\" from template \"{template.id}\" in workspace {workspace_id}")

        return role

    async def reset_role_to_template(self, role_id: str, workspace_id: str, actor_id: str) -> None:
        """
        Replace a role's overrides with its template's, in one transaction.

        Raises:
            NotFoundError: Role not found
            BadRequestError: Role was not created from a template
        """
        async with self.session_factory.begin() as db:
            result = await db.execute(
                select(CustomRole).where(CustomRole.id == role_id, CustomRole.workspace_id == workspace_id)
            )
            role = result.scalar_one_or_none()
            if role is None:
                raise NotFoundError("Custom role not found")
            if not role.template_id:
                raise BadRequestError("This role was not created from a template")

            template = get_template(role.template_id)
            overrides = compute_overrides(template.base_role, template.permissions)

            await db.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
            for override in overrides:
                db.add(RolePermission(role_id=role_id, **override.model_dump()))

        await self.cache_service.invalidate_role_permissions(workspace_id)

        fire_and_forget(
            self.audit_service.log(
                workspace_id, actor_id, AuditAction.UPDATE.value, "custom_role", role_id,
                {
                    "action": "reset_to_template",
                    "templateId": template.id,
                    "templateName": template.display_name,
                    "permissionsReset": len(overrides),
                },
            ),
            "audit custom_role reset_to_template",
        )

        log.info(
            f"Reset role \"{role.name}\" ({role_id}) to template \"{template.id}\" defaults in workspace {workspace_id}"
        )

    async def generate_unique_name(self, base_name: str, workspace_id: str) -> str:
        """
        First free name among base_name, base_name-2 ... base_name-100.

        Long names are shortened before the suffix so every candidate stays
        within ROLE_NAME_MAX_LENGTH.

        Raises:
            BadRequestError: Every candidate is taken
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(CustomRole.name).where(CustomRole.workspace_id == workspace_id)
            )
            existing = set(result.scalars().all())

        if base_name not in existing:
            return base_name

        for suffix in range(2, MAX_NAME_SUFFIX + 1):
            tail = f"-{suffix}"
            candidate = base_name[:ROLE_NAME_MAX_LENGTH - len(tail)].rstrip("-") + tail
            if candidate not in existing:
                return candidate

        raise BadRequestError(f"Could not generate unique name for role \"{base_name}\"")
