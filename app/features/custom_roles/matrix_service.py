"""
Permission matrix engine.

Resolves effective permissions and applies permission mutations for
custom roles. Resolution order, used by every read path:

1. Owner membership -> everything granted, no lookup
2. Custom role explicit override
3. Custom role base_role default (inherited)
4. Deny
Members without a custom role resolve from their system role's defaults.
"""
from typing import Optional, TYPE_CHECKING
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.background import fire_and_forget
from app.core.exceptions import BadRequestError, ForbiddenError, NotFoundError
from app.features.audit.models import AuditAction
from app.features.custom_roles import catalog
from app.features.custom_roles.catalog import BulkAction
from app.features.custom_roles.models import CustomRole, RolePermission
from app.features.custom_roles.schemas import (
    EffectivePermissionsResponse,
    PermissionChange,
    PermissionEntry,
    PermissionMatrixResponse,
    PermissionSet,
    ResourcePermissions,
    RolePermissionResponse,
)
from app.features.workspaces import store as membership
from app.features.workspaces.models import WorkspaceRole
from app.utils import get_logger

if TYPE_CHECKING:
    from app.features.audit.service import AuditService
    from app.features.custom_roles.cache_service import PermissionCacheService


log = get_logger(__name__)


def build_resources(
    base_role: Optional[str],
    explicit: dict[tuple[str, str], bool],
    grant_all: bool = False,
) -> list[ResourcePermissions]:
    """
    Resolve every catalog pair for a role.

    Args:
        base_role: Inheritance source, None for no inheritance
        explicit: (resource_type, permission) -> granted overrides
        grant_all: Owner short-circuit, every pair granted
    """
    resources = []
    for resource_type in catalog.resource_types():
        entries = []
        for permission in catalog.permissions_for(resource_type):
            if grant_all:
                entries.append(PermissionEntry(
                    permission=permission, granted=True, inherited=True, inherited_from=WorkspaceRole.OWNER.value,
                ))
                continue
            resolution = catalog.resolve(explicit.get((resource_type, permission)), base_role, resource_type, permission)
            entries.append(PermissionEntry(permission=permission, **resolution._asdict()))
        resources.append(ResourcePermissions(resource_type=resource_type, permissions=entries))
    return resources


class PermissionMatrixService:
    """Reads and mutates the permission matrix of custom roles."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit_service: "AuditService",
        cache_service: Optional["PermissionCacheService"] = None,
    ):
        self.session_factory = session_factory
        self.audit_service = audit_service
        self.cache_service = cache_service

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_permission_matrix(self, role_id: str, workspace_id: str) -> PermissionMatrixResponse:
        """
        Get the full permission matrix for a role.

        A system role name ("admin", ...) returns that role's fixed defaults.

        Raises:
            NotFoundError: Role not found in workspace
        """
        if catalog.is_system_role(role_id):
            definition = next(d for d in catalog.get_system_role_definitions() if d["name"] == role_id)
            return PermissionMatrixResponse(
                role_id=role_id,
                role_name=role_id,
                display_name=definition["display_name"],
                base_role=WorkspaceRole(role_id),
                is_system=True,
                resources=build_resources(role_id, {}),
            )

        async with self.session_factory() as db:
            role = await self._load_role(db, role_id, workspace_id, reject_system=False)
            explicit = await self._load_overrides(db, role_id)

        return PermissionMatrixResponse(
            role_id=role.id,
            role_name=role.name,
            display_name=role.display_name,
            base_role=role.base_role,
            is_system=role.is_system,
            resources=build_resources(catalog.role_value(role.base_role), explicit),
        )

    async def get_effective_permissions(self, user_id: str, workspace_id: str) -> EffectivePermissionsResponse:
        """
        Get effective permissions for a workspace member.

        Raises:
            NotFoundError: User is not a member of the workspace
        """
        async with self.session_factory() as db:
            member = await membership.get_member(db, workspace_id, user_id)
            if member is None:
                raise NotFoundError("User not found in workspace")

            custom_role = None
            explicit: dict[tuple[str, str], bool] = {}
            if member.custom_role_id:
                custom_role = await db.get(CustomRole, member.custom_role_id)
                if custom_role is not None and member.role != WorkspaceRole.OWNER:
                    explicit = await self._load_overrides(db, custom_role.id)

        if member.role == WorkspaceRole.OWNER:
            resources = build_resources(None, {}, grant_all=True)
        elif custom_role is not None:
            resources = build_resources(catalog.role_value(custom_role.base_role), explicit)
        else:
            resources = build_resources(member.role.value, {})

        return EffectivePermissionsResponse(
            user_id=user_id,
            workspace_id=workspace_id,
            system_role=member.role,
            custom_role_id=custom_role.id if custom_role else None,
            custom_role_name=custom_role.display_name if custom_role else None,
            resources=resources,
        )

    async def check_permission(self, user_id: str, workspace_id: str, resource_type: str, permission: str) -> bool:
        """
        Check if a user has a specific permission in a workspace.

        Non-members and unknown pairs are denied.
        """
        async with self.session_factory() as db:
            member = await membership.get_member(db, workspace_id, user_id)
            if member is None:
                return False

            if member.role == WorkspaceRole.OWNER:
                return True

            if member.custom_role_id:
                custom_role = await db.get(CustomRole, member.custom_role_id)
                if custom_role is not None:
                    result = await db.execute(
                        select(RolePermission.granted).where(
                            RolePermission.role_id == custom_role.id,
                            RolePermission.resource_type == resource_type,
                            RolePermission.permission == permission,
                        )
                    )
                    explicit = result.scalar_one_or_none()
                    return catalog.resolve(
                        explicit, catalog.role_value(custom_role.base_role), resource_type, permission,
                    ).granted

        return catalog.resolve(None, member.role.value, resource_type, permission).granted

    def get_resource_definitions(self) -> dict[str, list[str]]:
        return catalog.get_resource_definitions()

    def get_base_role_defaults(self) -> dict[str, dict[str, dict[str, bool]]]:
        return catalog.get_base_role_defaults()

    # ========================================================================
    # Mutations
    # ========================================================================

    async def set_permission(
        self,
        role_id: str,
        workspace_id: str,
        data: PermissionSet,
        actor_id: str,
    ) -> PermissionChange:
        """
        Set a single permission override for a custom role.

        Returns:
            Before/after of the override

        Raises:
            BadRequestError: Unknown resource type or permission
            ForbiddenError: Role is a system role
            NotFoundError: Role not found
        """
        catalog.validate_permission(data.resource_type, data.permission)

        async with self.session_factory.begin() as db:
            role = await self._load_role(db, role_id, workspace_id)
            result = await db.execute(
                select(RolePermission).where(
                    RolePermission.role_id == role_id,
                    RolePermission.resource_type == data.resource_type,
                    RolePermission.permission == data.permission,
                )
            )
            existing = result.scalar_one_or_none()
            before = existing.granted if existing else None

            if existing:
                existing.granted = data.granted
            else:
                db.add(RolePermission(
                    role_id=role_id,
                    resource_type=data.resource_type,
                    permission=data.permission,
                    granted=data.granted,
                ))

        self._after_mutation(workspace_id, actor_id, role, {
            "action": "set_permission",
            "resourceType": data.resource_type,
            "permission": data.permission,
            "before": None if before is None else {"granted": before},
            "after": {"granted": data.granted},
        })
        log.info(
            f"Set permission {data.resource_type}:{data.permission}={data.granted} "
            f"for role \"{role.name}\" ({role_id})"
        )

        return PermissionChange(
            role_id=role_id,
            resource_type=data.resource_type,
            permission=data.permission,
            before=before,
            after=data.granted,
        )

    async def set_bulk_permissions(
        self,
        role_id: str,
        workspace_id: str,
        permissions: list[PermissionSet],
        actor_id: str,
    ) -> list[RolePermissionResponse]:
        """
        Set multiple permission overrides in one transaction (all-or-nothing).

        Every entry is validated before anything is written. A later entry for
        the same pair wins.
        """
        if not permissions:
            raise BadRequestError("At least one permission is required for bulk update")

        for perm in permissions:
            catalog.validate_permission(perm.resource_type, perm.permission)

        async with self.session_factory.begin() as db:
            role = await self._load_role(db, role_id, workspace_id)
            await self._upsert(db, role_id, permissions)

        self._after_mutation(workspace_id, actor_id, role, {
            "action": "set_bulk_permissions",
            "permissionCount": len(permissions),
            "permissions": [p.model_dump() for p in permissions],
        })
        log.info(f"Set {len(permissions)} bulk permissions for role \"{role.name}\" ({role_id})")

        saved: dict[tuple[str, str], RolePermissionResponse] = {}
        for perm in permissions:
            saved[(perm.resource_type, perm.permission)] = RolePermissionResponse(role_id=role_id, **perm.model_dump())
        return list(saved.values())

    async def bulk_resource_action(
        self,
        role_id: str,
        workspace_id: str,
        resource_type: str,
        action: BulkAction | str,
        actor_id: str,
    ) -> None:
        """Grant (allow_all) or deny (deny_all) every permission of one resource type."""
        catalog.validate_resource_type(resource_type)
        try:
            action = BulkAction(action)
        except ValueError:
            raise BadRequestError(f"Invalid bulk action: {action}. Valid actions: allow_all, deny_all")

        granted = action == BulkAction.ALLOW_ALL
        permission_names = catalog.permissions_for(resource_type)

        async with self.session_factory.begin() as db:
            role = await self._load_role(db, role_id, workspace_id)
            await self._upsert(db, role_id, [
                PermissionSet(resource_type=resource_type, permission=name, granted=granted)
                for name in permission_names
            ])

        self._after_mutation(workspace_id, actor_id, role, {
            "action": "bulk_resource_action",
            "resourceType": resource_type,
            "bulkAction": action.value,
            "permissionCount": len(permission_names),
        })
        log.info(f"Applied {action.value} for resource \"{resource_type}\" on role \"{role.name}\" ({role_id})")

    async def reset_permissions(
        self,
        role_id: str,
        workspace_id: str,
        resource_type: Optional[str],
        actor_id: str,
    ) -> None:
        """
        Delete explicit overrides so inherited defaults apply again.

        Args:
            resource_type: Limit the reset to one resource type (None = all)
        """
        if resource_type:
            catalog.validate_resource_type(resource_type)

        async with self.session_factory.begin() as db:
            role = await self._load_role(db, role_id, workspace_id)
            stmt = delete(RolePermission).where(RolePermission.role_id == role_id)
            if resource_type:
                stmt = stmt.where(RolePermission.resource_type == resource_type)
            await db.execute(stmt)

        self._after_mutation(workspace_id, actor_id, role, {
            "action": "reset_permissions",
            "resourceType": resource_type or "all",
        })
        log.info(f"Reset permissions for role \"{role.name}\" ({role_id}), resource: {resource_type or 'all'}")

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _upsert(self, db: AsyncSession, role_id: str, permissions: list[PermissionSet]) -> None:
        """Insert or update overrides, loading the role's existing rows once."""
        result = await db.execute(select(RolePermission).where(RolePermission.role_id == role_id))
        existing = {(row.resource_type, row.permission): row for row in result.scalars().all()}

        for perm in permissions:
            key = (perm.resource_type, perm.permission)
            row = existing.get(key)
            if row is not None:
                row.granted = perm.granted
            else:
                row = RolePermission(
                    role_id=role_id,
                    resource_type=perm.resource_type,
                    permission=perm.permission,
                    granted=perm.granted,
                )
                db.add(row)
                existing[key] = row

    async def _load_overrides(self, db: AsyncSession, role_id: str) -> dict[tuple[str, str], bool]:
        result = await db.execute(select(RolePermission).where(RolePermission.role_id == role_id))
        return {(row.resource_type, row.permission): row.granted for row in result.scalars().all()}

    async def _load_role(
        self,
        db: AsyncSession,
        role_id: str,
        workspace_id: str,
        reject_system: bool = True,
    ) -> CustomRole:
        """
        Load a custom role and verify it belongs to the workspace.

        Raises:
            ForbiddenError: reject_system and the role is a system role
            NotFoundError: Role not found in workspace
        """
        if reject_system and catalog.is_system_role(role_id):
            raise ForbiddenError("System role permissions cannot be modified. System roles use fixed permission defaults.")

        result = await db.execute(
            select(CustomRole).where(CustomRole.id == role_id, CustomRole.workspace_id == workspace_id)
        )
        role = result.scalar_one_or_none()
        if role is None:
            raise NotFoundError("Custom role not found")

        if reject_system and role.is_system:
            raise ForbiddenError("System role permissions cannot be modified. System roles use fixed permission defaults.")

        return role

    def _after_mutation(self, workspace_id: str, actor_id: str, role: CustomRole, details: dict) -> None:
        """Audit and invalidate the workspace cache without blocking the caller."""
        fire_and_forget(
            self.audit_service.log(
                workspace_id, actor_id, AuditAction.UPDATE.value, "role_permission", role.id,
                {"roleName": role.name, **details},
            ),
            "audit role_permission",
        )
        if self.cache_service is not None:
            fire_and_forget(
                self.cache_service.invalidate_role_permissions(workspace_id),
                "invalidate workspace permissions",
            )
