"""
Custom role store.

Owns custom role records for a workspace: naming rules, the per-workspace
role cap, priority ordering and member-gated deletion. System roles are
computed on read and never stored.
"""
import asyncio
import re
import weakref
from typing import Iterable, Optional, TYPE_CHECKING
from sqlalchemy import select, delete, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import config
from app.core.background import fire_and_forget
from app.core.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from app.features.audit.models import AuditAction
from app.features.custom_roles import catalog
from app.features.custom_roles.models import CustomRole, RolePermission
from app.features.custom_roles.schemas import (
    CustomRoleClone,
    CustomRoleCreate,
    CustomRoleResponse,
    CustomRoleUpdate,
    RoleListResponse,
    SystemRoleInfo,
    WorkspaceMemberResponse,
)
from app.features.workspaces import store as membership
from app.utils import get_logger

if TYPE_CHECKING:
    from app.features.audit.service import AuditService
    from app.features.custom_roles.cache_service import PermissionCacheService


log = get_logger(__name__)

ROLE_NAME_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
ROLE_NAME_MIN_LENGTH = 2
ROLE_NAME_MAX_LENGTH = 50

DEFAULT_COLOR = "#6366f1"
DEFAULT_ICON = "shield"

# Fields compared for the update audit diff
_AUDITED_FIELDS = ("name", "display_name", "description", "color", "icon", "base_role", "is_active")
_NULLABLE_FIELDS = ("description", "base_role")


def _snapshot(role: CustomRole) -> dict:
    return {field: catalog.role_value(getattr(role, field)) for field in _AUDITED_FIELDS}


class CustomRoleService:
    """CRUD, cloning and ordering of workspace custom roles."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit_service: "AuditService",
        cache_service: "PermissionCacheService",
        max_roles_per_workspace: int = config.MAX_CUSTOM_ROLES_PER_WORKSPACE,
        reserved_names: Iterable[str] = config.RESERVED_ROLE_NAMES,
    ):
        self.session_factory = session_factory
        self.audit_service = audit_service
        self.cache_service = cache_service
        self.max_roles_per_workspace = max_roles_per_workspace
        self.reserved_names = frozenset(name.lower() for name in reserved_names)
        # Serializes count-check-then-insert per workspace within this process.
        # Entries disappear once no coroutine holds or waits on the lock.
        self._workspace_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ========================================================================
    # Reads
    # ========================================================================

    async def list_roles(self, workspace_id: str) -> RoleListResponse:
        """List system roles first, then custom roles by priority, each with a member count."""
        async with self.session_factory() as db:
            system_counts = await membership.count_members_by_system_role(db, workspace_id)
            custom_counts = await membership.count_members_by_custom_role(db, workspace_id)
            result = await db.execute(
                select(CustomRole)
                .where(CustomRole.workspace_id == workspace_id)
                .order_by(CustomRole.priority, CustomRole.created_at)
            )
            roles = result.scalars().all()

        system_roles = [
            SystemRoleInfo(**definition, member_count=system_counts.get(definition["name"], 0))
            for definition in catalog.get_system_role_definitions()
        ]
        custom_roles = [self._to_response(role, custom_counts.get(role.id, 0)) for role in roles]
        return RoleListResponse(system_roles=system_roles, custom_roles=custom_roles)

    async def get_role(self, role_id: str, workspace_id: str) -> CustomRoleResponse:
        """
        Get a single custom role with its member count.

        Raises:
            NotFoundError: Role not found or belongs to a different workspace
        """
        async with self.session_factory() as db:
            role = await self._get_or_404(db, role_id, workspace_id)
            member_count = await membership.count_role_members(db, workspace_id, role_id)
        return self._to_response(role, member_count)

    async def get_role_members(self, role_id: str, workspace_id: str) -> list[WorkspaceMemberResponse]:
        async with self.session_factory() as db:
            await self._get_or_404(db, role_id, workspace_id)
            members = await membership.list_role_members(db, workspace_id, role_id)
        return [WorkspaceMemberResponse.model_validate(member) for member in members]

    async def count_custom_roles(self, workspace_id: str) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(CustomRole).where(CustomRole.workspace_id == workspace_id)
            )
            return result.scalar_one()

    def get_available_icons(self) -> list[str]:
        return list(catalog.AVAILABLE_ICONS)

    # ========================================================================
    # Mutations
    # ========================================================================

    async def create_role(
        self,
        workspace_id: str,
        data: CustomRoleCreate,
        actor_id: str,
        template_id: Optional[str] = None,
    ) -> CustomRoleResponse:
        """
        Create a custom role.

        Args:
            workspace_id: Workspace ID
            data: Role fields
            actor_id: User creating the role
            template_id: Template the role is instantiated from, if any

        Raises:
            BadRequestError: Invalid or reserved name, or role limit reached
            ConflictError: Name already used in the workspace
        """
        await self._validate_role_name(data.name, workspace_id)

        async def insert(db: AsyncSession) -> CustomRole:
            role = CustomRole(
                workspace_id=workspace_id,
                name=data.name,
                display_name=data.display_name,
                description=data.description or None,
                color=data.color or DEFAULT_COLOR,
                icon=data.icon or DEFAULT_ICON,
                base_role=data.base_role,
                is_system=False,
                is_active=True,
                priority=await self._next_priority(db, workspace_id),
                template_id=template_id,
                created_by=actor_id,
            )
            db.add(role)
            return role

        role = await self._insert_within_limit(workspace_id, data.name, insert)

        self._audit(workspace_id, actor_id, AuditAction.CREATE, role.id, {
            "roleName": role.name,
            "displayName": role.display_name,
            "baseRole": catalog.role_value(role.base_role),
            "templateId": template_id,
        })
        log.info(f"Created custom role \"{role.name}\" ({role.id}) in workspace {workspace_id}")

        return self._to_response(role, 0)

    async def update_role(
        self,
        role_id: str,
        workspace_id: str,
        data: CustomRoleUpdate,
        actor_id: str,
    ) -> CustomRoleResponse:
        """
        Update a custom role. Only explicitly set fields are applied.

        Changing base_role invalidates the workspace permission cache before
        returning, since every inherited answer may change.

        Raises:
            ForbiddenError: Role is a system role
            NotFoundError: Role not found
            ConflictError: New name already used in the workspace
        """
        changes = data.model_dump(exclude_unset=True)
        if catalog.is_system_role(role_id):
            raise ForbiddenError("System roles cannot be modified")

        async with self.session_factory() as db:
            role = await self._get_or_404(db, role_id, workspace_id)
        if role.is_system:
            raise ForbiddenError("System roles cannot be modified")

        if changes.get("name") and changes["name"] != role.name:
            await self._validate_role_name(changes["name"], workspace_id, exclude_role_id=role_id)

        try:
            async with self.session_factory.begin() as db:
                role = await self._get_or_404(db, role_id, workspace_id)
                before = _snapshot(role)

                for field, value in changes.items():
                    if value is None and field not in _NULLABLE_FIELDS:
                        continue
                    if field == "description":
                        value = value or None
                    setattr(role, field, value)

                await db.flush()
                await db.refresh(role)
                member_count = await membership.count_role_members(db, workspace_id, role_id)
        except IntegrityError:
            raise ConflictError(f"A role with name \"{changes.get('name')}\" already exists in this workspace")

        after = _snapshot(role)
        self._audit(workspace_id, actor_id, AuditAction.UPDATE, role.id, {"before": before, "after": after})

        if before["base_role"] != after["base_role"]:
            await self.cache_service.invalidate_role_permissions(workspace_id)

        log.info(f"Updated custom role \"{role.name}\" ({role.id}) in workspace {workspace_id}")

        return self._to_response(role, member_count)

    async def delete_role(self, role_id: str, workspace_id: str, actor_id: str) -> None:
        """
        Delete a custom role and its overrides.

        Raises:
            BadRequestError: Members are still assigned to the role
            ForbiddenError: Role is a system role
            NotFoundError: Role not found
        """
        if catalog.is_system_role(role_id):
            raise ForbiddenError("System roles cannot be deleted")

        async with self.session_factory.begin() as db:
            role = await self._get_or_404(db, role_id, workspace_id)
            if role.is_system:
                raise ForbiddenError("System roles cannot be deleted")

            member_count = await membership.count_role_members(db, workspace_id, role_id)
            if member_count > 0:
                raise BadRequestError(
                    f"Cannot delete role with {member_count} assigned member(s). Reassign members first."
                )

            await db.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
            await db.delete(role)

        self._audit(workspace_id, actor_id, AuditAction.DELETE, role_id, {
            "roleName": role.name,
            "displayName": role.display_name,
        })
        fire_and_forget(
            self.cache_service.invalidate_role_permissions(workspace_id),
            "invalidate workspace permissions",
        )
        log.info(f"Deleted custom role \"{role.name}\" ({role_id}) from workspace {workspace_id}")

    async def clone_role(
        self,
        source_role_id: str,
        workspace_id: str,
        data: CustomRoleClone,
        actor_id: str,
    ) -> CustomRoleResponse:
        """
        Clone a custom role, including every explicit override.

        Raises:
            NotFoundError: Source role not found
            BadRequestError: Invalid or reserved name, or role limit reached
            ConflictError: Name already used in the workspace
        """
        async with self.session_factory() as db:
            source = await self._get_or_404(db, source_role_id, workspace_id, "Source role not found")

        await self._validate_role_name(data.name, workspace_id)

        copied = 0

        async def insert(db: AsyncSession) -> CustomRole:
            nonlocal copied
            clone = CustomRole(
                workspace_id=workspace_id,
                name=data.name,
                display_name=data.display_name,
                description=data.description or source.description,
                color=source.color,
                icon=source.icon,
                base_role=source.base_role,
                is_system=False,
                is_active=True,
                priority=await self._next_priority(db, workspace_id),
                created_by=actor_id,
            )
            db.add(clone)
            await db.flush()

            result = await db.execute(select(RolePermission).where(RolePermission.role_id == source_role_id))
            for perm in result.scalars().all():
                db.add(RolePermission(
                    role_id=clone.id,
                    resource_type=perm.resource_type,
                    permission=perm.permission,
                    granted=perm.granted,
                ))
                copied += 1
            return clone

        clone = await self._insert_within_limit(workspace_id, data.name, insert)

        self._audit(workspace_id, actor_id, AuditAction.CREATE, clone.id, {
            "action": "clone",
            "sourceRoleId": source_role_id,
            "sourceRoleName": source.name,
            "clonedRoleName": clone.name,
            "permissionsCopied": copied > 0,
            "permissionsCopiedCount": copied,
        })
        log.info(
            f"Cloned custom role \"{source.name}\" as \"{clone.name}\" ({clone.id}) in workspace {workspace_id}"
        )

        return self._to_response(clone, 0)

    async def reorder_roles(self, workspace_id: str, role_ids: list[str], actor_id: str) -> None:
        """
        Set each role's priority to its position in role_ids.

        Raises:
            BadRequestError: Duplicate IDs or IDs outside the workspace
        """
        if len(set(role_ids)) != len(role_ids):
            raise BadRequestError("Duplicate role IDs are not allowed")

        async with self.session_factory.begin() as db:
            result = await db.execute(select(CustomRole.id).where(CustomRole.workspace_id == workspace_id))
            workspace_role_ids = set(result.scalars().all())
            for role_id in role_ids:
                if role_id not in workspace_role_ids:
                    raise BadRequestError(f"Role ID {role_id} does not belong to this workspace")

            for index, role_id in enumerate(role_ids):
                await db.execute(update(CustomRole).where(CustomRole.id == role_id).values(priority=index))

        self._audit(workspace_id, actor_id, AuditAction.UPDATE, "reorder", {"action": "reorder", "roleIds": role_ids})
        log.info(f"Reordered {len(role_ids)} custom roles in workspace {workspace_id}")

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _insert_within_limit(self, workspace_id: str, name: str, insert) -> CustomRole:
        """
        Run insert(db) in one transaction after re-checking the role cap.

        The count check and insert are serialized per workspace, and the
        workspace's role rows are locked FOR UPDATE where the backend supports
        it, so two concurrent creations cannot both pass the cap.
        """
        lock = self._workspace_locks.setdefault(workspace_id, asyncio.Lock())
        try:
            async with lock:
                async with self.session_factory.begin() as db:
                    result = await db.execute(
                        select(CustomRole.id).where(CustomRole.workspace_id == workspace_id).with_for_update()
                    )
                    if len(result.all()) >= self.max_roles_per_workspace:
                        raise BadRequestError(
                            f"Maximum of {self.max_roles_per_workspace} custom roles per workspace reached"
                        )

                    role = await insert(db)
                    await db.flush()
                    await db.refresh(role)
        except IntegrityError:
            raise ConflictError(f"A role with name \"{name}\" already exists in this workspace")
        return role

    async def _next_priority(self, db: AsyncSession, workspace_id: str) -> int:
        result = await db.execute(
            select(func.max(CustomRole.priority)).where(CustomRole.workspace_id == workspace_id)
        )
        max_priority = result.scalar_one_or_none()
        return 0 if max_priority is None else max_priority + 1

    async def _validate_role_name(self, name: str, workspace_id: str, exclude_role_id: Optional[str] = None) -> None:
        """
        Validate that a role name is well-formed, not reserved and unique within the workspace.

        Raises:
            BadRequestError: Malformed or reserved name
            ConflictError: Name already used
        """
        if not ROLE_NAME_MIN_LENGTH <= len(name) <= ROLE_NAME_MAX_LENGTH:
            raise BadRequestError(
                f"Role name must be between {ROLE_NAME_MIN_LENGTH} and {ROLE_NAME_MAX_LENGTH} characters"
            )
        if not ROLE_NAME_RE.match(name):
            raise BadRequestError("Role name must be lowercase letters, digits and single hyphens")
        if name.lower() in self.reserved_names:
            raise BadRequestError(f"Role name \"{name}\" is reserved for system roles")

        stmt = select(CustomRole.id).where(CustomRole.workspace_id == workspace_id, CustomRole.name == name)
        if exclude_role_id:
            stmt = stmt.where(CustomRole.id != exclude_role_id)

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            if result.first() is not None:
                raise ConflictError(f"A role with name \"{name}\" already exists in this workspace")

    async def _get_or_404(
        self,
        db: AsyncSession,
        role_id: str,
        workspace_id: str,
        message: str = "Custom role not found",
    ) -> CustomRole:
        result = await db.execute(
            select(CustomRole).where(CustomRole.id == role_id, CustomRole.workspace_id == workspace_id)
        )
        role = result.scalar_one_or_none()
        if role is None:
            raise NotFoundError(message)
        return role

    def _to_response(self, role: CustomRole, member_count: int) -> CustomRoleResponse:
        response = CustomRoleResponse.model_validate(role)
        response.member_count = member_count
        return response

    def _audit(self, workspace_id: str, actor_id: str, action: AuditAction, entity_id: str, details: dict) -> None:
        fire_and_forget(
            self.audit_service.log(workspace_id, actor_id, action.value, "custom_role", entity_id, details),
            f"audit custom_role {action.value}",
        )
