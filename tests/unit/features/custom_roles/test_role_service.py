"""
Tests for CustomRoleService against a SQLite database.
"""
import asyncio
from unittest.mock import Mock

import pytest
from sqlalchemy import select, func

from app.core.background import drain_background_tasks
from app.core.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from app.features.custom_roles.models import CustomRole, RolePermission
from app.features.custom_roles.role_service import CustomRoleService
from app.features.custom_roles.schemas import CustomRoleClone, CustomRoleCreate, CustomRoleUpdate
from app.features.workspaces.models import WorkspaceRole


WORKSPACE_ID = "ws-test-1"
ACTOR_ID = "actor-1"


def role_data(name: str, **kwargs) -> CustomRoleCreate:
    return CustomRoleCreate(name=name, display_name=kwargs.pop("display_name", name.title()), **kwargs)


class TestCreateRole:
    """Test role creation, naming rules and the workspace cap."""

    @pytest.mark.asyncio
    async def test_create_role_defaults(self, role_service: CustomRoleService, mock_audit):
        role = await role_service.create_role(
            WORKSPACE_ID, role_data("qa-lead", base_role=WorkspaceRole.DEVELOPER), ACTOR_ID,
        )

        assert role.name == "qa-lead"
        assert role.color == "#6366f1"
        assert role.icon == "shield"
        assert role.base_role == WorkspaceRole.DEVELOPER
        assert role.is_system is False
        assert role.priority == 0
        assert role.member_count == 0
        assert role.created_by == ACTOR_ID

        await drain_background_tasks()
        mock_audit.log.assert_awaited_once()
        args = mock_audit.log.await_args.args
        assert args[:5] == (WORKSPACE_ID, ACTOR_ID, "create", "custom_role", role.id)
        assert args[5]["roleName"] == "qa-lead"
        assert args[5]["baseRole"] == "developer"

    @pytest.mark.asyncio
    async def test_priority_increments(self, role_service: CustomRoleService):
        first = await role_service.create_role(WORKSPACE_ID, role_data("first"), ACTOR_ID)
        second = await role_service.create_role(WORKSPACE_ID, role_data("second"), ACTOR_ID)

        assert first.priority == 0
        assert second.priority == 1

    @pytest.mark.asyncio
    async def test_duplicate_name_conflicts(self, role_service: CustomRoleService):
        await role_service.create_role(WORKSPACE_ID, role_data("qa-lead"), ACTOR_ID)

        with pytest.raises(ConflictError):
            await role_service.create_role(WORKSPACE_ID, role_data("qa-lead"), ACTOR_ID)

    @pytest.mark.asyncio
    async def test_same_name_in_other_workspace(self, role_service: CustomRoleService):
        await role_service.create_role(WORKSPACE_ID, role_data("qa-lead"), ACTOR_ID)
        other = await role_service.create_role("ws-test-2", role_data("qa-lead"), ACTOR_ID)

        assert other.workspace_id == "ws-test-2"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["admin", "owner", "viewer", "developer"])
    async def test_reserved_names_rejected(self, role_service: CustomRoleService, name: str):
        with pytest.raises(BadRequestError) as exc_info:
            await role_service.create_role(WORKSPACE_ID, role_data(name), ACTOR_ID)
        assert "reserved" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_reserved_names_configurable(self, session_factory, mock_audit, mock_cache):
        service = CustomRoleService(session_factory, mock_audit, mock_cache, reserved_names=["Root"])

        with pytest.raises(BadRequestError):
            await service.create_role(WORKSPACE_ID, role_data("root"), ACTOR_ID)

        role = await service.create_role(WORKSPACE_ID, role_data("admin"), ACTOR_ID)
        assert role.name == "admin"

    @pytest.mark.asyncio
    async def test_role_limit(self, session_factory, mock_audit, mock_cache):
        service = CustomRoleService(session_factory, mock_audit, mock_cache, max_roles_per_workspace=20)
        for i in range(20):
            await service.create_role(WORKSPACE_ID, role_data(f"role-{i}"), ACTOR_ID)

        with pytest.raises(BadRequestError) as exc_info:
            await service.create_role(WORKSPACE_ID, role_data("role-20"), ACTOR_ID)
        assert "Maximum of 20" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_concurrent_creates_respect_limit(self, session_factory, mock_audit, mock_cache):
        service = CustomRoleService(session_factory, mock_audit, mock_cache, max_roles_per_workspace=20)
        for i in range(19):
            await service.create_role(WORKSPACE_ID, role_data(f"role-{i}"), ACTOR_ID)

        results = await asyncio.gather(
            service.create_role(WORKSPACE_ID, role_data("late-a"), ACTOR_ID),
            service.create_role(WORKSPACE_ID, role_data("late-b"), ACTOR_ID),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], BadRequestError)
        assert await service.count_custom_roles(WORKSPACE_ID) == 20

    @pytest.mark.asyncio
    async def test_workspace_lock_dropped_after_create(self, role_service: CustomRoleService):
        await role_service.create_role(WORKSPACE_ID, role_data("ops"), ACTOR_ID)
        await role_service.create_role("ws-other", role_data("ops"), ACTOR_ID)

        assert len(role_service._workspace_locks) == 0


class TestListAndGet:
    """Test listing and single-role reads."""

    @pytest.mark.asyncio
    async def test_list_roles_includes_system_roles_and_counts(self, role_service: CustomRoleService, add_member):
        role = await role_service.create_role(WORKSPACE_ID, role_data("qa-lead"), ACTOR_ID)
        await role_service.create_role(WORKSPACE_ID, role_data("contractor"), ACTOR_ID)
        await add_member("user-1", WorkspaceRole.OWNER)
        await add_member("user-2", WorkspaceRole.DEVELOPER, custom_role_id=role.id)
        await add_member("user-3", WorkspaceRole.DEVELOPER)

        result = await role_service.list_roles(WORKSPACE_ID)

        assert [r.name for r in result.system_roles] == ["owner", "admin", "developer", "viewer"]
        counts = {r.name: r.member_count for r in result.system_roles}
        assert counts == {"owner": 1, "admin": 0, "developer": 2, "viewer": 0}
        assert all(r.is_system for r in result.system_roles)

        assert [r.name for r in result.custom_roles] == ["qa-lead", "contractor"]
        assert result.custom_roles[0].member_count == 1
        assert result.custom_roles[1].member_count == 0

    @pytest.mark.asyncio
    async def test_get_role_from_other_workspace(self, role_service: CustomRoleService, add_role):
        role = await add_role("qa-lead", workspace_id="ws-test-2")

        with pytest.raises(NotFoundError):
            await role_service.get_role(role.id, WORKSPACE_ID)

    @pytest.mark.asyncio
    async def test_get_role_members(self, role_service: CustomRoleService, add_role, add_member):
        role = await add_role("qa-lead")
        await add_member("user-1", custom_role_id=role.id)
        await add_member("user-2")

        members = await role_service.get_role_members(role.id, WORKSPACE_ID)

        assert [m.user_id for m in members] == ["user-1"]

    @pytest.mark.asyncio
    async def test_get_role_members_unknown_role(self, role_service: CustomRoleService):
        with pytest.raises(NotFoundError):
            await role_service.get_role_members("missing", WORKSPACE_ID)

    def test_available_icons(self, mock_audit, mock_cache):
        service = CustomRoleService(Mock(), mock_audit, mock_cache)

        icons = service.get_available_icons()
        assert "shield" in icons
        icons.append("rocket")
        assert "rocket" not in service.get_available_icons()


class TestUpdateRole:
    """Test partial updates and cache invalidation on base role change."""

    @pytest.mark.asyncio
    async def test_update_display_fields(self, role_service: CustomRoleService, add_role, mock_cache, mock_audit):
        role = await add_role("qa-lead", WorkspaceRole.DEVELOPER)

        updated = await role_service.update_role(
            role.id, WORKSPACE_ID, CustomRoleUpdate(display_name="Quality Lead", color="#000000"), ACTOR_ID,
        )

        assert updated.display_name == "Quality Lead"
        assert updated.color == "#000000"
        assert updated.base_role == WorkspaceRole.DEVELOPER
        mock_cache.invalidate_role_permissions.assert_not_awaited()

        await drain_background_tasks()
        details = mock_audit.log.await_args.args[5]
        assert details["before"]["display_name"] == "Qa Lead"
        assert details["after"]["display_name"] == "Quality Lead"

    @pytest.mark.asyncio
    async def test_base_role_change_invalidates_before_returning(
        self, role_service: CustomRoleService, add_role, mock_cache,
    ):
        role = await add_role("qa-lead", WorkspaceRole.DEVELOPER)

        updated = await role_service.update_role(
            role.id, WORKSPACE_ID, CustomRoleUpdate(base_role=WorkspaceRole.VIEWER), ACTOR_ID,
        )

        assert updated.base_role == WorkspaceRole.VIEWER
        mock_cache.invalidate_role_permissions.assert_awaited_once_with(WORKSPACE_ID)

    @pytest.mark.asyncio
    async def test_remove_base_role(self, role_service: CustomRoleService, add_role):
        role = await add_role("qa-lead", WorkspaceRole.DEVELOPER)

        updated = await role_service.update_role(role.id, WORKSPACE_ID, CustomRoleUpdate(base_role=None), ACTOR_ID)

        assert updated.base_role is None

    @pytest.mark.asyncio
    async def test_rename_to_existing_name(self, role_service: CustomRoleService, add_role):
        await add_role("qa-lead")
        role = await add_role("contractor")

        with pytest.raises(ConflictError):
            await role_service.update_role(role.id, WORKSPACE_ID, CustomRoleUpdate(name="qa-lead"), ACTOR_ID)

    @pytest.mark.asyncio
    async def test_rename_to_own_name(self, role_service: CustomRoleService, add_role):
        role = await add_role("qa-lead")

        updated = await role_service.update_role(role.id, WORKSPACE_ID, CustomRoleUpdate(name="qa-lead"), ACTOR_ID)

        assert updated.name == "qa-lead"

    @pytest.mark.asyncio
    async def test_update_system_role_forbidden(self, role_service: CustomRoleService):
        with pytest.raises(ForbiddenError):
            await role_service.update_role("admin", WORKSPACE_ID, CustomRoleUpdate(display_name="Boss"), ACTOR_ID)

    @pytest.mark.asyncio
    async def test_update_missing_role(self, role_service: CustomRoleService):
        with pytest.raises(NotFoundError):
            await role_service.update_role("missing", WORKSPACE_ID, CustomRoleUpdate(display_name="X"), ACTOR_ID)


class TestDeleteRole:
    """Test member-gated deletion."""

    @pytest.mark.asyncio
    async def test_delete_role_with_members_rejected(
        self, role_service: CustomRoleService, add_role, add_member, session_factory,
    ):
        role = await add_role("qa-lead", overrides={("projects", "delete"): True})
        for i in range(3):
            await add_member(f"user-{i}", custom_role_id=role.id)

        with pytest.raises(BadRequestError) as exc_info:
            await role_service.delete_role(role.id, WORKSPACE_ID, ACTOR_ID)
        assert "3 assigned member(s)" in exc_info.value.detail

        async with session_factory() as db:
            assert await db.get(CustomRole, role.id) is not None
            count = await db.scalar(select(func.count()).select_from(RolePermission))
            assert count == 1

    @pytest.mark.asyncio
    async def test_delete_role_removes_overrides(
        self, role_service: CustomRoleService, add_role, session_factory, mock_cache,
    ):
        role = await add_role("qa-lead", overrides={("projects", "delete"): True, ("agents", "view"): False})

        await role_service.delete_role(role.id, WORKSPACE_ID, ACTOR_ID)
        await drain_background_tasks()

        async with session_factory() as db:
            assert await db.get(CustomRole, role.id) is None
            count = await db.scalar(select(func.count()).select_from(RolePermission))
            assert count == 0
        mock_cache.invalidate_role_permissions.assert_awaited_once_with(WORKSPACE_ID)

    @pytest.mark.asyncio
    async def test_delete_system_role_forbidden(self, role_service: CustomRoleService):
        with pytest.raises(ForbiddenError):
            await role_service.delete_role("owner", WORKSPACE_ID, ACTOR_ID)

    @pytest.mark.asyncio
    async def test_delete_missing_role(self, role_service: CustomRoleService):
        with pytest.raises(NotFoundError):
            await role_service.delete_role("missing", WORKSPACE_ID, ACTOR_ID)


class TestCloneRole:
    """Test cloning with override copy."""

    @pytest.mark.asyncio
    async def test_clone_copies_fields_and_overrides(
        self, role_service: CustomRoleService, add_role, session_factory, mock_audit,
    ):
        source = await add_role(
            "qa-lead", WorkspaceRole.DEVELOPER, overrides={("deployments", "approve"): True, ("stories", "delete"): False},
        )

        clone = await role_service.clone_role(
            source.id, WORKSPACE_ID, CustomRoleClone(name="qa-lead-copy", display_name="QA Lead Copy"), ACTOR_ID,
        )

        assert clone.id != source.id
        assert clone.base_role == WorkspaceRole.DEVELOPER
        assert clone.color == "#6366f1"
        assert clone.priority == 1

        async with session_factory() as db:
            result = await db.execute(select(RolePermission).where(RolePermission.role_id == clone.id))
            copied = {(p.resource_type, p.permission): p.granted for p in result.scalars().all()}
        assert copied == {("deployments", "approve"): True, ("stories", "delete"): False}

        await drain_background_tasks()
        details = mock_audit.log.await_args.args[5]
        assert details["action"] == "clone"
        assert details["sourceRoleId"] == source.id
        assert details["permissionsCopiedCount"] == 2

    @pytest.mark.asyncio
    async def test_clone_missing_source(self, role_service: CustomRoleService):
        with pytest.raises(NotFoundError):
            await role_service.clone_role(
                "missing", WORKSPACE_ID, CustomRoleClone(name="copy", display_name="Copy"), ACTOR_ID,
            )

    @pytest.mark.asyncio
    async def test_clone_respects_limit(self, session_factory, mock_audit, mock_cache, add_role):
        service = CustomRoleService(session_factory, mock_audit, mock_cache, max_roles_per_workspace=1)
        source = await add_role("qa-lead")

        with pytest.raises(BadRequestError):
            await service.clone_role(source.id, WORKSPACE_ID, CustomRoleClone(name="copy", display_name="Copy"), ACTOR_ID)


class TestReorderRoles:
    """Test priority reordering."""

    @pytest.mark.asyncio
    async def test_reorder(self, role_service: CustomRoleService):
        a = await role_service.create_role(WORKSPACE_ID, role_data("alpha"), ACTOR_ID)
        b = await role_service.create_role(WORKSPACE_ID, role_data("beta"), ACTOR_ID)
        c = await role_service.create_role(WORKSPACE_ID, role_data("gamma"), ACTOR_ID)

        await role_service.reorder_roles(WORKSPACE_ID, [c.id, a.id, b.id], ACTOR_ID)

        result = await role_service.list_roles(WORKSPACE_ID)
        assert [r.name for r in result.custom_roles] == ["gamma", "alpha", "beta"]
        assert [r.priority for r in result.custom_roles] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_reorder_duplicates_rejected(self, role_service: CustomRoleService, add_role):
        role = await add_role("alpha")

        with pytest.raises(BadRequestError):
            await role_service.reorder_roles(WORKSPACE_ID, [role.id, role.id], ACTOR_ID)

    @pytest.mark.asyncio
    async def test_reorder_foreign_role_rejected(self, role_service: CustomRoleService, add_role):
        own = await add_role("alpha")
        foreign = await add_role("beta", workspace_id="ws-test-2")

        with pytest.raises(BadRequestError) as exc_info:
            await role_service.reorder_roles(WORKSPACE_ID, [own.id, foreign.id], ACTOR_ID)
        assert foreign.id in exc_info.value.detail
