"""
Global pytest configuration and fixtures for the custom roles test suite.

Services run against a throwaway SQLite database per test. Audit sinks and
the permission cache are mocked unless a test builds its own.
"""
from typing import Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from app.core.background import drain_background_tasks
from app.core.database.engine import create_engine, create_session_factory, init_db
from app.features.audit.service import AuditService, PermissionAuditService
from app.features.custom_roles.cache_service import PermissionCacheService
from app.features.custom_roles.matrix_service import PermissionMatrixService
from app.features.custom_roles.models import CustomRole, RolePermission
from app.features.custom_roles.role_service import CustomRoleService
from app.features.custom_roles.templates import RoleTemplateService
from app.features.workspaces.models import WorkspaceMember, WorkspaceRole


WORKSPACE_ID = "ws-test-1"
OTHER_WORKSPACE_ID = "ws-test-2"
ACTOR_ID = "actor-1"


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite file database with all tables created."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(bind=engine)
    yield engine
    await drain_background_tasks()
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def mock_audit() -> AsyncMock:
    return AsyncMock(spec=AuditService)


@pytest.fixture
def mock_permission_audit() -> AsyncMock:
    return AsyncMock(spec=PermissionAuditService)


@pytest.fixture
def mock_cache() -> AsyncMock:
    return AsyncMock(spec=PermissionCacheService)


@pytest.fixture
def role_service(session_factory, mock_audit, mock_cache) -> CustomRoleService:
    return CustomRoleService(session_factory, mock_audit, mock_cache)


@pytest.fixture
def matrix_service(session_factory, mock_audit, mock_cache) -> PermissionMatrixService:
    return PermissionMatrixService(session_factory, mock_audit, mock_cache)


@pytest.fixture
def template_service(
    session_factory, role_service, matrix_service, mock_cache, mock_audit, mock_permission_audit,
) -> RoleTemplateService:
    return RoleTemplateService(
        session_factory, role_service, matrix_service, mock_cache, mock_audit, mock_permission_audit,
    )


@pytest.fixture
def add_member(session_factory):
    """Insert a workspace member directly, bypassing any service."""
    async def _add_member(
        user_id: str,
        role: WorkspaceRole = WorkspaceRole.DEVELOPER,
        custom_role_id: Optional[str] = None,
        workspace_id: str = WORKSPACE_ID,
    ) -> WorkspaceMember:
        async with session_factory.begin() as db:
            member = WorkspaceMember(
                workspace_id=workspace_id,
                user_id=user_id,
                role=role,
                custom_role_id=custom_role_id,
            )
            db.add(member)
        return member

    return _add_member


@pytest.fixture
def add_role(session_factory):
    """Insert a custom role (and optional overrides) directly."""
    async def _add_role(
        name: str,
        base_role: Optional[WorkspaceRole] = None,
        overrides: Optional[dict[tuple[str, str], bool]] = None,
        workspace_id: str = WORKSPACE_ID,
        template_id: Optional[str] = None,
    ) -> CustomRole:
        async with session_factory.begin() as db:
            role = CustomRole(
                workspace_id=workspace_id,
                name=name,
                display_name=name.replace("-", " ").title(),
                base_role=base_role,
                template_id=template_id,
                created_by=ACTOR_ID,
            )
            db.add(role)
            await db.flush()
            for (resource_type, permission), granted in (overrides or {}).items():
                db.add(RolePermission(
                    role_id=role.id,
                    resource_type=resource_type,
                    permission=permission,
                    granted=granted,
                ))
        return role

    return _add_role
