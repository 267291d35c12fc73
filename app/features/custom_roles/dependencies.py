"""
Service wiring and FastAPI dependencies for custom roles.

Usage:
    @router.post("/workspaces/{workspace_id}/deployments")
    async def trigger_deployment(
        workspace_id: str,
        user_id: str = Depends(require_permission("deployments", "trigger")),
    ):
        ...
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated, Optional
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.background import drain_background_tasks
from app.core.cache import CacheBackend, create_cache_backend
from app.core.database.engine import AsyncSessionLocal
from app.features.audit.service import AuditService, PermissionAuditService
from app.features.custom_roles.cache_service import PermissionCacheService
from app.features.custom_roles.matrix_service import PermissionMatrixService
from app.features.custom_roles.role_service import CustomRoleService
from app.features.custom_roles.templates import RoleTemplateService
from app.utils import get_logger


log = get_logger(__name__)


@dataclass
class CustomRoleServices:
    roles: CustomRoleService
    matrix: PermissionMatrixService
    cache: PermissionCacheService
    templates: RoleTemplateService
    audit: AuditService
    permission_audit: PermissionAuditService


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    cache_backend: Optional[CacheBackend] = None,
    **role_options,
) -> CustomRoleServices:
    """
    Wire the services together.

    The cache and matrix engine reference each other: the engine invalidates
    the cache after mutations and the cache falls through to the engine on
    a miss.

    Args:
        session_factory: Session factory shared by every service
        cache_backend: Cache backend, None to run without cache
        **role_options: Extra CustomRoleService options (max_roles_per_workspace, reserved_names)
    """
    audit = AuditService(session_factory)
    permission_audit = PermissionAuditService(session_factory)

    cache = PermissionCacheService(cache_backend)
    matrix = PermissionMatrixService(session_factory, audit, cache)
    cache.matrix_service = matrix

    roles = CustomRoleService(session_factory, audit, cache, **role_options)
    templates = RoleTemplateService(session_factory, roles, matrix, cache, audit, permission_audit)

    return CustomRoleServices(
        roles=roles,
        matrix=matrix,
        cache=cache,
        templates=templates,
        audit=audit,
        permission_audit=permission_audit,
    )


@lru_cache
def get_services() -> CustomRoleServices:
    """Application-wide services bound to the configured database and Redis."""
    return build_services(AsyncSessionLocal, create_cache_backend())


async def shutdown_services() -> None:
    """
    Flush pending side effects and close the Redis client.

    Call from the application's shutdown hook (e.g. a FastAPI lifespan).
    """
    await drain_background_tasks()
    if get_services.cache_info().currsize:
        backend = get_services().cache.backend
        if backend is not None:
            await backend.close()
        get_services.cache_clear()
    log.info("Custom role services shut down")


def require_permission(resource: str, action: str):
    """
    FastAPI dependency to require a workspace permission.

    Reads workspace_id from the path and the authenticated user id from
    request.state.user_id, which authentication middleware sets upstream.

    Args:
        resource: Resource type (e.g. "deployments")
        action: Permission name (e.g. "trigger")

    Returns:
        Dependency function that returns the user id if the permission is granted

    Raises:
        HTTPException: 401 if no user is authenticated, 403 if permission is denied
    """
    async def permission_dependency(
        workspace_id: str,
        request: Request,
        services: Annotated[CustomRoleServices, Depends(get_services)],
    ) -> str:
        user_id = getattr(request.state, "user_id", None)
        if not user_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not authenticated",
            )

        if not await services.cache.check_permission(user_id, workspace_id, resource, action):
            log.debug(f"User {user_id} denied {resource}:{action} in workspace {workspace_id}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {action} on {resource}",
            )

        return user_id

    return permission_dependency
