"""
Read-only membership queries used by role and permission services.
"""
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.workspaces.models import WorkspaceMember


async def get_member(db: AsyncSession, workspace_id: str, user_id: str) -> WorkspaceMember | None:
    """Get a user's membership in a workspace, or None if not a member."""
    result = await db.execute(
        select(WorkspaceMember).where(
            WorkspaceMember.workspace_id == workspace_id,
            WorkspaceMember.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def count_members_by_system_role(db: AsyncSession, workspace_id: str) -> dict[str, int]:
    """
    Count members per system role in one grouped query.

    Returns:
        Mapping of role value (e.g. "admin") to member count
    """
    result = await db.execute(
        select(WorkspaceMember.role, func.count())
        .where(WorkspaceMember.workspace_id == workspace_id)
        .group_by(WorkspaceMember.role)
    )
    return {role.value: count for role, count in result.all()}


async def count_members_by_custom_role(db: AsyncSession, workspace_id: str) -> dict[str, int]:
    """Count members per custom role id in one grouped query."""
    result = await db.execute(
        select(WorkspaceMember.custom_role_id, func.count())
        .where(
            WorkspaceMember.workspace_id == workspace_id,
            WorkspaceMember.custom_role_id.is_not(None),
        )
        .group_by(WorkspaceMember.custom_role_id)
    )
    return {role_id: count for role_id, count in result.all()}


async def count_role_members(db: AsyncSession, workspace_id: str, role_id: str) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(WorkspaceMember)
        .where(
            WorkspaceMember.workspace_id == workspace_id,
            WorkspaceMember.custom_role_id == role_id,
        )
    )
    return result.scalar_one()


async def list_role_members(db: AsyncSession, workspace_id: str, role_id: str) -> list[WorkspaceMember]:
    result = await db.execute(
        select(WorkspaceMember)
        .where(
            WorkspaceMember.workspace_id == workspace_id,
            WorkspaceMember.custom_role_id == role_id,
        )
        .order_by(WorkspaceMember.created_at)
    )
    return list(result.scalars().all())
