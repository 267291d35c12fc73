"""
Seed script to create custom roles from the built-in role templates.

Run this script after database initialization to give a workspace one
custom role per template (or only the templates named with --template).
Re-running creates suffixed copies ("qa-lead-2"), so pass --skip-existing
to leave already seeded templates alone.

Usage:
    uv run python -m scripts.seed_role_templates --workspace ws_123 --actor user_1
    uv run python -m scripts.seed_role_templates --workspace ws_123 --actor user_1 --template qa_lead
"""
import argparse
import asyncio
from sqlalchemy import select

from app.core.background import drain_background_tasks
from app.core.database.engine import AsyncSessionLocal, init_db
from app.features.custom_roles.dependencies import build_services
from app.features.custom_roles.models import CustomRole
from app.features.custom_roles.schemas import CreateRoleFromTemplate
from app.features.custom_roles.templates import list_templates
from app.utils import get_logger


log = get_logger(__name__)


async def seeded_template_ids(workspace_id: str) -> set[str]:
    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(CustomRole.template_id).where(
                CustomRole.workspace_id == workspace_id,
                CustomRole.template_id.is_not(None),
            )
        )
        return set(result.scalars().all())


async def seed_templates(workspace_id: str, actor_id: str, template_ids: list[str], skip_existing: bool) -> int:
    """
    Create one role per template.

    Returns:
        Number of roles created
    """
    services = build_services(AsyncSessionLocal)
    existing = await seeded_template_ids(workspace_id) if skip_existing else set()

    created = 0
    for template_id in template_ids:
        if template_id in existing:
            log.debug(f"Template '{template_id}' already seeded in workspace {workspace_id}, skipping")
            continue

        role = await services.templates.create_role_from_template(
            workspace_id,
            CreateRoleFromTemplate(template_id=template_id),
            actor_id,
        )
        log.info(f"Created role '{role.name}' from template '{template_id}'")
        created += 1

    return created


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create custom roles from role templates")
    parser.add_argument("--workspace", required=True, help="Workspace ID to seed")
    parser.add_argument("--actor", required=True, help="User ID recorded as creator")
    parser.add_argument(
        "--template",
        action="append",
        dest="templates",
        help="Template ID to seed (repeatable, default: all)",
    )
    parser.add_argument("--skip-existing", action="store_true", help="Skip templates already seeded")
    return parser.parse_args()


async def main():
    """Main function to seed role templates."""
    args = parse_args()
    template_ids = args.templates or [template.id for template in list_templates()]

    log.info("Initializing database tables...")
    await init_db()

    try:
        created = await seed_templates(args.workspace, args.actor, template_ids, args.skip_existing)
    except Exception as e:
        log.error(f"Error seeding role templates: {e}", exc_info=True)
        raise
    finally:
        await drain_background_tasks()

    log.info(f"Role template seeding completed: {created} role(s) created in workspace {args.workspace}")


if __name__ == "__main__":
    asyncio.run(main())
